"""Tests for API endpoints."""

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from poolwallet.api.app import create_app
from poolwallet.api.deps import Services
from poolwallet.assets import Asset
from poolwallet.config import Settings

ADMIN_TOKEN = "test-admin-token"
DESTINATION = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
ADMIN = {"X-Admin-Token": ADMIN_TOKEN, "X-Operator": "ops-alice"}
ALICE = {"X-User-Id": "alice"}


@pytest.fixture
def services(settings_env, vault, allocator, ledger, reporter, engine) -> Services:
    return Services(
        settings=Settings(admin_token=ADMIN_TOKEN),
        vault=vault,
        allocator=allocator,
        ledger=ledger,
        reporter=reporter,
        withdrawals=engine,
    )


@pytest_asyncio.fixture
async def client(services):
    """Create test client."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "poolwallet"}

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["pool_initialized"] == {"BTC": True, "ETH": True, "USDT": True}
        assert data["config"]["encryption_key"] == "***"
        assert "abandon" not in response.text


class TestWalletEndpoints:
    """User-facing endpoints."""

    @pytest.mark.asyncio
    async def test_display_address(self, client, allocator):
        response = await client.get("/api/v1/wallet/eth/address", headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["asset"] == "ETH"
        assert data["address"] == allocator.get_user_display_address("alice", Asset.ETH)
        assert data["address"] != allocator.get_pool_address(Asset.ETH)
        assert "private" not in response.text

    @pytest.mark.asyncio
    async def test_user_header_required(self, client):
        response = await client.get("/api/v1/wallet/eth/address")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_asset(self, client):
        response = await client.get("/api/v1/wallet/doge/address", headers=ALICE)

        assert response.status_code == 400
        assert response.json()["error"] == "UnsupportedAsset"

    @pytest.mark.asyncio
    async def test_balances(self, client, ledger):
        await ledger.credit("alice", Asset.ETH, Decimal("1.25"))

        response = await client.get("/api/v1/balances", headers=ALICE)

        assert response.status_code == 200
        assert Decimal(response.json()["ETH"]) == Decimal("1.25")

    @pytest.mark.asyncio
    async def test_create_withdrawal(self, client, ledger):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))

        response = await client.post(
            "/api/v1/withdrawals",
            headers=ALICE,
            json={"asset": "ETH", "amount": "0.4", "destination": DESTINATION},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert Decimal(data["fee_amount"]) == Decimal("0.002")
        assert await ledger.get_balance("alice", Asset.ETH) == Decimal("0.6")

        listed = await client.get("/api/v1/withdrawals", headers=ALICE)
        assert [w["id"] for w in listed.json()] == [data["id"]]

    @pytest.mark.asyncio
    async def test_withdrawal_validation_errors(self, client, ledger):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))

        short = await client.post(
            "/api/v1/withdrawals",
            headers=ALICE,
            json={"asset": "ETH", "amount": "5", "destination": DESTINATION},
        )
        malformed = await client.post(
            "/api/v1/withdrawals",
            headers=ALICE,
            json={"asset": "ETH", "amount": "0.1", "destination": "0xnope"},
        )

        assert short.status_code == 400
        assert short.json()["error"] == "InsufficientBalance"
        assert malformed.status_code == 400
        assert malformed.json()["error"] == "MalformedDestinationAddress"

    @pytest.mark.asyncio
    async def test_deposit_intent(self, client, allocator):
        response = await client.post(
            "/api/v1/deposits/intents", headers=ALICE, json={"asset": "usdt", "amount": "250"}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "open"
        assert data["pay_to"] == allocator.get_pool_address(Asset.USDT)
        assert data["expires_at"]

        bad = await client.post(
            "/api/v1/deposits/intents", headers=ALICE, json={"asset": "usdt", "amount": "lots"}
        )
        assert bad.status_code == 400

        for amount in ("NaN", "Infinity", "0"):
            invalid = await client.post(
                "/api/v1/deposits/intents", headers=ALICE, json={"asset": "usdt", "amount": amount}
            )
            assert invalid.status_code == 400
            assert invalid.json()["error"] == "InvalidAmount"


class TestAdminEndpoints:
    """Operator endpoints."""

    @pytest.mark.asyncio
    async def test_token_required(self, client):
        missing = await client.get("/admin/deposits/pending")
        wrong = await client.get("/admin/deposits/pending", headers={"X-Admin-Token": "nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_pool_addresses_and_balances(self, client, vault):
        addresses = await client.get("/admin/pool/addresses", headers=ADMIN)
        balances = await client.get("/admin/pool/balances", headers=ADMIN)

        assert addresses.json()["ETH"] == vault.get_pool_address(Asset.ETH)
        assert balances.json()["BTC"]["balance"] == "10"
        assert balances.json()["BTC"]["degraded"] is False

    @pytest.mark.asyncio
    async def test_claim_deposit(self, client, ledger, vault):
        deposit = await ledger.record_deposit(
            Asset.ETH, Decimal("0.3"), vault.get_pool_address(Asset.ETH), "0xd1"
        )

        pending = await client.get("/admin/deposits/pending", headers=ADMIN)
        assert [d["id"] for d in pending.json()] == [deposit.id]

        claimed = await client.post(
            f"/admin/deposits/{deposit.id}/claim", headers=ADMIN, json={"user_id": "alice"}
        )
        assert claimed.status_code == 200
        assert claimed.json()["claimed_by"] == "ops-alice"
        assert await ledger.get_balance("alice", Asset.ETH) == Decimal("0.3")

        again = await client.post(
            f"/admin/deposits/{deposit.id}/claim", headers=ADMIN, json={"user_id": "bob"}
        )
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyClaimed"

    @pytest.mark.asyncio
    async def test_cancel_and_missing_deposit(self, client, ledger, vault):
        deposit = await ledger.record_deposit(
            Asset.BTC, Decimal("0.001"), vault.get_pool_address(Asset.BTC), "btc-dust"
        )

        cancelled = await client.post(
            f"/admin/deposits/{deposit.id}/cancel", headers=ADMIN, json={"reason": "dust"}
        )
        missing = await client.post("/admin/deposits/999/claim", headers=ADMIN, json={"user_id": "a"})

        assert cancelled.json()["status"] == "cancelled"
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_approve_withdrawal(self, client, ledger, engine, broadcaster):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))
        request = await engine.create_withdrawal_request("alice", Asset.ETH, "0.5", DESTINATION)

        pending = await client.get("/admin/withdrawals/pending", headers=ADMIN)
        assert [w["id"] for w in pending.json()] == [request.id]

        approved = await client.post(f"/admin/withdrawals/{request.id}/approve", headers=ADMIN)
        assert approved.status_code == 200
        assert approved.json()["status"] == "completed"
        assert approved.json()["tx_hash"] == broadcaster.sent[0].tx_hash

        again = await client.post(f"/admin/withdrawals/{request.id}/approve", headers=ADMIN)
        assert again.status_code == 409

        completed = await client.get("/admin/withdrawals?status=completed", headers=ADMIN)
        assert [w["id"] for w in completed.json()] == [request.id]

    @pytest.mark.asyncio
    async def test_approve_with_short_pool(self, client, ledger, engine, eth_client):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))
        request = await engine.create_withdrawal_request("alice", Asset.ETH, "0.5", DESTINATION)
        eth_client.get_balance.return_value = 0

        response = await client.post(f"/admin/withdrawals/{request.id}/approve", headers=ADMIN)

        assert response.status_code == 409
        assert response.json()["error"] == "InsufficientPoolLiquidity"

    @pytest.mark.asyncio
    async def test_reject_withdrawal(self, client, ledger, engine):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))
        request = await engine.create_withdrawal_request("alice", Asset.ETH, "0.5", DESTINATION)

        response = await client.post(
            f"/admin/withdrawals/{request.id}/reject", headers=ADMIN, json={"reason": "kyc"}
        )
        missing = await client.post("/admin/withdrawals/999/reject", headers=ADMIN, json={})

        assert response.json()["status"] == "rejected"
        assert response.json()["reason"] == "kyc"
        assert await ledger.get_balance("alice", Asset.ETH) == Decimal("1")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_stats(self, client, ledger, engine):
        await ledger.credit("alice", Asset.ETH, Decimal("1"))
        await engine.create_withdrawal_request("alice", Asset.ETH, "0.5", DESTINATION)

        response = await client.get("/admin/stats", headers=ADMIN)

        stats = response.json()
        assert stats["pending_withdrawals"]["ETH"]["count"] == 1
        assert Decimal(stats["pending_withdrawals"]["ETH"]["total_amount"]) == Decimal("0.5")
        assert stats["pending_deposits"] == {}

    @pytest.mark.asyncio
    async def test_check_confirmations(self, client):
        response = await client.post("/admin/withdrawals/check-confirmations", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == []


class TestAdminWithoutToken:
    @pytest.mark.asyncio
    async def test_production_requires_token(self, services):
        services.settings = Settings(admin_token="", environment="production")
        app = create_app(services)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/admin/stats")

        assert response.status_code == 503
