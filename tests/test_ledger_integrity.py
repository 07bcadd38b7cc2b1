"""Ledger integrity tests.

These tests ensure that:
1. Balances never go negative
2. Every balance equals the sum of its ledger entries
3. A deposit credits at most one user, once
4. Withdrawals either pay out or leave the balance as it was
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from poolwallet.assets import Asset
from poolwallet.errors import AlreadyClaimed, BroadcastFailure, InsufficientBalance
from poolwallet.ledger.models import Balance
from poolwallet.ledger.repository import LedgerRepository

POOL_ETH = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
DESTINATION = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"


async def entries_total(db, user_id: str, asset: Asset) -> Decimal:
    async with db.session() as session:
        entries = await LedgerRepository(session).get_ledger_entries(user_id, asset, limit=1000)
    return sum((e.amount for e in entries), Decimal("0"))


@pytest.mark.asyncio
async def test_balance_cannot_go_negative(ledger):
    """Debiting an empty balance raises and creates no row."""
    with pytest.raises(InsufficientBalance, match="Insufficient balance"):
        await ledger.debit("alice", Asset.BTC, Decimal("0.1"))

    assert await ledger.get_balance("alice", Asset.BTC) == Decimal("0")


@pytest.mark.asyncio
async def test_credit_then_debit_consistent(ledger, db):
    await ledger.credit("alice", Asset.BTC, Decimal("1.0"))
    await ledger.debit("alice", Asset.BTC, Decimal("0.3"))
    await ledger.debit("alice", Asset.BTC, Decimal("0.2"))

    assert await ledger.get_balance("alice", Asset.BTC) == Decimal("0.5")
    assert await entries_total(db, "alice", Asset.BTC) == Decimal("0.5")


@pytest.mark.asyncio
async def test_multiple_assets_independent(ledger):
    await ledger.credit("alice", Asset.BTC, Decimal("1"))
    await ledger.credit("alice", Asset.ETH, Decimal("10"))
    await ledger.debit("alice", Asset.ETH, Decimal("4"))

    assert await ledger.get_balance("alice", Asset.BTC) == Decimal("1")
    assert await ledger.get_balance("alice", Asset.ETH) == Decimal("6")


@pytest.mark.asyncio
async def test_concurrent_claims_credit_once(ledger):
    """Two operators claiming the same deposit at once: one wins."""
    deposit = await ledger.record_deposit(Asset.ETH, Decimal("2"), POOL_ETH, "0xfeed")

    results = await asyncio.gather(
        ledger.claim_deposit(deposit.id, "alice", "op-1"),
        ledger.claim_deposit(deposit.id, "bob", "op-2"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, AlreadyClaimed) for r in results) == 1
    total = await ledger.get_balance("alice", Asset.ETH) + await ledger.get_balance("bob", Asset.ETH)
    assert total == Decimal("2")


@pytest.mark.asyncio
async def test_deposit_to_withdrawal_round_trip(ledger, engine, db):
    """Deposit, claim, withdraw: the ledger explains every balance change."""
    deposit = await ledger.record_deposit(Asset.ETH, Decimal("1.2"), POOL_ETH, "0xd1")
    await ledger.claim_deposit(deposit.id, "alice", "op")

    paid = await engine.create_withdrawal_request("alice", Asset.ETH, "0.7", DESTINATION)
    await engine.approve_withdrawal(paid.id, "op")

    assert await ledger.get_balance("alice", Asset.ETH) == Decimal("0.5")
    assert await entries_total(db, "alice", Asset.ETH) == Decimal("0.5")


@pytest.mark.asyncio
async def test_failed_withdrawal_returns_funds(ledger, engine, broadcaster, db):
    await ledger.credit("alice", Asset.ETH, Decimal("1"))
    request = await engine.create_withdrawal_request("alice", Asset.ETH, "1", DESTINATION)
    assert await ledger.get_balance("alice", Asset.ETH) == Decimal("0")

    broadcaster.fail_with = BroadcastFailure("replacement transaction underpriced")
    await engine.approve_withdrawal(request.id, "op")

    assert await ledger.get_balance("alice", Asset.ETH) == Decimal("1")
    assert await entries_total(db, "alice", Asset.ETH) == Decimal("1")


@pytest.mark.asyncio
async def test_credit_racing_reservation_keeps_both(ledger, engine, db):
    """A deposit credit and a withdrawal reservation at the same moment."""
    await ledger.credit("alice", Asset.ETH, Decimal("1.0"))

    await asyncio.gather(
        ledger.credit("alice", Asset.ETH, Decimal("0.1")),
        engine.create_withdrawal_request("alice", Asset.ETH, "0.5", DESTINATION),
    )

    assert await ledger.get_balance("alice", Asset.ETH) == Decimal("0.6")
    assert await entries_total(db, "alice", Asset.ETH) == Decimal("0.6")


@pytest.mark.asyncio
async def test_concurrent_credits_all_applied(ledger, db):
    await ledger.credit("alice", Asset.BTC, Decimal("1"))

    await asyncio.gather(*(ledger.credit("alice", Asset.BTC, Decimal("1")) for _ in range(10)))

    assert await ledger.get_balance("alice", Asset.BTC) == Decimal("11")
    assert await entries_total(db, "alice", Asset.BTC) == Decimal("11")


@pytest.mark.asyncio
async def test_database_rejects_negative_balance(ledger, db):
    """The CHECK constraint holds even for writes that bypass the repository."""
    await ledger.credit("alice", Asset.BTC, Decimal("1"))

    with pytest.raises(IntegrityError):
        async with db.session() as session:
            await session.execute(
                update(Balance)
                .where(Balance.user_id == "alice")
                .values(amount=Decimal("-0.5"))
            )

    assert await ledger.get_balance("alice", Asset.BTC) == Decimal("1")
