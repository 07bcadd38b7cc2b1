"""Pytest configuration and fixtures."""

import asyncio
import os
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "true"

from poolwallet.assets import Asset
from poolwallet.crypto import KeyEncryptor
from poolwallet.hdwallet.allocator import AddressAllocator
from poolwallet.hdwallet.eth import normalize_evm_address
from poolwallet.hdwallet.factory import WalletSet
from poolwallet.ledger.database import Database
from poolwallet.ledger.repository import LedgerRepository
from poolwallet.ledger.service import SettlementLedger
from poolwallet.notifications.base import Event, EventDispatcher, Notifier
from poolwallet.services.pool_balances import ReconciliationReporter
from poolwallet.signing.vault import KeyVault
from poolwallet.withdrawal.base import ChainBroadcaster, SignedTransaction, TxStatus
from poolwallet.withdrawal.engine import WithdrawalEngine

# Standard BIP39 test vector; never holds funds.
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
TEST_ENCRYPTION_KEY = "11" * 32
ETH_DESTINATION = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"

FEE_RATES = {
    Asset.BTC: Decimal("0.0005"),
    Asset.ETH: Decimal("0.005"),
    Asset.USDT: Decimal("0.01"),
}


class RecordingNotifier(Notifier):
    """Keeps every delivered event."""

    def __init__(self):
        self.events: list[Event] = []

    async def notify(self, event: Event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list:
        return [e.type for e in self.events]


class FakeBroadcaster(ChainBroadcaster):
    """In-memory broadcaster for ETH/USDT withdrawals."""

    def __init__(self, asset: Asset = Asset.ETH):
        super().__init__(asset)
        self.fail_with = None
        self.delay = 0.0
        self.sent: list[SignedTransaction] = []
        self.status = TxStatus.PENDING

    def normalize_address(self, address: str) -> str:
        return normalize_evm_address(address)

    async def build_and_sign(self, private_key, pool_address, destination, amount):
        assert private_key
        return SignedTransaction(self.asset, f"0x{len(self.sent) + 1:064x}", raw="0xf8")

    async def broadcast(self, signed: SignedTransaction) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(signed)
        return signed.tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        return self.status


@pytest.fixture
def settings_env(tmp_path, monkeypatch):
    """Environment for building a full Settings object."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/settings.db")
    monkeypatch.setenv("WALLET_SEED_PHRASE", TEST_MNEMONIC)
    monkeypatch.setenv("WALLET_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return tmp_path


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database, so separate sessions see each other's commits."""
    database = Database.from_url(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.init()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def db_session(db) -> AsyncGenerator[AsyncSession, None]:
    async with db.session() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def events(notifier) -> EventDispatcher:
    return EventDispatcher([notifier])


@pytest.fixture
def ledger(db, events) -> SettlementLedger:
    return SettlementLedger(db, events)


@pytest.fixture(scope="session")
def wallets() -> WalletSet:
    return WalletSet.from_mnemonic(TEST_MNEMONIC)


@pytest.fixture
def encryptor() -> KeyEncryptor:
    return KeyEncryptor(bytes.fromhex(TEST_ENCRYPTION_KEY))


@pytest_asyncio.fixture
async def vault(db, wallets, encryptor) -> KeyVault:
    key_vault = KeyVault(db, wallets, encryptor)
    await key_vault.derive_and_store_pool_keys()
    return key_vault


@pytest.fixture
def allocator(wallets, vault) -> AddressAllocator:
    return AddressAllocator(wallets, vault)


@pytest.fixture
def eth_client() -> AsyncMock:
    client = AsyncMock()
    client.get_balance.return_value = 100 * 10**18
    client.get_token_balance.return_value = 1_000_000 * 10**6
    return client


@pytest.fixture
def btc_client() -> AsyncMock:
    client = AsyncMock()
    client.get_address_stats.return_value = {
        "chain_stats": {"funded_txo_sum": 10 * 10**8, "spent_txo_sum": 0},
        "mempool_stats": {"funded_txo_sum": 0, "spent_txo_sum": 0},
    }
    return client


@pytest.fixture
def reporter(vault, eth_client, btc_client) -> ReconciliationReporter:
    return ReconciliationReporter(
        vault, eth_client, btc_client, "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    )


@pytest.fixture
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster(Asset.ETH)


@pytest.fixture
def engine(db, vault, reporter, broadcaster, events) -> WithdrawalEngine:
    return WithdrawalEngine(
        db,
        vault,
        reporter,
        {Asset.ETH: broadcaster, Asset.USDT: FakeBroadcaster(Asset.USDT)},
        dict(FEE_RATES),
        broadcast_timeout=5.0,
        events=events,
    )
