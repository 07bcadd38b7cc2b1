"""Settlement ledger: balances, deposit records and withdrawal requests."""

from poolwallet.ledger.database import Database, create_database
from poolwallet.ledger.models import (
    Balance,
    Deposit,
    DepositIntent,
    DepositIntentStatus,
    DepositStatus,
    EncryptedKey,
    LedgerEntryType,
    LedgerTransaction,
    PoolAddress,
    ScanCursor,
    Withdrawal,
    WithdrawalStatus,
)
from poolwallet.ledger.repository import LedgerRepository
from poolwallet.ledger.service import SettlementLedger

__all__ = [
    # Models
    "Balance",
    "Deposit",
    "DepositIntent",
    "EncryptedKey",
    "LedgerTransaction",
    "PoolAddress",
    "ScanCursor",
    "Withdrawal",
    # Enums
    "DepositIntentStatus",
    "DepositStatus",
    "LedgerEntryType",
    "WithdrawalStatus",
    # Database
    "Database",
    "create_database",
    "LedgerRepository",
    "SettlementLedger",
]
