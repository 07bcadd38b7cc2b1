"""SQLAlchemy models for the settlement ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from poolwallet.assets import Asset


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Amount(TypeDecorator):
    """Exact decimal amount.

    SQLite has no decimal type and would round-trip through float, so amounts
    are stored there as canonical strings. Other backends use NUMERIC(36, 18).
    """

    impl = Numeric(36, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(36, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "sqlite":
            return format(value.normalize(), "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value if isinstance(value, Decimal) else Decimal(str(value))


class DepositStatus(str, Enum):
    """Status of a deposit observed at a pool address."""

    PENDING = "pending"      # Seen on-chain, not yet attributed to a user
    CLAIMED = "claimed"      # Credited to a user balance
    CANCELLED = "cancelled"  # Voided by an operator


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal request."""

    PENDING = "pending"      # Balance reserved, awaiting operator review
    APPROVED = "approved"    # Claimed by an approver, broadcast in progress
    REJECTED = "rejected"    # Declined by operator, refunded
    COMPLETED = "completed"  # Broadcast accepted by the network
    FAILED = "failed"        # Broadcast failed, refunded


class LedgerEntryType(str, Enum):
    """Kind of balance mutation recorded in the ledger."""

    DEPOSIT = "deposit"
    WITHDRAWAL_RESERVE = "withdrawal_reserve"
    WITHDRAWAL_REFUND = "withdrawal_refund"
    CREDIT = "credit"
    DEBIT = "debit"


class DepositIntentStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    EXPIRED = "expired"


class PoolAddress(Base):
    """Settlement address controlled by the platform, one active per asset."""

    __tablename__ = "pool_addresses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_pool_addresses_asset_active", "asset", "is_active"),)

    def __repr__(self) -> str:
        return f"<PoolAddress {self.asset}:{self.address}>"


class EncryptedKey(Base):
    """Pool signing key encrypted at rest, keyed by asset."""

    __tablename__ = "encrypted_keys"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    asset: Mapped[Asset] = mapped_column(String(10), unique=True, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<EncryptedKey {self.asset}>"


class Balance(Base):
    """Per-user, per-asset available balance."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount(), default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "asset", name="uq_balances_user_asset"),
        # Amounts are text on SQLite, where a bare "amount >= 0" would compare
        # TEXT to INTEGER and always pass
        CheckConstraint("CAST(amount AS REAL) >= 0", name="ck_balances_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Balance {self.user_id} {self.asset}={self.amount}>"


class Deposit(Base):
    """Inbound transfer observed at a pool address."""

    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    pool_address: Mapped[str] = mapped_column(String(128), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    block_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.PENDING, nullable=False
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("asset", "tx_hash", name="uq_deposits_asset_tx"),
        Index("ix_deposits_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Deposit {self.id} {self.amount} {self.asset} {self.status}>"


class Withdrawal(Base):
    """User withdrawal request and its execution record."""

    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)  # amount - fee
    destination_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(20), default=WithdrawalStatus.PENDING, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_withdrawals_status", "status"),)

    def __repr__(self) -> str:
        return f"<Withdrawal {self.id} {self.amount} {self.asset} {self.status}>"


class LedgerTransaction(Base):
    """Append-only record of every balance mutation."""

    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)  # signed
    deposit_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    withdrawal_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_ledger_transactions_user_asset", "user_id", "asset"),)


class DepositIntent(Base):
    """A user's declaration of an upcoming deposit, used for automatic claims."""

    __tablename__ = "deposit_intents"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset: Mapped[Asset] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    status: Mapped[DepositIntentStatus] = mapped_column(
        String(20), default=DepositIntentStatus.OPEN, nullable=False
    )
    deposit_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_deposit_intents_match", "asset", "amount", "status"),)


class ScanCursor(Base):
    """Last block a chain scanner fully recorded, so restarts resume from it."""

    __tablename__ = "scan_cursors"

    chain: Mapped[str] = mapped_column(String(20), primary_key=True)
    block_height: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<ScanCursor {self.chain}@{self.block_height}>"
