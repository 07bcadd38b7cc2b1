"""Repository for ledger operations."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from poolwallet.assets import Asset
from poolwallet.errors import InsufficientBalance
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
    utcnow,
)


def _sum_by_asset(rows) -> dict[str, dict]:
    totals: dict[str, dict] = {}
    for asset, amount in rows:
        entry = totals.setdefault(asset, {"count": 0, "total_amount": Decimal("0")})
        entry["count"] += 1
        entry["total_amount"] += amount
    return totals


class LedgerRepository:
    """Repository for all ledger-related database operations.

    Works inside the caller's session; committing is the caller's job.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Balance operations
    async def get_balance(self, user_id: str, asset: Asset) -> Optional[Balance]:
        """Get user balance for a specific asset."""
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id, Balance.asset == Asset.parse(asset).value)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance_amount(self, user_id: str, asset: Asset) -> Decimal:
        balance = await self.get_balance(user_id, asset)
        return balance.amount if balance else Decimal("0")

    async def get_all_balances(self, user_id: str) -> list[Balance]:
        """Get all balances for a user."""
        stmt = select(Balance).where(Balance.user_id == user_id).order_by(Balance.asset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _lock_balance(self, user_id: str, asset: Asset) -> Balance:
        """Fetch the balance row with a row lock, creating it if missing.

        SELECT ... FOR UPDATE serializes concurrent changes to the same
        (user, asset) pair on row-locking backends. SQLite has no row locks;
        there the whole transaction already holds the write lock (see
        ``use_immediate_transactions``).
        """
        asset = Asset.parse(asset)
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id, Balance.asset == asset.value)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = (await self.session.execute(stmt)).scalar_one_or_none()
        if balance is not None:
            return balance

        balance = Balance(user_id=user_id, asset=asset.value, amount=Decimal("0"))
        self.session.add(balance)
        await self.session.flush()
        return balance

    async def credit_balance(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        entry_type: LedgerEntryType = LedgerEntryType.CREDIT,
        description: Optional[str] = None,
        deposit_id: Optional[int] = None,
        withdrawal_id: Optional[int] = None,
    ) -> Balance:
        """Add amount to user balance and record a ledger entry."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        balance = await self._lock_balance(user_id, asset)
        balance.amount = balance.amount + amount
        await self.add_ledger_entry(
            user_id, asset, entry_type, amount, description, deposit_id, withdrawal_id
        )
        await self.session.flush()
        return balance

    async def debit_balance(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        entry_type: LedgerEntryType = LedgerEntryType.DEBIT,
        description: Optional[str] = None,
        withdrawal_id: Optional[int] = None,
    ) -> Balance:
        """Subtract amount from user balance. Raises InsufficientBalance if it would go negative."""
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")

        asset = Asset.parse(asset)
        balance = await self._lock_balance(user_id, asset)
        if balance.amount < amount:
            raise InsufficientBalance(
                f"Insufficient balance: have {balance.amount} {asset.value}, need {amount}"
            )
        balance.amount = balance.amount - amount
        await self.add_ledger_entry(
            user_id, asset, entry_type, -amount, description, None, withdrawal_id
        )
        await self.session.flush()
        return balance

    async def add_ledger_entry(
        self,
        user_id: str,
        asset: Asset,
        entry_type: LedgerEntryType,
        amount: Decimal,
        description: Optional[str] = None,
        deposit_id: Optional[int] = None,
        withdrawal_id: Optional[int] = None,
    ) -> LedgerTransaction:
        entry = LedgerTransaction(
            user_id=user_id,
            asset=Asset.parse(asset).value,
            entry_type=entry_type.value,
            amount=amount,
            description=description,
            deposit_id=deposit_id,
            withdrawal_id=withdrawal_id,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_ledger_entries(
        self,
        user_id: str,
        asset: Optional[Asset] = None,
        limit: int = 100,
    ) -> list[LedgerTransaction]:
        """Get a user's ledger entries, newest first."""
        stmt = select(LedgerTransaction).where(LedgerTransaction.user_id == user_id)
        if asset is not None:
            stmt = stmt.where(LedgerTransaction.asset == Asset.parse(asset).value)
        stmt = stmt.order_by(LedgerTransaction.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Pool key operations
    async def get_pool_address(self, asset: Asset) -> Optional[PoolAddress]:
        """Get the active pool address for an asset."""
        stmt = select(PoolAddress).where(
            PoolAddress.asset == Asset.parse(asset).value,
            PoolAddress.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pool_addresses(self) -> list[PoolAddress]:
        """Get all active pool addresses."""
        stmt = select(PoolAddress).where(PoolAddress.is_active.is_(True)).order_by(PoolAddress.asset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def save_pool_address(
        self,
        asset: Asset,
        address: str,
        derivation_path: str,
        verified: bool = False,
    ) -> PoolAddress:
        """Store a new active pool address, deactivating any previous one."""
        asset = Asset.parse(asset)
        await self.session.execute(
            update(PoolAddress)
            .where(PoolAddress.asset == asset.value, PoolAddress.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        pool = PoolAddress(
            asset=asset.value,
            address=address,
            derivation_path=derivation_path,
            is_active=True,
            is_verified=verified,
            verified_at=utcnow() if verified else None,
        )
        self.session.add(pool)
        await self.session.flush()
        return pool

    async def mark_pool_address_verified(self, asset: Asset) -> None:
        await self.session.execute(
            update(PoolAddress)
            .where(PoolAddress.asset == Asset.parse(asset).value, PoolAddress.is_active.is_(True))
            .values(is_verified=True, verified_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def get_encrypted_key(self, asset: Asset) -> Optional[EncryptedKey]:
        stmt = select(EncryptedKey).where(EncryptedKey.asset == Asset.parse(asset).value)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_encrypted_key(self, asset: Asset, iv: str, ciphertext: str) -> EncryptedKey:
        """Insert or replace the encrypted key material for an asset."""
        record = await self.get_encrypted_key(asset)
        if record is None:
            record = EncryptedKey(asset=Asset.parse(asset).value, iv=iv, ciphertext=ciphertext)
            self.session.add(record)
        else:
            record.iv = iv
            record.ciphertext = ciphertext
        await self.session.flush()
        return record

    # Scan cursors
    async def get_scan_cursor(self, chain: str) -> Optional[int]:
        cursor = await self.session.get(ScanCursor, chain)
        return cursor.block_height if cursor else None

    async def save_scan_cursor(self, chain: str, block_height: int) -> None:
        cursor = await self.session.get(ScanCursor, chain)
        if cursor is None:
            self.session.add(ScanCursor(chain=chain, block_height=block_height))
        else:
            cursor.block_height = block_height
        await self.session.flush()

    # Deposit operations
    async def deposit_exists(self, asset: Asset, tx_hash: str) -> bool:
        """Check whether a chain transaction has already been recorded."""
        stmt = select(Deposit.id).where(
            Deposit.asset == Asset.parse(asset).value,
            Deposit.tx_hash == tx_hash,
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def create_deposit(
        self,
        asset: Asset,
        amount: Decimal,
        pool_address: str,
        tx_hash: str,
        from_address: Optional[str] = None,
        block_height: Optional[int] = None,
    ) -> Deposit:
        """Record a pending deposit.

        Raises:
            IntegrityError: If (asset, tx_hash) was already recorded
        """
        deposit = Deposit(
            asset=Asset.parse(asset).value,
            amount=amount,
            pool_address=pool_address,
            tx_hash=tx_hash,
            from_address=from_address,
            block_height=block_height,
            status=DepositStatus.PENDING.value,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        return await self.session.get(Deposit, deposit_id, populate_existing=True)

    async def get_deposits(
        self,
        status: Optional[DepositStatus] = None,
        asset: Optional[Asset] = None,
        limit: int = 100,
    ) -> list[Deposit]:
        """Get deposits, newest first, optionally filtered."""
        stmt = select(Deposit)
        if status is not None:
            stmt = stmt.where(Deposit.status == status.value)
        if asset is not None:
            stmt = stmt.where(Deposit.asset == Asset.parse(asset).value)
        stmt = stmt.order_by(Deposit.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_deposit_claimed(
        self,
        deposit_id: int,
        user_id: str,
        claimed_by: Optional[str] = None,
    ) -> bool:
        """Move a deposit from pending to claimed.

        Returns:
            True if this call performed the transition
        """
        result = await self.session.execute(
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value)
            .values(
                status=DepositStatus.CLAIMED.value,
                user_id=user_id,
                claimed_by=claimed_by,
                claimed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_deposit_cancelled(
        self,
        deposit_id: int,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        result = await self.session.execute(
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value)
            .values(status=DepositStatus.CANCELLED.value, claimed_by=cancelled_by, notes=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # Deposit intent operations
    async def create_deposit_intent(
        self, user_id: str, asset: Asset, amount: Decimal, expires_at: datetime
    ) -> DepositIntent:
        intent = DepositIntent(
            user_id=user_id,
            asset=Asset.parse(asset).value,
            amount=amount,
            status=DepositIntentStatus.OPEN.value,
            expires_at=expires_at,
        )
        self.session.add(intent)
        await self.session.flush()
        return intent

    async def expire_intents(self, now: datetime) -> int:
        """Close open intents whose deadline has passed. Returns how many."""
        result = await self.session.execute(
            update(DepositIntent)
            .where(
                DepositIntent.status == DepositIntentStatus.OPEN.value,
                DepositIntent.expires_at <= now,
            )
            .values(status=DepositIntentStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def get_open_intents(
        self, asset: Asset, now: Optional[datetime] = None
    ) -> list[DepositIntent]:
        stmt = select(DepositIntent).where(
            DepositIntent.asset == Asset.parse(asset).value,
            DepositIntent.status == DepositIntentStatus.OPEN.value,
            DepositIntent.expires_at > (now or utcnow()),
        )
        stmt = stmt.order_by(DepositIntent.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_intent_matched(self, intent_id: int, deposit_id: int) -> bool:
        result = await self.session.execute(
            update(DepositIntent)
            .where(
                DepositIntent.id == intent_id,
                DepositIntent.status == DepositIntentStatus.OPEN.value,
            )
            .values(status=DepositIntentStatus.MATCHED.value, deposit_id=deposit_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # Withdrawal operations
    async def create_withdrawal(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        fee_amount: Decimal,
        net_amount: Decimal,
        destination_address: str,
    ) -> Withdrawal:
        """Create a pending withdrawal record."""
        withdrawal = Withdrawal(
            user_id=user_id,
            asset=Asset.parse(asset).value,
            amount=amount,
            fee_amount=fee_amount,
            net_amount=net_amount,
            destination_address=destination_address,
            status=WithdrawalStatus.PENDING.value,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        return await self.session.get(Withdrawal, withdrawal_id, populate_existing=True)

    async def transition_withdrawal(
        self,
        withdrawal_id: int,
        from_status: WithdrawalStatus,
        to_status: WithdrawalStatus,
        **values,
    ) -> bool:
        """Atomically move a withdrawal between states.

        The UPDATE only matches while the row is still in ``from_status``, so of
        several concurrent callers exactly one sees an affected row.

        Returns:
            True if this call performed the transition
        """
        result = await self.session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == from_status.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_withdrawals(
        self,
        status: Optional[WithdrawalStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Withdrawal]:
        """Get withdrawals, newest first, optionally filtered."""
        stmt = select(Withdrawal)
        if status is not None:
            stmt = stmt.where(Withdrawal.status == status.value)
        if user_id is not None:
            stmt = stmt.where(Withdrawal.user_id == user_id)
        stmt = stmt.order_by(Withdrawal.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_unreconciled_failures(self) -> list[Withdrawal]:
        """Failed withdrawals that carry a tx hash and have not been flagged."""
        stmt = select(Withdrawal).where(
            Withdrawal.status == WithdrawalStatus.FAILED.value,
            Withdrawal.tx_hash.is_not(None),
            Withdrawal.needs_reconciliation.is_(False),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_stalled_approvals(self, older_than) -> list[Withdrawal]:
        """Approved withdrawals claimed before ``older_than``."""
        stmt = (
            select(Withdrawal)
            .where(
                Withdrawal.status == WithdrawalStatus.APPROVED.value,
                Withdrawal.processed_at < older_than,
            )
            .order_by(Withdrawal.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_withdrawal_tx_hash(self, withdrawal_id: int, tx_hash: str) -> bool:
        """Store the signed transaction hash of an approved withdrawal before it is sent."""
        result = await self.session.execute(
            update(Withdrawal)
            .where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == WithdrawalStatus.APPROVED.value,
            )
            .values(tx_hash=tx_hash)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def flag_for_reconciliation(self, withdrawal_id: int, note: str) -> None:
        withdrawal = await self.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            return
        withdrawal.needs_reconciliation = True
        withdrawal.reason = f"{withdrawal.reason or ''}\n{note}".strip()
        await self.session.flush()

    # Stats
    async def get_stats(self) -> dict:
        """Pending deposits, pending withdrawals, and completed withdrawals in the last 24h."""

        async def grouped(model, *conditions) -> dict[str, dict]:
            # Summed in Python: SQLite stores amounts as text
            stmt = select(model.asset, model.amount).where(*conditions)
            return _sum_by_asset((await self.session.execute(stmt)).all())

        since = utcnow() - timedelta(hours=24)
        return {
            "pending_deposits": await grouped(
                Deposit, Deposit.status == DepositStatus.PENDING.value
            ),
            "pending_withdrawals": await grouped(
                Withdrawal, Withdrawal.status == WithdrawalStatus.PENDING.value
            ),
            "daily_withdrawals": await grouped(
                Withdrawal,
                Withdrawal.status == WithdrawalStatus.COMPLETED.value,
                Withdrawal.completed_at >= since,
            ),
        }

    async def get_liabilities(self) -> dict[str, Decimal]:
        """What the pool owes per asset: user balances plus withdrawals not yet settled."""
        unsettled = [WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value]
        balances = await self.session.execute(select(Balance.asset, Balance.amount))
        reserved = await self.session.execute(
            select(Withdrawal.asset, Withdrawal.amount).where(Withdrawal.status.in_(unsettled))
        )

        totals: dict[str, Decimal] = {}
        for asset, amount in [*balances.all(), *reserved.all()]:
            totals[asset] = totals.get(asset, Decimal("0")) + amount
        return totals
