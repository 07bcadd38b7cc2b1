"""Settlement ledger: the only path through which balances change.

Each public method is one unit of work (one database transaction). Events are
emitted only after the transaction commits.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from poolwallet.assets import Asset, parse_amount
from poolwallet.errors import AlreadyClaimed, DepositNotFound, InvalidStateTransition
from poolwallet.ledger.database import Database
from poolwallet.ledger.models import (
    Deposit,
    DepositIntent,
    DepositStatus,
    LedgerEntryType,
    LedgerTransaction,
    utcnow,
)
from poolwallet.ledger.repository import LedgerRepository
from poolwallet.notifications.base import Event, EventDispatcher, EventType

logger = logging.getLogger(__name__)

AUTO_MATCH_OPERATOR = "auto-match"

DEFAULT_INTENT_TTL = timedelta(hours=24)


class SettlementLedger:
    """Balances, deposit records and their claims."""

    def __init__(
        self,
        db: Database,
        events: Optional[EventDispatcher] = None,
        intent_ttl: timedelta = DEFAULT_INTENT_TTL,
    ):
        self.db = db
        self.events = events or EventDispatcher()
        self.intent_ttl = intent_ttl

    # Balances
    async def get_balance(self, user_id: str, asset: Asset) -> Decimal:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_balance_amount(user_id, Asset.parse(asset))

    async def get_balances(self, user_id: str) -> dict[Asset, Decimal]:
        async with self.db.session() as session:
            balances = await LedgerRepository(session).get_all_balances(user_id)
        return {Asset(b.asset): b.amount for b in balances}

    async def credit(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        description: Optional[str] = None,
    ) -> Decimal:
        """Credit a balance. Returns the new balance."""
        asset = Asset.parse(asset)
        async with self.db.session() as session:
            balance = await LedgerRepository(session).credit_balance(
                user_id, asset, amount, LedgerEntryType.CREDIT, description
            )
            return balance.amount

    async def debit(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        description: Optional[str] = None,
    ) -> Decimal:
        """Debit a balance. Returns the new balance.

        Raises:
            InsufficientBalance: If the balance would go negative
        """
        asset = Asset.parse(asset)
        async with self.db.session() as session:
            balance = await LedgerRepository(session).debit_balance(
                user_id, asset, amount, LedgerEntryType.DEBIT, description
            )
            return balance.amount

    async def get_transactions(
        self, user_id: str, asset: Optional[Asset] = None, limit: int = 100
    ) -> list[LedgerTransaction]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_ledger_entries(user_id, asset, limit)

    # Deposits
    async def deposit_exists(self, asset: Asset, tx_hash: str) -> bool:
        async with self.db.session() as session:
            return await LedgerRepository(session).deposit_exists(asset, tx_hash)

    async def record_deposit(
        self,
        asset: Asset,
        amount: Decimal,
        pool_address: str,
        tx_hash: str,
        from_address: Optional[str] = None,
        block_height: Optional[int] = None,
        auto_match: bool = True,
    ) -> Optional[Deposit]:
        """Record an observed inbound transfer as a pending deposit.

        If ``auto_match`` is set and exactly one unexpired open deposit intent
        has the same asset and amount, the deposit is claimed for that user in
        the same transaction.

        Returns:
            The new Deposit, or None if the transaction was already recorded
        """
        asset = Asset.parse(asset)
        matched_user: Optional[str] = None

        try:
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                if await repo.deposit_exists(asset, tx_hash):
                    return None

                deposit = await repo.create_deposit(
                    asset, amount, pool_address, tx_hash, from_address, block_height
                )

                if auto_match:
                    intent = await self._find_unique_intent(repo, asset, amount)
                    if intent and await repo.mark_intent_matched(intent.id, deposit.id):
                        deposit = await self._claim(repo, deposit.id, intent.user_id, AUTO_MATCH_OPERATOR)
                        matched_user = intent.user_id
        except IntegrityError:
            logger.info(f"{asset.value} deposit {tx_hash} already recorded")
            return None

        logger.info(f"Recorded {amount} {asset.value} deposit {tx_hash} (id={deposit.id})")
        self.events.emit(
            Event(EventType.DEPOSIT_DETECTED, asset.value, amount, deposit.id, tx_hash=tx_hash)
        )
        if matched_user:
            logger.info(f"Deposit {deposit.id} auto-claimed for user {matched_user}")
            self._emit_claimed(deposit, AUTO_MATCH_OPERATOR)
        return deposit

    async def _find_unique_intent(
        self, repo: LedgerRepository, asset: Asset, amount: Decimal
    ) -> Optional[DepositIntent]:
        now = utcnow()
        expired = await repo.expire_intents(now)
        if expired:
            logger.info(f"Expired {expired} deposit intents")
        matches = [i for i in await repo.get_open_intents(asset, now) if i.amount == amount]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.info(
                f"{len(matches)} open intents match {amount} {asset.value}; leaving for operator"
            )
        return None

    async def _claim(
        self,
        repo: LedgerRepository,
        deposit_id: int,
        user_id: str,
        operator: Optional[str],
    ) -> Deposit:
        if not await repo.mark_deposit_claimed(deposit_id, user_id, operator):
            deposit = await repo.get_deposit(deposit_id)
            if deposit is None:
                raise DepositNotFound(f"Deposit {deposit_id} not found")
            raise AlreadyClaimed(f"Deposit {deposit_id} is already {deposit.status}")

        deposit = await repo.get_deposit(deposit_id)
        await repo.credit_balance(
            user_id,
            Asset(deposit.asset),
            deposit.amount,
            LedgerEntryType.DEPOSIT,
            f"Deposit {deposit.tx_hash}",
            deposit_id=deposit.id,
        )
        return deposit

    async def claim_deposit(
        self,
        deposit_id: int,
        user_id: str,
        operator: Optional[str] = None,
    ) -> Deposit:
        """Attribute a pending deposit to a user and credit their balance.

        Raises:
            DepositNotFound: If no such deposit exists
            AlreadyClaimed: If the deposit is not pending
        """
        async with self.db.session() as session:
            deposit = await self._claim(LedgerRepository(session), deposit_id, user_id, operator)

        logger.info(
            f"Deposit {deposit_id} claimed for user {user_id}: {deposit.amount} {deposit.asset}"
        )
        self._emit_claimed(deposit, operator)
        return deposit

    def _emit_claimed(self, deposit: Deposit, operator: Optional[str]) -> None:
        self.events.emit(
            Event(
                EventType.DEPOSIT_CLAIMED,
                str(deposit.asset),
                deposit.amount,
                deposit.id,
                user_id=deposit.user_id,
                tx_hash=deposit.tx_hash,
                actor=operator,
            )
        )

    async def cancel_deposit(
        self,
        deposit_id: int,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Deposit:
        """Void a pending deposit.

        Raises:
            DepositNotFound: If no such deposit exists
            InvalidStateTransition: If the deposit is not pending
        """
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            if not await repo.mark_deposit_cancelled(deposit_id, operator, reason):
                deposit = await repo.get_deposit(deposit_id)
                if deposit is None:
                    raise DepositNotFound(f"Deposit {deposit_id} not found")
                raise InvalidStateTransition(
                    f"Deposit {deposit_id} is {deposit.status}, only pending deposits can be cancelled"
                )
            deposit = await repo.get_deposit(deposit_id)

        logger.info(f"Deposit {deposit_id} cancelled by {operator}: {reason}")
        self.events.emit(
            Event(
                EventType.DEPOSIT_CANCELLED,
                str(deposit.asset),
                deposit.amount,
                deposit.id,
                tx_hash=deposit.tx_hash,
                actor=operator,
                detail=reason,
            )
        )
        return deposit

    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_deposit(deposit_id)

    async def list_deposits(
        self,
        status: Optional[DepositStatus] = None,
        asset: Optional[Asset] = None,
        limit: int = 100,
    ) -> list[Deposit]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_deposits(status, asset, limit)

    async def list_pending_deposits(self, asset: Optional[Asset] = None) -> list[Deposit]:
        return await self.list_deposits(DepositStatus.PENDING, asset)

    async def register_deposit_intent(
        self, user_id: str, asset: Asset, amount: Decimal
    ) -> DepositIntent:
        """Record that a user expects to deposit ``amount`` of ``asset``.

        The intent can auto-claim a matching deposit until it expires.

        Raises:
            InvalidAmount: Not a positive finite amount within the asset's precision
        """
        asset = Asset.parse(asset)
        amount = parse_amount(asset, amount)
        expires_at = utcnow() + self.intent_ttl
        async with self.db.session() as session:
            intent = await LedgerRepository(session).create_deposit_intent(
                user_id, asset, amount, expires_at
            )
        logger.info(f"User {user_id} expects a {amount} {asset.value} deposit (intent {intent.id})")
        return intent

    async def get_scan_cursor(self, chain: str) -> Optional[int]:
        """Last block whose deposits are all recorded, or None before the first scan."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_scan_cursor(chain)

    async def save_scan_cursor(self, chain: str, block_height: int) -> None:
        async with self.db.session() as session:
            await LedgerRepository(session).save_scan_cursor(chain, block_height)

    async def get_stats(self) -> dict:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_stats()

    async def get_liabilities(self) -> dict[Asset, Decimal]:
        """User balances plus unsettled withdrawals, per asset."""
        async with self.db.session() as session:
            totals = await LedgerRepository(session).get_liabilities()
        return {Asset(asset): amount for asset, amount in totals.items()}
