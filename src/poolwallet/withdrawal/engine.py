"""Withdrawal engine: request, approve, reject and settle withdrawals.

State machine::

    pending -> approved -> completed
    pending -> rejected            (refund)
    approved -> failed             (refund)

An approval interrupted between ``approved`` and its outcome is settled later
by ``recover_stalled_withdrawals`` from the transaction hash stored at signing
time.

Every transition is a conditional UPDATE on the current status, so of several
concurrent callers exactly one moves a request. The full amount is reserved
(debited) when the request is created and credited back on rejection or
failure; a request therefore either pays out once or leaves the balance as
it was.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from poolwallet.assets import Asset, parse_amount
from poolwallet.errors import (
    AlreadyProcessed,
    AmountTooSmall,
    BroadcastFailure,
    ChainAPIUnavailable,
    InsufficientBalance,
    MalformedDestinationAddress,
    UnsupportedAsset,
    WithdrawalNotFound,
)
from poolwallet.ledger.database import Database
from poolwallet.ledger.models import LedgerEntryType, Withdrawal, WithdrawalStatus, utcnow
from poolwallet.ledger.repository import LedgerRepository
from poolwallet.notifications.base import Event, EventDispatcher, EventType
from poolwallet.services.pool_balances import ReconciliationReporter
from poolwallet.utils.locks import LockTimeoutError
from poolwallet.withdrawal.base import ChainBroadcaster, SignedTransaction, TxStatus

logger = logging.getLogger(__name__)

DEFAULT_BROADCAST_TIMEOUT = 60.0

# An approved request untouched for this long was abandoned mid-flight
DEFAULT_STALL_AFTER = 300.0


class WithdrawalEngine:
    """Moves withdrawal requests through their lifecycle."""

    def __init__(
        self,
        db: Database,
        vault,
        reporter: ReconciliationReporter,
        broadcasters: dict[Asset, ChainBroadcaster],
        fee_rates: dict[Asset, Decimal],
        broadcast_timeout: float = DEFAULT_BROADCAST_TIMEOUT,
        events: Optional[EventDispatcher] = None,
        stall_after: float = DEFAULT_STALL_AFTER,
    ):
        self.db = db
        self.vault = vault
        self.reporter = reporter
        self.broadcasters = broadcasters
        self.fee_rates = fee_rates
        self.broadcast_timeout = broadcast_timeout
        # A queued approver waits out at least one full broadcast of the
        # approval ahead of it
        self.signing_lock_timeout = 2 * broadcast_timeout + 30.0
        self.stall_after = stall_after
        self.events = events or EventDispatcher()

    def _broadcaster(self, asset: Asset) -> ChainBroadcaster:
        broadcaster = self.broadcasters.get(asset)
        if broadcaster is None:
            raise UnsupportedAsset(f"No withdrawal support for {asset.value}")
        return broadcaster

    def compute_fee(self, asset: Asset, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Platform fee and net payout for ``amount``, rounded down to the asset's precision."""
        rate = self.fee_rates.get(asset, Decimal("0"))
        fee = (amount * rate).quantize(asset.quantum, rounding=ROUND_DOWN)
        return fee, amount - fee

    def _emit(self, event_type: EventType, withdrawal: Withdrawal, actor=None, detail=None) -> None:
        self.events.emit(
            Event(
                event_type,
                withdrawal.asset,
                withdrawal.amount,
                withdrawal.id,
                user_id=withdrawal.user_id,
                tx_hash=withdrawal.tx_hash,
                actor=actor,
                detail=detail,
            )
        )

    async def create_withdrawal_request(
        self,
        user_id: str,
        asset: Asset,
        amount: Decimal,
        destination: str,
    ) -> Withdrawal:
        """Validate a withdrawal, reserve the amount and queue it for approval.

        Raises:
            UnsupportedAsset: Unknown asset
            InvalidAmount: Non-positive amount or too many decimals
            MalformedDestinationAddress: Invalid destination for the asset
            InsufficientBalance: Balance below ``amount``
            AmountTooSmall: Nothing left after the fee
        """
        asset = Asset.parse(asset)
        broadcaster = self._broadcaster(asset)
        amount = parse_amount(asset, amount)
        destination = broadcaster.normalize_address(destination)

        fee, net = self.compute_fee(asset, amount)

        async with self.db.session() as session:
            repo = LedgerRepository(session)
            available = await repo.get_balance_amount(user_id, asset)
            if available < amount:
                raise InsufficientBalance(
                    f"Insufficient balance: have {available} {asset.value}, need {amount}"
                )
            if net <= 0:
                raise AmountTooSmall(f"{amount} {asset.value} does not cover the {fee} fee")

            withdrawal = await repo.create_withdrawal(user_id, asset, amount, fee, net, destination)
            await repo.debit_balance(
                user_id,
                asset,
                amount,
                LedgerEntryType.WITHDRAWAL_RESERVE,
                f"Withdrawal {withdrawal.id} to {destination}",
                withdrawal_id=withdrawal.id,
            )

        logger.info(
            f"Withdrawal {withdrawal.id} requested by {user_id}: {amount} {asset.value} "
            f"(fee {fee}) to {destination}"
        )
        self._emit(EventType.WITHDRAWAL_REQUESTED, withdrawal, actor=user_id)
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_withdrawal(withdrawal_id)

    async def _require_pending(self, withdrawal_id: int) -> Withdrawal:
        withdrawal = await self.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        if withdrawal.status != WithdrawalStatus.PENDING.value:
            raise AlreadyProcessed(f"Withdrawal {withdrawal_id} is already {withdrawal.status}")
        return withdrawal

    async def approve_withdrawal(self, withdrawal_id: int, operator: str) -> Withdrawal:
        """Approve a pending withdrawal, then sign and broadcast it.

        A failed or timed-out broadcast does not raise: the request is marked
        failed, the user is refunded, and the failed request is returned.

        Raises:
            WithdrawalNotFound: No such request
            AlreadyProcessed: Request is not pending (or another approver won)
            InsufficientPoolLiquidity: Pool balance is short or unknown
            NotInitialized, KeyNotFound, KeyIntegrityMismatch: Vault faults;
                the request stays pending
            LockTimeoutError: The signing key stayed busy and the request
                is still pending
        """
        withdrawal = await self._require_pending(withdrawal_id)
        asset = Asset(withdrawal.asset)
        broadcaster = self._broadcaster(asset)

        await self.reporter.require_liquidity(asset, withdrawal.net_amount)
        pool_address = self.vault.get_pool_address(asset)

        # The key is checked before the request is claimed, and the per-asset
        # lock is held until the broadcast returns.
        try:
            async with self.vault.signing_key(
                asset, operation=f"withdrawal {withdrawal_id}", timeout=self.signing_lock_timeout
            ) as key:
                return await self._sign_and_send(
                    withdrawal, operator, broadcaster, key, pool_address
                )
        except LockTimeoutError:
            # Usually another approver took this request while we waited
            await self._require_pending(withdrawal_id)
            raise

    async def _sign_and_send(
        self,
        withdrawal: Withdrawal,
        operator: str,
        broadcaster: ChainBroadcaster,
        key: str,
        pool_address: str,
    ) -> Withdrawal:
        withdrawal_id = withdrawal.id
        async with self.db.session() as session:
            claimed = await LedgerRepository(session).transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.PENDING,
                WithdrawalStatus.APPROVED,
                approved_by=operator,
                processed_at=utcnow(),
            )
        if not claimed:
            raise AlreadyProcessed(f"Withdrawal {withdrawal_id} was processed concurrently")

        logger.info(f"Withdrawal {withdrawal_id} approved by {operator}")
        self._emit(EventType.WITHDRAWAL_APPROVED, withdrawal, actor=operator)

        signed: Optional[SignedTransaction] = None
        try:
            signed = await broadcaster.build_and_sign(
                key, pool_address, withdrawal.destination_address, withdrawal.net_amount
            )
            async with self.db.session() as session:
                await LedgerRepository(session).record_withdrawal_tx_hash(
                    withdrawal_id, signed.tx_hash
                )
            tx_hash = await asyncio.wait_for(
                broadcaster.broadcast(signed), timeout=self.broadcast_timeout
            )
        except asyncio.TimeoutError:
            return await self._fail(
                withdrawal_id,
                f"Broadcast timed out after {self.broadcast_timeout}s",
                signed.tx_hash if signed else None,
            )
        except (BroadcastFailure, MalformedDestinationAddress, ChainAPIUnavailable) as e:
            known_hash = getattr(e, "tx_hash", None) or (signed.tx_hash if signed else None)
            return await self._fail(withdrawal_id, str(e), known_hash)
        except asyncio.CancelledError:
            logger.warning(
                f"Withdrawal {withdrawal_id} interrupted while approved; "
                f"left for recover_stalled_withdrawals"
            )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error sending withdrawal {withdrawal_id}")
            return await self._fail(
                withdrawal_id, f"Unexpected error: {e}", signed.tx_hash if signed else None
            )

        return await self._complete(withdrawal_id, tx_hash)

    async def _complete(self, withdrawal_id: int, tx_hash: str) -> Withdrawal:
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            done = await repo.transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.APPROVED,
                WithdrawalStatus.COMPLETED,
                tx_hash=tx_hash,
                completed_at=utcnow(),
            )
            withdrawal = await repo.get_withdrawal(withdrawal_id)

        if not done:
            logger.critical(
                f"Withdrawal {withdrawal_id} broadcast as {tx_hash} but is {withdrawal.status}"
            )
            return withdrawal

        logger.info(f"Withdrawal {withdrawal_id} completed: {tx_hash}")
        self._emit(EventType.WITHDRAWAL_COMPLETED, withdrawal)
        return withdrawal

    async def _fail(self, withdrawal_id: int, reason: str, tx_hash: Optional[str]) -> Withdrawal:
        """Mark an approved request failed and refund it in one transaction."""
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            failed = await repo.transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.APPROVED,
                WithdrawalStatus.FAILED,
                reason=reason,
                tx_hash=tx_hash,
                processed_at=utcnow(),
            )
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if failed:
                await repo.credit_balance(
                    withdrawal.user_id,
                    Asset(withdrawal.asset),
                    withdrawal.amount,
                    LedgerEntryType.WITHDRAWAL_REFUND,
                    f"Refund of failed withdrawal {withdrawal_id}",
                    withdrawal_id=withdrawal_id,
                )

        if not failed:
            logger.critical(f"Withdrawal {withdrawal_id} failed ({reason}) but is {withdrawal.status}")
            return withdrawal

        logger.error(f"Withdrawal {withdrawal_id} failed and was refunded: {reason}")
        self._emit(EventType.WITHDRAWAL_FAILED, withdrawal, detail=reason)
        return withdrawal

    async def reject_withdrawal(
        self, withdrawal_id: int, operator: str, reason: Optional[str] = None
    ) -> Withdrawal:
        """Reject a pending withdrawal and refund the reserved amount.

        Raises:
            WithdrawalNotFound: No such request
            AlreadyProcessed: Request is not pending
        """
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            rejected = await repo.transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.PENDING,
                WithdrawalStatus.REJECTED,
                approved_by=operator,
                reason=reason,
                processed_at=utcnow(),
            )
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
            if not rejected:
                raise AlreadyProcessed(f"Withdrawal {withdrawal_id} is already {withdrawal.status}")

            await repo.credit_balance(
                withdrawal.user_id,
                Asset(withdrawal.asset),
                withdrawal.amount,
                LedgerEntryType.WITHDRAWAL_REFUND,
                f"Refund of rejected withdrawal {withdrawal_id}",
                withdrawal_id=withdrawal_id,
            )

        logger.info(f"Withdrawal {withdrawal_id} rejected by {operator}: {reason}")
        self._emit(EventType.WITHDRAWAL_REJECTED, withdrawal, actor=operator, detail=reason)
        return withdrawal

    async def check_late_confirmations(self) -> list[Withdrawal]:
        """Flag refunded withdrawals whose transaction confirmed after all.

        The user was refunded but the pool paid out, so the ledger now
        over-states liabilities by the request amount. Nothing is re-debited;
        the request is flagged for an operator.

        Returns:
            Requests flagged in this pass
        """
        async with self.db.session() as session:
            candidates = await LedgerRepository(session).get_unreconciled_failures()

        flagged = []
        for withdrawal in candidates:
            broadcaster = self.broadcasters.get(Asset(withdrawal.asset))
            if broadcaster is None:
                continue
            try:
                status = await broadcaster.get_transaction_status(withdrawal.tx_hash)
            except ChainAPIUnavailable as e:
                logger.warning(f"Could not check tx {withdrawal.tx_hash}: {e}")
                continue

            if status != TxStatus.CONFIRMED:
                continue

            note = f"Transaction {withdrawal.tx_hash} confirmed after refund"
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                await repo.flag_for_reconciliation(withdrawal.id, note)
                withdrawal = await repo.get_withdrawal(withdrawal.id)

            logger.error(
                f"Withdrawal {withdrawal.id} needs reconciliation: {note}; user "
                f"{withdrawal.user_id} was refunded {withdrawal.amount} {withdrawal.asset}"
            )
            self._emit(EventType.WITHDRAWAL_RECONCILIATION_REQUIRED, withdrawal, detail=note)
            flagged.append(withdrawal)

        return flagged

    async def recover_stalled_withdrawals(self) -> list[Withdrawal]:
        """Settle requests an interrupted approval left in ``approved``.

        A request still approved ``stall_after`` seconds after it was claimed
        is no longer being worked on. Its stored transaction hash decides:

        - no hash: it was never signed, so it is failed and refunded
        - confirmed: completed
        - reverted: failed and refunded
        - anything else: left approved, reserved, and flagged for an operator

        Returns:
            Requests completed, failed or newly flagged in this pass
        """
        cutoff = utcnow() - timedelta(seconds=self.stall_after)
        async with self.db.session() as session:
            stalled = await LedgerRepository(session).get_stalled_approvals(cutoff)

        settled = []
        for withdrawal in stalled:
            asset = Asset(withdrawal.asset)
            if self.vault.locks.locked(asset.signing_asset.value):
                # An approval for this key is still running in this process
                continue

            if withdrawal.tx_hash is None:
                settled.append(
                    await self._fail(withdrawal.id, "Approval interrupted before signing", None)
                )
                continue

            broadcaster = self.broadcasters.get(asset)
            if broadcaster is None:
                continue
            try:
                status = await broadcaster.get_transaction_status(withdrawal.tx_hash)
            except ChainAPIUnavailable as e:
                logger.warning(f"Could not check tx {withdrawal.tx_hash}: {e}")
                continue

            if status == TxStatus.CONFIRMED:
                settled.append(await self._complete(withdrawal.id, withdrawal.tx_hash))
            elif status == TxStatus.FAILED:
                settled.append(
                    await self._fail(
                        withdrawal.id,
                        "Transaction reverted after interrupted approval",
                        withdrawal.tx_hash,
                    )
                )
            elif not withdrawal.needs_reconciliation:
                note = f"Approval interrupted; transaction {withdrawal.tx_hash} is {status.value}"
                async with self.db.session() as session:
                    repo = LedgerRepository(session)
                    await repo.flag_for_reconciliation(withdrawal.id, note)
                    withdrawal = await repo.get_withdrawal(withdrawal.id)
                logger.error(f"Withdrawal {withdrawal.id} needs reconciliation: {note}")
                self._emit(EventType.WITHDRAWAL_RECONCILIATION_REQUIRED, withdrawal, detail=note)
                settled.append(withdrawal)

        return settled

    async def list_withdrawals(
        self, status: Optional[WithdrawalStatus] = None, limit: int = 100
    ) -> list[Withdrawal]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_withdrawals(status=status, limit=limit)

    async def list_pending(self) -> list[Withdrawal]:
        return await self.list_withdrawals(WithdrawalStatus.PENDING)

    async def list_user_withdrawals(self, user_id: str, limit: int = 50) -> list[Withdrawal]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_withdrawals(user_id=user_id, limit=limit)
