"""Events and fire-and-forget delivery.

The core emits an ``Event`` after each committed state change. Delivery runs in
background tasks; a slow or failing notifier never delays or undoes the state
transition that produced the event.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("poolwallet.audit")


class EventType(str, Enum):
    DEPOSIT_DETECTED = "deposit_detected"
    DEPOSIT_CLAIMED = "deposit_claimed"
    DEPOSIT_CANCELLED = "deposit_cancelled"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    WITHDRAWAL_RECONCILIATION_REQUIRED = "withdrawal_reconciliation_required"


@dataclass
class Event:
    """Something that happened to a deposit or withdrawal."""

    type: EventType
    asset: str
    amount: Decimal
    record_id: Optional[int] = None
    user_id: Optional[str] = None
    tx_hash: Optional[str] = None
    actor: Optional[str] = None
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier(ABC):
    """Receives events. Implementations may be slow or fail; the dispatcher copes."""

    @abstractmethod
    async def notify(self, event: Event) -> None:
        pass

    async def close(self) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes every event to the ``poolwallet.audit`` logger."""

    async def notify(self, event: Event) -> None:
        audit_logger.info(
            f"{event.type.value} asset={event.asset} amount={event.amount} "
            f"id={event.record_id} user={event.user_id} tx={event.tx_hash} "
            f"actor={event.actor} detail={event.detail}"
        )


class EventDispatcher:
    """Fans events out to notifiers as background tasks."""

    def __init__(self, notifiers: Optional[list[Notifier]] = None):
        self.notifiers: list[Notifier] = list(notifiers or [])
        self._tasks: set[asyncio.Task] = set()

    def add(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def emit(self, event: Event) -> None:
        """Schedule delivery of ``event`` and return immediately."""
        for notifier in self.notifiers:
            task = asyncio.create_task(self._deliver(notifier, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notifier: Notifier, event: Event) -> None:
        try:
            await notifier.notify(event)
        except Exception as e:
            logger.error(f"{type(notifier).__name__} failed on {event.type.value}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for notifier in self.notifiers:
            await notifier.close()
