"""Telegram notifications to platform operators.

Admins get a message for every deposit and withdrawal event, so pending
deposits can be claimed and pending withdrawals reviewed.
"""

import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from poolwallet.config import Settings
from poolwallet.notifications.base import Event, EventType, Notifier

logger = logging.getLogger(__name__)

TITLES = {
    EventType.DEPOSIT_DETECTED: "New Pool Deposit",
    EventType.DEPOSIT_CLAIMED: "Deposit Claimed",
    EventType.DEPOSIT_CANCELLED: "Deposit Cancelled",
    EventType.WITHDRAWAL_REQUESTED: "Withdrawal Requested",
    EventType.WITHDRAWAL_APPROVED: "Withdrawal Approved",
    EventType.WITHDRAWAL_REJECTED: "Withdrawal Rejected",
    EventType.WITHDRAWAL_COMPLETED: "Withdrawal Complete",
    EventType.WITHDRAWAL_FAILED: "Withdrawal Failed",
    EventType.WITHDRAWAL_RECONCILIATION_REQUIRED: "RECONCILIATION REQUIRED",
}


def format_amount(amount) -> str:
    return f"{amount:,.8f}".rstrip("0").rstrip(".")


def short_hash(tx_hash: str) -> str:
    return f"{tx_hash[:8]}...{tx_hash[-8:]}" if len(tx_hash) > 20 else tx_hash


class TelegramNotifier(Notifier):
    """Sends event summaries to admin Telegram chats."""

    def __init__(self, bot: Optional[Bot], chat_ids: list[int]):
        """Initialize with a bot and the chats to notify.

        Args:
            bot: aiogram Bot, or None to disable sending
            chat_ids: Telegram chat IDs of operators
        """
        self._bot = bot
        self.chat_ids = chat_ids

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["TelegramNotifier"]:
        if not settings.telegram_bot_token:
            logger.warning("Telegram bot token not configured - admin notifications disabled")
            return None
        return cls(Bot(token=settings.telegram_bot_token), settings.admin_chat_id_list)

    async def send_message(
        self,
        chat_id: int,
        message: str,
        parse_mode: Optional[str] = "HTML",
    ) -> bool:
        """Send a message to one chat.

        Returns:
            True if message was sent successfully
        """
        if not self._bot:
            logger.warning("Cannot send notification - bot not initialized")
            return False

        try:
            await self._bot.send_message(chat_id=chat_id, text=message, parse_mode=parse_mode)
            return True
        except TelegramForbiddenError:
            logger.warning(f"Chat {chat_id} has blocked the bot")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {chat_id}: {e}")
            return False

    def format_event(self, event: Event) -> str:
        message = (
            f"<b>{TITLES[event.type]}</b>\n\n"
            f"Amount: <code>{format_amount(event.amount)} {event.asset}</code>\n"
        )
        if event.record_id is not None:
            kind = "Deposit" if event.type.value.startswith("deposit") else "Withdrawal"
            message += f"{kind} ID: <code>{event.record_id}</code>\n"
        if event.user_id:
            message += f"User: <code>{event.user_id}</code>\n"
        if event.tx_hash:
            message += f"TX: <code>{short_hash(event.tx_hash)}</code>\n"
        if event.actor:
            message += f"By: {event.actor}\n"
        if event.detail:
            message += f"\n{event.detail}"
        return message

    async def notify(self, event: Event) -> None:
        message = self.format_event(event)
        for chat_id in self.chat_ids:
            await self.send_message(chat_id, message)

    async def close(self) -> None:
        """Close the bot session (call on shutdown)."""
        if self._bot is not None:
            await self._bot.session.close()
            self._bot = None
