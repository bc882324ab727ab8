"""Status-transition notifications (fire-and-forget)."""

import logging
from dataclasses import dataclass
from typing import Protocol

from telegram import Bot

from trailstop.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    state_key: str
    symbol: str
    old_status: str
    new_status: str
    price: float | None = None

    def format(self) -> str:
        price = f" @ {self.price:g}" if self.price is not None else ""
        return f"[{self.state_key}] {self.symbol}: {self.old_status} -> {self.new_status}{price}"


class NotificationSink(Protocol):
    async def notify(self, event: TransitionEvent) -> None: ...


class LogNotifier:
    async def notify(self, event: TransitionEvent) -> None:
        logger.info(f"Transition {event.format()}")


class TelegramNotifier:
    """Sends each transition to the whitelisted chat IDs through the Bot API.

    Works in any process (API or Celery worker); does not need the command bot
    to be running.
    """

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = list(chat_ids)

    async def notify(self, event: TransitionEvent) -> None:
        text = event.format()
        logger.info(f"Transition {text}")
        async with Bot(self.token) as bot:
            for chat_id in self.chat_ids:
                try:
                    await bot.send_message(chat_id=chat_id, text=text)
                except Exception as e:
                    logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")


def build_notifier() -> NotificationSink:
    if settings.telegram_bot_token and settings.telegram_chat_ids:
        return TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_ids)
    return LogNotifier()
