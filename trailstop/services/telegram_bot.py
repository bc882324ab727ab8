"""Telegram bot for trailing stop status and remote cancellation."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)

from trailstop.config import settings
from trailstop.engine.errors import TrailingStopError
from trailstop.models.trailing_stop import PositionSide, PositionStatus

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None

CANCEL_PREFIX = "cancel:"


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int], store=None):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._store = store
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def store(self):
        if self._store is None:
            from trailstop.services.store import PositionStore
            self._store = PositionStore()
        return self._store

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from trailstop.engine.bootstrap import get_scheduler

        try:
            status = get_scheduler().status()
            counts = self.store.count_by_status()
        except TrailingStopError as e:
            await update.message.reply_text(f"Status unavailable: {e}")
            return

        scheduler_str = "running" if status["running"] else "stopped"
        count_lines = "\n".join(f"  {name}: {n}" for name, n in sorted(counts.items())) or "  none"
        text = (
            f"Scheduler: {status['mode']} ({scheduler_str})\n"
            f"Monitored: {status['job_count']}\n"
            f"Positions:\n{count_lines}"
        )
        await update.message.reply_text(text)

    async def _cmd_positions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from trailstop.services.positions import list_active_positions

        try:
            positions = list_active_positions(self.store)
        except TrailingStopError as e:
            await update.message.reply_text(f"Positions unavailable: {e}")
            return

        if not positions:
            await update.message.reply_text("No active positions.")
            return

        lines = []
        for pos in positions:
            status = PositionStatus(pos.status).value
            lines.append(
                f"{pos.state_key}: {pos.symbol} {PositionSide(pos.side).value} {status} | "
                f"extreme {pos.highest_price:g} | trigger {pos.trigger_price:g}"
            )
        await update.message.reply_text("\n".join(lines))

    async def _cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        if not context.args:
            await update.message.reply_text("Usage: /cancel <state_key>")
            return

        state_key = context.args[0]
        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, cancel it", callback_data=f"{CANCEL_PREFIX}{state_key}"),
                InlineKeyboardButton("Keep", callback_data="keep"),
            ]
        ])
        await update.message.reply_text(
            f"Cancel trailing stop {state_key}?",
            reply_markup=keyboard,
        )

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "keep":
            await query.edit_message_text("Nothing changed.")
            return

        if query.data and query.data.startswith(CANCEL_PREFIX):
            from trailstop.services.positions import cancel_position

            state_key = query.data[len(CANCEL_PREFIX):]
            try:
                await cancel_position(state_key, self.store)
            except TrailingStopError as e:
                await query.edit_message_text(f"Could not cancel {state_key}: {e}")
                return
            await query.edit_message_text(f"Cancelled {state_key}.")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("positions", self._cmd_positions))
        self._app.add_handler(CommandHandler("cancel", self._cmd_cancel))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    """Initialize and return the bot singleton."""
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
    )
    return _bot_instance
