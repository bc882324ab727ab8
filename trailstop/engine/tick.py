"""Per-position monitoring tick.

Both schedulers run exactly this: read the stored state, stop if terminal,
fetch the price, evaluate, write back with compare-and-set, notify on status
change. Blocking store and price calls run on worker threads under timeouts so
one slow position cannot hold up the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from trailstop.config import settings
from trailstop.engine.errors import (
    PriceUnavailable,
    StaleStateError,
    StoreUnavailable,
    TrailingStopError,
)
from trailstop.engine.position_engine import Action, evaluate, validate
from trailstop.models.trailing_stop import PositionStatus, TrailingStop
from trailstop.services.notifier import NotificationSink, TransitionEvent

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    state_key: str
    status: PositionStatus | None
    action: str
    price: float | None = None
    done: bool = False  # True -> the scheduler should drop this key


class TickRunner:
    """Runs ticks against one store / price source / notifier triple."""

    def __init__(
        self,
        store,
        price_source,
        notifier: NotificationSink,
        scheduler_name: str,
        store_timeout: float | None = None,
        price_timeout: float | None = None,
        notify_timeout: float | None = None,
    ):
        self.store = store
        self.price_source = price_source
        self.notifier = notifier
        self.scheduler_name = scheduler_name
        self.store_timeout = store_timeout or settings.store_timeout_seconds
        self.price_timeout = price_timeout or settings.price_timeout_seconds
        self.notify_timeout = notify_timeout or settings.notify_timeout_seconds

    async def run(self, state_key: str, now: datetime | None = None) -> TickResult:
        """Run one tick. Raises TransientError / PositionFatalError for the scheduler to handle."""
        position = await self._store_call(self.store.get, state_key)
        if position is None:
            logger.warning(f"[{state_key}] No stored position, stopping monitor")
            return TickResult(state_key, None, "missing", done=True)

        if position.is_terminal:
            logger.info(f"[{state_key}] Already {PositionStatus(position.status).value}, stopping monitor")
            return TickResult(state_key, position.status, Action.NO_OP.value, done=True)

        validate(position)
        price = await self._price_call(position.symbol)
        evaluation = evaluate(position, price, now)

        if not evaluation.changed:
            return TickResult(state_key, position.status, Action.NO_OP.value, price)

        try:
            saved = await self._store_call(
                self.store.upsert, evaluation.state, position.version
            )
        except StaleStateError as e:
            # Cancelled (or written by an overlapping tick) after our read
            logger.info(f"[{state_key}] Discarding {evaluation.action.value} at {price}: {e}")
            await self._audit(state_key, position.status, "stale", price, str(e))
            return TickResult(state_key, position.status, "stale", price)

        self._log_action(saved, evaluation.action, price)
        await self._audit(
            state_key,
            saved.status,
            evaluation.action.value,
            price,
            f"highest={saved.highest_price:g} trigger={saved.trigger_price:g}",
        )
        if saved.status != position.status:
            await self._notify(
                TransitionEvent(
                    state_key=state_key,
                    symbol=saved.symbol,
                    old_status=PositionStatus(position.status).value,
                    new_status=PositionStatus(saved.status).value,
                    price=price,
                )
            )
        return TickResult(state_key, saved.status, evaluation.action.value, price, done=saved.is_terminal)

    async def fail(self, state_key: str, message: str) -> bool:
        """Move a position to error. Returns False if it was already terminal or missing."""
        before = await self._store_call(self.store.get, state_key)
        if before is None or before.is_terminal:
            return False
        moved = await self._store_call(self.store.mark_error, state_key, message)
        if not moved:
            return False

        logger.error(f"[{state_key}] Position moved to error: {message}")
        await self._audit(state_key, PositionStatus.ERROR, "error", None, message)
        await self._notify(
            TransitionEvent(
                state_key=state_key,
                symbol=before.symbol,
                old_status=PositionStatus(before.status).value,
                new_status=PositionStatus.ERROR.value,
            )
        )
        return True

    async def _store_call(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.store_timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(f"{fn.__name__} timed out after {self.store_timeout}s")

    async def _price_call(self, symbol: str) -> float:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.price_source.fetch_last_price, symbol),
                self.price_timeout,
            )
        except asyncio.TimeoutError:
            raise PriceUnavailable(f"Price fetch for {symbol} timed out after {self.price_timeout}s")

    async def _audit(self, state_key, status, action, price, message=None):
        try:
            await self._store_call(
                self.store.log_tick, state_key, status, action, price, self.scheduler_name, message
            )
        except TrailingStopError as e:
            logger.warning(f"[{state_key}] Could not write tick log: {e}")

    async def _notify(self, event: TransitionEvent):
        try:
            await asyncio.wait_for(self.notifier.notify(event), self.notify_timeout)
        except Exception as e:
            logger.warning(f"[{event.state_key}] Notification failed: {e}")

    def _log_action(self, position: TrailingStop, action: Action, price: float):
        key = position.state_key
        if action == Action.ACTIVATED:
            logger.info(f"[{key}] Activated at {price} (trigger {position.trigger_price:g})")
        elif action == Action.TRIGGERED:
            logger.info(f"[{key}] TRIGGERED at {price} (trigger {position.trigger_price:g})")
        elif action == Action.ADJUSTED:
            logger.debug(
                f"[{key}] New extreme {position.highest_price:g}, trigger {position.trigger_price:g}"
            )
