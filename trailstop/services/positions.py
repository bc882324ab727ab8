"""Position service: create, cancel, inspect and recreate trailing stops.

Shared by the HTTP API, the CLI and the Telegram bot. Store and scheduler
default to the process-wide instances and can be passed in explicitly.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Iterable

from trailstop.config import settings
from trailstop.engine.errors import (
    PositionClosedError,
    PositionNotFound,
    SchedulerUnavailable,
)
from trailstop.engine.position_engine import compute_trigger_price
from trailstop.models.trailing_stop import PositionSide, PositionStatus, TrailingStop
from trailstop.schemas.trailing_stop import TrailingStopCreate
from trailstop.services.notifier import NotificationSink, TransitionEvent, build_notifier
from trailstop.services.store import PositionStore

logger = logging.getLogger(__name__)

LISTED_STATUSES = frozenset(
    {PositionStatus.PENDING_ACTIVATION, PositionStatus.ACTIVE, PositionStatus.ERROR}
)
RECREATABLE_STATUSES = frozenset({PositionStatus.ERROR, PositionStatus.CANCELLED})


def new_state_key(symbol: str) -> str:
    # "BTC/USDT" -> "BTCUSDT-1718000000000-a1b2c3"; keys must be URL-path safe
    compact = symbol.replace("/", "").replace(" ", "")
    return f"{compact}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _default_scheduler():
    from trailstop.engine.bootstrap import get_scheduler
    return get_scheduler()


def create_position(data: TrailingStopCreate, store: PositionStore | None = None, scheduler=None) -> str:
    """Persist a new position and register it for monitoring. Returns its state key."""
    store = store or PositionStore()
    scheduler = scheduler or _default_scheduler()

    pending = data.activation_price is not None
    position = TrailingStop(
        state_key=new_state_key(data.symbol),
        symbol=data.symbol,
        side=data.side,
        entry_price=data.entry_price,
        quantity=data.quantity,
        trailing_percent=data.trailing_percent,
        activation_price=data.activation_price,
        highest_price=data.entry_price,
        trigger_price=compute_trigger_price(data.side, data.entry_price, data.trailing_percent),
        status=PositionStatus.PENDING_ACTIVATION if pending else PositionStatus.ACTIVE,
        strategy=data.strategy,
        order_id=data.order_id,
    )
    saved = store.upsert(position)

    try:
        scheduler.schedule(saved.state_key)
    except Exception as e:
        # Every live row must have a scheduler entry
        store.mark_error(saved.state_key, f"Could not schedule monitoring: {e}")
        raise SchedulerUnavailable(f"Could not schedule {saved.state_key}: {e}") from e

    logger.info(
        f"[{saved.state_key}] Created {PositionStatus(saved.status).value} {PositionSide(saved.side).value} "
        f"{saved.symbol} trailing {saved.trailing_percent}% (trigger {saved.trigger_price:g})"
    )
    return saved.state_key


def get_position(state_key: str, store: PositionStore | None = None) -> TrailingStop:
    store = store or PositionStore()
    position = store.get(state_key)
    if position is None:
        raise PositionNotFound(f"Position {state_key} not found")
    return position


def list_active_positions(
    store: PositionStore | None = None,
    statuses: Iterable[PositionStatus] | None = None,
) -> list[TrailingStop]:
    """Pending, active and errored positions, newest first."""
    store = store or PositionStore()
    rows = store.list_by_status(statuses or LISTED_STATUSES)
    return sorted(rows, key=lambda p: p.created_at, reverse=True)


async def cancel_position(
    state_key: str,
    store: PositionStore | None = None,
    scheduler=None,
    notifier: NotificationSink | None = None,
) -> TrailingStop:
    """Cancel a monitored position.

    Cancelling an already-cancelled position is a no-op. Triggered and errored
    positions raise PositionClosedError.
    The row is cancelled even when the scheduler cannot be reached; a running
    monitor stops by itself once it reads the cancelled status.
    """
    store = store or PositionStore()
    if scheduler is None:
        try:
            scheduler = _default_scheduler()
        except SchedulerUnavailable as e:
            logger.warning(f"[{state_key}] No scheduler to unregister from: {e}")

    current = get_position(state_key, store)
    if PositionStatus(current.status) == PositionStatus.CANCELLED:
        _unschedule(scheduler, state_key)
        return current
    if current.is_terminal:
        raise PositionClosedError(
            f"Position {state_key} is already {PositionStatus(current.status).value}"
        )

    updated = store.mark_cancelled(state_key)
    if updated is None or PositionStatus(updated.status) != PositionStatus.CANCELLED:
        # A tick closed it between our read and the conditional update
        status = PositionStatus(updated.status).value if updated else "gone"
        raise PositionClosedError(f"Position {state_key} is already {status}")

    _unschedule(scheduler, state_key)
    logger.info(f"[{state_key}] Cancelled")
    await _notify(
        notifier or build_notifier(),
        TransitionEvent(
            state_key=state_key,
            symbol=updated.symbol,
            old_status=PositionStatus(current.status).value,
            new_status=PositionStatus.CANCELLED.value,
        ),
    )
    return updated


def recreate_position(state_key: str, store: PositionStore | None = None, scheduler=None) -> str:
    """Start a fresh position with the parameters of an errored or cancelled one.

    The old row is left as it is; the new position gets its own key.
    """
    store = store or PositionStore()
    old = get_position(state_key, store)
    if PositionStatus(old.status) not in RECREATABLE_STATUSES:
        raise PositionClosedError(
            f"Only error or cancelled positions can be recreated, {state_key} is "
            f"{PositionStatus(old.status).value}"
        )

    data = TrailingStopCreate(
        symbol=old.symbol,
        side=old.side,
        entry_price=old.entry_price,
        quantity=old.quantity,
        trailing_percent=old.trailing_percent,
        activation_price=old.activation_price,
        strategy=old.strategy,
        order_id=old.order_id,
    )
    new_key = create_position(data, store, scheduler)
    logger.info(f"[{state_key}] Recreated as {new_key}")
    return new_key


def _unschedule(scheduler, state_key: str):
    if scheduler is None:
        return
    try:
        scheduler.unschedule(state_key)
    except Exception as e:
        logger.warning(f"[{state_key}] Could not remove from scheduler, monitor will stop on its next tick: {e}")


async def _notify(notifier: NotificationSink, event: TransitionEvent):
    try:
        await asyncio.wait_for(notifier.notify(event), settings.notify_timeout_seconds)
    except Exception as e:
        logger.warning(f"[{event.state_key}] Notification failed: {e}")
