"""Shared API dependencies."""

from fastapi import HTTPException, status

from trailstop.engine.errors import SchedulerUnavailable
from trailstop.services.store import PositionStore


def get_store() -> PositionStore:
    return PositionStore()


def get_active_scheduler():
    """The monitoring scheduler chosen at startup; 503 until bootstrap has run."""
    from trailstop.engine.bootstrap import get_scheduler

    try:
        return get_scheduler()
    except SchedulerUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def get_tick_runner():
    from trailstop.engine.tick import TickRunner
    from trailstop.services.market_data import get_price_source
    from trailstop.services.notifier import build_notifier

    return TickRunner(PositionStore(), get_price_source(), build_notifier(), scheduler_name="manual")


def get_optional_scheduler():
    """The active scheduler, or None; cancellation works without one."""
    from trailstop.engine.bootstrap import get_scheduler

    try:
        return get_scheduler()
    except SchedulerUnavailable:
        return None
