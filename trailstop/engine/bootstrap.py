"""Startup recovery: pick a scheduler and re-register every live position.

The queue path is preferred. If Redis or the broker is unreachable the whole
process runs on the in-process poller; with `failover_probe_seconds` set, a
probe job keeps trying the queue and moves every key over once it answers.
"""

import asyncio
import logging
from typing import Callable, Protocol

from apscheduler.triggers.interval import IntervalTrigger

from trailstop.config import settings
from trailstop.engine.errors import SchedulerUnavailable
from trailstop.models.trailing_stop import MONITORED_STATUSES

logger = logging.getLogger(__name__)

PROBE_JOB_ID = "failover_probe"


class MonitoringScheduler(Protocol):
    name: str

    def start(self) -> None: ...
    def shutdown(self) -> None: ...
    def schedule(self, state_key: str, payload: dict | None = None) -> None: ...
    def unschedule(self, state_key: str) -> None: ...
    def scheduled_keys(self) -> list[str]: ...
    def status(self) -> dict: ...


_active: MonitoringScheduler | None = None


def get_scheduler() -> MonitoringScheduler:
    """The scheduler chosen at startup for this process."""
    if _active is None:
        raise SchedulerUnavailable("Monitoring has not been started")
    return _active


def _start_queue(queue_factory: Callable[[], MonitoringScheduler]) -> MonitoringScheduler | None:
    try:
        queue = queue_factory()
        queue.start()
        return queue
    except SchedulerUnavailable as e:
        logger.warning(f"Queue scheduler unavailable, falling back to in-process poller: {e}")
        return None


def bootstrap(
    store,
    queue_factory: Callable[[], MonitoringScheduler],
    poller_factory: Callable[[], MonitoringScheduler],
    failover_probe_seconds: float | None = None,
) -> MonitoringScheduler:
    """Select the scheduler and register each pending/active position exactly once."""
    global _active

    recovered = store.list_by_status(MONITORED_STATUSES)

    scheduler = _start_queue(queue_factory)
    if scheduler is None:
        scheduler = poller_factory()
        scheduler.start()

    for position in recovered:
        scheduler.schedule(position.state_key)
    _active = scheduler
    logger.info(f"Recovered {len(recovered)} position(s) on the {scheduler.name} scheduler")

    probe_seconds = settings.failover_probe_seconds if failover_probe_seconds is None else failover_probe_seconds
    if scheduler.name == "poller" and probe_seconds > 0:
        scheduler.scheduler.add_job(
            probe_failover,
            trigger=IntervalTrigger(seconds=probe_seconds),
            args=[queue_factory],
            id=PROBE_JOB_ID,
            name="Queue failover probe",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Probing the queue every {probe_seconds}s")
    return scheduler


async def probe_failover(queue_factory: Callable[[], MonitoringScheduler]) -> bool:
    """Move every polled key to the queue if it has come back. Returns True on switch."""
    global _active

    poller = _active
    if poller is None or poller.name != "poller":
        return False
    try:
        queue = await asyncio.to_thread(queue_factory)
        await asyncio.to_thread(queue.start)
    except SchedulerUnavailable as e:
        logger.debug(f"Queue still unavailable: {e}")
        return False

    keys = poller.scheduled_keys()
    moved = []
    try:
        for key in keys:
            queue.schedule(key)
            moved.append(key)
    except Exception as e:
        # The poller still owns every key; drop the partial copies from the queue
        for key in moved:
            try:
                queue.unschedule(key)
            except Exception as undo_error:
                logger.warning(f"[{key}] Could not remove from queue after failed move: {undo_error}")
        logger.warning(f"Queue came back but scheduling failed, staying on the poller: {e}")
        return False

    for key in keys:
        poller.unschedule(key)
    _active = queue
    poller.shutdown()
    logger.warning(f"Queue scheduler is back, moved {len(keys)} position(s) off the poller")
    return True


def shutdown():
    global _active
    if _active is not None:
        _active.shutdown()
        _active = None


def default_queue() -> MonitoringScheduler:
    from trailstop.engine.queue_scheduler import get_queue_scheduler
    return get_queue_scheduler()


def default_poller() -> MonitoringScheduler:
    from trailstop.engine.poller import PollingScheduler
    from trailstop.engine.tick import TickRunner
    from trailstop.services.market_data import get_price_source
    from trailstop.services.notifier import build_notifier
    from trailstop.services.store import PositionStore

    runner = TickRunner(PositionStore(), get_price_source(), build_notifier(), scheduler_name="poller")
    return PollingScheduler(runner)
