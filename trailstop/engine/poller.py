"""In-process fallback scheduler.

Used when the Redis broker cannot be reached at startup. One APScheduler
interval job per position runs the shared tick inside this process. There are
no retries: anything but a storage hiccup moves the position to error and
removes its job.
"""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from trailstop.config import settings
from trailstop.engine.errors import StoreUnavailable
from trailstop.engine.tick import TickRunner

logger = logging.getLogger(__name__)


def _job_id(state_key: str) -> str:
    return f"position_{state_key}"


class PollingScheduler:
    name = "poller"

    def __init__(self, runner: TickRunner, interval_seconds: float | None = None):
        self.runner = runner
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.scheduler = AsyncIOScheduler()
        self._locks: dict[str, asyncio.Lock] = {}

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Poller started ({self.interval_seconds}s interval)")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Poller stopped")

    def schedule(self, state_key: str, payload: dict | None = None):
        """Add or replace the polling job for a position."""
        job_id = _job_id(state_key)

        # Remove existing job if present
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        self.scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[state_key],
            id=job_id,
            name=f"Position {state_key}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        logger.info(f"[{state_key}] Polling every {self.interval_seconds}s")

    def unschedule(self, state_key: str):
        job_id = _job_id(state_key)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)
            logger.info(f"[{state_key}] Stopped polling")
        self._locks.pop(state_key, None)

    def scheduled_keys(self) -> list[str]:
        prefix = _job_id("")
        return [j.id[len(prefix):] for j in self.scheduler.get_jobs() if j.id.startswith(prefix)]

    async def poll(self, state_key: str):
        """One polling run, skipping if the previous run for this key is still in-flight."""
        lock = self._locks.setdefault(state_key, asyncio.Lock())
        if lock.locked():
            logger.warning(f"[{state_key}] Skipping overlapping poll")
            return

        async with lock:
            try:
                result = await self.runner.run(state_key)
            except StoreUnavailable as e:
                # The next firing is the retry
                logger.warning(f"[{state_key}] Store unavailable, will retry next poll: {e}")
                return
            except Exception as e:
                logger.error(f"[{state_key}] Poll error: {e}", exc_info=True)
                try:
                    await self.runner.fail(state_key, str(e) or type(e).__name__)
                except StoreUnavailable as store_error:
                    logger.error(f"[{state_key}] Could not record error state: {store_error}")
                self.unschedule(state_key)
                return

        if result.done:
            self.unschedule(state_key)

    def status(self) -> dict:
        jobs = self.scheduler.get_jobs()
        return {
            "mode": self.name,
            "running": self.scheduler.running,
            "job_count": len(jobs),
            "interval_seconds": self.interval_seconds,
            "jobs": [
                {
                    "id": j.id,
                    "name": j.name,
                    # pending jobs have no next_run_time until the scheduler starts
                    "next_run": str(getattr(j, "next_run_time", None) or "") or None,
                    "trigger": str(j.trigger),
                }
                for j in jobs
            ],
        }
