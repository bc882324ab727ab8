"""Primary scheduler: one self-rescheduling Celery task chain per position.

`schedule()` stores a fresh chain token for the key in a Redis hash and
enqueues the first run. Each run checks that its token is still current,
takes a short per-key lease, runs the shared tick and enqueues the next run.
Replacing or deleting the token is how a chain is stopped, so at most one
chain per key keeps running even after restarts.
"""

import asyncio
import logging
import threading
import uuid
from typing import NamedTuple

import redis

from trailstop.config import settings
from trailstop.engine.celery_app import celery_app
from trailstop.engine.errors import (
    PositionFatalError,
    SchedulerUnavailable,
    StoreUnavailable,
)
from trailstop.engine.tick import TickRunner

logger = logging.getLogger(__name__)

SCHEDULE_HASH = "trailstop:schedule"
LEASE_PREFIX = "trailstop:lease:"

RESCHEDULE = "reschedule"
RETRY = "retry"
STOP = "stop"


class TickDecision(NamedTuple):
    action: str
    countdown: float = 0.0


class QueueScheduler:
    name = "queue"

    def __init__(
        self,
        redis_client: redis.Redis,
        runner: TickRunner,
        interval_seconds: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        lease_ttl: float | None = None,
    ):
        self.redis = redis_client
        self.runner = runner
        self.interval_seconds = interval_seconds or settings.tick_interval_seconds
        self.max_retries = settings.tick_max_retries if max_retries is None else max_retries
        self.retry_base_delay = retry_base_delay or settings.retry_base_delay_seconds
        self.lease_ttl = lease_ttl or settings.lease_ttl_seconds
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_lock = threading.Lock()

    def start(self):
        """Verify Redis and the Celery broker are reachable."""
        try:
            self.redis.ping()
            with celery_app.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1)
        except Exception as e:
            raise SchedulerUnavailable(f"Queue backend unreachable: {e}") from e
        logger.info(f"Queue scheduler ready (broker {settings.broker_url}, queue {settings.queue_name})")

    def shutdown(self):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop = None
        self.redis.close()
        logger.info("Queue scheduler stopped")

    def schedule(self, state_key: str, payload: dict | None = None):
        token = uuid.uuid4().hex
        self.redis.hset(SCHEDULE_HASH, state_key, token)
        monitor_position.apply_async(args=[state_key, token], queue=settings.queue_name)
        logger.info(f"[{state_key}] Queued for monitoring every {self.interval_seconds}s")

    def unschedule(self, state_key: str):
        if self.redis.hdel(SCHEDULE_HASH, state_key):
            logger.info(f"[{state_key}] Removed from monitoring queue")

    def scheduled_keys(self) -> list[str]:
        return sorted(self.redis.hkeys(SCHEDULE_HASH))

    def owns(self, state_key: str, token: str) -> bool:
        return self.redis.hget(SCHEDULE_HASH, state_key) == token

    def acquire_lease(self, state_key: str) -> str | None:
        lease = uuid.uuid4().hex
        acquired = self.redis.set(
            LEASE_PREFIX + state_key, lease, nx=True, px=int(self.lease_ttl * 1000)
        )
        return lease if acquired else None

    def release_lease(self, state_key: str, lease: str):
        key = LEASE_PREFIX + state_key
        if self.redis.get(key) == lease:
            self.redis.delete(key)

    def backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** attempt)

    def _run_async(self, coro):
        """Run a coroutine on this process's long-lived tick loop and wait for it.

        A blocking call that outlives its timeout keeps running on the loop's
        executor instead of holding the worker until it returns.
        """
        with self._loop_lock:
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                threading.Thread(
                    target=self._loop.run_forever, daemon=True, name="trailstop-ticks"
                ).start()
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    def _redis_outage(self, state_key: str, attempt: int, error: Exception) -> TickDecision:
        if attempt < self.max_retries:
            logger.warning(f"[{state_key}] Redis unavailable (attempt {attempt + 1}), retrying: {error}")
            return TickDecision(RETRY, self.backoff(attempt))
        logger.error(f"[{state_key}] Redis still unavailable after {attempt + 1} attempts: {error}")
        return TickDecision(RESCHEDULE, self.interval_seconds)

    def _release(self, state_key: str, lease: str):
        try:
            self.release_lease(state_key, lease)
        except redis.RedisError as e:
            # The lease expires on its own after lease_ttl
            logger.warning(f"[{state_key}] Could not release lease: {e}")

    def _unregister(self, state_key: str, token: str):
        try:
            if self.owns(state_key, token):
                self.unschedule(state_key)
        except redis.RedisError as e:
            logger.warning(f"[{state_key}] Could not remove finished chain from the schedule: {e}")

    def process(self, state_key: str, token: str, attempt: int = 0) -> TickDecision:
        """Run one tick for a chain and decide what the chain does next."""
        try:
            if not self.owns(state_key, token):
                logger.debug(f"[{state_key}] Chain {token[:8]} superseded, stopping")
                return TickDecision(STOP)
            lease = self.acquire_lease(state_key)
        except redis.RedisError as e:
            return self._redis_outage(state_key, attempt, e)

        if lease is None:
            logger.warning(f"[{state_key}] Previous tick still holds the lease, skipping")
            return TickDecision(RESCHEDULE, self.interval_seconds)

        try:
            result = self._run_async(self.runner.run(state_key))
        except StoreUnavailable as e:
            if attempt < self.max_retries:
                logger.warning(f"[{state_key}] Store unavailable (attempt {attempt + 1}), retrying: {e}")
                return TickDecision(RETRY, self.backoff(attempt))
            # Storage trouble never errors a position; keep the normal cadence
            logger.error(f"[{state_key}] Store still unavailable after {attempt + 1} attempts: {e}")
            return TickDecision(RESCHEDULE, self.interval_seconds)
        except PositionFatalError as e:
            return self._fail(state_key, token, f"Invalid position state: {e}")
        except Exception as e:
            if attempt < self.max_retries:
                logger.warning(f"[{state_key}] Tick failed (attempt {attempt + 1}), retrying: {e}")
                return TickDecision(RETRY, self.backoff(attempt))
            return self._fail(
                state_key, token, f"Retry limit exhausted after {attempt + 1} attempts: {e}"
            )
        finally:
            self._release(state_key, lease)

        if result.done:
            self._unregister(state_key, token)
            return TickDecision(STOP)
        return TickDecision(RESCHEDULE, self.interval_seconds)

    def _fail(self, state_key: str, token: str, message: str) -> TickDecision:
        try:
            self._run_async(self.runner.fail(state_key, message))
        except StoreUnavailable as e:
            # Can't record the error yet; stay registered and try again later
            logger.error(f"[{state_key}] Could not record error state ({e}); keeping monitor alive")
            return TickDecision(RESCHEDULE, self.interval_seconds)
        self._unregister(state_key, token)
        return TickDecision(STOP)

    def status(self) -> dict:
        keys = self.scheduled_keys()
        return {
            "mode": self.name,
            "running": True,
            "job_count": len(keys),
            "interval_seconds": self.interval_seconds,
            "queue": settings.queue_name,
            "queue_depth": self.redis.llen(settings.queue_name),
            "jobs": [{"id": key} for key in keys],
        }


_queue_scheduler: QueueScheduler | None = None


def get_queue_scheduler() -> QueueScheduler:
    """Build (once per process) the scheduler used by the API process and the workers."""
    global _queue_scheduler
    if _queue_scheduler is None:
        from trailstop.services.market_data import get_price_source
        from trailstop.services.notifier import build_notifier
        from trailstop.services.store import PositionStore

        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.store_timeout_seconds,
            socket_timeout=settings.store_timeout_seconds,
        )
        runner = TickRunner(PositionStore(), get_price_source(), build_notifier(), scheduler_name="queue")
        _queue_scheduler = QueueScheduler(client, runner)
    return _queue_scheduler


@celery_app.task(
    bind=True,
    name="trailstop.monitor_position",
    max_retries=settings.tick_max_retries,
    acks_late=True,
)
def monitor_position(self, state_key: str, token: str) -> str:
    """Celery task: one tick of one position's chain."""
    decision = get_queue_scheduler().process(state_key, token, self.request.retries)
    if decision.action == RETRY:
        raise self.retry(countdown=decision.countdown)
    if decision.action == RESCHEDULE:
        monitor_position.apply_async(
            args=[state_key, token],
            countdown=decision.countdown,
            queue=settings.queue_name,
        )
    return decision.action
