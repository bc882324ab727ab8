"""
Celery application for the queue monitoring path.

Usage:
    # Start a worker pool (10 concurrent ticks by default)
    celery -A trailstop.engine.celery_app worker -Q trailing_stops --loglevel=info

The API process only enqueues; ticks run on the workers.
"""

from celery import Celery
from celery.signals import after_setup_logger

from trailstop.config import settings

celery_app = Celery(
    "trailstop",
    broker=settings.broker_url,
    include=["trailstop.engine.queue_scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,

    # Ticks are re-delivered if a worker dies mid-run
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=60,
    task_soft_time_limit=45,
    task_ignore_result=True,

    # Worker pool
    worker_concurrency=settings.worker_concurrency,
    worker_prefetch_multiplier=1,

    task_default_queue=settings.queue_name,
    task_routes={
        "trailstop.monitor_position": {"queue": settings.queue_name},
    },
    broker_connection_retry_on_startup=True,
    broker_transport_options={"visibility_timeout": 3600},
)


@after_setup_logger.connect
def _configure_logging(logger=None, **kwargs):
    from trailstop.utils.logging import setup_logging
    setup_logging()


if __name__ == "__main__":
    celery_app.start()
