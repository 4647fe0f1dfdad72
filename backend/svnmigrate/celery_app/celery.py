"""
Celery application configuration.

Redis broker, JSON serialization, UTC, and one queue per lane. Start one
worker per lane so each lane gets its own concurrency:

    celery -A svnmigrate.celery_app worker -Q migration -c 2
    celery -A svnmigrate.celery_app worker -Q sync -c 3
"""

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger

from svnmigrate.core.config import get_settings


@after_setup_logger.connect
@after_setup_task_logger.connect
def setup_celery_logging(logger, *args, **kwargs):
    """Configure Celery worker logging via signal."""
    from svnmigrate.core.logging_config import setup_logging
    setup_logging()


settings = get_settings()

app = Celery(
    "svnmigrate",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["svnmigrate.celery_app.tasks"],
)

app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    # One git-svn process per worker slot; never prefetch multi-hour jobs
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.max_concurrent_migrations,
    worker_hijack_root_logger=False,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,

    result_expires=86400,  # 24h

    # Lanes
    task_default_queue="migration",
    task_queues={
        "migration": {},
        "sync": {},
    },
    task_routes={
        "run_migration_job": {"queue": "migration"},
        "run_sync_job": {"queue": "sync"},
    },
)
