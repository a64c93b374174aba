from __future__ import annotations

import os
from celery import Celery, signals

from apps.common.logging import setup_logging
from apps.common.settings import load_settings

settings = load_settings()

celery_app = Celery(
    "medpack_workers",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["apps.workers.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES_S", "86400")),  # 1 day
    worker_concurrency=settings.worker_concurrency,
    # One analysis may sleep through several backoffs; don't let a worker hoard jobs.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)
celery_app.conf.broker_connection_retry_on_startup = True


@signals.after_setup_logger.connect
def _configure_logging(**_kwargs) -> None:
    setup_logging(settings.log_level)
