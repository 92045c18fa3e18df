from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging, worker_shutdown

from app.core.logging import configure_logging
from app.core.settings import get_settings

settings = get_settings()

# Prefetch workers share only Redis (broker, markers, result tier) with the API.
celery_app = Celery(
    "overlay_translate",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue=settings.prefetch_queue,
    task_soft_time_limit=settings.task_soft_time_limit_sec,
    task_time_limit=settings.task_time_limit_sec,
    result_expires=settings.task_time_limit_sec * 4,
    timezone="UTC",
    task_routes={
        "app.workers.tasks.prefetch_page_task": {"queue": settings.prefetch_queue},
    },
)


@setup_logging.connect
def _configure_worker_logging(**_: object) -> None:
    configure_logging(settings.log_level)


@worker_shutdown.connect
def _close_worker_pipeline(**_: object) -> None:
    from app.workers.tasks import shutdown_worker_pipeline

    shutdown_worker_pipeline()
