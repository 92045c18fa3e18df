from __future__ import annotations

import asyncio
import logging
from functools import lru_cache

from celery.exceptions import SoftTimeLimitExceeded

from app.core.redis_client import get_redis
from app.core.settings import get_settings
from app.schemas.page import TranslationSettings
from app.services.page_store import PageNotFound
from app.services.pipeline import PageTranslationPipeline, build_pipeline
from app.workers.celery_app import celery_app


logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_worker_pipeline() -> PageTranslationPipeline:
    return build_pipeline(get_settings())


def shutdown_worker_pipeline() -> None:
    """Release the worker's pools; a worker that never ran a task builds nothing here."""
    if get_worker_pipeline.cache_info().currsize:
        get_worker_pipeline().close()
        logger.info("worker pipeline closed")
    get_worker_pipeline.cache_clear()


def prefetch_marker_key(page_id: str, settings: TranslationSettings) -> str:
    return f"prefetch:{page_id}:{settings.source_lang}:{settings.target_lang}:{settings.quality}"


@celery_app.task(name="app.workers.tasks.prefetch_page_task")
def prefetch_page_task(page_id: str, source_lang: str, target_lang: str, quality: str) -> dict[str, str]:
    settings = TranslationSettings(source_lang=source_lang, target_lang=target_lang, quality=quality)  # type: ignore[arg-type]
    pipeline = get_worker_pipeline()
    try:
        outcome = asyncio.run(pipeline.translate_page(page_id, settings))
        status = outcome.status
    except PageNotFound:
        status = "page_not_found"
    except SoftTimeLimitExceeded:
        logger.warning("prefetch timed out page_id=%s", page_id)
        status = "timeout"
    finally:
        get_redis().delete(prefetch_marker_key(page_id, settings))
    return {"page_id": page_id, "status": status}


def enqueue_prefetch(page_id: str, settings: TranslationSettings) -> bool:
    """Queue a prefetch unless one for the same page and settings is already queued."""
    app_settings = get_settings()
    marker = prefetch_marker_key(page_id, settings)
    if not get_redis().set(marker, "1", nx=True, ex=app_settings.task_time_limit_sec):
        return False
    prefetch_page_task.apply_async(
        args=[page_id, settings.source_lang, settings.target_lang, settings.quality],
        queue=app_settings.prefetch_queue,
    )
    return True
