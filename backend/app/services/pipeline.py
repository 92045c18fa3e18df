from __future__ import annotations

import asyncio
import functools
import logging
from datetime import UTC, datetime

from app.core.redis_client import get_redis
from app.core.settings import Settings, get_settings
from app.schemas.page import (
    CacheKey,
    ImageSize,
    PageRecord,
    PageRegionsOutcome,
    PageStatus,
    PageTranslationOutcome,
    PipelineResult,
    PipelineStats,
    TranslationSettings,
)
from app.services.page_store import PageStore, image_hash, read_image_size
from app.services.reconciler import (
    DEFAULT_OCR_THRESHOLD,
    DEFAULT_TRANSLATION_THRESHOLD,
    reconcile,
    rescale_bubbles,
)
from app.services.region_detector import (
    DEFAULT_LANGUAGE_HINT,
    OCRError,
    OCRTimeout,
    OCRUnavailable,
    PaddleRecognitionEngine,
    RegionDetector,
    language_hint_for,
)
from app.services.result_cache import EntryCountPolicy, MemoryBudgetPolicy, RedisResultStore, ResultCache
from app.services.scheduler import ConcurrencyScheduler, Overloaded
from app.services.translator import BatchTranslator, ChatCompletionEngine, TranslationFailed, build_tier_table


logger = logging.getLogger(__name__)


class ImageChanged(RuntimeError):
    pass


def cache_key_for(record: PageRecord, settings: TranslationSettings) -> CacheKey:
    return CacheKey(
        page_id=record.page_id,
        image_hash=record.image_hash,
        source_lang=settings.source_lang,
        target_lang=settings.target_lang,
        quality=settings.quality,
    )


class PageTranslationPipeline:
    def __init__(
        self,
        store: PageStore,
        detector: RegionDetector,
        translator: BatchTranslator,
        scheduler: ConcurrencyScheduler,
        cache: ResultCache,
        *,
        ocr_threshold: float = DEFAULT_OCR_THRESHOLD,
        translation_threshold: float = DEFAULT_TRANSLATION_THRESHOLD,
        ocr_timeout_sec: float | None = None,
        default_language_hint: str = DEFAULT_LANGUAGE_HINT,
    ) -> None:
        self.store = store
        self.detector = detector
        self.translator = translator
        self.scheduler = scheduler
        self.cache = cache
        self.ocr_threshold = ocr_threshold
        self.translation_threshold = translation_threshold
        self.ocr_timeout_sec = ocr_timeout_sec
        self.default_language_hint = default_language_hint
        self._background: set[asyncio.Task[PageTranslationOutcome]] = set()
        store.on_image_replaced(cache.invalidate)

    async def translate_page(
        self,
        page_id: str,
        settings: TranslationSettings,
        viewport: ImageSize | None = None,
    ) -> PageTranslationOutcome:
        record = self.store.require_page(page_id)
        key = cache_key_for(record, settings)

        try:
            result = await self.cache.get_or_compute(key, functools.partial(self._compute, key))
        except Overloaded as exc:
            return self._failed(page_id, settings, "overloaded", str(exc), retryable=True)
        except OCRTimeout as exc:
            return self._failed(page_id, settings, "ocr_timeout", str(exc), retryable=True)
        except OCRUnavailable as exc:
            return self._failed(page_id, settings, "ocr_unavailable", str(exc), retryable=True)
        except ImageChanged as exc:
            return self._failed(page_id, settings, "image_changed", str(exc), retryable=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("page_id=%s pipeline error", page_id)
            return self._failed(page_id, settings, "pipeline_error", str(exc), retryable=True)

        bubbles = list(result.bubbles)
        if viewport is not None:
            bubbles = rescale_bubbles(bubbles, result.image_size, viewport)

        error_code = None
        if result.translation_error is not None:
            error_code = "translation_failed"
        elif result.partial:
            error_code = "translation_partial"
        return PageTranslationOutcome(
            page_id=page_id,
            status="partial" if result.partial else "ready",
            error_code=error_code,
            detail=result.translation_error,
            retryable=result.translation_retryable,
            source_lang=result.source_lang,
            target_lang=result.target_lang,
            quality=result.quality,
            image_size=result.image_size,
            viewport=viewport,
            bubbles=bubbles,
            computed_at=result.computed_at,
        )

    async def detect_regions(self, page_id: str, source_lang: str | None = None) -> PageRegionsOutcome:
        """Run detection alone; neither cached nor reflected in the page state."""
        record = self.store.require_page(page_id)
        hint = language_hint_for(source_lang, self.default_language_hint)
        try:
            image_bytes = self.store.read_image(page_id)
            regions = await self.scheduler.run_detection(
                self.detector.detect,
                image_bytes,
                hint,
                timeout=self.ocr_timeout_sec,
            )
        except Overloaded as exc:
            return self._failed_regions(page_id, hint, "overloaded", str(exc))
        except TimeoutError:
            return self._failed_regions(page_id, hint, "ocr_timeout", f"detection exceeded {self.ocr_timeout_sec}s")
        except OCRError as exc:
            return self._failed_regions(page_id, hint, "ocr_unavailable", str(exc))
        return PageRegionsOutcome(
            page_id=page_id,
            status="ready",
            language_hint=hint,
            image_size=ImageSize(width=record.width, height=record.height),
            regions=regions,
        )

    def schedule_prefetch(self, page_id: str, settings: TranslationSettings) -> bool:
        """Warm the cache on the running loop; False when already cached or in flight."""
        record = self.store.require_page(page_id)
        key = cache_key_for(record, settings)
        if self.cache.get(key) is not None or self.cache.is_pending(key):
            return False
        task = asyncio.ensure_future(self.translate_page(page_id, settings))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def invalidate(self, page_id: str) -> int:
        return self.cache.invalidate(page_id)

    def stats(self) -> PipelineStats:
        return PipelineStats(cache=self.cache.stats(), pools=self.scheduler.stats())

    def close(self) -> None:
        self.scheduler.shutdown(wait=False)

    async def _compute(self, key: CacheKey) -> PipelineResult:
        image_bytes = self.store.read_image(key.page_id)
        if image_hash(image_bytes) != key.image_hash:
            raise ImageChanged(f"page {key.page_id} was replaced while queued")
        width, height = read_image_size(image_bytes)
        size = ImageSize(width=width, height=height)

        self._set_state(key, "processing")
        try:
            result = await self._run_stages(key, image_bytes, size)
        except OCRTimeout:
            self._set_state(key, "failed", error="ocr_timeout")
            raise
        except OCRError as exc:
            self._set_state(key, "failed", error=str(exc))
            raise
        except Overloaded:
            self._set_state(key, "unprocessed")
            raise
        except Exception as exc:
            self._set_state(key, "failed", error=f"pipeline error: {exc}")
            raise

        self._set_state(key, "ready")
        logger.info(
            "page_id=%s ready bubbles=%s partial=%s",
            key.page_id,
            len(result.bubbles),
            result.partial,
        )
        return result

    async def _run_stages(self, key: CacheKey, image_bytes: bytes, size: ImageSize) -> PipelineResult:
        try:
            regions = await self.scheduler.run_detection(
                self.detector.detect,
                image_bytes,
                language_hint_for(key.source_lang, self.default_language_hint),
                timeout=self.ocr_timeout_sec,
            )
        except TimeoutError as exc:
            raise OCRTimeout(f"detection exceeded {self.ocr_timeout_sec}s") from exc

        translation_error: str | None = None
        translation_retryable = False
        translations = []
        if regions:
            try:
                translations = await self.scheduler.run_translation(
                    self.translator.translate,
                    [region.text for region in regions],
                    key.source_lang,
                    key.target_lang,
                    key.quality,
                )
            except TranslationFailed as exc:
                logger.warning("page_id=%s degrading to original text: %s", key.page_id, exc)
                translation_error = str(exc)
                translation_retryable = exc.retryable
                translations = BatchTranslator.failed_batch(len(regions))

        bubbles = reconcile(
            regions,
            translations,
            size,
            size,
            ocr_threshold=self.ocr_threshold,
            translation_threshold=self.translation_threshold,
        )
        return PipelineResult(
            page_id=key.page_id,
            image_hash=key.image_hash,
            source_lang=key.source_lang,
            target_lang=key.target_lang,
            quality=key.quality,
            image_size=size,
            bubbles=tuple(bubbles),
            translation_error=translation_error,
            translation_retryable=translation_retryable,
            computed_at=datetime.now(UTC),
        )

    def _set_state(self, key: CacheKey, state: PageStatus, error: str | None = None) -> None:
        # A replaced image owns the record now; stale computations leave it alone.
        record = self.store.get_page(key.page_id)
        if record is None or record.image_hash != key.image_hash:
            logger.info("page_id=%s skipping state %s for replaced image", key.page_id, state)
            return
        self.store.update_state(key.page_id, state, error=error)

    @staticmethod
    def _failed(
        page_id: str,
        settings: TranslationSettings,
        error_code: str,
        detail: str,
        retryable: bool,
    ) -> PageTranslationOutcome:
        logger.warning("page_id=%s pipeline failed code=%s: %s", page_id, error_code, detail)
        return PageTranslationOutcome(
            page_id=page_id,
            status="failed",
            error_code=error_code,
            detail=detail,
            retryable=retryable,
            source_lang=settings.source_lang,
            target_lang=settings.target_lang,
            quality=settings.quality,
        )

    @staticmethod
    def _failed_regions(page_id: str, hint: str, error_code: str, detail: str) -> PageRegionsOutcome:
        logger.warning("page_id=%s detection failed code=%s: %s", page_id, error_code, detail)
        return PageRegionsOutcome(
            page_id=page_id,
            status="failed",
            error_code=error_code,
            detail=detail,
            retryable=True,
            language_hint=hint,
        )


def build_pipeline(settings: Settings | None = None) -> PageTranslationPipeline:
    settings = settings or get_settings()
    store = PageStore(settings.storage_root)
    detector = RegionDetector(
        PaddleRecognitionEngine(),
        confidence_threshold=settings.ocr_confidence_threshold,
        merge_gap_px=settings.ocr_merge_gap_px,
    )
    translator = BatchTranslator(
        ChatCompletionEngine(settings.translation_api_key, settings.translation_base_url),
        tier_table=build_tier_table(
            settings.translation_model_fast,
            settings.translation_model_balanced,
            settings.translation_model_premium,
        ),
        max_attempts=settings.translation_max_attempts,
        backoff_base_ms=settings.translation_backoff_base_ms,
        backoff_max_ms=settings.translation_backoff_max_ms,
        backoff_jitter_ms=settings.translation_backoff_jitter_ms,
    )
    scheduler = ConcurrencyScheduler(
        detection_workers=settings.detection_workers,
        detection_queue_depth=settings.detection_queue_depth,
        translation_workers=settings.translation_workers,
        translation_queue_depth=settings.translation_queue_depth,
    )
    if settings.cache_eviction == "memory":
        policy = MemoryBudgetPolicy(settings.cache_max_bytes)
    else:
        policy = EntryCountPolicy(settings.cache_max_entries)
    shared = None
    if settings.shared_result_store:
        shared = RedisResultStore(get_redis(), ttl_seconds=settings.shared_result_ttl_minutes * 60)
    return PageTranslationPipeline(
        store,
        detector,
        translator,
        scheduler,
        ResultCache(policy, shared),
        ocr_threshold=settings.ocr_confidence_threshold,
        translation_threshold=settings.translation_confidence_threshold,
        ocr_timeout_sec=settings.ocr_timeout_sec,
        default_language_hint=settings.ocr_default_language_hint,
    )
