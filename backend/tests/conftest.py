"""Shared fixtures: fake recognition/translation engines and a pipeline factory."""
from __future__ import annotations

import io
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from app.services.page_store import PageStore
from app.services.pipeline import PageTranslationPipeline
from app.services.region_detector import RegionDetector
from app.services.result_cache import ResultCache
from app.services.scheduler import ConcurrencyScheduler
from app.services.translator import BatchTranslator, TierBackend


SCENARIO_A = [
    {"text": "こんにちは", "confidence": 0.95, "bbox": [10, 10, 110, 60]},
    {"text": "どうしたの?", "confidence": 0.88, "bbox": [200, 300, 320, 380]},
]
SCENARIO_A_TRANSLATIONS = {
    "こんにちは": {"translatedText": "Hello", "confidence": 0.95},
    "どうしたの?": {"translatedText": "What happened?", "confidence": 0.88},
}


def make_png(width: int = 400, height: int = 600, color: tuple[int, int, int] = (255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


class FakeRecognitionEngine:
    def __init__(self, detections: list[dict[str, Any]] | None = None) -> None:
        self.detections = detections if detections is not None else list(SCENARIO_A)
        self.calls = 0
        self.hints: list[str] = []
        self.gate: threading.Event | None = None
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def detect_text(self, image_bytes: bytes, language_hint: str) -> list[dict[str, Any]]:
        with self._lock:
            self.calls += 1
            self.hints.append(language_hint)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return [dict(item) for item in self.detections]


def _lookup_responder(texts: list[str]) -> list[dict[str, Any]]:
    return [SCENARIO_A_TRANSLATIONS.get(text, {"translatedText": f"EN:{text}", "confidence": 0.9}) for text in texts]


class FakeTranslationEngine:
    def __init__(self, responder: Callable[[list[str]], list[Any]] | None = None) -> None:
        self.responder = responder or _lookup_responder
        self.calls = 0
        self.batches: list[list[str]] = []
        self.backends: list[TierBackend] = []
        self.failures: list[Exception] = []
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def translate_batch(
        self,
        texts: list[str],
        source_lang: str,
        target_lang: str,
        backend: TierBackend,
    ) -> list[Any]:
        with self._lock:
            self.calls += 1
            self.batches.append(list(texts))
            self.backends.append(backend)
            failure = self.failures.pop(0) if self.failures else None
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if failure is not None:
            raise failure
        return self.responder(list(texts))


@pytest.fixture
def png() -> Callable[..., bytes]:
    return make_png


@pytest.fixture
def ocr_engine() -> FakeRecognitionEngine:
    return FakeRecognitionEngine()


@pytest.fixture
def mt_engine() -> FakeTranslationEngine:
    return FakeTranslationEngine()


@pytest.fixture
def store(tmp_path: Path) -> PageStore:
    return PageStore(tmp_path / "pages")


@pytest.fixture
def pipeline_factory(
    store: PageStore,
    ocr_engine: FakeRecognitionEngine,
    mt_engine: FakeTranslationEngine,
) -> Iterator[Callable[..., PageTranslationPipeline]]:
    created: list[PageTranslationPipeline] = []

    def factory(**overrides: Any) -> PageTranslationPipeline:
        detector = RegionDetector(
            ocr_engine,
            confidence_threshold=overrides.pop("ocr_threshold", 0.5),
            merge_gap_px=overrides.pop("merge_gap_px", 8.0),
        )
        translator = BatchTranslator(
            mt_engine,
            max_attempts=overrides.pop("max_attempts", 3),
            sleep=lambda _seconds: None,
        )
        scheduler = ConcurrencyScheduler(
            detection_workers=overrides.pop("detection_workers", 2),
            detection_queue_depth=overrides.pop("detection_queue_depth", 8),
            translation_workers=overrides.pop("translation_workers", 2),
            translation_queue_depth=overrides.pop("translation_queue_depth", 8),
        )
        pipeline = PageTranslationPipeline(
            store,
            detector,
            translator,
            scheduler,
            overrides.pop("cache", None) or ResultCache(),
            ocr_timeout_sec=overrides.pop("ocr_timeout_sec", 5.0),
        )
        assert not overrides, f"unknown overrides: {overrides}"
        created.append(pipeline)
        return pipeline

    yield factory
    for pipeline in created:
        pipeline.close()
