from __future__ import annotations

import io
import logging
import math
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
from PIL import Image

from app.schemas.page import BBox, TextRegion
from app.services.page_store import InvalidImage, read_image_size

try:
    from paddleocr import PaddleOCR
except Exception:  # noqa: BLE001
    PaddleOCR = None  # type: ignore[misc,assignment]


DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_LANGUAGE_HINT = "ja"
# Source language -> recognition hint; mirrors the reader's jpn+eng style hints.
LANGUAGE_HINTS = {
    "ja": "japan",
    "jp": "japan",
    "jpn": "japan",
    "ko": "korean",
    "kor": "korean",
    "zh": "ch",
    "chi": "ch",
    "en": "en",
    "eng": "en",
}
logger = logging.getLogger(__name__)


class OCRError(RuntimeError):
    pass


class OCRUnavailable(OCRError):
    pass


class OCRTimeout(OCRError):
    pass


class RecognitionEngine(Protocol):
    def detect_text(self, image_bytes: bytes, language_hint: str) -> list[dict[str, Any]]:
        """Return raw detections: ``{"text", "confidence", "bbox", "word_boxes"}``."""
        ...


def language_hint_for(source_lang: str | None, default: str = DEFAULT_LANGUAGE_HINT) -> str:
    code = (source_lang or "").strip().lower()
    if not code or code == "auto":
        code = default.strip().lower()
    return LANGUAGE_HINTS.get(code, code)


def _coerce_bbox(raw: Any) -> BBox | None:
    if raw is None:
        return None
    if isinstance(raw, BBox):
        return raw
    if isinstance(raw, dict):
        try:
            x0, y0, x1, y1 = (float(raw[k]) for k in ("x0", "y0", "x1", "y1"))
        except (KeyError, TypeError, ValueError):
            return None
    else:
        try:
            x0, y0, x1, y1 = (float(v) for v in raw)
        except (TypeError, ValueError):
            return None
    if not all(math.isfinite(v) for v in (x0, y0, x1, y1)):
        return None
    return BBox(x0=min(x0, x1), y0=min(y0, y1), x1=max(x0, x1), y1=max(y0, y1))


def _coerce_confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    # Tesseract-style engines report percentages.
    if value > 1.0:
        value /= 100.0
    return max(0.0, min(1.0, value))


@dataclass
class _Group:
    bbox: BBox
    texts: list[str] = field(default_factory=list)
    weights: list[int] = field(default_factory=list)
    confidences: list[float] = field(default_factory=list)

    def absorb(self, other: _Group) -> None:
        self.bbox = self.bbox.union(other.bbox)
        self.texts.extend(other.texts)
        self.weights.extend(other.weights)
        self.confidences.extend(other.confidences)

    @property
    def confidence(self) -> float:
        total = sum(self.weights)
        if total <= 0:
            return 0.0
        return sum(w * c for w, c in zip(self.weights, self.confidences, strict=True)) / total


def merge_detections(groups: list[_Group], gap: float) -> list[_Group]:
    """Union boxes that lie within ``gap`` pixels of each other, keeping first-seen order."""
    merged = list(groups)
    changed = True
    while changed:
        changed = False
        out: list[_Group] = []
        for group in merged:
            reach = group.bbox.expanded(gap / 2.0)
            for existing in out:
                if existing.bbox.expanded(gap / 2.0).intersects(reach):
                    existing.absorb(group)
                    changed = True
                    break
            else:
                out.append(group)
        merged = out
    return merged


class RegionDetector:
    def __init__(
        self,
        engine: RecognitionEngine,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        merge_gap_px: float = 8.0,
    ) -> None:
        self._engine = engine
        self.confidence_threshold = confidence_threshold
        self.merge_gap_px = merge_gap_px

    def detect(self, image_bytes: bytes, language_hint: str) -> list[TextRegion]:
        try:
            width, height = read_image_size(image_bytes)
        except InvalidImage as exc:
            raise OCRUnavailable(str(exc)) from exc

        try:
            raw = self._engine.detect_text(image_bytes, language_hint)
        except OCRError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise OCRUnavailable(f"recognition engine failed: {exc}") from exc

        groups = self._to_groups(raw)
        merged = merge_detections(groups, self.merge_gap_px)

        regions: list[TextRegion] = []
        dropped = 0
        for group in merged:
            bbox = group.bbox.clamped(width, height)
            if bbox.area <= 0:
                dropped += 1
                continue
            confidence = group.confidence
            if confidence < self.confidence_threshold:
                dropped += 1
                continue
            regions.append(
                TextRegion(
                    index=len(regions),
                    bbox=bbox,
                    text="\n".join(group.texts),
                    confidence=confidence,
                )
            )

        logger.info(
            "detection done raw=%s merged=%s kept=%s dropped=%s hint=%s",
            len(raw),
            len(merged),
            len(regions),
            dropped,
            language_hint,
        )
        return regions

    @staticmethod
    def _to_groups(raw: Sequence[dict[str, Any]]) -> list[_Group]:
        groups: list[_Group] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            text = str(item.get("text") or "").strip()
            if not text:
                continue

            bbox = _coerce_bbox(item.get("bbox"))
            for word in item.get("word_boxes") or item.get("words") or []:
                word_box = _coerce_bbox(word.get("bbox") if isinstance(word, dict) else word)
                if word_box is None:
                    continue
                bbox = word_box if bbox is None else bbox.union(word_box)
            if bbox is None:
                continue

            groups.append(
                _Group(
                    bbox=bbox,
                    texts=[text],
                    weights=[max(1, len(text))],
                    confidences=[_coerce_confidence(item.get("confidence"))],
                )
            )
        return groups


class PaddleRecognitionEngine:
    """PaddleOCR-backed engine; one lazily built instance per language."""

    def __init__(self) -> None:
        self._instances: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _get_ocr(self, lang: str) -> Any:
        if PaddleOCR is None:
            raise OCRUnavailable("paddleocr is not installed")
        with self._lock:
            instance = self._instances.get(lang)
            if instance is None:
                try:
                    instance = PaddleOCR(use_textline_orientation=True, lang=lang)
                except Exception as exc:  # noqa: BLE001
                    raise OCRUnavailable(f"paddleocr init failed for lang={lang}: {exc}") from exc
                self._instances[lang] = instance
            return instance

    def detect_text(self, image_bytes: bytes, language_hint: str) -> list[dict[str, Any]]:
        ocr = self._get_ocr(language_hint)
        with Image.open(io.BytesIO(image_bytes)) as img:
            pixels = np.array(img.convert("RGB"))
        return normalize_paddle_result(ocr.predict(pixels))


def normalize_paddle_result(raw: Any) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []

    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict) and not hasattr(entry, "get"):
                continue
            rec_texts = entry.get("rec_texts") or []
            rec_scores = entry.get("rec_scores")
            rec_scores = list(rec_scores) if rec_scores is not None else []
            rec_polys = entry.get("rec_polys")
            rec_polys = list(rec_polys) if rec_polys is not None else []
            for idx, text in enumerate(rec_texts):
                poly = rec_polys[idx] if idx < len(rec_polys) else None
                if poly is None:
                    continue
                xs = [float(point[0]) for point in poly]
                ys = [float(point[1]) for point in poly]
                normalized.append(
                    {
                        "text": str(text),
                        "confidence": float(rec_scores[idx]) if idx < len(rec_scores) else 0.0,
                        "bbox": [min(xs), min(ys), max(xs), max(ys)],
                        "word_boxes": [],
                    }
                )

    return normalized
