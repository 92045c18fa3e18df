from __future__ import annotations

import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


PageStatus = Literal["unprocessed", "processing", "ready", "failed"]
QualityTier = Literal["fast", "balanced", "premium"]
UnitStatus = Literal["ok", "translation_failed"]
OutcomeStatus = Literal["ready", "partial", "failed"]


class BBox(BaseModel):
    """Axis-aligned box, (x0, y0) top-left and (x1, y1) bottom-right."""

    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float

    @model_validator(mode="after")
    def _check_order(self) -> BBox:
        if not all(math.isfinite(v) for v in (self.x0, self.y0, self.x1, self.y1)):
            raise ValueError(f"non-finite bbox: {self.x0},{self.y0},{self.x1},{self.y1}")
        if self.x1 < self.x0 or self.y1 < self.y0:
            raise ValueError(f"degenerate bbox: {self.x0},{self.y0},{self.x1},{self.y1}")
        return self

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.width * self.height

    def union(self, other: BBox) -> BBox:
        return BBox(
            x0=min(self.x0, other.x0),
            y0=min(self.y0, other.y0),
            x1=max(self.x1, other.x1),
            y1=max(self.y1, other.y1),
        )

    def expanded(self, margin: float) -> BBox:
        return BBox(x0=self.x0 - margin, y0=self.y0 - margin, x1=self.x1 + margin, y1=self.y1 + margin)

    def intersects(self, other: BBox) -> bool:
        # Touching edges count as intersecting.
        return not (
            other.x0 > self.x1 or other.x1 < self.x0 or other.y0 > self.y1 or other.y1 < self.y0
        )

    def scaled(self, sx: float, sy: float) -> BBox:
        return BBox(x0=self.x0 * sx, y0=self.y0 * sy, x1=self.x1 * sx, y1=self.y1 * sy)

    def clamped(self, width: float, height: float) -> BBox:
        x0 = min(max(self.x0, 0.0), width)
        y0 = min(max(self.y0, 0.0), height)
        x1 = min(max(self.x1, 0.0), width)
        y1 = min(max(self.y1, 0.0), height)
        return BBox(x0=x0, y0=y0, x1=x1, y1=y1)

    def within(self, width: float, height: float) -> bool:
        return self.x0 >= 0 and self.y0 >= 0 and self.x1 <= width and self.y1 <= height


class ImageSize(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: float = Field(gt=0)
    height: float = Field(gt=0)


class TextRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    bbox: BBox
    text: str
    confidence: float = Field(ge=0.0, le=1.0)


class TranslationUnit(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    note: str | None = None
    status: UnitStatus = "ok"

    @classmethod
    def failed_at(cls, index: int) -> TranslationUnit:
        return cls(index=index, text="", confidence=0.0, status="translation_failed")

    @property
    def failed(self) -> bool:
        return self.status == "translation_failed"


class OverlayBubble(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    region: TextRegion
    translation: TranslationUnit | None = None
    render_box: BBox
    translation_failed: bool = False

    @property
    def ocr_confidence(self) -> float:
        return self.region.confidence

    @property
    def translation_confidence(self) -> float | None:
        return self.translation.confidence if self.translation is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def display_text(self) -> str:
        if self.translation is not None:
            return self.translation.text
        return self.region.text


class CacheKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_id: str
    image_hash: str
    source_lang: str
    target_lang: str
    quality: QualityTier


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_id: str
    image_hash: str
    source_lang: str
    target_lang: str
    quality: QualityTier
    image_size: ImageSize
    bubbles: tuple[OverlayBubble, ...] = ()
    translation_error: str | None = None
    # Set when translation ran out of retries; such results are served but never cached.
    translation_retryable: bool = False
    computed_at: datetime

    @property
    def key(self) -> CacheKey:
        return CacheKey(
            page_id=self.page_id,
            image_hash=self.image_hash,
            source_lang=self.source_lang,
            target_lang=self.target_lang,
            quality=self.quality,
        )

    @property
    def partial(self) -> bool:
        return self.translation_error is not None or any(b.translation_failed for b in self.bubbles)


class PageRecord(BaseModel):
    page_id: str
    image_hash: str
    width: int
    height: int
    state: PageStatus = "unprocessed"
    error: str | None = None
    updated_at: datetime


class TranslationSettings(BaseModel):
    source_lang: str = Field(min_length=2, max_length=16)
    target_lang: str = Field(default="en", min_length=2, max_length=16)
    quality: QualityTier = "balanced"


class TranslatePageRequest(TranslationSettings):
    viewport: ImageSize | None = None


class PrefetchRequest(TranslationSettings):
    pass


class PrefetchResponse(BaseModel):
    page_id: str
    status: Literal["queued", "skipped"]
    backend: str


class PageTranslationOutcome(BaseModel):
    page_id: str
    status: OutcomeStatus
    error_code: str | None = None
    detail: str | None = None
    retryable: bool = False
    source_lang: str
    target_lang: str
    quality: QualityTier
    image_size: ImageSize | None = None
    viewport: ImageSize | None = None
    bubbles: list[OverlayBubble] = Field(default_factory=list)
    computed_at: datetime | None = None


class DetectRegionsRequest(BaseModel):
    source_lang: str | None = Field(default=None, min_length=2, max_length=16)


class PageRegionsOutcome(BaseModel):
    page_id: str
    status: Literal["ready", "failed"]
    error_code: str | None = None
    detail: str | None = None
    retryable: bool = False
    language_hint: str
    image_size: ImageSize | None = None
    regions: list[TextRegion] = Field(default_factory=list)


class PipelineStats(BaseModel):
    cache: dict[str, int]
    pools: dict[str, dict[str, int]]


class ErrorResponse(BaseModel):
    detail: str
