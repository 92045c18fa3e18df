from __future__ import annotations

from collections.abc import Iterable, Sequence

from app.schemas.page import BBox, ImageSize, OverlayBubble, TextRegion, TranslationUnit


DEFAULT_OCR_THRESHOLD = 0.5
DEFAULT_TRANSLATION_THRESHOLD = 0.5


def scale_factors(source: ImageSize, target: ImageSize) -> tuple[float, float]:
    return target.width / source.width, target.height / source.height


def remap_box(box: BBox, source: ImageSize, target: ImageSize) -> BBox:
    sx, sy = scale_factors(source, target)
    return box.scaled(sx, sy)


def reconcile(
    regions: Sequence[TextRegion],
    translations: Sequence[TranslationUnit],
    source_size: ImageSize,
    viewport_size: ImageSize,
    *,
    ocr_threshold: float = DEFAULT_OCR_THRESHOLD,
    translation_threshold: float = DEFAULT_TRANSLATION_THRESHOLD,
) -> list[OverlayBubble]:
    """Pair regions with their translations and place them in render space.

    A region under ``ocr_threshold`` produces no bubble. A translation that is a
    ``translation_failed`` sentinel or falls under ``translation_threshold`` is
    detached, leaving a bubble that shows the original text. Boxes are relative
    to the full unzoomed page at ``viewport_size``; zoom/pan is the reader's job.
    """
    if len(regions) != len(translations):
        raise ValueError(f"regions/translations length mismatch: {len(regions)} != {len(translations)}")

    bubbles: list[OverlayBubble] = []
    for region, unit in zip(regions, translations, strict=True):
        if region.index != unit.index:
            raise ValueError(f"misaligned translation index {unit.index} for region {region.index}")
        if region.confidence < ocr_threshold:
            continue

        translation: TranslationUnit | None = unit
        if unit.failed or unit.confidence < translation_threshold:
            translation = None

        bubbles.append(
            OverlayBubble(
                index=region.index,
                region=region,
                translation=translation,
                render_box=remap_box(region.bbox, source_size, viewport_size),
                translation_failed=unit.failed,
            )
        )
    return bubbles


def rescale_bubbles(
    bubbles: Iterable[OverlayBubble],
    source_size: ImageSize,
    viewport_size: ImageSize,
) -> list[OverlayBubble]:
    return [
        bubble.model_copy(update={"render_box": remap_box(bubble.region.bbox, source_size, viewport_size)})
        for bubble in bubbles
    ]
