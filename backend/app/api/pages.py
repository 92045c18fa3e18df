from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import FileResponse

from app.core.settings import get_settings
from app.schemas.page import (
    DetectRegionsRequest,
    ErrorResponse,
    PageRecord,
    PageRegionsOutcome,
    PageTranslationOutcome,
    PipelineStats,
    PrefetchRequest,
    PrefetchResponse,
    TranslatePageRequest,
)
from app.services.page_store import InvalidImage, PageNotFound
from app.services.pipeline import PageTranslationPipeline
from app.workers.tasks import enqueue_prefetch

router = APIRouter(tags=["pages"])


def get_pipeline(request: Request) -> PageTranslationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not ready")
    return pipeline


@router.put(
    "/pages/{page_id}/image",
    response_model=PageRecord,
    responses={400: {"model": ErrorResponse}},
)
async def upload_page_image(
    page_id: str,
    file: UploadFile = File(...),
    pipeline: PageTranslationPipeline = Depends(get_pipeline),
) -> PageRecord:
    settings = get_settings()
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    size_mb = len(content) / (1024 * 1024)
    if size_mb > settings.max_upload_mb:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File exceeds max size of {settings.max_upload_mb}MB",
        )

    try:
        return pipeline.store.put_image(page_id, content)
    except InvalidImage as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PageNotFound as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid page id") from exc


@router.get("/pages/{page_id}", response_model=PageRecord, responses={404: {"model": ErrorResponse}})
def get_page(page_id: str, pipeline: PageTranslationPipeline = Depends(get_pipeline)) -> PageRecord:
    record = pipeline.store.get_page(page_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Page not found")
    return record


@router.get("/pages/{page_id}/image")
def get_page_image(page_id: str, pipeline: PageTranslationPipeline = Depends(get_pipeline)) -> FileResponse:
    if pipeline.store.get_page(page_id) is None:
        raise HTTPException(status_code=404, detail="Page not found")
    return FileResponse(pipeline.store.paths(page_id).image)


@router.post(
    "/pages/{page_id}/ocr",
    response_model=PageRegionsOutcome,
    responses={404: {"model": ErrorResponse}},
)
async def detect_page_regions(
    page_id: str,
    request: DetectRegionsRequest | None = None,
    pipeline: PageTranslationPipeline = Depends(get_pipeline),
) -> PageRegionsOutcome:
    source_lang = request.source_lang if request is not None else None
    try:
        return await pipeline.detect_regions(page_id, source_lang)
    except PageNotFound as exc:
        raise HTTPException(status_code=404, detail="Page not found") from exc


@router.post(
    "/pages/{page_id}/translate",
    response_model=PageTranslationOutcome,
    responses={404: {"model": ErrorResponse}},
)
async def translate_page(
    page_id: str,
    request: TranslatePageRequest,
    pipeline: PageTranslationPipeline = Depends(get_pipeline),
) -> PageTranslationOutcome:
    try:
        return await pipeline.translate_page(page_id, request, viewport=request.viewport)
    except PageNotFound as exc:
        raise HTTPException(status_code=404, detail="Page not found") from exc


@router.post(
    "/pages/{page_id}/prefetch",
    response_model=PrefetchResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def prefetch_page(
    page_id: str,
    request: PrefetchRequest,
    pipeline: PageTranslationPipeline = Depends(get_pipeline),
) -> PrefetchResponse:
    settings = get_settings()
    if pipeline.store.get_page(page_id) is None:
        raise HTTPException(status_code=404, detail="Page not found")

    if settings.prefetch_backend == "celery":
        if not settings.shared_result_store:
            raise HTTPException(status_code=409, detail="Celery prefetch requires the shared result store")
        queued = enqueue_prefetch(page_id, request)
    else:
        queued = pipeline.schedule_prefetch(page_id, request)
    return PrefetchResponse(
        page_id=page_id,
        status="queued" if queued else "skipped",
        backend=settings.prefetch_backend,
    )


@router.delete("/pages/{page_id}/translations", status_code=204)
async def invalidate_translations(page_id: str, pipeline: PageTranslationPipeline = Depends(get_pipeline)) -> Response:
    if pipeline.store.get_page(page_id) is None:
        raise HTTPException(status_code=404, detail="Page not found")
    pipeline.invalidate(page_id)
    return Response(status_code=204)


@router.delete("/pages/{page_id}", status_code=204)
async def delete_page(page_id: str, pipeline: PageTranslationPipeline = Depends(get_pipeline)) -> Response:
    if pipeline.store.get_page(page_id) is None:
        return Response(status_code=204)
    pipeline.store.delete_page(page_id)
    return Response(status_code=204)


@router.get("/pipeline/stats", response_model=PipelineStats)
def get_pipeline_stats(pipeline: PageTranslationPipeline = Depends(get_pipeline)) -> PipelineStats:
    return pipeline.stats()
