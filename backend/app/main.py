from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.pages import router as pages_router
from app.core.logging import configure_logging
from app.core.redis_client import redis_reachable
from app.core.settings import get_settings
from app.services.pipeline import build_pipeline

settings = get_settings()

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pages_router, prefix=settings.api_prefix)


@app.get("/health")
def health() -> dict[str, str]:
    shared = "disabled"
    if settings.shared_result_store:
        shared = "up" if redis_reachable() else "down"
    return {"status": "ok", "shared_store": shared, "prefetch": settings.prefetch_backend}


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging(settings.log_level)
    # Tests install their own pipeline before startup.
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        pipeline.close()
    app.state.pipeline = None
