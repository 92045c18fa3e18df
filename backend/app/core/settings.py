from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "manga-overlay-translate"
    api_prefix: str = "/v1"
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    redis_url: str = "redis://redis:6379/0"
    redis_timeout_sec: float = 2.0
    storage_root: Path = Field(default=Path("/tmp/overlaytranslate/pages"))
    max_upload_mb: int = 20

    # Region detection
    ocr_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    ocr_merge_gap_px: float = Field(default=8.0, ge=0.0)
    ocr_timeout_sec: float = 60.0
    ocr_default_language_hint: str = "ja"

    # Batch translation
    translation_api_key: str = ""
    translation_base_url: str = "https://api.openai.com/v1"
    translation_model_fast: str = "gpt-3.5-turbo"
    translation_model_balanced: str = "gpt-4o"
    translation_model_premium: str = "gpt-4o"
    translation_max_attempts: int = Field(default=4, ge=1)
    translation_backoff_base_ms: int = 500
    translation_backoff_max_ms: int = 8000
    translation_backoff_jitter_ms: int = 250
    translation_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # Worker pools
    detection_workers: int = Field(default=2, ge=1)
    detection_queue_depth: int = Field(default=8, ge=0)
    translation_workers: int = Field(default=4, ge=1)
    translation_queue_depth: int = Field(default=16, ge=0)

    # Result cache
    cache_eviction: Literal["entries", "memory"] = "entries"
    cache_max_entries: int = Field(default=256, ge=1)
    cache_max_bytes: int = Field(default=32 * 1024 * 1024, ge=1)
    shared_result_store: bool = False
    shared_result_ttl_minutes: int = 24 * 60

    # Prefetch
    prefetch_backend: Literal["inline", "celery"] = "inline"
    prefetch_queue: str = "page_prefetch"
    task_soft_time_limit_sec: int = 180
    task_time_limit_sec: int = 240


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    return settings
