from __future__ import annotations

import hashlib
import io
import logging
import re
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import orjson
from PIL import Image, UnidentifiedImageError

from app.core.settings import get_settings
from app.schemas.page import PageRecord, PageStatus


PAGE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")
logger = logging.getLogger(__name__)


class PageNotFound(KeyError):
    pass


class InvalidImage(ValueError):
    pass


@dataclass(frozen=True)
class PagePaths:
    root: Path
    image: Path
    meta: Path


def _now() -> datetime:
    return datetime.now(UTC)


def _dumps(data: Any) -> bytes:
    return orjson.dumps(data)


def image_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_image_size(data: bytes) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImage(f"not a decodable image: {exc}") from exc
    if width <= 0 or height <= 0:
        raise InvalidImage(f"image has no pixels: {width}x{height}")
    return width, height


ReplacementListener = Callable[[str], None]


class PageStore:
    """Filesystem-backed page image store.

    Each page lives in its own directory holding the raw image bytes and a small
    JSON record (hash, pixel size, pipeline state). The record is the only
    state shared between the API process and prefetch workers.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root if root is not None else get_settings().storage_root
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._listeners: list[ReplacementListener] = []

    def on_image_replaced(self, listener: ReplacementListener) -> None:
        self._listeners.append(listener)

    def paths(self, page_id: str) -> PagePaths:
        if not PAGE_ID_RE.match(page_id):
            raise PageNotFound(page_id)
        root = self.root / page_id
        return PagePaths(root=root, image=root / "image.bin", meta=root / "page.json")

    def put_image(self, page_id: str, data: bytes) -> PageRecord:
        width, height = read_image_size(data)
        digest = image_hash(data)
        paths = self.paths(page_id)

        with self._lock:
            previous = self._read_record(paths)
            if previous is not None and previous.image_hash == digest:
                return previous

            paths.root.mkdir(parents=True, exist_ok=True)
            paths.image.write_bytes(data)
            record = PageRecord(
                page_id=page_id,
                image_hash=digest,
                width=width,
                height=height,
                state="unprocessed",
                updated_at=_now(),
            )
            self._write_record(paths, record)

        if previous is not None:
            logger.info("page image replaced page_id=%s old=%s new=%s", page_id, previous.image_hash[:12], digest[:12])
            self._notify(page_id)
        return record

    def get_page(self, page_id: str) -> PageRecord | None:
        try:
            paths = self.paths(page_id)
        except PageNotFound:
            return None
        return self._read_record(paths)

    def require_page(self, page_id: str) -> PageRecord:
        record = self.get_page(page_id)
        if record is None:
            raise PageNotFound(page_id)
        return record

    def read_image(self, page_id: str) -> bytes:
        paths = self.paths(page_id)
        if not paths.image.exists():
            raise PageNotFound(page_id)
        return paths.image.read_bytes()

    def update_state(self, page_id: str, state: PageStatus, error: str | None = None) -> PageRecord:
        paths = self.paths(page_id)
        with self._lock:
            record = self._read_record(paths)
            if record is None:
                raise PageNotFound(page_id)
            record.state = state
            record.error = error
            record.updated_at = _now()
            self._write_record(paths, record)
        logger.debug("page state page_id=%s state=%s", page_id, state)
        return record

    def delete_page(self, page_id: str) -> bool:
        paths = self.paths(page_id)
        with self._lock:
            if not paths.root.exists():
                return False
            shutil.rmtree(paths.root, ignore_errors=True)
        self._notify(page_id)
        return True

    def _notify(self, page_id: str) -> None:
        for listener in self._listeners:
            listener(page_id)

    @staticmethod
    def _read_record(paths: PagePaths) -> PageRecord | None:
        if not paths.meta.exists():
            return None
        return PageRecord.model_validate(orjson.loads(paths.meta.read_bytes()))

    @staticmethod
    def _write_record(paths: PagePaths, record: PageRecord) -> None:
        tmp = paths.meta.with_suffix(".tmp")
        tmp.write_bytes(_dumps(record.model_dump(mode="json")))
        tmp.replace(paths.meta)
