from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import orjson
from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from app.schemas.page import CacheKey, PipelineResult


logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Awaitable[PipelineResult]]


class CacheCorrupt(ValueError):
    pass


def check_result(key: CacheKey, result: PipelineResult) -> None:
    """Sanity check applied to every stored result before it is served."""
    if result.key != key:
        raise CacheCorrupt(f"stored settings {result.key} do not match {key}")
    width, height = result.image_size.width, result.image_size.height
    last_index = -1
    for bubble in result.bubbles:
        if bubble.index <= last_index:
            raise CacheCorrupt(f"bubble order broken at index {bubble.index}")
        last_index = bubble.index
        if bubble.region.index != bubble.index:
            raise CacheCorrupt(f"bubble {bubble.index} references region {bubble.region.index}")
        if bubble.translation is not None and bubble.translation.index != bubble.index:
            raise CacheCorrupt(f"bubble {bubble.index} references translation {bubble.translation.index}")
        if not bubble.region.bbox.within(width, height):
            raise CacheCorrupt(f"bubble {bubble.index} lies outside {width}x{height}")


class EvictionPolicy(Protocol):
    name: str

    def weigh(self, result: PipelineResult) -> int: ...

    def over_budget(self, entries: int, weight: int) -> bool: ...


class EntryCountPolicy:
    name = "entries"

    def __init__(self, max_entries: int = 256) -> None:
        self.max_entries = max_entries

    def weigh(self, result: PipelineResult) -> int:
        return 1

    def over_budget(self, entries: int, weight: int) -> bool:
        return entries > self.max_entries


class MemoryBudgetPolicy:
    """Weighs entries by their serialized size."""

    name = "memory"

    def __init__(self, max_bytes: int = 32 * 1024 * 1024) -> None:
        self.max_bytes = max_bytes

    def weigh(self, result: PipelineResult) -> int:
        return len(orjson.dumps(result.model_dump(mode="json")))

    def over_budget(self, entries: int, weight: int) -> bool:
        return weight > self.max_bytes


class RedisResultStore:
    def __init__(self, redis: Redis, ttl_seconds: int, prefix: str = "overlay") -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def key_for(self, key: CacheKey) -> str:
        return f"{self.prefix}:{key.page_id}:{key.image_hash}:{key.source_lang}:{key.target_lang}:{key.quality}"

    def get(self, key: CacheKey) -> PipelineResult | None:
        raw = self.redis.get(self.key_for(key))
        if not raw:
            return None
        try:
            result = PipelineResult.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as exc:
            raise CacheCorrupt(f"undecodable shared entry: {exc}") from exc
        check_result(key, result)
        return result

    def put(self, result: PipelineResult) -> None:
        raw = orjson.dumps(result.model_dump(mode="json")).decode("utf-8")
        self.redis.set(self.key_for(result.key), raw, ex=self.ttl_seconds)

    def delete(self, key: CacheKey) -> None:
        self.redis.delete(self.key_for(key))

    def delete_page(self, page_id: str) -> int:
        keys = list(self.redis.scan_iter(match=f"{self.prefix}:{page_id}:*"))
        if not keys:
            return 0
        return int(self.redis.delete(*keys))


class ResultCache:
    """Get-or-compute store with at most one in-flight computation per key.

    Concurrent callers for the same key await one shared task. The task is
    shielded from caller cancellation so a reader leaving the page does not
    abort the computation; its result is still stored. All bookkeeping runs on
    the event loop thread, so per-key task registration needs no lock.
    """

    def __init__(self, policy: EvictionPolicy | None = None, shared: RedisResultStore | None = None) -> None:
        self.policy = policy or EntryCountPolicy()
        self.shared = shared
        self._entries: OrderedDict[CacheKey, tuple[PipelineResult, int]] = OrderedDict()
        self._weight = 0
        self._inflight: dict[CacheKey, asyncio.Task[PipelineResult]] = {}
        self._generations: dict[str, int] = {}
        self._counters = {"hits": 0, "misses": 0, "coalesced": 0, "evictions": 0, "corrupt": 0, "invalidations": 0}

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_compute(self, key: CacheKey, compute_fn: ComputeFn) -> PipelineResult:
        cached = self.get(key)
        if cached is not None:
            self._counters["hits"] += 1
            return cached

        task = self._inflight.get(key)
        if task is None:
            self._counters["misses"] += 1
            generation = self._generations.get(key.page_id, 0)
            task = asyncio.ensure_future(self._fill(key, compute_fn, generation))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._finish, key))
        else:
            self._counters["coalesced"] += 1
            logger.debug("coalesced onto in-flight computation page_id=%s", key.page_id)
        return await asyncio.shield(task)

    def get(self, key: CacheKey) -> PipelineResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        result, _ = entry
        try:
            check_result(key, result)
        except CacheCorrupt as exc:
            self._counters["corrupt"] += 1
            logger.warning("dropping corrupt cache entry page_id=%s: %s", key.page_id, exc)
            self._remove(key)
            return None
        self._entries.move_to_end(key)
        return result

    def is_pending(self, key: CacheKey) -> bool:
        return key in self._inflight

    def put(self, result: PipelineResult) -> None:
        key = result.key
        if key in self._entries:
            self._remove(key)
        weight = self.policy.weigh(result)
        self._entries[key] = (result, weight)
        self._weight += weight
        # The newest entry always survives, even if it alone exceeds the budget.
        while len(self._entries) > 1 and self.policy.over_budget(len(self._entries), self._weight):
            evicted, _ = next(iter(self._entries.items()))
            self._remove(evicted)
            self._counters["evictions"] += 1
            logger.debug("evicted page_id=%s policy=%s", evicted.page_id, self.policy.name)

    def invalidate(self, page_id: str) -> int:
        self._generations[page_id] = self._generations.get(page_id, 0) + 1
        removed = 0
        for key in [k for k in self._entries if k.page_id == page_id]:
            self._remove(key)
            removed += 1
        # In-flight work for the old generation keeps running but will not be stored.
        for key in [k for k in self._inflight if k.page_id == page_id]:
            self._inflight.pop(key, None)
        if self.shared is not None:
            try:
                removed += self.shared.delete_page(page_id)
            except RedisError as exc:
                logger.warning("shared invalidation failed page_id=%s: %s", page_id, exc)
        self._counters["invalidations"] += 1
        logger.info("invalidated page_id=%s removed=%s", page_id, removed)
        return removed

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "weight": self._weight,
            "inflight": len(self._inflight),
            **self._counters,
        }

    async def _fill(self, key: CacheKey, compute_fn: ComputeFn, generation: int) -> PipelineResult:
        shared = await self._load_shared(key)
        if shared is not None:
            self._store(shared, generation)
            return shared

        result = await compute_fn()
        if result.translation_retryable:
            logger.info("not caching result with retryable translation failure page_id=%s", key.page_id)
            return result
        if self._store(result, generation) and self.shared is not None:
            try:
                await asyncio.to_thread(self.shared.put, result)
            except RedisError as exc:
                logger.warning("shared store write failed page_id=%s: %s", key.page_id, exc)
        return result

    async def _load_shared(self, key: CacheKey) -> PipelineResult | None:
        if self.shared is None:
            return None
        try:
            return await asyncio.to_thread(self.shared.get, key)
        except CacheCorrupt as exc:
            self._counters["corrupt"] += 1
            logger.warning("corrupt shared entry page_id=%s treated as miss: %s", key.page_id, exc)
            try:
                await asyncio.to_thread(self.shared.delete, key)
            except RedisError:
                logger.warning("could not delete corrupt shared entry page_id=%s", key.page_id)
        except RedisError as exc:
            logger.warning("shared store read failed page_id=%s: %s", key.page_id, exc)
        return None

    def _store(self, result: PipelineResult, generation: int) -> bool:
        if self._generations.get(result.page_id, 0) != generation:
            logger.info("discarding result computed before invalidation page_id=%s", result.page_id)
            return False
        self.put(result)
        return True

    def _remove(self, key: CacheKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._weight -= entry[1]

    def _finish(self, key: CacheKey, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("computation failed page_id=%s: %s", key.page_id, task.exception())
