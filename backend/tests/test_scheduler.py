from __future__ import annotations

import asyncio
import threading
import time

import pytest

from app.services.scheduler import BoundedPool, ConcurrencyScheduler, Overloaded


def test_pool_rejects_beyond_workers_plus_queue():
    pool = BoundedPool("detection", workers=1, queue_depth=1)
    gate = threading.Event()
    try:
        first = pool.submit(gate.wait, 5)
        second = pool.submit(gate.wait, 5)
        with pytest.raises(Overloaded) as info:
            pool.submit(gate.wait, 5)
        assert info.value.pool == "detection"
        assert info.value.capacity == 2
        assert pool.stats()["rejected"] == 1

        gate.set()
        first.result(timeout=5)
        second.result(timeout=5)
        deadline = time.monotonic() + 5
        while pool.stats()["outstanding"] and time.monotonic() < deadline:
            time.sleep(0.01)
        assert pool.submit(lambda: 42).result(timeout=5) == 42
    finally:
        gate.set()
        pool.shutdown()


def test_pool_counts_completed_jobs():
    pool = BoundedPool("translation", workers=2, queue_depth=0)
    try:
        results = [pool.submit(pow, 2, n).result(timeout=5) for n in range(3)]
    finally:
        pool.shutdown()

    assert results == [1, 2, 4]
    stats = pool.stats()
    assert stats["completed"] == 3
    assert stats["outstanding"] == 0


def test_run_times_out_without_cancelling_the_job():
    pool = BoundedPool("detection", workers=1, queue_depth=0)
    gate = threading.Event()
    finished = threading.Event()

    def slow():
        gate.wait(5)
        finished.set()
        return "done"

    async def main():
        with pytest.raises(TimeoutError):
            await pool.run(slow, timeout=0.05)

    try:
        asyncio.run(main())
        gate.set()
        assert finished.wait(5)
    finally:
        gate.set()
        pool.shutdown()


def test_pools_are_independent():
    scheduler = ConcurrencyScheduler(
        detection_workers=1,
        detection_queue_depth=0,
        translation_workers=1,
        translation_queue_depth=0,
    )
    gate = threading.Event()

    async def main():
        blocked = asyncio.ensure_future(scheduler.run_detection(gate.wait, 5))
        await asyncio.sleep(0.01)
        with pytest.raises(Overloaded):
            await scheduler.run_detection(lambda: None)
        assert await scheduler.run_translation(lambda: "translated") == "translated"
        gate.set()
        await blocked

    try:
        asyncio.run(main())
    finally:
        gate.set()
        scheduler.shutdown()

    assert scheduler.stats()["detection"]["rejected"] == 1
    assert scheduler.stats()["translation"]["completed"] == 1
