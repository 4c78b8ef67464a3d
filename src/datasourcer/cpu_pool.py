"""Bounded worker pool for CPU-bound parse work.

HTML/XML parsing can take tens of milliseconds on large pages; running it on
the event loop stalls unrelated requests. Connectors hand such work to
``spawn_cpu`` and await the result.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from datasourcer.exceptions import ConnectorError, OtherError

logger = logging.getLogger(__name__)

R = TypeVar("R")

SLOW_TASK_SECONDS = 0.5


def default_worker_count() -> int:
    available = (os.cpu_count() or 5) - 1
    return max(2, min(8, available))


class CpuPool:
    """Thread-backed pool with an unbounded queue and in-flight accounting."""

    def __init__(self, workers: Optional[int] = None) -> None:
        self._workers = workers if workers and workers > 0 else default_worker_count()
        self._executor = ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="datasourcer-cpu"
        )
        self._in_flight = 0
        self._counter_lock = threading.Lock()

    def worker_count(self) -> int:
        return self._workers

    def queue_depth(self) -> int:
        return self._in_flight

    def _run(self, job: Callable[[], R]) -> R:
        try:
            return job()
        except ConnectorError:
            raise
        except Exception as e:
            logger.exception("CPU pool job failed")
            raise OtherError(f"parse worker panicked: {e}") from e

    def _finished(self, started: float, future: Future[Any]) -> None:
        # Also runs for jobs cancelled while still queued
        with self._counter_lock:
            self._in_flight -= 1
            remaining = self._in_flight
        elapsed = time.monotonic() - started
        if future.cancelled():
            logger.debug("CPU task cancelled before start, queue_after=%d", remaining)
        elif elapsed > SLOW_TASK_SECONDS:
            logger.info(
                "CPU task finished (slow): %.0f ms, queue_after=%d", elapsed * 1000, remaining
            )
        else:
            logger.debug("CPU task finished: %.0f ms, queue_after=%d", elapsed * 1000, remaining)

    async def spawn_cpu(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run ``fn(*args, **kwargs)`` on a worker and await its result.

        Cancelling the caller cancels a job that has not started yet; a job
        already running finishes on its worker and its result is dropped.
        """
        with self._counter_lock:
            self._in_flight += 1
            queued = self._in_flight
        if queued > self._workers * 2:
            logger.info("CPU pool backlog growing: queued=%d workers=%d", queued, self._workers)
        else:
            logger.debug("CPU task queued: queued=%d workers=%d", queued, self._workers)
        job = functools.partial(fn, *args, **kwargs)
        try:
            future = self._executor.submit(self._run, job)
        except RuntimeError:
            with self._counter_lock:
                self._in_flight -= 1
            raise
        # Registered before wrap_future so the count drops before the awaiter resumes
        future.add_done_callback(functools.partial(self._finished, time.monotonic()))
        return await asyncio.wrap_future(future)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_default_pool: Optional[CpuPool] = None
_default_lock = threading.Lock()


def configure_cpu_pool(workers: Optional[int] = None) -> CpuPool:
    """Replace the process-wide pool, e.g. with a size taken from settings."""
    global _default_pool
    with _default_lock:
        old, _default_pool = _default_pool, CpuPool(workers)
    if old is not None:
        old.shutdown(wait=False)
    return _default_pool


def get_cpu_pool() -> CpuPool:
    global _default_pool
    with _default_lock:
        if _default_pool is None:
            _default_pool = CpuPool()
        return _default_pool


async def spawn_cpu(fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    return await get_cpu_pool().spawn_cpu(fn, *args, **kwargs)


def queue_depth() -> int:
    return get_cpu_pool().queue_depth()


def worker_count() -> int:
    return get_cpu_pool().worker_count()
