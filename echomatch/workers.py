"""Fixed-size worker pool with bounded in-flight work."""

import multiprocessing
import multiprocessing.pool
import os
import queue
import threading
from typing import Any, Callable, Iterable, Iterator

from .errors import EchomatchError


class PoolSaturated(EchomatchError):
    """Raised by a non-blocking submit when max_pending tasks are in flight."""


class WorkerPool:
    """
    Process pool (or thread pool with threads=True) that never holds more than
    `max_pending` submitted-but-unfinished tasks.

    submit(block=True) waits for a free slot, submit(block=False) rejects with
    PoolSaturated. imap_unordered() streams results while keeping the bound.
    """

    def __init__(self, processes: int | None = None, max_pending: int | None = None, threads: bool = False):
        self.processes = processes or os.cpu_count() or 4
        self.max_pending = max_pending or self.processes * 2
        self._slots = threading.BoundedSemaphore(self.max_pending)
        if threads:
            self._pool = multiprocessing.pool.ThreadPool(processes=self.processes)
        else:
            self._pool = multiprocessing.Pool(processes=self.processes)

    def submit(
        self,
        func: Callable[[Any], Any],
        arg: Any,
        block: bool = True,
        timeout: float | None = None,
        callback: Callable[[Any], None] | None = None,
        error_callback: Callable[[BaseException], None] | None = None,
    ) -> multiprocessing.pool.AsyncResult:
        acquired = self._slots.acquire(timeout=timeout) if block else self._slots.acquire(blocking=False)
        if not acquired:
            raise PoolSaturated(f"{self.max_pending} tasks already pending")

        def _done(result):
            self._slots.release()
            if callback is not None:
                callback(result)

        def _failed(exc):
            self._slots.release()
            if error_callback is not None:
                error_callback(exc)

        try:
            return self._pool.apply_async(func, (arg,), callback=_done, error_callback=_failed)
        except Exception:
            self._slots.release()
            raise

    def imap_unordered(self, func: Callable[[Any], Any], items: Iterable[Any]) -> Iterator[Any]:
        """
        Yield func(item) for every item in completion order.

        Finished results are handed out before more work is queued, so at
        most max_pending results are ever buffered. A worker exception is
        re-raised here.
        """
        finished: queue.SimpleQueue = queue.SimpleQueue()
        pending = 0

        def _unwrap(outcome):
            ok, value = outcome
            if not ok:
                raise value
            return value

        for item in items:
            while True:
                try:
                    outcome = finished.get_nowait()
                except queue.Empty:
                    break
                pending -= 1
                yield _unwrap(outcome)
            self.submit(
                func,
                item,
                callback=lambda r: finished.put((True, r)),
                error_callback=lambda e: finished.put((False, e)),
            )
            pending += 1

        while pending:
            outcome = finished.get()
            pending -= 1
            yield _unwrap(outcome)

    def close(self):
        self._pool.close()
        self._pool.join()

    def terminate(self):
        self._pool.terminate()
        self._pool.join()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, *_):
        if exc_type is None:
            self.close()
        else:
            self.terminate()
