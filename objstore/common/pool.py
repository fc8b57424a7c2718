"""Bounded worker pool for fanning out independent requests."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

logger = logging.getLogger(__name__)


def num_workers(n: int) -> int:
    """Return the number of workers to use for ``n`` units of work, capped at the vCPU count."""
    return max(1, min(n, os.cpu_count() or 1))


class WorkerPool:
    """Thread pool with a bounded queue which stops accepting work after the first failure.

    Work queued before the failure is allowed to drain; ``stop`` raises the first
    error encountered.
    """

    def __init__(
        self,
        size: int = 0,
        *,
        buffer_multiplier: int = 1,
        cancel: threading.Event | None = None,
        log_prefix: str = "(pool)",
    ) -> None:
        self._size = size or (os.cpu_count() or 1)
        self._cancel = cancel
        self._log_prefix = log_prefix
        self._slots = threading.BoundedSemaphore(self._size * max(1, buffer_multiplier))
        self._executor = ThreadPoolExecutor(max_workers=self._size, thread_name_prefix="objstore-pool")
        self._lock = threading.Lock()
        self._error: BaseException | None = None
        self._stopped = False

    @property
    def size(self) -> int:
        return self._size

    def queue(self, fn: Callable[[], None]) -> bool:
        """Queue ``fn`` for execution, blocking while the queue is full.

        Returns ``False`` (without queueing) once the pool has failed, been
        cancelled or stopped.
        """
        if not self._accepting():
            return False

        self._slots.acquire()

        if not self._accepting():
            self._slots.release()
            return False

        future = self._executor.submit(fn)
        future.add_done_callback(self._done)

        return True

    def stop(self) -> None:
        """Wait for queued work to drain, then raise the first error encountered (if any)."""
        with self._lock:
            self._stopped = True

        self._executor.shutdown(wait=True)

        if self._error is not None:
            raise self._error

    def _accepting(self) -> bool:
        with self._lock:
            if self._stopped or self._error is not None:
                return False
        return self._cancel is None or not self._cancel.is_set()

    def _done(self, future: Future) -> None:
        exc = future.exception()
        first = False
        if exc is not None:
            with self._lock:
                first = self._error is None
                if first:
                    self._error = exc

        # The error must be visible before a blocked ``queue`` call wakes up
        self._slots.release()

        if exc is None or first:
            return

        logger.warning(
            "%s Additional error occurred after teardown began: %s",
            self._log_prefix,
            exc,
            extra={"extra": {"error": str(exc)}},
        )

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if exc_type is not None:
            with self._lock:
                self._stopped = True
            self._executor.shutdown(wait=True)
            return
        self.stop()
