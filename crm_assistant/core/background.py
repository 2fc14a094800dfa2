"""
Fire-and-forget background work.
A bounded thread pool whose tasks never raise into the submitter.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Set

from .config import EMBED_QUEUE_LIMIT, EMBED_WORKERS
from ..util.logging import logger


class BackgroundTaskQueue:
    """Bounded worker pool with a pending-task limit.

    Submissions beyond the limit are dropped and logged rather than queued
    without bound. Exceptions raised by a task are logged and swallowed at
    the worker boundary.
    """

    def __init__(self, max_workers: int = EMBED_WORKERS, max_pending: int = EMBED_QUEUE_LIMIT,
                 name: str = "background"):
        self.name = name
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False
        self.dropped_count = 0
        self.failed_count = 0

    def submit(self, fn: Callable, *args, description: str = "task", **kwargs) -> bool:
        """Schedule `fn`; returns False when the task was rejected."""
        with self._lock:
            if self._closed:
                logger.warning(f"{self.name} queue is shut down, dropping {description}")
                return False
            if len(self._pending) >= self.max_pending:
                self.dropped_count += 1
                logger.warning(f"{self.name} queue full ({self.max_pending} pending), dropping {description}")
                return False
            future = self._executor.submit(self._run, description, fn, args, kwargs)
            self._pending.add(future)

        future.add_done_callback(self._discard)
        return True

    def _run(self, description: str, fn: Callable, args, kwargs):
        try:
            fn(*args, **kwargs)
        except Exception as e:
            with self._lock:
                self.failed_count += 1
            logger.error(f"Background task {description} failed: {e}")

    def _discard(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task has finished. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [f for f in self._pending if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.info(f"{self.name} queue shut down (dropped={self.dropped_count}, failed={self.failed_count})")


_queue_lock = threading.Lock()
_shared_queue: Optional[BackgroundTaskQueue] = None


def get_background_queue() -> BackgroundTaskQueue:
    """Process-wide queue used for re-indexing and metrics."""
    global _shared_queue
    with _queue_lock:
        if _shared_queue is None:
            _shared_queue = BackgroundTaskQueue()
        return _shared_queue


def shutdown_background_queue(wait: bool = True):
    global _shared_queue
    with _queue_lock:
        queue, _shared_queue = _shared_queue, None
    if queue is not None:
        queue.shutdown(wait=wait)
