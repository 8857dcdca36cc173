# worker.py
"""Fire-and-forget background work for the API process.

Requests hand session processing to a ``TaskRunner`` and return right away.
Each named limiter owns its own thread pool sized to its limit, so at most
``SESSION_WORKER_CONCURRENCY`` sessions (and ``PENDING_WORKER_CONCURRENCY``
pending drains) run at once, and a backlog in one pool never holds up the
other.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Optional, Set

from curioread.config import Settings

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self, session_concurrency: int = 5, pending_concurrency: int = 1):
        self.limits: Dict[str, int] = {
            "session": session_concurrency,
            "pending": pending_concurrency,
        }
        self.executors: Dict[str, ThreadPoolExecutor] = {
            name: ThreadPoolExecutor(max_workers=size, thread_name_prefix=f"curioread-{name}")
            for name, size in self.limits.items()
        }
        self._futures: Set[Future] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskRunner":
        return cls(settings.session_worker_concurrency, settings.pending_worker_concurrency)

    @staticmethod
    def _run(fn: Callable, args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            # nobody is waiting on this result; the row state carries the failure
            logger.exception("Background task %s%r failed", getattr(fn, "__name__", fn), args)

    def spawn(self, limiter: str, fn: Callable, *args) -> Future:
        try:
            executor = self.executors[limiter]
        except KeyError:
            raise ValueError(f"Unknown limiter {limiter!r}")
        future = executor.submit(self._run, fn, args)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until everything spawned so far has finished."""
        with self._lock:
            pending = set(self._futures)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        for executor in self.executors.values():
            executor.shutdown(wait=wait_for_tasks)
