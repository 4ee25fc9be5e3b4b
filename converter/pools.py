"""Bounded worker pools, one per conversion stage."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from typing import Callable, Iterable, Iterator, List, Sequence, Tuple

from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


class WorkerPool:
    def __init__(self, name: str, workers: int):
        self.name = name
        self.workers = max(1, int(workers))
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=name)
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def run_all(self, calls: Iterable[Tuple[Callable, tuple]]) -> List[Future]:
        """Submit every call and block until all of them are done.

        Returns the futures in submission order; failures stay on their future.
        """
        futures = [self.submit(fn, *args) for fn, args in calls]
        wait(futures)
        return futures

    def completed(self, futures: Sequence[Future]) -> Iterator[Future]:
        """Yield futures as they finish, fastest first."""
        return as_completed(futures)

    def shutdown(self, grace_seconds: float = 60.0) -> int:
        """Wait up to `grace_seconds` for running work, then cancel whatever has not started.

        Returns the number of futures still unfinished after the grace period.
        """
        with self._lock:
            pending = list(self._pending)
        not_done = set()
        if pending:
            _, not_done = wait(pending, timeout=grace_seconds)
        self._executor.shutdown(wait=False, cancel_futures=True)
        if not_done:
            logger.warning(f"{self.name} pool: {len(not_done)} task(s) still pending after "
                           f"{grace_seconds:.0f}s, cancelled")
        return len(not_done)
