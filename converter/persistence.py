"""Persistence stage: batched, idempotent upserts of observations."""

from __future__ import annotations

from typing import List, Sequence, Tuple

from constants import UPSERT_BATCH_SIZE
from models import Observation
from pools import WorkerPool
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


def partition(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class PersistenceStage:
    def __init__(self, store, pool: WorkerPool, batch_size: int = UPSERT_BATCH_SIZE):
        self.store = store
        self.pool = pool
        self.batch_size = batch_size

    def upsert(self, observations: Sequence[Observation], label: str = "") -> Tuple[int, int]:
        """Upsert all observations in independent batches and renew the store session afterwards.

        A failed batch is logged and does not affect its siblings. Returns
        (observations written, batches failed).
        """
        batches = partition(list(observations), self.batch_size)
        futures = self.pool.run_all((self.store.upsert_observations, (batch,)) for batch in batches)

        written = 0
        failed = 0
        for i, future in enumerate(futures):
            exc = future.exception()
            if exc is not None:
                failed += 1
                logger.error(f"{label} Upsert of batch {i + 1}/{len(batches)} failed: {exc}")
            else:
                written += future.result()

        self.store.renew_session()
        logger.debug(f"{label} {written} observations upserted in {len(batches)} batch(es)")
        return written, failed
