"""Observation merge: build one observation per coordinate and fold it into what is already stored."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Sequence, Tuple

from models import CoordinateRecord, ExtractionResult, Observation
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


def build_observations(coordinates: Sequence[CoordinateRecord], timestamp: datetime,
                       results: Sequence[ExtractionResult]) -> Tuple[List[Observation], bool]:
    """One fresh observation per catalog coordinate at `timestamp`.

    Results without a value map contribute nothing. Returns the observations and
    whether any slot received a value.
    """
    observations = [Observation(c, timestamp) for c in coordinates]
    has_new_values = False
    for result in results:
        if result.values is None:
            continue
        for obs in observations:
            if obs.set(result.parameter, result.value(obs.coordinate)):
                has_new_values = True
    return observations, has_new_values


def merge_with_persisted(observations: Sequence[Observation], store, ratio: float) -> List[Observation]:
    """Replace each fresh observation by its stored counterpart, interpolated towards the fresh values.

    Stored observations keep their identity; fresh ones without a stored counterpart pass through.
    """
    by_timestamp: Dict[datetime, List[Observation]] = defaultdict(list)
    for obs in observations:
        by_timestamp[obs.timestamp].append(obs)

    merged: List[Observation] = []
    for timestamp, group in by_timestamp.items():
        persisted = store.find_observations([o.coordinate for o in group], timestamp)
        interpolated = 0
        for fresh in group:
            found = persisted.get(fresh.coordinate.id)
            if found is None:
                merged.append(fresh)
                continue
            found.interpolate_from(fresh, ratio)
            merged.append(found)
            interpolated += 1
        logger.debug(f"{timestamp:%d.%m.%Y %H:%M} | {interpolated} of {len(group)} observations "
                     f"merged with persisted values (ratio {ratio})")
    return merged
