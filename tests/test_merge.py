"""Tests for converter/merge.py."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from merge import build_observations, merge_with_persisted
from models import CoordinateRecord, ExtractionResult, Observation
from parameters import Parameter

TS = datetime(2018, 9, 5, 15, tzinfo=timezone.utc)


def test_build_sets_slots_per_coordinate(coordinates):
    z0 = ExtractionResult(Parameter.Z0, {c: 0.01 * i for i, c in enumerate(coordinates)}, True)
    t2m = ExtractionResult(Parameter.T_2M, {c: None for c in coordinates}, True)
    observations, has_new = build_observations(coordinates, TS, [z0, t2m])

    assert has_new
    assert [o.coordinate for o in observations] == coordinates
    assert all(o.timestamp == TS for o in observations)
    assert observations[2].get(Parameter.Z0) == pytest.approx(0.02)
    assert all(o.get(Parameter.T_2M) is None for o in observations)


def test_invalid_results_contribute_nothing(coordinates):
    observations, has_new = build_observations(
        coordinates, TS, [ExtractionResult(Parameter.Z0, None, False)])
    assert not has_new
    assert not any(o.has_values() for o in observations)


def test_only_null_values_are_not_new(coordinates):
    result = ExtractionResult(Parameter.Z0, {c: None for c in coordinates}, True)
    _, has_new = build_observations(coordinates, TS, [result])
    assert not has_new


def test_merge_without_persisted_passes_fresh_through(store, coordinates):
    fresh, _ = build_observations(
        coordinates, TS, [ExtractionResult(Parameter.Z0, {c: 0.5 for c in coordinates}, True)])
    merged = merge_with_persisted(fresh, store, 0.67)
    assert [id(o) for o in merged] == [id(o) for o in fresh]


def test_merge_interpolates_into_persisted(store, coordinates):
    earlier = Observation(coordinates[0], TS)
    earlier.set(Parameter.Z0, 0.1063)
    earlier.set(Parameter.T_G, 285.0)
    store.upsert_observations([earlier])

    fresh, _ = build_observations(
        coordinates, TS, [ExtractionResult(Parameter.Z0, {c: 0.0001 for c in coordinates}, True)])
    merged = merge_with_persisted(fresh, store, 0.67)

    assert len(merged) == len(coordinates)
    first = next(o for o in merged if o.coordinate == coordinates[0])
    assert first is not fresh[0]
    assert first.get(Parameter.Z0) == pytest.approx(0.1063 * 0.33 + 0.0001 * 0.67)
    assert first.get(Parameter.T_G) == 285.0
    others = [o for o in merged if o.coordinate != coordinates[0]]
    assert all(o.get(Parameter.Z0) == 0.0001 for o in others)


def test_merge_ratio_one_overrides(store, coordinates):
    earlier = Observation(coordinates[0], TS)
    earlier.set(Parameter.Z0, 0.1063)
    store.upsert_observations([earlier])

    fresh, _ = build_observations(
        coordinates[:1], TS, [ExtractionResult(Parameter.Z0, {coordinates[0]: 0.0001}, True)])
    merged = merge_with_persisted(fresh, store, 1.0)
    assert merged[0].get(Parameter.Z0) == 0.0001


def test_merge_groups_by_timestamp(store, coordinates):
    later = TS + timedelta(hours=1)
    stored = Observation(coordinates[0], later)
    stored.set(Parameter.Z0, 1.0)
    store.upsert_observations([stored])

    a = Observation(coordinates[0], TS)
    a.set(Parameter.Z0, 3.0)
    b = Observation(coordinates[0], later)
    b.set(Parameter.Z0, 3.0)
    merged = merge_with_persisted([a, b], store, 0.5)

    by_time = {o.timestamp: o for o in merged}
    assert by_time[TS] is a
    assert by_time[later].get(Parameter.Z0) == 2.0


def test_coordinate_lookup_ignores_ids():
    catalog = CoordinateRecord(50.0, 7.0, id=3)
    result = ExtractionResult(Parameter.Z0, {CoordinateRecord(50.0, 7.0): 1.0}, True)
    observations, has_new = build_observations([catalog], TS, [result])
    assert has_new
    assert observations[0].get(Parameter.Z0) == 1.0


def test_nan_values_are_not_new_values(coordinates):
    nan = ExtractionResult(Parameter.Z0, {c: float("nan") for c in coordinates}, True)
    observations, has_new = build_observations(coordinates, TS, [nan])
    assert not has_new
    assert all(o.get(Parameter.Z0) is None for o in observations)
