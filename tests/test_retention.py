"""Tests for converter/retention.py: validation, abandonment and file erasure."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from conftest import write_archive, write_decoded
from models import FileRecord, FileValidity
from parameters import Parameter
from pools import WorkerPool
from retention import FileEraser, RetentionStage, erase_file, is_abandoned, validate_records

MR = datetime(2018, 9, 5, 12, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def _record(parameter=Parameter.Z0, **kwargs):
    kwargs.setdefault("sufficient_size", True)
    return FileRecord(MR, 0, parameter, **kwargs)


def _on_disk(directory, record):
    write_archive(directory, record, "archive")
    write_decoded(directory, record, "decoded")
    return record.archive_path(directory), record.decoded_path(directory)


# ── validation ───────────────────────────────────────────────────────────────

def test_validation_marks_below_tolerance():
    ok = _record(Parameter.Z0, missing_coordinates=32)
    too_many = _record(Parameter.T_2M, missing_coordinates=33)
    marked = validate_records([ok, too_many], 100, 0.33)
    assert marked == [ok]
    assert ok.persisted
    assert not too_many.persisted


def test_validation_never_marks_invalid_files():
    invalid = _record(validity=FileValidity.INVALID, missing_coordinates=0)
    assert validate_records([invalid], 100, 0.33) == []
    assert not invalid.persisted


def test_validation_logs_missing_percentage(caplog):
    record = _record(Parameter.U_131M, missing_coordinates=50)
    validate_records([record], 100, 0.33, "MR |")
    assert "U_131M had 50.00% missing values" in caplog.text


@pytest.mark.parametrize("missing", [0, 10, 24, 25, 26, 100])
def test_persisted_implies_ratio_below_tolerance(missing):
    record = _record(missing_coordinates=missing)
    validate_records([record], 100, 0.25)
    if record.persisted:
        assert record.missing_ratio(100) < 0.25


# ── abandonment ──────────────────────────────────────────────────────────────

def test_abandoned_files():
    now = MR + timedelta(hours=3)
    small = dict(sufficient_size=False)
    assert not is_abandoned(_record(), now, 3, DAY)
    assert not is_abandoned(_record(download_fails=2, **small), now, 3, DAY)
    assert is_abandoned(_record(download_fails=4, **small), now, 3, DAY)
    assert is_abandoned(_record(**small), MR + 2 * DAY, 3, DAY)
    assert is_abandoned(_record(validity=FileValidity.INVALID), MR + 2 * DAY, 3, DAY)
    assert not is_abandoned(_record(validity=FileValidity.INVALID), now, 3, DAY)


# ── erasure ──────────────────────────────────────────────────────────────────

def test_erase_file(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    assert erase_file(str(path))
    assert not path.exists()
    assert erase_file(str(path))


def test_erase_persisted_file(downloads):
    record = _record(decompressed=True, persisted=True)
    archive, decoded = _on_disk(downloads, record)

    FileEraser(downloads).erase(record)

    assert not os.path.exists(archive)
    assert not os.path.exists(decoded)
    assert record.archive_deleted
    assert record.decoded_file_deleted
    assert not record.decompressed


def test_erase_keeps_decoded_file_of_unpersisted(downloads):
    record = _record(decompressed=True)
    archive, decoded = _on_disk(downloads, record)

    FileEraser(downloads).erase(record)

    assert not os.path.exists(archive)
    assert os.path.exists(decoded)
    assert record.archive_deleted
    assert not record.decoded_file_deleted
    assert record.decompressed


def test_erase_invalid_file_keeps_archive_if_not_decompressed(downloads):
    record = _record(validity=FileValidity.INVALID)
    archive, decoded = _on_disk(downloads, record)

    FileEraser(downloads).erase(record)

    assert os.path.exists(archive)
    assert not os.path.exists(decoded)
    assert not record.archive_deleted
    assert record.decoded_file_deleted


def test_erase_undersized_file(downloads):
    record = _record(sufficient_size=False)
    FileEraser(downloads).erase(record)
    assert record.decoded_file_deleted
    assert not record.decompressed


def test_stage_blocks_until_erased(downloads):
    records = [_record(p, decompressed=True, persisted=True) for p in (Parameter.Z0, Parameter.T_2M)]
    paths = [_on_disk(downloads, r) for r in records]

    pool = WorkerPool("erasure", 2)
    try:
        assert RetentionStage(pool, FileEraser(downloads)).erase(records) == 0
    finally:
        pool.shutdown(1)

    for archive, decoded in paths:
        assert not os.path.exists(archive)
        assert not os.path.exists(decoded)
    assert all(r.archive_deleted and r.decoded_file_deleted for r in records)


def test_stage_without_records():
    pool = WorkerPool("erasure", 1)
    try:
        assert RetentionStage(pool, FileEraser("/nonexistent")).erase([]) == 0
    finally:
        pool.shutdown(1)
