"""Validation and retention: decide which files count as persisted and erase what is no longer needed."""

from __future__ import annotations

import os
from typing import List, Sequence

from file_state import log_status
from models import FileRecord, FileValidity
from pools import WorkerPool
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


def erase_file(path: str) -> bool:
    """Delete `path`. A file that is already gone counts as deleted."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
        return False
    return True


class FileEraser:
    """Removes archives and decoded files of one record according to its state."""

    def __init__(self, directory: str):
        self.directory = directory

    def erase(self, record: FileRecord):
        if record.decompressed:
            record.archive_deleted = erase_file(record.archive_path(self.directory))
            log_status(record, "adt" if record.archive_deleted else "adf",
                       f"archivefile_deleted = {str(record.archive_deleted).lower()}", "FileEraser")

        if (record.persisted or record.validity is FileValidity.INVALID
                or not record.sufficient_size):
            record.decoded_file_deleted = erase_file(record.decoded_path(self.directory))
            log_status(record, "gdt" if record.decoded_file_deleted else "gdf",
                       f"gribfile_deleted = {str(record.decoded_file_deleted).lower()}", "FileEraser")
            record.decompressed = False
            log_status(record, "df", "decompressed = false", "FileEraser")


def is_abandoned(record: FileRecord, now, max_fails: int, retry_window) -> bool:
    """Unusable file that the downloader has given up on."""
    if record.is_processable:
        return False
    return record.download_fails > max_fails or record.model_run < now - retry_window


def validate_records(records: Sequence[FileRecord], total_coordinates: int, fault_tolerance: float,
                     label: str = "") -> List[FileRecord]:
    """Mark records persisted whose missing-coordinate ratio lies below the fault tolerance.

    Returns the records that were marked.
    """
    marked = []
    for record in records:
        ratio = record.missing_ratio(total_coordinates)
        if ratio < fault_tolerance and record.validity is not FileValidity.INVALID:
            record.persisted = True
            log_status(record, "pf", "persisted = true", "Validation")
            marked.append(record)
        else:
            logger.info(f"{label} {record.parameter} had {ratio * 100:.2f}% missing values")
    return marked


class RetentionStage:
    def __init__(self, pool: WorkerPool, eraser: FileEraser):
        self.pool = pool
        self.eraser = eraser

    def erase(self, records: Sequence[FileRecord], label: str = "") -> int:
        """Erase the files of all records and block until every deletion finished.

        Returns the number of failed erasure tasks.
        """
        if not records:
            return 0
        futures = self.pool.run_all((self.eraser.erase, (r,)) for r in records)
        failed = 0
        for record, future in zip(records, futures):
            exc = future.exception()
            if exc is not None:
                failed += 1
                logger.error(f"{label} Error while deleting files of {record.name}: {exc}")
        return failed
