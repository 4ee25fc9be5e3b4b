"""Decompression stage: bz2 archive -> GRIB2 file next to it."""

from __future__ import annotations

import bz2
import os
import shutil
from typing import List, Sequence

from constants import COPY_CHUNK_BYTES
from file_state import log_status
from models import FileRecord
from pools import WorkerPool
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")


def decompress(record: FileRecord, directory: str) -> bool:
    """Decompress the archive of `record` into its decoded path.

    Returns success. A missing archive flags the record as archive-deleted;
    every other failure leaves the record untouched. The archive is never removed.
    """
    source = record.archive_path(directory)
    target = record.decoded_path(directory)
    try:
        with bz2.open(source, "rb") as fin, open(target, "wb") as fout:
            shutil.copyfileobj(fin, fout, COPY_CHUNK_BYTES)
    except FileNotFoundError:
        logger.warning(f"{record.label} File not found for parameter {record.parameter}")
        record.archive_deleted = True
        log_status(record, "adt", "archivefile_deleted = true", "File not found")
        return False
    except (OSError, EOFError, ValueError) as e:
        logger.error(f"{record.label} Decompression of {record.archive_name} failed: {e}")
        if os.path.exists(target):
            os.unlink(target)
        return False

    record.decompressed = True
    record.decoded_file_deleted = False
    log_status(record, "dt", "decompressed = true", "Decompressor")
    logger.debug(f"File {record.name} successfully decompressed")
    return True


def needs_decompression(record: FileRecord) -> bool:
    return (record.is_processable and not record.persisted
            and not record.archive_deleted and not record.decompressed)


class DecompressionStage:
    def __init__(self, pool: WorkerPool, directory: str):
        self.pool = pool
        self.directory = directory

    def run(self, records: Sequence[FileRecord]) -> List[bool]:
        """Decompress all records of one timestep and block until every task finished."""
        futures = self.pool.run_all((decompress, (r, self.directory)) for r in records)
        results = []
        for record, future in zip(records, futures):
            exc = future.exception()
            if exc is not None:
                logger.error(f"{record.label} Decompression task for {record.parameter} raised: {exc}")
                results.append(False)
            else:
                results.append(future.result())
        return results
