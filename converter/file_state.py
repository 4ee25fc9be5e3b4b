"""File state tracker: the single source of truth for every file's lifecycle."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from logging_config import FILE_STATUS_LOGGER
from models import FileRecord, file_name
from parameters import Parameter

status_logger = logging.getLogger(FILE_STATUS_LOGGER)


def log_status(record: FileRecord, code: str, change: str, source: str):
    """One line per lifecycle transition, e.g. '<name>  |  dt   |  decompressed = true  |  Decompressor'."""
    status_logger.debug(f"{record.name}  |  {code:<4} |  {change}  |  {source}")


class FileStateTracker:
    """Caches the records of the current run and writes them through to the store.

    Every record is owned by exactly one in-flight task; the counters are shared.
    """

    def __init__(self, store):
        self.store = store
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.Lock()
        self.counters: Counter = Counter()

    def get(self, model_run: datetime, timestep: int, parameter: Parameter) -> Optional[FileRecord]:
        name = file_name(model_run, timestep, parameter)
        with self._lock:
            record = self._records.get(name)
        if record is not None:
            return record
        record = self.store.find_file(name)
        if record is not None:
            with self._lock:
                record = self._records.setdefault(name, record)
        return record

    def get_or_create(self, model_run: datetime, timestep: int, parameter: Parameter) -> FileRecord:
        record = self.get(model_run, timestep, parameter)
        if record is None:
            record = FileRecord(model_run, timestep, parameter)
            log_status(record, "fmc", "FileModel created", "Tracker")
            self.upsert(record)
        return record

    def upsert(self, record: FileRecord):
        with self._lock:
            self._records[record.name] = record
        self.store.persist_file(record)

    def upsert_all(self, records: Iterable[FileRecord]):
        records = list(records)
        with self._lock:
            for record in records:
                self._records[record.name] = record
        self.store.persist_files(records)

    def count(self, counter: str, amount: int = 1):
        with self._lock:
            self.counters[counter] += amount

    def forget(self, model_run: datetime):
        """Drop cached records of a finished model run."""
        with self._lock:
            for name in [n for n, r in self._records.items() if r.model_run == model_run]:
                del self._records[name]

    def oldest_model_run_with_unprocessed_files(self) -> Optional[datetime]:
        return self.store.oldest_model_run_with_unprocessed_files()

    def newest_downloaded_model_run(self) -> Optional[datetime]:
        return self.store.newest_downloaded_model_run()

    def failed_downloads(self, since: datetime) -> List[FileRecord]:
        return self.store.failed_downloads(since)
