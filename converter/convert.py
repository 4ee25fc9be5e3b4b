#!/usr/bin/env python3
"""ICON-EU GRIB2 converter.

Walks model runs from the oldest run with unprocessed files up to the newest
downloaded run. Per timestep: decompress archives, extract values with
grib_get_data, merge them with stored observations and upsert the result.

Usage:
    iconconv convert [--from 2018090500 --until 2018090512] [--delete]
    iconconv download
"""

import os
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from config import ConfigError, ConverterConfig, load_config
from constants import (
    DECOMPRESSION_WORKERS,
    DOWNLOAD_RETRY_WINDOW_HOURS,
    ERASURE_WORKERS,
    EXTRACTION_WORKERS,
    FILENAME_DATE_FORMAT,
    MAX_DOWNLOAD_FAILS,
    MODEL_RUN_INTERVAL_HOURS,
    PERSISTENCE_WORKERS,
)
from decompression import DecompressionStage, needs_decompression
from download import Downloader
from extraction import ExtractionStage, Extractor
from file_state import FileStateTracker
from lock import LockHeldError, single_instance
from logging_config import set_debug, setup_file_status_logging, setup_logging
from merge import build_observations, merge_with_persisted
from models import CoordinateRecord, FileRecord, FileValidity, absolute_timestamp, run_label
from parameters import Parameter
from persistence import PersistenceStage
from pools import WorkerPool
from retention import FileEraser, RetentionStage, is_abandoned, validate_records
from store import Store, StoreUnavailableError

logger = setup_logging(__name__, level="INFO", log_name="converter")

# Loggers switched to DEBUG by --debug
CONVERTER_LOGGERS = (
    __name__, "decompression", "extraction", "merge", "persistence", "retention",
    "store", "pools", "lock", "download",
)

SEPARATOR = "_" * 80


class Converter:
    def __init__(self, config: ConverterConfig, store: Optional[Store] = None):
        self.config = config
        self.store = store or Store(config.database_url, config.database_schema, config.batch_size)
        self.tracker = FileStateTracker(self.store)
        self.decompression_pool = WorkerPool("decompression", DECOMPRESSION_WORKERS)
        self.extraction_pool = WorkerPool("extraction", EXTRACTION_WORKERS)
        self.persistence_pool = WorkerPool("persistence", PERSISTENCE_WORKERS)
        self.erasure_pool = WorkerPool("erasure", ERASURE_WORKERS)
        self.decompression = DecompressionStage(self.decompression_pool, config.directory)
        self.persistence = PersistenceStage(self.store, self.persistence_pool, config.batch_size)
        self.retention = RetentionStage(self.erasure_pool, FileEraser(config.directory))
        self.extraction: Optional[ExtractionStage] = None
        self.coordinates: List[CoordinateRecord] = []
        self.interrupted = False

    def run(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> int:
        """Convert under the single-instance lock. Returns the process exit code."""
        try:
            with single_instance("converter", self.config.directory):
                logger.info(SEPARATOR)
                logger.info("Converter started")
                logger.debug("Program arguments:")
                for line in self.config.summary(verbose=self.config.debug):
                    logger.debug(f"   {line}")
                try:
                    self.store.connect()
                    self.convert(start, end)
                except StoreUnavailableError as e:
                    logger.critical(f"Conversion aborted: {e}")
                    return 1
                finally:
                    self.shutdown()
        except LockHeldError:
            logger.info("Converter is already running.")
            self.store.close()
        return 0

    def convert(self, start: Optional[datetime] = None, end: Optional[datetime] = None):
        """Convert all model runs in [start, end], or every run with unprocessed files."""
        if start is None:
            current = self.tracker.oldest_model_run_with_unprocessed_files()
            newest = self.tracker.newest_downloaded_model_run()
        else:
            current, newest = start, end
        if current is None or newest is None:
            logger.info("No unprocessed files found")
            return

        self.coordinates = self.store.coordinates_in_rectangle(self.config.bounds)
        logger.info(f"Loaded {len(self.coordinates)} coordinates in {self.config.bounds}")
        extractor = Extractor(self.config.directory, self.coordinates,
                              self.config.decoder_path, self.config.missing_value)
        self.extraction = ExtractionStage(self.extraction_pool, extractor)

        run_tic = time.time()
        model_runs = 0
        while current <= newest and not self.interrupted:
            logger.info(f"############################### {run_label(current)} ###############################")
            tic = time.time()
            for timestep in range(self.config.timesteps):
                try:
                    self.handle_timestep(current, timestep)
                except KeyboardInterrupt:
                    logger.warning(f"{run_label(current, timestep)} Interrupted, abandoning timestep")
                    self.interrupted = True
                    break
                self.store.flush()
            self.tracker.forget(current)
            model_runs += 1
            logger.debug(f"{run_label(current)} This model run took {(time.time() - tic) / 60:.1f}m")
            current += timedelta(hours=MODEL_RUN_INTERVAL_HOURS)

        counters = self.tracker.counters
        logger.info(f"Converted {model_runs} model run(s) in {time.time() - run_tic:.0f}s: "
                    f"{counters['decompressed']} decompressed, {counters['extracted']} extracted, "
                    f"{counters['persisted']} persisted")

    def handle_timestep(self, model_run: datetime, timestep: int):
        label = run_label(model_run, timestep)
        before = dict(self.tracker.counters)

        logger.info(f"{label} Opening of archive files started")
        tic = time.time()
        records = self.open_archive_files(model_run, timestep)
        logger.info(f"{label} Opening of archive files finished ({time.time() - tic:.0f}s)")

        self.convert_timestep(model_run, timestep, records)

        counters = self.tracker.counters
        logger.info(f"{label} Timestep finished: "
                    f"{counters['decompressed'] - before.get('decompressed', 0)} decompressed, "
                    f"{counters['extracted'] - before.get('extracted', 0)} extracted, "
                    f"{counters['persisted'] - before.get('persisted', 0)} persisted "
                    f"({time.time() - tic:.0f}s)")

    def open_archive_files(self, model_run: datetime, timestep: int) -> List[FileRecord]:
        """Decompress every pending archive of one timestep; returns all known records of it."""
        label = run_label(model_run, timestep)
        now = datetime.now(timezone.utc)
        window = timedelta(hours=DOWNLOAD_RETRY_WINDOW_HOURS)

        records: List[FileRecord] = []
        pending: List[FileRecord] = []
        abandoned: List[FileRecord] = []
        for parameter in Parameter:
            record = self.tracker.get(model_run, timestep, parameter)
            if record is None:
                continue
            records.append(record)
            if record.is_processable:
                if needs_decompression(record):
                    pending.append(record)
            elif is_abandoned(record, now, MAX_DOWNLOAD_FAILS, window):
                if self.config.delete_downloaded_files:
                    logger.debug(f"Delete file {record.name} because it did not have a valid size or content.")
                    abandoned.append(record)
                else:
                    logger.debug(f"File {record.name} did not have a valid size or content. "
                                 f"If you want to delete it pass --delete as argument!")

        self.retention.erase(abandoned, label)
        results = self.decompression.run(pending)
        self.tracker.count("decompressed", sum(results))
        return records

    def convert_timestep(self, model_run: datetime, timestep: int, records: List[FileRecord]):
        """Extract, merge, persist and validate the decompressed files of one timestep."""
        label = run_label(model_run, timestep)
        candidates = [r for r in records
                      if r.decompressed and not r.persisted and r.validity is not FileValidity.INVALID]
        if not candidates:
            logger.debug(f"{label} Skipped")
            self.tracker.upsert_all(records)
            return

        logger.info(f"{label} Parsing files")
        tic = time.time()
        timestamp = absolute_timestamp(model_run, timestep)
        results, errors = self.extraction.drain(self.extraction.submit(candidates), label)
        self.tracker.count("extracted", sum(1 for r in results if r.valid))
        observations, has_new_values = build_observations(self.coordinates, timestamp, results)
        logger.info(f"{label} Parsing completed ({time.time() - tic:.0f}s)")

        if not has_new_values or errors:
            logger.warning(f"{label} Could not parse any new values or an error occurred during parsing "
                           f"(maybe the files are missing?). Skipped.")
            self.tracker.upsert_all(records)
            self.store.renew_session()
            return

        logger.info(f"{label} Checking for previous entries ...")
        tic = time.time()
        observations = merge_with_persisted(observations, self.store, self.config.interpolation_ratio)
        logger.info(f"{label} Checking done ({time.time() - tic:.0f}s)")

        logger.info(f"{label} Persisting entities ...")
        tic = time.time()
        written, failed = self.persistence.upsert(observations, label)
        logger.info(f"{label} Persisted {written} entities ({time.time() - tic:.0f}s)")

        if failed:
            logger.error(f"{label} {failed} batch(es) failed, files stay unpersisted")
        else:
            logger.info(f"{label} Starting validation ...")
            persisted = validate_records(candidates, len(self.coordinates),
                                         self.config.fault_tolerance, label)
            self.tracker.count("persisted", len(persisted))

        if self.config.delete_downloaded_files:
            logger.info(f"{label} Argument for file deletion has been passed. Deleting files ...")
            self.retention.erase(candidates, label)
        self.tracker.upsert_all(records)

    def shutdown(self):
        grace = self.config.shutdown_grace_seconds
        for pool in (self.decompression_pool, self.extraction_pool,
                     self.persistence_pool, self.erasure_pool):
            pool.shutdown(grace)
        self.store.close()
        logger.info("Converter shut down")
        logger.info(SEPARATOR)


def run_download(config: ConverterConfig, store: Optional[Store] = None) -> int:
    store = store or Store(config.database_url, config.database_schema, config.batch_size)
    try:
        with single_instance("downloader", config.directory):
            logger.info(SEPARATOR)
            logger.info("Downloader started")
            try:
                store.connect()
                Downloader(config, FileStateTracker(store)).run()
            except StoreUnavailableError as e:
                logger.critical(f"Download aborted: {e}")
                return 1
            finally:
                store.close()
                logger.info("Downloader shut down")
    except LockHeldError:
        logger.info("Downloader is already running.")
    return 0


def parse_model_run(value: str) -> datetime:
    try:
        return datetime.strptime(value, FILENAME_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise ConfigError(f"Model run must look like YYYYMMDDHH, got {value!r}") from e


def conversion_interval(start: Optional[str], end: Optional[str]):
    if (start is None) != (end is None):
        raise ConfigError("--from and --until must be given together")
    if start is None:
        return None, None
    first, last = parse_model_run(start), parse_model_run(end)
    if first > last:
        raise ConfigError(f"--from {start} lies after --until {end}")
    return first, last


def build_parser():
    import argparse
    parser = argparse.ArgumentParser(description="Convert ICON-EU GRIB2 files into a weather database")
    parser.add_argument("--config", type=str, default=None, help="Path to converter_config.yaml")
    parser.add_argument("-d", "--directory", type=str, help="Working directory of the downloads")
    parser.add_argument("--timesteps", type=int, help="Timesteps per model run")
    parser.add_argument("--fault-tolerance", type=float,
                        help="Maximum fraction of missing coordinates for a file to count as persisted")
    parser.add_argument("--interpolation-ratio", type=float,
                        help="Weight of the newer value when observations overlap (1 overrides)")
    parser.add_argument("--missing-value", type=str, help="Sentinel grib_get_data prints for missing values")
    parser.add_argument("--decoder", dest="decoder_path", type=str, help="Path to grib_get_data")
    parser.add_argument("--delete", dest="delete_downloaded_files", action="store_const", const=True,
                        help="Delete archives and decoded files once they are no longer needed")
    parser.add_argument("--database-url", type=str, help="SQLAlchemy database URL")
    parser.add_argument("--schema", dest="database_schema", type=str, help="Database schema")
    parser.add_argument("--batch-size", type=int, help="Rows per upsert statement")
    parser.add_argument("--file-status", dest="file_status_log", action="store_const", const=True,
                        help="Log every file state transition to filestatus.log")
    parser.add_argument("--debug", action="store_const", const=True, help="Verbose logging")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")

    sub = parser.add_subparsers(dest="command", required=True)
    convert = sub.add_parser("convert", help="Convert downloaded files")
    convert.add_argument("--from", dest="start", type=str, help="First model run (YYYYMMDDHH)")
    convert.add_argument("--until", dest="end", type=str, help="Last model run (YYYYMMDDHH)")
    sub.add_parser("download", help="Download new files from DWD OpenData")
    return parser


OVERRIDE_KEYS = (
    "directory", "timesteps", "fault_tolerance", "interpolation_ratio", "missing_value",
    "decoder_path", "delete_downloaded_files", "database_url", "database_schema",
    "batch_size", "file_status_log", "debug",
)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config, **{k: getattr(args, k) for k in OVERRIDE_KEYS})
        start, end = (conversion_interval(args.start, args.end)
                      if args.command == "convert" else (None, None))
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    set_debug(config.debug, *CONVERTER_LOGGERS)
    setup_file_status_logging(config.file_status_log)
    os.makedirs(config.directory, exist_ok=True)

    store = Store(config.database_url, config.database_schema, config.batch_size)
    if args.create_tables:
        try:
            store.connect().create_tables()
        except StoreUnavailableError as e:
            logger.critical(f"Cannot create tables: {e}")
            return 1

    if args.command == "download":
        return run_download(config, store)
    return Converter(config, store).run(start, end)


if __name__ == "__main__":
    sys.exit(main())
