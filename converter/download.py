"""Downloader: fetch ICON-EU archives from DWD OpenData and record their state."""

from __future__ import annotations

import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import requests

from constants import (
    COPY_CHUNK_BYTES,
    DOWNLOAD_RETRY_WINDOW_HOURS,
    MAX_DOWNLOAD_FAILS,
    MODEL_RUN_INTERVAL_HOURS,
    PUBLICATION_DELAY_HOURS,
)
from file_state import FileStateTracker, log_status
from models import FileRecord, run_label
from parameters import MIN_SIZE, Parameter
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="downloader")

HEAD_TIMEOUT_SECONDS = 15
GET_TIMEOUT_SECONDS = 120


def newest_possible_model_run(now: datetime) -> datetime:
    """`now - 3h` rounded down to a multiple of 3 hours."""
    now = now.astimezone(timezone.utc)
    latest = now - timedelta(hours=PUBLICATION_DELAY_HOURS + now.hour % MODEL_RUN_INTERVAL_HOURS)
    return latest.replace(minute=0, second=0, microsecond=0)


def should_attempt(record: FileRecord, earliest: datetime) -> bool:
    """A file is fetched while it is too small, has failed fewer than 3 times and its run is recent.

    The failure counter and the age of the model run are independent gates.
    """
    if record.sufficient_size:
        return False
    if record.download_fails >= MAX_DOWNLOAD_FAILS:
        return False
    return record.model_run >= earliest


class Downloader:
    def __init__(self, config, tracker: FileStateTracker, session: Optional[requests.Session] = None):
        self.config = config
        self.tracker = tracker
        self.session = session or requests.Session()
        self.downloaded = 0

    def is_url_reachable(self, url: str) -> bool:
        try:
            resp = self.session.head(url, timeout=HEAD_TIMEOUT_SECONDS, allow_redirects=False)
        except requests.RequestException as e:
            logger.warning(f"Exception during url reachable check occurred: {e}")
            return False
        return resp.status_code == 200

    def _fetch(self, url: str, dest: str) -> int:
        """Stream `url` into `dest`; returns the number of bytes written."""
        written = 0
        with self.session.get(url, timeout=GET_TIMEOUT_SECONDS, stream=True) as resp:
            resp.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=COPY_CHUNK_BYTES):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        return written

    def download_file(self, record: FileRecord, earliest: datetime) -> bool:
        """Download one archive. Returns True when the file is usable or needs no attempt."""
        if not should_attempt(record, earliest):
            return True

        success = False
        dest = record.archive_path(self.config.directory)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        try:
            if self.is_url_reachable(record.url):
                size = self._fetch(record.url, dest)
                if size < MIN_SIZE:
                    logger.warning(f"File {record.name} is too small ({size}B)")
                else:
                    record.sufficient_size = True
                    log_status(record, "ss", "sufficient_size = true", "Download success")
                    record.download_date = datetime.now(timezone.utc)
                    log_status(record, "dd", "download_date = now", "Download success")
                    record.archive_deleted = False
                    log_status(record, "adf", "archivefile_deleted = false", "Download success")
                    success = True
                    self.downloaded += 1
        except (requests.RequestException, OSError) as e:
            logger.error(f"Could not download {record.name} ({e})")

        if not success:
            record.download_fails += 1
            log_status(record, "idf", "incremented download_fails", "failed Download")
        self.tracker.upsert(record)
        return success

    def download(self, model_run: datetime, parameter: Parameter, earliest: datetime) -> bool:
        """Download every timestep of one parameter of one model run."""
        success = True
        for timestep in range(self.config.timesteps):
            record = self.tracker.get_or_create(model_run, timestep, parameter)
            if not self.download_file(record, earliest):
                success = False
        return success

    def retry_failed(self, earliest: datetime) -> datetime:
        """Revisit failed downloads since `earliest`; returns the newest model run among them."""
        logger.info("############################## Retry missing files ##############################")
        newest = earliest
        failed = self.tracker.failed_downloads(earliest)
        for record in failed:
            if record.model_run > newest:
                newest = record.model_run
                logger.info(f"Current model run: {run_label(newest)}")
            self.download_file(record, earliest)
        logger.info(f"Done. Revisited {len(failed)} missing files, downloaded {self.downloaded}.")
        self.downloaded = 0
        return newest

    def run(self, now: Optional[datetime] = None):
        now = now or datetime.now(timezone.utc)
        newest_possible = newest_possible_model_run(now)
        earliest = newest_possible - timedelta(hours=DOWNLOAD_RETRY_WINDOW_HOURS)

        current = self.retry_failed(earliest) + timedelta(hours=MODEL_RUN_INTERVAL_HOURS)
        success = True
        while current <= newest_possible and success:
            logger.info(f"################################ {run_label(current)} ################################")
            for parameter in Parameter:
                tic = time.time()
                if not self.download(current, parameter, earliest):
                    success = False
                logger.info(f"{parameter} done after {time.time() - tic:.0f}s, "
                            f"downloaded {self.downloaded} files.")
                self.downloaded = 0
            current += timedelta(hours=MODEL_RUN_INTERVAL_HOURS)
