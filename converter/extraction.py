"""Extraction stage: run grib_get_data on a decoded file and map its values onto the catalog.

grib_get_data prints a header line followed by one "<lat> <lon> <value>" line per
grid point, the value being the configured missing-value sentinel where the
field is undefined.
"""

from __future__ import annotations

import math
import os
import subprocess
import tempfile
import threading
from concurrent.futures import Future, wait
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from constants import DECODER_HEADERS
from file_state import log_status
from models import CoordinateRecord, ExtractionResult, FileRecord, FileValidity
from pools import WorkerPool
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")

RawValues = Dict[Tuple[float, float], Optional[float]]

# Generous upper bound for decoding a single ICON-EU field
DECODER_TIMEOUT_SECONDS = 600


class ExtractionError(RuntimeError):
    pass


class DecodedFileMissingError(ExtractionError):
    """The decoded GRIB2 file is not on disk."""


class DecoderLaunchError(ExtractionError):
    """grib_get_data could not be started."""


class DecoderOutputError(ExtractionError):
    """grib_get_data produced output that cannot be parsed."""


def valid_header(line: Optional[str]) -> bool:
    return line is not None and line.strip() in DECODER_HEADERS


def parse_decoder_output(lines: Iterable[str], missing_value: str, label: str = "") -> RawValues:
    """Parse grib_get_data output into {(lat, lon): value}.

    Raises DecoderOutputError when the first line is not a known header. Lines
    that do not split into three tokens are skipped. Non-finite values count as missing.
    """
    values: RawValues = {}
    it = iter(lines)
    header = next(it, None)
    if not valid_header(header):
        raise DecoderOutputError(f"Unexpected start of file: {header!r}")

    sentinel = missing_value.lower()
    for line in it:
        tokens = line.split()
        if len(tokens) != 3:
            logger.debug(f"{label} Line {line.rstrip()!r} could not be split correctly")
            continue
        try:
            lat = float(tokens[0])
            lon = float(tokens[1])
            value = None if tokens[2].lower() == sentinel else float(tokens[2])
            if value is not None and not math.isfinite(value):
                value = None
        except ValueError:
            logger.debug(f"{label} Line {line.rstrip()!r} is not numeric")
            continue
        values[(lat, lon)] = value
    return values


def build_decoder_command(decoder_path: str, path: str, missing_value: Optional[str] = None,
                          level: Optional[int] = None) -> List[str]:
    command = [decoder_path]
    if missing_value:
        command += ["-m", missing_value]
    if level:
        command += ["-w", f"bottomLevel={level}"]
    command.append(path)
    return command


def run_decoder(command: List[str], missing_value: str, label: str = "") -> RawValues:
    """Run the decoder and parse its standard output line by line.

    Undecodable bytes are replaced, not raised. Non-empty stderr and non-zero exit
    codes are logged; the parsed output decides validity.
    """
    logger.debug(f"Executing command {' '.join(command)!r}")
    with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stderr:
        try:
            proc = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr,
                                    encoding="utf-8", errors="replace")
        except OSError as e:
            raise DecoderLaunchError(
                f"{e}. Is eccodes (https://confluence.ecmwf.int/display/ECC) installed and does the "
                f"decoder path point to grib_get_data (--decoder <path-to-grib_get_data>)?"
            ) from e

        timed_out = threading.Event()

        def kill():
            timed_out.set()
            proc.kill()

        timer = threading.Timer(DECODER_TIMEOUT_SECONDS, kill)
        timer.start()
        try:
            with proc:
                try:
                    values = parse_decoder_output(proc.stdout, missing_value, label)
                except DecoderOutputError:
                    proc.kill()
                    raise
        finally:
            timer.cancel()

        if timed_out.is_set():
            raise DecoderOutputError(f"Decoder did not finish within {DECODER_TIMEOUT_SECONDS}s")
        stderr.seek(0)
        errors = stderr.read().strip()

    if errors:
        logger.error(f"{label} Error(s) at command execution: {errors!r}")
    if proc.returncode != 0:
        logger.error(f"{label} Command execution returned {proc.returncode}")
    else:
        logger.debug(f"{label} Command execution returned 0")
    return values


def rekey_to_catalog(raw: RawValues, coordinates: Sequence[CoordinateRecord]) -> Tuple[Dict[CoordinateRecord, Optional[float]], int]:
    """Map raw (lat, lon) values onto catalog coordinates.

    Returns the catalog-keyed map and the number of catalog coordinates the decoder did not emit.
    """
    mapped: Dict[CoordinateRecord, Optional[float]] = {}
    missing = 0
    for coordinate in coordinates:
        key = coordinate.lat_lon
        if key not in raw:
            missing += 1
        mapped[coordinate] = raw.get(key)
    return mapped, missing


class Extractor:
    """Extracts one parameter file. Called from the extraction pool."""

    def __init__(self, directory: str, coordinates: Sequence[CoordinateRecord], decoder_path: str,
                 missing_value: str):
        if not coordinates:
            raise ExtractionError("Provided coordinates must not be empty")
        self.directory = directory
        self.coordinates = coordinates
        self.decoder_path = decoder_path
        self.missing_value = missing_value

    def command(self, record: FileRecord) -> List[str]:
        level = record.parameter.level if record.parameter.is_multi_level else None
        return build_decoder_command(self.decoder_path, record.decoded_path(self.directory),
                                     self.missing_value, level)

    def extract(self, record: FileRecord) -> ExtractionResult:
        label = record.label
        logger.debug(f"{label} Extracting {record.parameter}")
        if not os.path.exists(record.decoded_path(self.directory)):
            record.decoded_file_deleted = True
            log_status(record, "gdt", "gribfile_deleted = true", "Extractor")
            if not os.path.exists(record.archive_path(self.directory)):
                record.archive_deleted = True
                log_status(record, "adt", "archivefile_deleted = true", "Extractor")
            raise DecodedFileMissingError(
                f"Could not find file {record.name} ({record.decoded_path(self.directory)})")

        raw: Optional[RawValues] = None
        try:
            raw = run_decoder(self.command(record), self.missing_value, label)
        except DecoderLaunchError as e:
            logger.error(f"{label} {e}")
        except (DecoderOutputError, subprocess.SubprocessError) as e:
            logger.error(f"{label} {record.parameter}: {e}")

        if not raw:
            logger.warning(f"{label} Raw data file extraction for file '{record.name}' "
                           f"led to an empty or null map")
            record.missing_coordinates = len(self.coordinates)
            return ExtractionResult(record.parameter, None, False)

        values, missing = rekey_to_catalog(raw, self.coordinates)
        record.missing_coordinates = missing
        return ExtractionResult(record.parameter, values, True)


class ExtractionStage:
    def __init__(self, pool: WorkerPool, extractor: Extractor):
        self.pool = pool
        self.extractor = extractor

    def submit(self, records: Sequence[FileRecord]) -> Dict[Future, FileRecord]:
        return {self.pool.submit(self.extractor.extract, r): r for r in records}

    def drain(self, future_to_record: Dict[Future, FileRecord], label: str = "") -> Tuple[List[ExtractionResult], bool]:
        """Consume results as they complete and record each file's validity.

        Stops at the first task that raised; returns (results, errors).
        """
        results: List[ExtractionResult] = []
        for future in self.pool.completed(list(future_to_record)):
            record = future_to_record[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"{label} An error occurred during parameter extraction of "
                             f"{record.parameter}: {e}")
                # Records of unfinished tasks must not change after the timestep is abandoned
                for other in future_to_record:
                    other.cancel()
                wait(list(future_to_record))
                return results, True
            record.validity = FileValidity.VALID if result.valid else FileValidity.INVALID
            log_status(record, "vft" if result.valid else "vff",
                       f"valid_file = {str(result.valid).lower()}", "Extraction")
            results.append(result)
        return results, False
