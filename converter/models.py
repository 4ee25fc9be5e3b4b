"""Domain records shared by the conversion stages."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

import numpy as np

from constants import (
    ARCHIVE_SUFFIX,
    DECODED_SUFFIX,
    FILENAME_DATE_FORMAT,
    ICON_EU_BASE_URL,
    MODEL_RUN_LOG_FORMAT,
)
from parameters import PARAMETER_COUNT, Parameter


def run_label(model_run: datetime, timestep: int | None = None) -> str:
    """Log prefix, e.g. 'MR 09.10.2018 18:00 UTC - TS 01 |'."""
    label = f"MR {model_run.strftime(MODEL_RUN_LOG_FORMAT)}"
    if timestep is not None:
        label += f" - TS {timestep:02d}"
    return label + " |"


def run_folder(model_run: datetime) -> str:
    return model_run.strftime(FILENAME_DATE_FORMAT)


def file_name(model_run: datetime, timestep: int, parameter: Parameter) -> str:
    """e.g. icon-eu_europe_regular-lat-lon_single-level_2018090512_011_ASWDIFD_S"""
    return f"{parameter.prefix}{run_folder(model_run)}_{timestep:03d}_{parameter.icon_name}"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FileValidity(Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    INVALID = "invalid"

    @classmethod
    def from_flag(cls, flag: Optional[bool]) -> "FileValidity":
        if flag is None:
            return cls.UNKNOWN
        return cls.VALID if flag else cls.INVALID

    def as_flag(self) -> Optional[bool]:
        if self is FileValidity.UNKNOWN:
            return None
        return self is FileValidity.VALID


@dataclass
class FileRecord:
    """Lifecycle state of one downloaded file (model run, timestep, parameter)."""

    model_run: datetime
    timestep: int
    parameter: Parameter
    download_fails: int = 0
    sufficient_size: bool = False
    download_date: Optional[datetime] = None
    decompressed: bool = False
    missing_coordinates: int = 0
    validity: FileValidity = FileValidity.UNKNOWN
    persisted: bool = False
    archive_deleted: bool = False
    decoded_file_deleted: bool = False

    def __post_init__(self):
        self.model_run = ensure_utc(self.model_run)

    @property
    def name(self) -> str:
        return file_name(self.model_run, self.timestep, self.parameter)

    @property
    def key(self) -> tuple[datetime, int, Parameter]:
        return self.model_run, self.timestep, self.parameter

    @property
    def decoded_name(self) -> str:
        return self.name + DECODED_SUFFIX

    @property
    def archive_name(self) -> str:
        return self.decoded_name + ARCHIVE_SUFFIX

    @property
    def folder(self) -> str:
        return run_folder(self.model_run)

    def archive_path(self, directory: str) -> str:
        return os.path.join(directory, self.folder, self.archive_name)

    def decoded_path(self, directory: str) -> str:
        return os.path.join(directory, self.folder, self.decoded_name)

    @property
    def url(self) -> str:
        return (f"{ICON_EU_BASE_URL}{self.model_run.hour:02d}/"
                f"{self.parameter.source_name.lower()}/{self.archive_name}")

    @property
    def label(self) -> str:
        return run_label(self.model_run, self.timestep)

    @property
    def is_processable(self) -> bool:
        """Sufficient size and not known to be invalid."""
        return self.sufficient_size and self.validity is not FileValidity.INVALID

    def missing_ratio(self, total_coordinates: int) -> float:
        if total_coordinates <= 0:
            return 1.0
        return self.missing_coordinates / total_coordinates


@dataclass(frozen=True)
class CoordinateRecord:
    """Grid point of the coordinate catalog. Equality only looks at latitude and longitude."""

    latitude: float
    longitude: float
    id: Optional[int] = field(default=None, compare=False)
    coordinate_type: str = field(default="ICON", compare=False)

    @property
    def lat_lon(self) -> tuple[float, float]:
        return self.latitude, self.longitude


@dataclass
class ExtractionResult:
    parameter: Parameter
    # Keys are exactly the catalog coordinates; None when the file yielded nothing usable
    values: Optional[Dict[CoordinateRecord, Optional[float]]]
    valid: bool

    def value(self, coordinate: CoordinateRecord) -> Optional[float]:
        if self.values is None:
            return None
        return self.values.get(coordinate)


def _empty_slots() -> np.ndarray:
    return np.full(PARAMETER_COUNT, np.nan, dtype=np.float64)


def interpolate(earlier: Optional[float], newer: Optional[float], ratio: float) -> Optional[float]:
    """Weighted merge of two observations of the same slot; None never wins over a value."""
    if newer is None:
        return earlier
    if earlier is None:
        return newer
    return earlier * (1.0 - ratio) + newer * ratio


def interpolate_slots(earlier: np.ndarray, newer: np.ndarray, ratio: float) -> np.ndarray:
    """Vectorised interpolate() over slot vectors, NaN standing for a missing value."""
    blended = earlier * (1.0 - ratio) + newer * ratio
    return np.where(np.isnan(newer), earlier, np.where(np.isnan(earlier), newer, blended))


@dataclass(eq=False)
class Observation:
    """All parameter values of one coordinate at one absolute timestamp."""

    coordinate: CoordinateRecord
    timestamp: datetime
    values: np.ndarray = field(default_factory=_empty_slots)

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    def get(self, parameter: Parameter) -> Optional[float]:
        value = self.values[parameter.slot]
        return None if np.isnan(value) else float(value)

    def set(self, parameter: Parameter, value: Optional[float]) -> bool:
        """Set a slot. None and NaN never overwrite; returns whether a value was written."""
        if value is None or np.isnan(value):
            return False
        self.values[parameter.slot] = value
        return True

    def interpolate_from(self, newer: "Observation", ratio: float):
        self.values = interpolate_slots(self.values, newer.values, ratio)

    def has_values(self) -> bool:
        return bool(np.any(~np.isnan(self.values)))

    def as_row(self) -> dict:
        row = {p.column: self.get(p) for p in Parameter}
        row["coordinate_id"] = self.coordinate.id
        row["datum"] = self.timestamp
        return row


def absolute_timestamp(model_run: datetime, timestep: int) -> datetime:
    return ensure_utc(model_run) + timedelta(hours=timestep)
