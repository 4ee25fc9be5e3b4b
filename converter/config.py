"""Converter configuration: YAML defaults, ICONCONV_* environment overrides, CLI overrides."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import Optional

import yaml

from constants import SHUTDOWN_GRACE_SECONDS, UPSERT_BATCH_SIZE

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.environ.get("ICONCONV_CONFIG", os.path.join(SCRIPT_DIR, "converter_config.yaml"))
ENV_PREFIX = "ICONCONV_"
DECODER_EXECUTABLE = "grib_get_data"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ConverterConfig:
    directory: str = "downloads"
    timesteps: int = 12
    fault_tolerance: float = 0.33
    interpolation_ratio: float = 0.67
    missing_value: str = "null"
    decoder_path: str = "/usr/local/bin/grib_get_data"
    delete_downloaded_files: bool = False
    database_url: str = "postgresql://127.0.0.1:5432/dwd"
    database_schema: Optional[str] = None
    batch_size: int = UPSERT_BATCH_SIZE
    min_latitude: float = 45.71457
    max_latitude: float = 57.65129
    min_longitude: float = 4.29694
    max_longitude: float = 18.98635
    shutdown_grace_seconds: float = SHUTDOWN_GRACE_SECONDS
    file_status_log: bool = False
    debug: bool = False

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.min_latitude, self.max_latitude, self.min_longitude, self.max_longitude

    def summary(self, verbose: bool = False) -> list[str]:
        """Program arguments for the startup log (credentials stripped from the URL)."""
        lines = [
            f'directory = "{self.directory}"',
            f"interpolation_ratio = {self.interpolation_ratio}",
            f'database = "{self.database_url.split("@")[-1]}"',
            f'decoder = "{self.decoder_path}"',
        ]
        if verbose:
            lines += [
                f"timesteps = {self.timesteps}",
                f"fault_tolerance = {self.fault_tolerance}",
                f'missing_value = "{self.missing_value}"',
                f"delete_downloaded_files = {self.delete_downloaded_files}",
            ]
        return lines


def _flatten(raw: dict) -> dict:
    """Map the nested YAML layout onto ConverterConfig field names."""
    flat = {k: v for k, v in raw.items() if k not in ("database", "bounds")}
    database = raw.get("database") or {}
    if "url" in database:
        flat["database_url"] = database["url"]
    if "schema" in database:
        flat["database_schema"] = database["schema"]
    if "batch_size" in database:
        flat["batch_size"] = database["batch_size"]
    flat.update(raw.get("bounds") or {})
    return flat


def _coerce(value, target_type):
    if value is None:
        return None
    if target_type in (bool, "bool"):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if target_type in (int, "int"):
        return int(value)
    if target_type in (float, "float"):
        return float(value)
    return str(value)


_FIELD_TYPES = {
    f.name: f.type.replace("Optional[", "").rstrip("]") if isinstance(f.type, str) else f.type
    for f in dataclasses.fields(ConverterConfig)
}


def _env_overrides() -> dict:
    overrides = {}
    for name, ftype in _FIELD_TYPES.items():
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            overrides[name] = _coerce(raw, ftype)
    return overrides


def normalize_decoder_path(path: str) -> str:
    """Strip quotes and trailing separators; point directories at grib_get_data."""
    path = path.replace('"', "").replace("'", "").strip()
    path = path.rstrip(os.sep) if path != os.sep else path
    if not path.endswith(DECODER_EXECUTABLE):
        path = os.path.join(path, DECODER_EXECUTABLE) if path else DECODER_EXECUTABLE
    return path


def normalize_directory(path: str) -> str:
    path = path.replace('"', "").replace("'", "").strip()
    return path.rstrip(os.sep) or path


def validate(config: ConverterConfig) -> ConverterConfig:
    if not 0.0 <= config.interpolation_ratio <= 1.0:
        raise ConfigError(f"interpolation_ratio must lie in [0, 1], got {config.interpolation_ratio}")
    if not 0.0 <= config.fault_tolerance <= 1.0:
        raise ConfigError(f"fault_tolerance must lie in [0, 1], got {config.fault_tolerance}")
    if config.timesteps < 1:
        raise ConfigError(f"timesteps must be at least 1, got {config.timesteps}")
    if config.batch_size < 1:
        raise ConfigError(f"batch_size must be at least 1, got {config.batch_size}")
    if config.min_latitude > config.max_latitude or config.min_longitude > config.max_longitude:
        raise ConfigError(f"Empty coordinate rectangle: {config.bounds}")
    return config


def load_config(path: Optional[str] = None, **overrides) -> ConverterConfig:
    """Load configuration from YAML, then apply environment and explicit overrides.

    Overrides whose value is None are ignored so argparse defaults do not mask the file.
    """
    path = path or CONFIG_PATH
    raw = {}
    if os.path.exists(path):
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

    values = _flatten(raw)
    values.update(_env_overrides())
    values.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(values) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {unknown}")

    values = {k: _coerce(v, _FIELD_TYPES[k]) for k, v in values.items()}
    if "decoder_path" in values:
        values["decoder_path"] = normalize_decoder_path(values["decoder_path"])
    if "directory" in values:
        values["directory"] = normalize_directory(values["directory"])
    return validate(ConverterConfig(**values))
