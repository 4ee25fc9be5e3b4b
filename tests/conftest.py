"""Shared pytest fixtures for the converter tests."""

from __future__ import annotations

import bz2
import os
import stat
import sys
import tempfile

import pytest

CONVERTER_DIR = os.path.join(os.path.dirname(__file__), "..", "converter")
sys.path.insert(0, CONVERTER_DIR)

# Must be set before logging_config is imported
os.environ.setdefault("ICONCONV_LOG_DIR", os.path.join(tempfile.gettempdir(), "iconconv-test-logs"))

from models import CoordinateRecord  # noqa: E402
from store import Store  # noqa: E402

CATALOG = [
    (50.0, 7.0),
    (50.0, 7.0625),
    (50.0625, 7.0),
    (50.0625, 7.0625),
]

FAKE_DECODER = """#!/bin/sh
# Prints the decoded file as grib_get_data would print the GRIB2 content
for last; do :; done
cat "$last"
"""


def decoder_output(values: dict, header: str = "Latitude Longitude Value", missing: str = "null") -> str:
    """grib_get_data style text for {(lat, lon): value}; None prints the missing sentinel."""
    lines = [header]
    for (lat, lon), value in values.items():
        lines.append(f"{lat:.4f} {lon:.4f} {missing if value is None else value}")
    return "\n".join(lines) + "\n"


def write_decoded(directory: str, record, text: str) -> str:
    path = record.decoded_path(directory)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)
    return path


def write_archive(directory: str, record, text: str) -> str:
    path = record.archive_path(directory)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(bz2.compress(text.encode()))
    return path


@pytest.fixture
def store(tmp_path):
    s = Store(f"sqlite:///{tmp_path / 'icon.db'}")
    s.create_tables()
    yield s
    s.close()


@pytest.fixture
def coordinates(store):
    return store.add_coordinates([CoordinateRecord(lat, lon) for lat, lon in CATALOG])


@pytest.fixture
def downloads(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return str(path)


@pytest.fixture
def fake_decoder(tmp_path):
    """Executable named grib_get_data that echoes its last argument."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    path = bin_dir / "grib_get_data"
    path.write_text(FAKE_DECODER)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)
