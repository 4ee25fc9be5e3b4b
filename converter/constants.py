"""Shared constants for the ICON converter.

Keep product conventions and frequently reused defaults in one place.
"""

from __future__ import annotations

import math
import os

# ICON-EU publishes a model run every 3 hours
MODEL_RUN_INTERVAL_HOURS: int = 3

# Publication delay before a model run is complete on the DWD server
PUBLICATION_DELAY_HOURS: int = 3

ICON_EU_BASE_URL: str = "https://opendata.dwd.de/weather/nwp/icon-eu/grib/"

# Run folder and file name timestamp, e.g. 2018090512
FILENAME_DATE_FORMAT: str = "%Y%m%d%H"

# Log prefix timestamp, e.g. 09.10.2018 18:00 UTC
MODEL_RUN_LOG_FORMAT: str = "%d.%m.%Y %H:%M %Z"

ARCHIVE_SUFFIX: str = ".bz2"
DECODED_SUFFIX: str = ".grib2"

# Accepted first lines of grib_get_data output (eccodes >= 2.21 drops the commas, see ECC-1197)
DECODER_HEADERS: tuple[str, ...] = ("Latitude Longitude Value", "Latitude, Longitude, Value")

# Rows per multi-row upsert / lookup statement
UPSERT_BATCH_SIZE: int = 500

# Download abandonment gates
MAX_DOWNLOAD_FAILS: int = 3
DOWNLOAD_RETRY_WINDOW_HOURS: int = 24

# Decompression chunk size
COPY_CHUNK_BYTES: int = 131072  # 128 KB

# Worker pool shares of the available CPUs. Extraction waits on a subprocess, not the CPU.
CPU_COUNT: int = os.cpu_count() or 1
DECOMPRESSION_WORKERS: int = int(os.environ.get("ICONCONV_DECOMPRESSION_WORKERS", math.ceil(CPU_COUNT / 3)))
EXTRACTION_WORKERS: int = int(os.environ.get("ICONCONV_EXTRACTION_WORKERS", math.ceil(CPU_COUNT / 2)))
PERSISTENCE_WORKERS: int = int(os.environ.get("ICONCONV_PERSISTENCE_WORKERS", math.ceil(CPU_COUNT / 3)))
ERASURE_WORKERS: int = int(os.environ.get("ICONCONV_ERASURE_WORKERS", math.ceil(CPU_COUNT / 3)))

# Seconds a pool may keep running on shutdown before pending work is cancelled
SHUTDOWN_GRACE_SECONDS: float = 60.0
