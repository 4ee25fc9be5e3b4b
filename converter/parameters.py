"""Catalog of the ICON-EU parameters tracked by the converter.

Each parameter maps to one DWD file per model run and timestep and to one
nullable column of the weather table. Multi-level parameters are read from the
model-level files and filtered to a single bottom level when decoded.
"""

from __future__ import annotations

from enum import Enum

# Minimum plausible archive size in bytes
MIN_SIZE = 10000

PREFIX = "icon-eu_europe_regular-lat-lon_"
PREFIX_SINGLE_LEVEL = PREFIX + "single-level_"
PREFIX_MULTI_LEVEL = PREFIX + "model-level_"

# Model level -> height above ground in meter (57 = 216.516m, 58 = 131.880m, 59 = 65.677m, 60 = 20m)
LEVEL_TO_HEIGHT: dict[int, int] = {
    57: 216,
    58: 131,
    59: 65,
    60: 20,
}


class Parameter(Enum):
    ALBEDO = ("ALB_RAD", 0)  # Albedo in %
    ASOB_S = ("ASOB_S", 0)  # Net short-wave radiation flux at surface in W/m²
    DIFS_D = ("ASWDIFD_S", 0)  # Surface down solar diffuse radiation in W/m²
    DIFS_U = ("ASWDIFU_S", 0)  # Surface up diffuse radiation in W/m²
    DIRS = ("ASWDIR_S", 0)  # Direct radiation in W/m²
    P_20M = ("P", 60)  # Pressure in Pa
    P_65M = ("P", 59)
    P_131M = ("P", 58)
    SOBS_RAD = ("SOBS_RAD", 0)  # Net short-wave radiation flux at surface (instantaneous) in W/m²
    T_G = ("T_G", 0)  # Ground temperature in K
    T_2M = ("T_2M", 0)  # Temperature in K
    T_131M = ("T", 58)
    U_10M = ("U_10M", 0)  # Zonal wind in m/s
    U_20M = ("U", 60)
    U_65M = ("U", 59)
    U_131M = ("U", 58)
    U_216M = ("U", 57)
    V_10M = ("V_10M", 0)  # Meridional wind in m/s
    V_20M = ("V", 60)
    V_65M = ("V", 59)
    V_131M = ("V", 58)
    V_216M = ("V", 57)
    W_20M = ("W", 60)  # Vertical wind in m/s
    W_65M = ("W", 59)
    W_131M = ("W", 58)
    W_216M = ("W", 57)
    Z0 = ("Z0", 0)  # Surface roughness in m

    def __init__(self, source_name: str, level: int):
        self.source_name = source_name
        self.level = level

    def __str__(self) -> str:
        if self.is_multi_level:
            return f"{self.source_name}_{self.height_m}M"
        return self.source_name

    @property
    def is_multi_level(self) -> bool:
        return self.level != 0

    @property
    def height_m(self) -> int | None:
        return LEVEL_TO_HEIGHT.get(self.level)

    @property
    def icon_name(self) -> str:
        """Name used in DWD file names, e.g. ASWDIFD_S or 60_U."""
        if self.is_multi_level:
            return f"{self.level}_{self.source_name}"
        return self.source_name

    @property
    def prefix(self) -> str:
        return PREFIX_MULTI_LEVEL if self.is_multi_level else PREFIX_SINGLE_LEVEL

    @property
    def column(self) -> str:
        """Weather table column, e.g. aswdifd_s or u_131m."""
        return str(self).lower()

    @property
    def slot(self) -> int:
        """Position of this parameter in an observation's value vector."""
        return _SLOTS[self]


_SLOTS: dict[Parameter, int] = {p: i for i, p in enumerate(Parameter)}

PARAMETER_COUNT = len(_SLOTS)
