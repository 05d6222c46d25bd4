"""
Material stream data model.

A Stream carries total molar flow, temperature, pressure and an overall
composition over the flowsheet-wide species list.  Every scalar and every
composition entry has an independent "known" flag: known values are caller
inputs, everything else is solved and seeded from the current value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np


@dataclass
class KnownFlags:
    """Which stream attributes are fixed by the caller."""

    molar_flow: bool = False
    temperature: bool = False
    pressure: bool = False
    zs: List[bool] = field(default_factory=list)

    def any_zs_unknown(self) -> bool:
        return not all(self.zs)


@dataclass(eq=False)
class Stream:
    """A material stream (molar basis, SI units: mol/s, K, Pa)."""

    name: str
    species: List[str]

    molar_flow: float = math.nan  # mol/s
    temperature: float = math.nan  # K
    pressure: float = math.nan  # Pa
    zs: np.ndarray = field(default=None)  # mole fractions

    known: KnownFlags = field(default=None)

    def __post_init__(self) -> None:
        n = len(self.species)
        if self.zs is None:
            self.zs = np.full(n, math.nan)
        else:
            self.zs = np.asarray(self.zs, dtype=float).copy()
        if self.known is None:
            self.known = KnownFlags(zs=[False] * n)

    @property
    def n_species(self) -> int:
        return len(self.species)

    # ------------------------------------------------------------------
    # Known values and guesses
    # ------------------------------------------------------------------

    def fix(
        self,
        molar_flow: Optional[float] = None,
        temperature: Optional[float] = None,
        pressure: Optional[float] = None,
        zs: Optional[Sequence[float]] = None,
    ) -> "Stream":
        """Set values and mark them as known inputs."""
        if molar_flow is not None:
            self.molar_flow = float(molar_flow)
            self.known.molar_flow = True
        if temperature is not None:
            self.temperature = float(temperature)
            self.known.temperature = True
        if pressure is not None:
            self.pressure = float(pressure)
            self.known.pressure = True
        if zs is not None:
            self.zs = np.asarray(zs, dtype=float).copy()
            self.known.zs = [True] * self.n_species
        return self

    def guess(
        self,
        molar_flow: Optional[float] = None,
        temperature: Optional[float] = None,
        pressure: Optional[float] = None,
        zs: Optional[Sequence[float]] = None,
    ) -> "Stream":
        """Set initial values without touching the known flags."""
        if molar_flow is not None:
            self.molar_flow = float(molar_flow)
        if temperature is not None:
            self.temperature = float(temperature)
        if pressure is not None:
            self.pressure = float(pressure)
        if zs is not None:
            self.zs = np.asarray(zs, dtype=float).copy()
        return self

    def component_flows(self) -> np.ndarray:
        """Species molar flows n_i = n_dot * y_i."""
        return self.molar_flow * self.zs

    def as_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "name": self.name,
            "molar_flow": self.molar_flow,
            "temperature": self.temperature,
            "pressure": self.pressure,
        }
        for sp, y in zip(self.species, self.zs):
            row[f"y_{sp}"] = float(y)
        for sp, n in zip(self.species, self.component_flows()):
            row[f"n_{sp}"] = float(n)
        return row


# ---------------------------------------------------------------------------
# Field accessors for manipulated variables and constraints
# ---------------------------------------------------------------------------


def has_field(owner: Any, field_name: str) -> bool:
    return owner is not None and bool(field_name) and hasattr(owner, field_name)


def get_field_value(owner: Any, field_name: str, index: Optional[int] = None) -> float:
    """Read ``owner.field`` or ``owner.field[index]``."""
    raw = getattr(owner, field_name)
    if index is None:
        return float(raw)
    return float(raw[index])


def set_field_value(owner: Any, field_name: str, value: float, index: Optional[int] = None) -> None:
    """Write ``owner.field`` or ``owner.field[index]`` in place."""
    if index is None:
        setattr(owner, field_name, float(value))
        return
    arr = getattr(owner, field_name)
    if isinstance(arr, tuple):
        arr = list(arr)
        arr[index] = float(value)
        setattr(owner, field_name, tuple(arr))
    else:
        arr[index] = float(value)
