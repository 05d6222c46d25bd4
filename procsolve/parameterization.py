"""
Map between physical stream state and the flat solver vector.

Every point of the flat space maps back to a physically valid state:

  - molar flow      packed as log(flow), unpacked through a clamped exp
  - composition     k-1 gauge-fixed logits for k unknown fractions
  - T, P            packed as-is, clamped to safety bounds on unpack
  - manipulated     packed as-is, clamped to the declared bounds on unpack

The map is rebuilt from the current known/unknown flags at the start of each
solve and is immutable afterwards.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .errors import ConfigurationError
from .simplex import normalize_simplex, pack_logits, unpack_logits
from .stream import Stream, get_field_value, has_field, set_field_value


class UnknownKind(str, Enum):
    FLOW_LOG = "flow_log"
    COMPOSITION_LOGIT = "composition_logit"
    TEMPERATURE = "temperature"
    PRESSURE = "pressure"
    MANIPULATED = "manipulated"


# Fallback guesses for missing or invalid initial values
DEFAULT_FLOW_GUESS = 1.0  # mol/s
DEFAULT_T_GUESS = 300.0  # K
DEFAULT_P_GUESS = 1e5  # Pa


@dataclass(frozen=True)
class StateBounds:
    """Safety bounds applied when unpacking stream variables."""

    flow_min: float = 1e-12
    flow_max: float = 1e8
    t_min: float = 1.0
    t_max: float = 5000.0
    p_min: float = 1.0
    p_max: float = 1e9

    @property
    def log_flow_min(self) -> float:
        return math.log(self.flow_min)

    @property
    def log_flow_max(self) -> float:
        return math.log(self.flow_max)


@dataclass
class ManipulatedVariable:
    """An extra scalar unknown declared by a contributor (design variable)."""

    owner: Any
    field: str
    index: Optional[int] = None
    lower: float = -math.inf
    upper: float = math.inf
    initial: float = math.nan
    label: str = ""

    def clamp(self, value: float) -> float:
        return min(max(value, self.lower), self.upper)

    def describe(self) -> str:
        if self.label:
            return self.label
        owner_name = getattr(self.owner, "id", None) or getattr(self.owner, "name", None) \
            or type(self.owner).__name__
        suffix = f"[{self.index}]" if self.index is not None else ""
        return f"{owner_name}.{self.field}{suffix}"


@dataclass(frozen=True)
class UnknownEntry:
    """One slot of the flat vector and its physical meaning."""

    slot: int
    kind: UnknownKind
    label: str
    stream_index: Optional[int] = None
    sub_index: Optional[int] = None
    variable: Optional[ManipulatedVariable] = None


@dataclass(frozen=True)
class CompositionBlock:
    """The unknown fractions of one stream and their logit slots."""

    stream_index: int
    unknown_indices: Tuple[int, ...]
    start: int
    n_logits: int
    mass: float  # 1 - sum of known fractions


# ---------------------------------------------------------------------------
# Known-flag queries
# ---------------------------------------------------------------------------


def unknown_composition_indices(stream: Stream) -> List[int]:
    """Indices of composition entries the solver must determine."""
    n = stream.n_species
    flags = stream.known.zs
    if len(flags) != n:
        return list(range(n))
    return [i for i, k in enumerate(flags) if not k]


def validate_manipulated(var: ManipulatedVariable, source: str = "") -> None:
    """Raise ConfigurationError for a declaration that cannot be written."""
    where = f" (declared by {source})" if source else ""
    if not has_field(var.owner, var.field):
        raise ConfigurationError(
            f"Manipulated variable field '{var.field}' not found on "
            f"{type(var.owner).__name__}{where}"
        )
    if var.lower > var.upper:
        raise ConfigurationError(
            f"Manipulated variable {var.describe()} has lower bound {var.lower} "
            f"above upper bound {var.upper}{where}"
        )
    try:
        get_field_value(var.owner, var.field, var.index)
    except (IndexError, KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Manipulated variable {var.describe()} is not a readable scalar{where}: {exc}"
        ) from exc


def collect_manipulated(contributors: Iterable[Any]) -> List[ManipulatedVariable]:
    """Gather and validate every contributor's extra unknowns, in order."""
    out: List[ManipulatedVariable] = []
    for c in contributors:
        specs_fn = getattr(c, "unknown_specs", None)
        if specs_fn is None:
            continue
        specs = specs_fn() or []
        for var in specs:
            if not isinstance(var, ManipulatedVariable):
                raise ConfigurationError(
                    f"{type(c).__name__}.unknown_specs() must return ManipulatedVariable "
                    f"entries, got {type(var).__name__}"
                )
            validate_manipulated(var, source=type(c).__name__)
            out.append(var)
    return out


# ---------------------------------------------------------------------------
# Unknown map
# ---------------------------------------------------------------------------


class UnknownMap:
    """Bijection between stream/manipulated state and the flat vector x."""

    def __init__(
        self,
        streams: Sequence[Stream],
        entries: List[UnknownEntry],
        blocks: List[CompositionBlock],
        bounds: StateBounds,
    ) -> None:
        self.streams = list(streams)
        self.entries = entries
        self.blocks = blocks
        self.bounds = bounds
        self._scalar_entries = [e for e in entries if e.kind != UnknownKind.COMPOSITION_LOGIT]

    @property
    def size(self) -> int:
        return len(self.entries)

    @property
    def labels(self) -> List[str]:
        return [e.label for e in self.entries]

    def kinds(self) -> List[UnknownKind]:
        return [e.kind for e in self.entries]

    def count(self, kind: UnknownKind) -> int:
        return sum(1 for e in self.entries if e.kind == kind)

    # ------------------------------------------------------------------
    # Build / pack
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        streams: Sequence[Stream],
        contributors: Iterable[Any] = (),
        bounds: Optional[StateBounds] = None,
    ) -> Tuple["UnknownMap", np.ndarray]:
        """Build the map from current known flags and return it with x0."""
        bounds = bounds or StateBounds()
        entries: List[UnknownEntry] = []
        blocks: List[CompositionBlock] = []
        x: List[float] = []

        def _add(kind, value, label, si=None, sub=None, var=None):
            entries.append(UnknownEntry(
                slot=len(x), kind=kind, label=label,
                stream_index=si, sub_index=sub, variable=var,
            ))
            x.append(float(value))

        for si, s in enumerate(streams):
            if not s.known.molar_flow:
                nd = _safe_init(s.molar_flow, DEFAULT_FLOW_GUESS)
                if nd <= 0:
                    nd = DEFAULT_FLOW_GUESS
                _add(UnknownKind.FLOW_LOG, math.log(max(nd, bounds.flow_min)),
                     f"{s.name}.molar_flow", si)

            unk = unknown_composition_indices(s)
            if unk:
                if len(s.zs) != s.n_species:
                    logger.warning(
                        "Stream '{}': composition guess has length {} (expected {}), using uniform",
                        s.name, len(s.zs), s.n_species,
                    )
                    s.zs = np.full(s.n_species, 1.0 / s.n_species)
                    unk = list(range(s.n_species))
                known_idx = [i for i in range(s.n_species) if i not in set(unk)]
                mass = 1.0 - float(np.sum(s.zs[known_idx])) if known_idx else 1.0
                mass = max(mass, 0.0)

                y0 = s.zs[unk]
                if not np.all(np.isfinite(y0)) or np.sum(np.maximum(y0, 0.0)) <= 0:
                    y0 = np.full(len(unk), 1.0 / len(unk))
                logits = pack_logits(normalize_simplex(y0))
                start = len(x)
                for j, a in zip(unk[:-1], logits):
                    _add(UnknownKind.COMPOSITION_LOGIT, a,
                         f"{s.name}.zs[{s.species[j]}]", si, j)
                blocks.append(CompositionBlock(
                    stream_index=si, unknown_indices=tuple(unk),
                    start=start, n_logits=len(unk) - 1, mass=mass,
                ))

            if not s.known.temperature:
                _add(UnknownKind.TEMPERATURE, _safe_init(s.temperature, DEFAULT_T_GUESS),
                     f"{s.name}.temperature", si)
            if not s.known.pressure:
                _add(UnknownKind.PRESSURE, _safe_init(s.pressure, DEFAULT_P_GUESS),
                     f"{s.name}.pressure", si)

        for var in collect_manipulated(contributors):
            _add(UnknownKind.MANIPULATED, var.clamp(_initial_value(var)),
                 var.describe(), var=var)

        return cls(streams, entries, blocks, bounds), np.asarray(x, dtype=float)

    # ------------------------------------------------------------------
    # Unpack
    # ------------------------------------------------------------------

    def unpack(self, x: Sequence[float]) -> None:
        """Write a candidate vector back into streams and owners."""
        x = np.asarray(x, dtype=float)
        if x.shape != (self.size,):
            raise ConfigurationError(
                f"Solver vector has shape {x.shape}, unknown map expects ({self.size},)"
            )
        b = self.bounds
        for e in self._scalar_entries:
            v = x[e.slot]
            if e.kind == UnknownKind.FLOW_LOG:
                z = min(max(v, b.log_flow_min), b.log_flow_max)
                self.streams[e.stream_index].molar_flow = math.exp(z)
            elif e.kind == UnknownKind.TEMPERATURE:
                self.streams[e.stream_index].temperature = min(max(v, b.t_min), b.t_max)
            elif e.kind == UnknownKind.PRESSURE:
                self.streams[e.stream_index].pressure = min(max(v, b.p_min), b.p_max)
            elif e.kind == UnknownKind.MANIPULATED:
                var = e.variable
                set_field_value(var.owner, var.field, var.clamp(v), var.index)

        for blk in self.blocks:
            s = self.streams[blk.stream_index]
            logits = x[blk.start:blk.start + blk.n_logits]
            s.zs[list(blk.unknown_indices)] = unpack_logits(logits, blk.mass)


def _safe_init(value: float, fallback: float) -> float:
    if value is None:
        return fallback
    try:
        v = float(value)
    except (TypeError, ValueError):
        return fallback
    return v if math.isfinite(v) else fallback


def _initial_value(var: ManipulatedVariable) -> float:
    if math.isfinite(var.initial):
        return var.initial
    current = get_field_value(var.owner, var.field, var.index)
    if math.isfinite(current):
        return current
    lo, hi = var.lower, var.upper
    if math.isfinite(lo) and math.isfinite(hi):
        return 0.5 * (lo + hi)
    if math.isfinite(lo):
        return lo
    if math.isfinite(hi):
        return hi
    return 0.0
