"""
Flowsheet container: streams, equation contributors and the solve entry point.

Usage::

    fs = Flowsheet(["A", "B"])
    feed = fs.add_stream(Stream("feed", fs.species).fix(10, 300, 1e5, [0.5, 0.5]))
    out = fs.add_stream(Stream("out", fs.species))
    fs.add_unit(Link(feed, out))
    result = fs.solve(tol_abs=1e-10)
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from .dof import DOFReport, check_dof
from .errors import ConfigurationError
from .parameterization import UnknownMap
from .residuals import contributor_name, contributor_residuals
from .solver import NonlinearSolver, SolverOptions, SolverResult
from .stream import Stream
from .units import DesignSpec, EquationContributor, Sink, build_unit

# Tolerance on sum(y) for fully specified compositions
SUM_TOL = 1e-6


class Flowsheet:
    """Owns the stream list and the ordered contributor list."""

    def __init__(
        self,
        species: Sequence[str],
        name: str = "flowsheet",
        options: Optional[SolverOptions] = None,
    ) -> None:
        if not species:
            raise ConfigurationError("Flowsheet needs at least one species")
        self.species = list(species)
        self.name = name
        self.options = options or SolverOptions()
        self.streams: List[Stream] = []
        self.units: List[Any] = []
        self.last_result: Optional[SolverResult] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_stream(self, stream: Stream) -> Stream:
        if any(s.name == stream.name for s in self.streams):
            raise ConfigurationError(f"Duplicate stream name '{stream.name}'")
        self.streams.append(stream)
        return stream

    def add_unit(self, unit: Any) -> Any:
        if not callable(getattr(unit, "equations", None)):
            raise ConfigurationError(f"{type(unit).__name__} has no equations() method")
        self.units.append(unit)
        return unit

    def stream(self, name: str) -> Stream:
        for s in self.streams:
            if s.name == name:
                return s
        raise KeyError(f"Stream '{name}' not found")

    def unit(self, unit_id: str) -> Any:
        for u in self.units:
            if getattr(u, "id", None) == unit_id:
                return u
        raise KeyError(f"Unit '{unit_id}' not found")

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ConfigurationError if the model is not runnable.

        Known values must be physical.  Contributors are evaluated once at the
        seeded initial point and must return finite residuals.
        """
        if not self.streams:
            raise ConfigurationError("Flowsheet has no streams")
        if not self.units:
            raise ConfigurationError("Flowsheet has no units")

        ns = len(self.species)
        for s in self.streams:
            if s.species != self.species:
                raise ConfigurationError(
                    f"Stream '{s.name}': species list does not match the flowsheet"
                )
            if np.size(s.zs) != ns:
                raise ConfigurationError(f"Stream '{s.name}': zs must be length {ns}")
            if len(s.known.zs) != ns:
                raise ConfigurationError(f"Stream '{s.name}': known.zs must be length {ns}")
            for label, flag, value in (
                ("molar_flow", s.known.molar_flow, s.molar_flow),
                ("temperature", s.known.temperature, s.temperature),
                ("pressure", s.known.pressure, s.pressure),
            ):
                if flag and not (math.isfinite(value) and value > 0):
                    raise ConfigurationError(
                        f"Stream '{s.name}': {label} must be finite and > 0 (currently {value:.6g})"
                    )
            known_y = np.asarray(s.zs)[np.asarray(s.known.zs, dtype=bool)]
            if not np.all(np.isfinite(known_y)):
                raise ConfigurationError(f"Stream '{s.name}': known zs contain NaN/Inf")
            if np.any(known_y < 0):
                raise ConfigurationError(f"Stream '{s.name}': zs contain negative entries")
            if all(s.known.zs) and abs(float(np.sum(s.zs)) - 1.0) > SUM_TOL:
                raise ConfigurationError(
                    f"Stream '{s.name}': zs must sum to 1 (currently {float(np.sum(s.zs)):.6g})"
                )
            if not all(s.known.zs) and float(np.sum(known_y)) > 1.0 + SUM_TOL:
                raise ConfigurationError(
                    f"Stream '{s.name}': known zs already sum above 1 ({float(np.sum(known_y)):.6g})"
                )

        # Seeds unknown values in place, as the solver would
        umap, x0 = UnknownMap.build(self.streams, self.units, self.options.bounds)
        umap.unpack(x0)
        for pos, unit in enumerate(self.units):
            name = contributor_name(unit, pos)
            r = contributor_residuals(unit)
            if r.size == 0:
                if isinstance(unit, Sink) or (isinstance(unit, DesignSpec) and not unit.enabled):
                    continue
                raise ConfigurationError(f"Unit '{name}' returned no residuals")
            if not np.all(np.isfinite(r)):
                raise ConfigurationError(f"Unit '{name}' returned NaN/Inf residuals at the initial point")

    def check_dof(self, quiet: bool = False) -> DOFReport:
        return check_dof(self.streams, self.units, quiet=quiet)

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def solve(self, **overrides: Any) -> SolverResult:
        """Solve with the flowsheet options, optionally overridden per call."""
        options = self.options.replace(**overrides) if overrides else self.options
        self.validate()
        report = self.check_dof()
        logger.info(
            "Solving '{}': {} streams, {} units", self.name, len(self.streams), len(self.units)
        )
        result = NonlinearSolver(self.streams, self.units, options).solve()
        result.dof = report
        self.last_result = result
        return result

    def stream_table(self) -> List[Dict[str, Any]]:
        return [s.as_row() for s in self.streams]

    def describe(self) -> List[str]:
        lines = []
        for u in self.units:
            describe = getattr(u, "describe", None)
            lines.append(describe() if describe else type(u).__name__)
        return lines

    # ------------------------------------------------------------------
    # Payload construction
    # ------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: Any, options: Optional[SolverOptions] = None) -> "Flowsheet":
        """Build from a ``schemas.FlowsheetPayload``.

        Units are built in payload order, so an Adjust or Calculator may only
        reference units listed before it.
        """
        fs = cls(payload.species, name=payload.name, options=options)
        by_id: Dict[str, Stream] = {}
        for spec in payload.streams:
            stream = _stream_from_spec(spec, fs.species)
            fs.add_stream(stream)
            by_id[spec.id] = stream

        built: Dict[str, EquationContributor] = {}
        for u in payload.units:
            if u.id in built:
                raise ConfigurationError(f"Duplicate unit id '{u.id}'")
            unit = build_unit(u.id, u.type, u.parameters, by_id, built, name=u.name)
            built[u.id] = unit
            fs.add_unit(unit)
        logger.info(
            "Built flowsheet '{}' from payload: {} streams, {} units",
            fs.name, len(fs.streams), len(fs.units),
        )
        return fs


def _stream_from_spec(spec: Any, species: List[str]) -> Stream:
    ns = len(species)
    stream = Stream(spec.id, species)
    stream.guess(
        molar_flow=spec.molar_flow,
        temperature=spec.temperature,
        pressure=spec.pressure,
    )
    if spec.composition is not None:
        unknown = set(spec.composition) - set(species)
        if unknown:
            raise ConfigurationError(
                f"Stream '{spec.id}': composition has unknown species {sorted(unknown)}"
            )
        stream.zs = np.array([spec.composition.get(sp, math.nan) for sp in species], dtype=float)

    known = spec.known
    for attr in ("molar_flow", "temperature", "pressure"):
        flag = bool(getattr(known, attr))
        if flag and getattr(spec, attr) is None:
            raise ConfigurationError(f"Stream '{spec.id}': {attr} is marked known but has no value")
        setattr(stream.known, attr, flag)

    flags = known.composition
    if isinstance(flags, bool):
        flags = [flags] * ns
    elif isinstance(flags, dict):
        flags = [bool(flags.get(sp, False)) for sp in species]
    flags = [bool(f) for f in flags]
    if len(flags) != ns:
        raise ConfigurationError(f"Stream '{spec.id}': known.composition must have {ns} entries")
    for j, flag in enumerate(flags):
        if flag and not math.isfinite(stream.zs[j]):
            raise ConfigurationError(
                f"Stream '{spec.id}': mole fraction of {species[j]} is marked known but has no value"
            )
    stream.known.zs = flags
    return stream
