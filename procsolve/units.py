"""
Equation contributors: unit operations and design constraints.

Each contributor returns residuals that are zero when its relationship
holds.  Units here are mass / T / P balances only; no thermodynamic
property calls are made.

Contributors reference Stream objects owned by the flowsheet and read them
every time ``equations()`` is called, so they always see the solver's latest
write-back.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError
from .parameterization import ManipulatedVariable
from .stream import Stream, get_field_value, has_field

Term = Tuple[str, float]


# ---------------------------------------------------------------------------
# Base classes
# ---------------------------------------------------------------------------


class EquationContributor(ABC):
    """Anything that adds residual equations to the global system."""

    def __init__(self, id: str = "", name: Optional[str] = None) -> None:
        self.id = id or type(self).__name__
        self.name = name or self.id

    @abstractmethod
    def equations(self) -> List[float]:
        """Ordered, fixed-length residual vector for the current state."""

    def labels(self) -> Optional[List[str]]:
        """Per-residual descriptions; None means index-based labels."""
        return None

    def unknown_specs(self) -> List[ManipulatedVariable]:
        """Extra scalar unknowns this contributor wants solved."""
        return []

    def describe(self) -> str:
        return f"{type(self).__name__}: {self.id}"

    def stream_names(self) -> List[str]:
        return []


class UnitOpBase(EquationContributor):
    """Contributor whose residuals and labels come from one term list."""

    @abstractmethod
    def residual_terms(self) -> List[Term]:
        """Return ``[(label, residual), ...]``."""

    def equations(self) -> List[float]:
        return [v for _, v in self.residual_terms()]

    def labels(self) -> List[str]:
        return [lbl for lbl, _ in self.residual_terms()]

    @staticmethod
    def _tp_terms(out: Stream, ref: Stream) -> List[Term]:
        return [
            ("temperature", out.temperature - ref.temperature),
            ("pressure", out.pressure - ref.pressure),
        ]


def _names(streams: Sequence[Stream]) -> str:
    return ", ".join(s.name for s in streams)


# ---------------------------------------------------------------------------
# Link / Recycle
# ---------------------------------------------------------------------------


class Link(UnitOpBase):
    """outlet = inlet (flow, T, P and every mole fraction)."""

    def __init__(self, inlet: Stream, outlet: Stream, id: str = "", name: Optional[str] = None):
        super().__init__(id, name)
        self.inlet = inlet
        self.outlet = outlet

    def residual_terms(self) -> List[Term]:
        i, o = self.inlet, self.outlet
        terms: List[Term] = [("flow", o.molar_flow - i.molar_flow)]
        terms += self._tp_terms(o, i)
        terms += [
            (f"mole fraction {sp}", o.zs[j] - i.zs[j]) for j, sp in enumerate(i.species)
        ]
        return terms

    def describe(self) -> str:
        return f"Link: {self.inlet.name} -> {self.outlet.name}"

    def stream_names(self) -> List[str]:
        return [self.inlet.name, self.outlet.name]


class Recycle(UnitOpBase):
    """Closes a loop: tear stream flow and composition equal the source's."""

    def __init__(self, source: Stream, tear: Stream, id: str = "", name: Optional[str] = None):
        super().__init__(id, name)
        self.source = source
        self.tear = tear

    def residual_terms(self) -> List[Term]:
        terms: List[Term] = [("flow", self.tear.molar_flow - self.source.molar_flow)]
        terms += [
            (f"mole fraction {sp}", self.tear.zs[j] - self.source.zs[j])
            for j, sp in enumerate(self.source.species)
        ]
        return terms

    def describe(self) -> str:
        return f"Recycle: {self.source.name} -> tear {self.tear.name}"

    def stream_names(self) -> List[str]:
        return [self.source.name, self.tear.name]


# ---------------------------------------------------------------------------
# Mixer / Splitter / Manifold
# ---------------------------------------------------------------------------


class Mixer(UnitOpBase):
    """
    Adiabatic mixer (mass only).

      - outlet flow = sum of inlet flows
      - species balances on n_dot * y
      - outlet T and P follow the first inlet
    """

    def __init__(self, inlets: Sequence[Stream], outlet: Stream, id: str = "", name: Optional[str] = None):
        super().__init__(id, name)
        if not inlets:
            raise ConfigurationError(f"Mixer '{self.id}' has no inlet streams")
        self.inlets = list(inlets)
        self.outlet = outlet

    def residual_terms(self) -> List[Term]:
        out = self.outlet
        total_in = sum(s.molar_flow for s in self.inlets)
        terms: List[Term] = [("flow balance", out.molar_flow - total_in)]
        for j, sp in enumerate(out.species):
            species_in = sum(s.molar_flow * s.zs[j] for s in self.inlets)
            terms.append((f"species balance {sp}", out.molar_flow * out.zs[j] - species_in))
        terms += self._tp_terms(out, self.inlets[0])
        return terms

    def describe(self) -> str:
        return f"Mixer: {{{_names(self.inlets)}}} -> {self.outlet.name}"

    def stream_names(self) -> List[str]:
        return [s.name for s in self.inlets] + [self.outlet.name]


class Splitter(UnitOpBase):
    """
    Stream splitter, by fractions or by specified outlet flows.

    Fractions mode: out_k.flow = f_k * inlet.flow, outlet compositions equal
    the inlet's.  Flows mode: out_k.flow = q_k where q_k is given (NaN =
    free), plus one overall flow balance.
    """

    def __init__(
        self,
        inlet: Stream,
        outlets: Sequence[Stream],
        fractions: Optional[Sequence[float]] = None,
        flows: Optional[Sequence[float]] = None,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        self.inlet = inlet
        self.outlets = list(outlets)
        n_out = len(self.outlets)
        if not n_out:
            raise ConfigurationError(f"Splitter '{self.id}' has no outlet streams")
        if fractions is not None and flows is not None:
            raise ConfigurationError(f"Splitter '{self.id}': give fractions or flows, not both")
        if flows is not None:
            self.fractions = None
            self.flows = np.asarray(flows, dtype=float)
            if self.flows.size != n_out:
                raise ConfigurationError(
                    f"Splitter '{self.id}': {self.flows.size} flows for {n_out} outlets"
                )
        else:
            if fractions is None:
                fractions = [1.0 / n_out] * n_out
            self.fractions = np.asarray(fractions, dtype=float)
            self.flows = None
            if self.fractions.size != n_out:
                raise ConfigurationError(
                    f"Splitter '{self.id}': {self.fractions.size} fractions for {n_out} outlets"
                )

    def residual_terms(self) -> List[Term]:
        inlet = self.inlet
        terms: List[Term] = []
        for k, out in enumerate(self.outlets):
            if self.fractions is not None:
                terms.append((f"flow {out.name}", out.molar_flow - self.fractions[k] * inlet.molar_flow))
            elif not math.isnan(self.flows[k]):
                terms.append((f"flow {out.name}", out.molar_flow - self.flows[k]))
            terms += [
                (f"mole fraction {sp} {out.name}", out.zs[j] - inlet.zs[j])
                for j, sp in enumerate(inlet.species)
            ]
        if self.flows is not None:
            terms.append((
                "flow balance",
                sum(s.molar_flow for s in self.outlets) - inlet.molar_flow,
            ))
        return terms

    def describe(self) -> str:
        return f"Splitter: {self.inlet.name} -> {{{_names(self.outlets)}}}"

    def stream_names(self) -> List[str]:
        return [self.inlet.name] + [s.name for s in self.outlets]


class Manifold(UnitOpBase):
    """Routes whole inlets to outlets: ``route[k]`` is the inlet feeding outlet k."""

    def __init__(
        self,
        inlets: Sequence[Stream],
        outlets: Sequence[Stream],
        route: Sequence[int],
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        self.inlets = list(inlets)
        self.outlets = list(outlets)
        self.route = [int(r) for r in route]
        if len(self.route) != len(self.outlets):
            raise ConfigurationError(f"Manifold '{self.id}': route length must match outlets")
        if any(r < 0 or r >= len(self.inlets) for r in self.route):
            raise ConfigurationError(f"Manifold '{self.id}': route index out of range")

    def residual_terms(self) -> List[Term]:
        terms: List[Term] = []
        for k, out in enumerate(self.outlets):
            src = self.inlets[self.route[k]]
            terms += [
                (f"species flow {sp} {out.name}", out.molar_flow * out.zs[j] - src.molar_flow * src.zs[j])
                for j, sp in enumerate(src.species)
            ]
        return terms

    def describe(self) -> str:
        return f"Manifold: {{{_names(self.inlets)}}} -> {{{_names(self.outlets)}}} (route={self.route})"

    def stream_names(self) -> List[str]:
        return [s.name for s in self.inlets] + [s.name for s in self.outlets]


# ---------------------------------------------------------------------------
# Separator / Purge / Bypass
# ---------------------------------------------------------------------------


class Separator(UnitOpBase):
    """
    Component splitter: fraction phi_i of species i goes to outlet A.

    T and P pass through to both outlets.  The optional normalization
    equations (sum y = 1) are redundant under the softmax parameterization
    but keep the equation count square when outlet compositions are fully
    unknown.
    """

    def __init__(
        self,
        inlet: Stream,
        outlet_a: Stream,
        outlet_b: Stream,
        phi: Sequence[float],
        include_normalization: bool = True,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        self.inlet = inlet
        self.outlet_a = outlet_a
        self.outlet_b = outlet_b
        self.phi = np.asarray(phi, dtype=float)
        self.include_normalization = include_normalization
        if self.phi.size != inlet.n_species:
            raise ConfigurationError(
                f"{type(self).__name__} '{self.id}': phi has {self.phi.size} entries "
                f"for {inlet.n_species} species"
            )

    def _split(self) -> np.ndarray:
        return self.phi

    def residual_terms(self) -> List[Term]:
        i, a, b = self.inlet, self.outlet_a, self.outlet_b
        phi = self._split()
        terms: List[Term] = []
        for j, sp in enumerate(i.species):
            n_in = i.molar_flow * i.zs[j]
            terms.append((f"species split {sp} {a.name}", a.molar_flow * a.zs[j] - phi[j] * n_in))
            terms.append((f"species split {sp} {b.name}", b.molar_flow * b.zs[j] - (1.0 - phi[j]) * n_in))
        if self.include_normalization:
            terms.append((f"mole fraction sum {a.name}", float(np.sum(a.zs)) - 1.0))
            terms.append((f"mole fraction sum {b.name}", float(np.sum(b.zs)) - 1.0))
        terms += [
            (f"temperature {a.name}", a.temperature - i.temperature),
            (f"temperature {b.name}", b.temperature - i.temperature),
            (f"pressure {a.name}", a.pressure - i.pressure),
            (f"pressure {b.name}", b.pressure - i.pressure),
        ]
        return terms

    def describe(self) -> str:
        return (
            f"{type(self).__name__}: {self.inlet.name} -> {self.outlet_a.name}, "
            f"{self.outlet_b.name} (phi={np.round(self.phi, 3).tolist()})"
        )

    def stream_names(self) -> List[str]:
        return [self.inlet.name, self.outlet_a.name, self.outlet_b.name]


class Purge(Separator):
    """Fixed-fraction purge: ``beta`` of every species is recycled."""

    def __init__(
        self,
        inlet: Stream,
        recycle: Stream,
        purge: Stream,
        beta: float,
        id: str = "",
        name: Optional[str] = None,
    ):
        self.beta = float(beta)
        super().__init__(inlet, recycle, purge, [self.beta] * inlet.n_species, True, id, name)

    @property
    def recycle(self) -> Stream:
        return self.outlet_a

    @property
    def purge(self) -> Stream:
        return self.outlet_b

    def _split(self) -> np.ndarray:
        # beta may be manipulated by an Adjust during the solve
        return np.full(self.inlet.n_species, self.beta)


class Bypass(UnitOpBase):
    """Splits a feed into process and bypass branches and re-mixes them."""

    def __init__(
        self,
        inlet: Stream,
        process_inlet: Stream,
        bypass_stream: Stream,
        process_return: Stream,
        outlet: Stream,
        bypass_fraction: float,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        self.inlet = inlet
        self.process_inlet = process_inlet
        self.bypass_stream = bypass_stream
        self.process_return = process_return
        self.outlet = outlet
        self.bypass_fraction = float(bypass_fraction)

    def residual_terms(self) -> List[Term]:
        b = self.bypass_fraction
        feed, proc, byp, ret, out = (
            self.inlet, self.process_inlet, self.bypass_stream, self.process_return, self.outlet,
        )
        terms: List[Term] = []
        for j, sp in enumerate(feed.species):
            n_in = feed.molar_flow * feed.zs[j]
            terms.append((f"species split {sp} {proc.name}", proc.molar_flow * proc.zs[j] - (1.0 - b) * n_in))
            terms.append((f"species split {sp} {byp.name}", byp.molar_flow * byp.zs[j] - b * n_in))
        for j, sp in enumerate(feed.species):
            terms.append((
                f"species balance {sp} {out.name}",
                out.molar_flow * out.zs[j]
                - (byp.molar_flow * byp.zs[j] + ret.molar_flow * ret.zs[j]),
            ))
        return terms

    def describe(self) -> str:
        return (
            f"Bypass: {self.inlet.name} -> ({self.bypass_stream.name} + "
            f"{self.process_return.name}) -> {self.outlet.name}"
        )

    def stream_names(self) -> List[str]:
        return [
            self.inlet.name, self.process_inlet.name, self.bypass_stream.name,
            self.process_return.name, self.outlet.name,
        ]


# ---------------------------------------------------------------------------
# Source / Sink
# ---------------------------------------------------------------------------


class Source(UnitOpBase):
    """Boundary feed: adds equations only for the specified outlet values."""

    def __init__(
        self,
        outlet: Stream,
        total_flow: Optional[float] = None,
        component_flows: Optional[Sequence[float]] = None,
        composition: Optional[Sequence[float]] = None,
        temperature: Optional[float] = None,
        pressure: Optional[float] = None,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        self.outlet = outlet
        ns = outlet.n_species
        self.total_flow = total_flow
        self.component_flows = None if component_flows is None else np.asarray(component_flows, dtype=float)
        self.composition = None if composition is None else np.asarray(composition, dtype=float)
        self.temperature = temperature
        self.pressure = pressure
        for label, vec in (("component_flows", self.component_flows), ("composition", self.composition)):
            if vec is not None and vec.size != ns:
                raise ConfigurationError(
                    f"Source '{self.id}': {label} must have {ns} entries"
                )

    def residual_terms(self) -> List[Term]:
        out = self.outlet
        terms: List[Term] = []
        if self.component_flows is not None:
            for j, sp in enumerate(out.species):
                if not math.isnan(self.component_flows[j]):
                    terms.append((f"species flow {sp}", out.molar_flow * out.zs[j] - self.component_flows[j]))
        if self.total_flow is not None:
            terms.append(("flow", out.molar_flow - self.total_flow))
        if self.composition is not None:
            for j, sp in enumerate(out.species):
                if not math.isnan(self.composition[j]):
                    terms.append((f"mole fraction {sp}", out.zs[j] - self.composition[j]))
        if self.temperature is not None:
            terms.append(("temperature", out.temperature - self.temperature))
        if self.pressure is not None:
            terms.append(("pressure", out.pressure - self.pressure))
        return terms

    def describe(self) -> str:
        return f"Source: -> {self.outlet.name}"

    def stream_names(self) -> List[str]:
        return [self.outlet.name]


class Sink(UnitOpBase):
    """Terminal block; contributes no residuals."""

    def __init__(self, inlet: Stream, id: str = "", name: Optional[str] = None):
        super().__init__(id, name)
        self.inlet = inlet

    def residual_terms(self) -> List[Term]:
        return []

    def describe(self) -> str:
        return f"Sink: {self.inlet.name} ->"

    def stream_names(self) -> List[str]:
        return [self.inlet.name]


# ---------------------------------------------------------------------------
# Design specs and constraints
# ---------------------------------------------------------------------------


class DesignSpec(UnitOpBase):
    """One target equation: metric(stream) - target = 0.

    Metrics: ``total_flow``, ``comp_flow`` (n_dot * y_i), ``mole_fraction``,
    ``temperature``, ``pressure``.
    """

    METRICS = {
        "total_flow": "total_flow", "n_dot": "total_flow", "molar_flow": "total_flow",
        "comp_flow": "comp_flow", "component_flow": "comp_flow", "n_i": "comp_flow",
        "mole_fraction": "mole_fraction", "y": "mole_fraction", "x_i": "mole_fraction",
        "temperature": "temperature", "t": "temperature",
        "pressure": "pressure", "p": "pressure",
    }

    def __init__(
        self,
        stream: Stream,
        metric: str = "total_flow",
        target: float = 0.0,
        component_index: int = 0,
        enabled: bool = True,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        key = self.METRICS.get(str(metric).strip().lower())
        if key is None:
            raise ConfigurationError(f"DesignSpec metric '{metric}' not available")
        if key in ("comp_flow", "mole_fraction") and not 0 <= int(component_index) < stream.n_species:
            raise ConfigurationError(
                f"DesignSpec component_index must be integer in [0, {stream.n_species - 1}]"
            )
        self.stream = stream
        self.metric = key
        self.target = float(target)
        self.component_index = int(component_index)
        self.enabled = enabled

    def metric_value(self) -> float:
        s = self.stream
        if self.metric == "total_flow":
            return s.molar_flow
        if self.metric == "comp_flow":
            return s.molar_flow * s.zs[self.component_index]
        if self.metric == "mole_fraction":
            return s.zs[self.component_index]
        if self.metric == "temperature":
            return s.temperature
        return s.pressure

    def metric_label(self) -> str:
        if self.metric in ("comp_flow", "mole_fraction"):
            sp = self.stream.species[self.component_index]
            kind = "species flow" if self.metric == "comp_flow" else "mole fraction"
            return f"{kind} {sp} {self.stream.name}"
        kind = "flow" if self.metric == "total_flow" else self.metric
        return f"{kind} {self.stream.name}"

    def residual(self) -> float:
        return self.metric_value() - self.target

    def residual_terms(self) -> List[Term]:
        if not self.enabled:
            return []
        return [(f"spec {self.metric_label()}", self.residual())]

    def describe(self) -> str:
        return f"DesignSpec: {self.metric} on {self.stream.name} = {self.target:.6g}"

    def stream_names(self) -> List[str]:
        return [self.stream.name]


class Adjust(UnitOpBase):
    """Manipulates one variable to satisfy one DesignSpec.

    The DesignSpec is disabled so its residual is contributed exactly once, here.
    """

    def __init__(
        self,
        spec: DesignSpec,
        owner: Any,
        field: str,
        index: Optional[int] = None,
        lower: float = -math.inf,
        upper: float = math.inf,
        initial: float = math.nan,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        if spec is None:
            raise ConfigurationError(f"Adjust '{self.id}' is missing its DesignSpec")
        self.spec = spec
        self.owner = owner
        self.field = field
        self.index = index
        self.lower = float(lower)
        self.upper = float(upper)
        self.initial = float(initial)
        spec.enabled = False

    def residual_terms(self) -> List[Term]:
        return [(f"adjust {self.spec.metric_label()}", self.spec.residual())]

    def unknown_specs(self) -> List[ManipulatedVariable]:
        return [ManipulatedVariable(
            owner=self.owner, field=self.field, index=self.index,
            lower=self.lower, upper=self.upper, initial=self.initial,
            label=_field_label(self.owner, self.field, self.index),
        )]

    def variable_value(self) -> float:
        return get_field_value(self.owner, self.field, self.index)

    def describe(self) -> str:
        return f"Adjust: {type(self.owner).__name__}.{self.field} -> {self.spec.metric}"


class Constraint(UnitOpBase):
    """Equality constraint: owner.field[index] - value = 0."""

    def __init__(
        self,
        owner: Any,
        field: str,
        value: float,
        index: Optional[int] = None,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        if not has_field(owner, field):
            raise ConfigurationError(f"Constraint field '{field}' not found on {type(owner).__name__}")
        self.owner = owner
        self.field = field
        self.value = float(value)
        self.index = index

    def residual_terms(self) -> List[Term]:
        return [(f"constraint {_field_label(self.owner, self.field, self.index)}",
                 get_field_value(self.owner, self.field, self.index) - self.value)]

    def describe(self) -> str:
        return f"Constraint: {self.field} = {self.value:.6g}"


FieldRef = Tuple[Any, str, Optional[int]]


class Calculator(UnitOpBase):
    """One algebraic relation: lhs = a <op> b with op in + - * /."""

    OPERATORS = ("+", "-", "*", "/")

    def __init__(
        self,
        lhs: FieldRef,
        a: FieldRef,
        operator: str,
        b: FieldRef,
        id: str = "",
        name: Optional[str] = None,
    ):
        super().__init__(id, name)
        if operator not in self.OPERATORS:
            raise ConfigurationError("Calculator operator must be one of + - * /")
        for owner, fld, _ in (lhs, a, b):
            if not has_field(owner, fld):
                raise ConfigurationError(
                    f"Calculator field '{fld}' not available on {type(owner).__name__}"
                )
        self.lhs = lhs
        self.a = a
        self.b = b
        self.operator = operator

    def residual_terms(self) -> List[Term]:
        lhs = get_field_value(*self.lhs)
        a = get_field_value(*self.a)
        b = get_field_value(*self.b)
        if self.operator == "+":
            rhs = a + b
        elif self.operator == "-":
            rhs = a - b
        elif self.operator == "*":
            rhs = a * b
        else:
            rhs = a / b if b != 0 else math.nan
        return [(f"calculator {_field_label(*self.lhs)}", lhs - rhs)]

    def describe(self) -> str:
        return f"Calculator: {self.lhs[1]} = a {self.operator} b"


def _field_label(owner: Any, field: str, index: Optional[int]) -> str:
    owner_name = getattr(owner, "id", None) or getattr(owner, "name", None) or type(owner).__name__
    suffix = f"[{index}]" if index is not None else ""
    return f"{owner_name}.{field}{suffix}"


# ---------------------------------------------------------------------------
# Payload construction
# ---------------------------------------------------------------------------


def _stream(streams: Dict[str, Stream], unit_id: str, key: str, sid: Any) -> Stream:
    if sid not in streams:
        raise ConfigurationError(f"Unit '{unit_id}': {key} references unknown stream '{sid}'")
    return streams[sid]


def _species_index(stream: Stream, comp: Union[int, str, None]) -> int:
    if comp is None:
        return 0
    if isinstance(comp, str):
        try:
            return stream.species.index(comp)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown species '{comp}'") from exc
    return int(comp)


def _resolve_owner(ref: Any, streams: Dict[str, Stream], units: Dict[str, EquationContributor]) -> Any:
    if ref in streams:
        return streams[ref]
    if ref in units:
        return units[ref]
    raise ConfigurationError(f"Owner '{ref}' is neither a stream nor a unit")


def _field_ref(spec: Dict[str, Any], streams, units) -> FieldRef:
    return (_resolve_owner(spec.get("owner"), streams, units), spec.get("field", ""), spec.get("index"))


def _build_design_spec(uid, p, streams, units) -> DesignSpec:
    stream = _stream(streams, uid, "stream", p.get("stream"))
    return DesignSpec(
        stream,
        metric=p.get("metric", "total_flow"),
        target=p.get("target", 0.0),
        component_index=_species_index(stream, p.get("component")),
        id=uid,
    )


def build_unit(
    unit_id: str,
    unit_type: str,
    params: Dict[str, Any],
    streams: Dict[str, Stream],
    units: Dict[str, EquationContributor],
    name: Optional[str] = None,
) -> EquationContributor:
    """Construct a registered contributor from payload parameters.

    Stream references are stream ids; owner references may name a stream or
    a previously built unit.
    """
    p = params
    t = unit_type
    if t not in UNIT_OP_REGISTRY:
        raise ConfigurationError(f"Unknown unit type '{unit_type}'")

    def s(key):
        return _stream(streams, unit_id, key, p.get(key))

    def sl(key):
        return [_stream(streams, unit_id, key, sid) for sid in p.get(key, [])]

    if t == "link":
        unit = Link(s("inlet"), s("outlet"), id=unit_id)
    elif t == "recycle":
        unit = Recycle(s("source"), s("tear"), id=unit_id)
    elif t == "mixer":
        unit = Mixer(sl("inlets"), s("outlet"), id=unit_id)
    elif t == "splitter":
        unit = Splitter(s("inlet"), sl("outlets"), fractions=p.get("fractions"),
                        flows=p.get("flows"), id=unit_id)
    elif t == "manifold":
        unit = Manifold(sl("inlets"), sl("outlets"), p.get("route", []), id=unit_id)
    elif t == "separator":
        unit = Separator(s("inlet"), s("outlet_a"), s("outlet_b"), p.get("phi", []),
                         include_normalization=p.get("include_normalization", True), id=unit_id)
    elif t == "purge":
        unit = Purge(s("inlet"), s("recycle"), s("purge"), p.get("beta", 0.5), id=unit_id)
    elif t == "bypass":
        unit = Bypass(s("inlet"), s("process_inlet"), s("bypass"), s("process_return"),
                      s("outlet"), p.get("bypass_fraction", 0.0), id=unit_id)
    elif t == "source":
        unit = Source(s("outlet"), total_flow=p.get("total_flow"),
                      component_flows=p.get("component_flows"), composition=p.get("composition"),
                      temperature=p.get("temperature"), pressure=p.get("pressure"), id=unit_id)
    elif t == "sink":
        unit = Sink(s("inlet"), id=unit_id)
    elif t == "designSpec":
        unit = _build_design_spec(unit_id, p, streams, units)
    elif t == "adjust":
        spec_ref = p.get("spec")
        if isinstance(spec_ref, dict):
            spec = _build_design_spec(f"{unit_id}-spec", spec_ref, streams, units)
        elif isinstance(units.get(spec_ref), DesignSpec):
            spec = units[spec_ref]
        else:
            raise ConfigurationError(f"Adjust '{unit_id}': spec '{spec_ref}' is not a DesignSpec")
        var = p.get("variable", {})
        unit = Adjust(
            spec, _resolve_owner(var.get("owner"), streams, units), var.get("field", ""),
            index=var.get("index"), lower=var.get("min", -math.inf), upper=var.get("max", math.inf),
            initial=var.get("initial", math.nan), id=unit_id,
        )
    elif t == "constraint":
        owner, fld, idx = _field_ref(p, streams, units)
        unit = Constraint(owner, fld, p.get("value", 0.0), index=idx, id=unit_id)
    else:  # calculator
        unit = Calculator(
            _field_ref(p.get("lhs", {}), streams, units),
            _field_ref(p.get("a", {}), streams, units),
            p.get("operator", "+"),
            _field_ref(p.get("b", {}), streams, units),
            id=unit_id,
        )
    unit.name = name or unit_id
    return unit


UNIT_OP_REGISTRY: Dict[str, type] = {
    "link": Link,
    "recycle": Recycle,
    "mixer": Mixer,
    "splitter": Splitter,
    "manifold": Manifold,
    "separator": Separator,
    "purge": Purge,
    "bypass": Bypass,
    "source": Source,
    "sink": Sink,
    "designSpec": DesignSpec,
    "adjust": Adjust,
    "constraint": Constraint,
    "calculator": Calculator,
}
