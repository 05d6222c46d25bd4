from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class UnitSpec(BaseModel):
    id: str
    type: str
    name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class KnownSpec(BaseModel):
    molar_flow: bool = False
    temperature: bool = False
    pressure: bool = False
    # One flag for the whole vector, one per species, or a species -> flag map
    composition: Union[bool, List[bool], Dict[str, bool]] = False


class StreamSpec(BaseModel):
    """Stream values in SI units (mol/s, K, Pa).

    Values not flagged in ``known`` are initial guesses.
    """

    id: str
    molar_flow: Optional[float] = None
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    composition: Optional[Dict[str, float]] = None
    known: KnownSpec = Field(default_factory=KnownSpec)


class SolverSettings(BaseModel):
    """Per-request overrides; unset fields keep the service defaults."""

    max_iter: Optional[int] = None
    tol_abs: Optional[float] = None
    fd_step: Optional[float] = None
    fd_scheme: Optional[str] = None
    jacobian_reuse_interval: Optional[int] = None
    use_broyden: Optional[bool] = None
    damping: Optional[float] = None
    lm_damping: Optional[float] = None
    max_backtracks: Optional[int] = None
    weights: Optional[Union[float, List[float]]] = None
    auto_weight: Optional[bool] = None
    heuristic_weight: Optional[bool] = None
    convergence_norm: Optional[str] = None

    def overrides(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class FlowsheetPayload(BaseModel):
    name: str = Field(default="flowsheet")
    species: List[str]
    streams: List[StreamSpec]
    units: List[UnitSpec]
    solver: SolverSettings = Field(default_factory=SolverSettings)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StreamResult(BaseModel):
    id: str
    molar_flow: Optional[float] = None
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    composition: Dict[str, float] = Field(default_factory=dict)
    component_flows: Dict[str, float] = Field(default_factory=dict)


class IterationResult(BaseModel):
    iteration: int
    residual_norm: Optional[float] = None
    weighted_norm: Optional[float] = None
    step_norm: Optional[float] = None
    step_length: Optional[float] = None
    jacobian_source: str = ""
    backtracks: int = 0
    events: List[str] = Field(default_factory=list)


class DOFResult(BaseModel):
    n_unknowns: int
    n_equations: int
    n_stream_unknowns: int = 0
    n_manipulated: int = 0
    dof: int
    status: str
    message: str


class SimulationResult(BaseModel):
    flowsheet_name: str
    status: str
    converged: bool = False
    iterations: Optional[int] = None
    final_norm: Optional[float] = None
    final_weighted_norm: Optional[float] = None
    weight_mode: Optional[str] = None
    streams: List[StreamResult] = Field(default_factory=list)
    history: List[IterationResult] = Field(default_factory=list)
    dof: Optional[DOFResult] = None
    warnings: List[str] = Field(default_factory=list)
    log: List[str] = Field(default_factory=list)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)


class VariableRef(BaseModel):
    """A swept input: a stream attribute or a unit parameter."""

    target_id: str
    field: str
    index: Optional[int] = None


class OutputRef(BaseModel):
    stream_id: str
    # molar_flow, temperature, pressure, or a species name (mole fraction)
    property: str


class SensitivityRequest(BaseModel):
    flowsheet: FlowsheetPayload
    variable: VariableRef
    variable_min: float
    variable_max: float
    n_points: int = 5
    outputs: List[OutputRef] = Field(default_factory=list)


class SensitivityResult(BaseModel):
    parameter_values: List[float]
    results: Dict[str, List[Optional[float]]]
    converged: List[bool] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ScenarioCreateRequest(BaseModel):
    name: str
    flowsheet: FlowsheetPayload
    description: Optional[str] = None


class ScenarioRunResponse(BaseModel):
    scenario_id: str
    result: SimulationResult
