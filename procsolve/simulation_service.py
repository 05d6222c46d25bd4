"""
Service layer between the HTTP API and the flowsheet solver.

Builds a Flowsheet from a payload, solves it and converts the outcome to the
response schema.  Configuration and solver failures become ``status="error"``
results instead of exceptions.
"""

from __future__ import annotations

import math
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from loguru import logger

from . import schemas
from .dof import DOFReport
from .errors import ConfigurationError, SolverError
from .flowsheet import Flowsheet
from .solver import SolverOptions, SolverResult


def default_options() -> SolverOptions:
    """Solver defaults, with PROCSOLVE_MAX_ITER / PROCSOLVE_TOL_ABS applied."""
    overrides = {}
    max_iter = os.getenv("PROCSOLVE_MAX_ITER")
    tol_abs = os.getenv("PROCSOLVE_TOL_ABS")
    try:
        if max_iter:
            overrides["max_iter"] = int(max_iter)
        if tol_abs:
            overrides["tol_abs"] = float(tol_abs)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid solver environment setting: {exc}") from exc
    return SolverOptions(**overrides)


class SimulationService:
    def __init__(self, options: Optional[SolverOptions] = None) -> None:
        self._options = options or default_options()
        self._scenario_store: Dict[str, schemas.FlowsheetPayload] = {}

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def build(self, payload: schemas.FlowsheetPayload) -> Flowsheet:
        options = self._options.replace(**payload.solver.overrides())
        return Flowsheet.from_payload(payload, options=options)

    def solve_flowsheet(
        self, payload: schemas.FlowsheetPayload
    ) -> Tuple[Optional[Flowsheet], schemas.SimulationResult]:
        """Solve and return the flowsheet object alongside the response."""
        try:
            fs = self.build(payload)
        except ConfigurationError as exc:
            return None, _error_result(payload.name, f"Failed to build flowsheet: {exc}")

        try:
            result = fs.solve()
        except SolverError as exc:
            logger.warning("Solver failed for '{}': {}", payload.name, exc)
            res = _error_result(payload.name, f"Solver failed: {exc}")
            if exc.result is not None:
                res.history = _convert_history(exc.result)
                res.log = list(exc.result.log_lines)
                res.iterations = exc.result.iterations
            res.streams = _convert_streams(fs)
            return fs, res
        except ConfigurationError as exc:
            return fs, _error_result(payload.name, f"Invalid flowsheet configuration: {exc}")

        return fs, _convert_result(payload.name, fs, result)

    def simulate(self, payload: schemas.FlowsheetPayload) -> schemas.SimulationResult:
        return self.solve_flowsheet(payload)[1]

    def check_dof(self, payload: schemas.FlowsheetPayload) -> schemas.DOFResult:
        fs = self.build(payload)
        return convert_dof(fs.check_dof())

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def create_scenario(self, scenario: schemas.ScenarioCreateRequest) -> str:
        scenario_id = f"scn-{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        while scenario_id in self._scenario_store:
            scenario_id += "-1"
        self._scenario_store[scenario_id] = scenario.flowsheet
        logger.info("Stored scenario '{}' as {}", scenario.name, scenario_id)
        return scenario_id

    def run_scenario(self, scenario_id: str) -> schemas.SimulationResult:
        payload = self._scenario_store.get(scenario_id)
        if not payload:
            raise KeyError(f"Scenario {scenario_id} not found")
        return self.simulate(payload)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def _num(v) -> Optional[float]:
    if v is None:
        return None
    v = float(v)
    return v if math.isfinite(v) else None


def _error_result(name: str, message: str) -> schemas.SimulationResult:
    return schemas.SimulationResult(flowsheet_name=name, status="error", warnings=[message])


def convert_dof(report: DOFReport) -> schemas.DOFResult:
    return schemas.DOFResult(
        n_unknowns=report.n_unknowns,
        n_equations=report.n_equations,
        n_stream_unknowns=report.n_stream_unknowns,
        n_manipulated=report.n_manipulated,
        dof=report.dof,
        status=report.status.value,
        message=report.message(),
    )


def _convert_streams(fs: Flowsheet) -> List[schemas.StreamResult]:
    out = []
    for s in fs.streams:
        out.append(schemas.StreamResult(
            id=s.name,
            molar_flow=_num(s.molar_flow),
            temperature=_num(s.temperature),
            pressure=_num(s.pressure),
            composition={sp: _num(y) for sp, y in zip(s.species, s.zs) if _num(y) is not None},
            component_flows={
                sp: _num(n) for sp, n in zip(s.species, s.component_flows()) if _num(n) is not None
            },
        ))
    return out


def _convert_history(result: SolverResult) -> List[schemas.IterationResult]:
    return [
        schemas.IterationResult(
            iteration=h.iteration,
            residual_norm=_num(h.residual_norm),
            weighted_norm=_num(h.weighted_norm),
            step_norm=_num(h.step_norm),
            step_length=_num(h.step_length),
            jacobian_source=h.jacobian_source,
            backtracks=h.backtracks,
            events=list(h.events),
        )
        for h in result.history
    ]


def _convert_result(name: str, fs: Flowsheet, result: SolverResult) -> schemas.SimulationResult:
    warnings: List[str] = []
    if result.dof is not None and not result.dof.is_square:
        warnings.append(f"DOF check: {result.dof.message()}")
    if not result.converged:
        worst = ", ".join(f"{lbl}={val:.3e}" for lbl, val in result.largest_residuals(3))
        warnings.append(f"Solver stopped with status '{result.status.value}'; largest residuals: {worst}")

    return schemas.SimulationResult(
        flowsheet_name=name,
        status=result.status.value,
        converged=result.converged,
        iterations=result.iterations,
        final_norm=_num(result.final_norm),
        final_weighted_norm=_num(result.final_weighted_norm),
        weight_mode=result.weight_mode,
        streams=_convert_streams(fs),
        history=_convert_history(result),
        dof=convert_dof(result.dof) if result.dof is not None else None,
        warnings=warnings,
        log=list(result.log_lines),
        diagnostics={
            "solver": "equation-oriented",
            "residual_evaluations": result.residual_evaluations,
            "unknowns": len(result.unknown_labels),
            "equations": len(result.residual_labels),
        },
    )
