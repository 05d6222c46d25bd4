"""
Sensitivity analysis: parameter sweep runner.

Sweeps one input (a stream attribute or a unit parameter) across N values,
re-solves the flowsheet at each point and collects output stream values.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional

from loguru import logger

from . import schemas
from .simulation_service import SimulationService

STREAM_FIELDS = ("molar_flow", "temperature", "pressure")


def _apply(payload: schemas.FlowsheetPayload, ref: schemas.VariableRef, value: float) -> bool:
    """Write the swept value into the payload copy; False if the target is missing."""
    for unit in payload.units:
        if unit.id == ref.target_id:
            if ref.index is None:
                unit.parameters[ref.field] = value
            else:
                values = list(unit.parameters.get(ref.field, []))
                if ref.index >= len(values):
                    return False
                values[ref.index] = value
                unit.parameters[ref.field] = values
            return True

    for stream in payload.streams:
        if stream.id == ref.target_id:
            if ref.field in STREAM_FIELDS:
                setattr(stream, ref.field, value)
                return True
            if ref.field == "composition" and stream.composition and ref.index is not None:
                species = payload.species[ref.index]
                stream.composition[species] = value
                return True
            return False
    return False


def _read(result: schemas.SimulationResult, out: schemas.OutputRef) -> Optional[float]:
    for s in result.streams:
        if s.id == out.stream_id:
            if out.property in STREAM_FIELDS:
                return getattr(s, out.property)
            return s.composition.get(out.property)
    return None


def run_sensitivity(
    request: schemas.SensitivityRequest,
    service: Optional[SimulationService] = None,
) -> schemas.SensitivityResult:
    """
    Sweep a variable and collect output values.

    Each point solves a deep copy of the payload, so no stream state is
    carried over between points.
    """
    warnings: List[str] = []
    service = service or SimulationService()

    n = max(request.n_points, 2)
    param_values = [
        request.variable_min + i * (request.variable_max - request.variable_min) / (n - 1)
        for i in range(n)
    ]

    keys = [f"{o.stream_id}.{o.property}" for o in request.outputs]
    results: Dict[str, List[Optional[float]]] = {key: [] for key in keys}
    converged: List[bool] = []

    for idx, val in enumerate(param_values):
        payload = copy.deepcopy(request.flowsheet)

        if not _apply(payload, request.variable, val):
            warnings.append(
                f"Variable '{request.variable.target_id}.{request.variable.field}' not found in flowsheet"
            )
            for key in keys:
                results[key].append(None)
            converged.append(False)
            continue

        sim = service.simulate(payload)
        converged.append(sim.converged)
        if sim.status == "error":
            warnings.append(f"Point {idx} (val={val:.4g}) failed: {'; '.join(sim.warnings)}")
            for key in keys:
                results[key].append(None)
            continue

        for key, out in zip(keys, request.outputs):
            results[key].append(_read(sim, out))

    logger.info(
        "Sensitivity sweep of {}.{}: {}/{} points converged",
        request.variable.target_id, request.variable.field, sum(converged), n,
    )
    return schemas.SensitivityResult(
        parameter_values=param_values,
        results=results,
        converged=converged,
        warnings=warnings,
    )
