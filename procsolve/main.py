from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from . import schemas
from .errors import ConfigurationError
from .export_csv import export_combined_csv
from .sensitivity import run_sensitivity
from .simulation_service import SimulationService

app = FastAPI(title="Process Flowsheet Solver API", version="0.1.0")
service = SimulationService()


@app.get("/healthz")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/solve", response_model=schemas.SimulationResult)
def solve(payload: schemas.FlowsheetPayload) -> schemas.SimulationResult:
    try:
        return service.simulate(payload)
    except Exception as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/dof", response_model=schemas.DOFResult)
def degrees_of_freedom(payload: schemas.FlowsheetPayload) -> schemas.DOFResult:
    try:
        return service.check_dof(payload)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/sensitivity", response_model=schemas.SensitivityResult)
def sensitivity(request: schemas.SensitivityRequest) -> schemas.SensitivityResult:
    try:
        return run_sensitivity(request, service)
    except Exception as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/export/csv", response_class=PlainTextResponse)
def export_csv(payload: schemas.FlowsheetPayload) -> str:
    return export_combined_csv(service.simulate(payload))


@app.post("/scenarios", response_model=dict)
def create_scenario(request: schemas.ScenarioCreateRequest) -> dict[str, str]:
    scenario_id = service.create_scenario(request)
    return {"scenario_id": scenario_id}


@app.post("/scenarios/{scenario_id}/run", response_model=schemas.ScenarioRunResponse)
def run_scenario(scenario_id: str) -> schemas.ScenarioRunResponse:
    try:
        result = service.run_scenario(scenario_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return schemas.ScenarioRunResponse(scenario_id=scenario_id, result=result)
