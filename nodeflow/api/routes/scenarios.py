"""
Scenario API Routes.

Endpoints for listing the bundled scenarios, running them and reading
their scripted step sequences.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, status
import logging

from nodeflow.api.routes.runs import build_graph, run_to_response, start_run
from nodeflow.api.schemas import (
    ErrorResponse,
    RunResponse,
    ScenarioInfo,
    ScenarioListResponse,
    ScenarioRunRequest,
    StepInfo,
    StepListResponse,
)
from nodeflow.engine.player import ScriptedSource, StepPlayer
from nodeflow.scenarios import Scenario, get_scenario, list_scenarios


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scenarios", tags=["Scenarios"])


def _get_scenario(name: str) -> Scenario:
    scenario = get_scenario(name)
    if scenario is None:
        raise HTTPException(status_code=404, detail=f"Scenario '{name}' not found")
    return scenario


@router.get("", response_model=ScenarioListResponse)
async def get_scenarios() -> ScenarioListResponse:
    """List the bundled scenarios."""
    scenarios = list_scenarios()
    return ScenarioListResponse(
        scenarios=[ScenarioInfo(**s) for s in scenarios],
        total=len(scenarios),
    )


@router.post(
    "/{name}/run",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
async def run_scenario(name: str, request: Optional[ScenarioRunRequest] = None) -> RunResponse:
    """Run a scenario's graph live."""
    scenario = _get_scenario(name)
    request = request or ScenarioRunRequest()
    graph = build_graph(scenario.document())
    stored = await start_run(graph, scenario.title, wait=request.wait, scenario=name)
    return run_to_response(stored)


@router.get(
    "/{name}/steps",
    response_model=StepListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_scenario_steps(name: str) -> StepListResponse:
    """Play a scenario's scripted step sequence to the end and list it."""
    scenario = _get_scenario(name)
    if scenario.steps is None:
        raise HTTPException(status_code=404, detail=f"Scenario '{name}' has no scripted steps")

    graph = build_graph(scenario.document())
    player = StepPlayer(ScriptedSource(graph, scenario.steps()), interval_ms=0)
    await player.play()

    steps = [
        StepInfo(index=s.index, label=s.label, statuses=s.snapshot.statuses())
        for s in player.source.steps
    ]
    return StepListResponse(name=name, steps=steps, total=len(steps))
