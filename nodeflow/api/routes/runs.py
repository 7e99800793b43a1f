"""
Run API Routes.

Endpoints for starting, inspecting, cancelling and resetting runs, and
for stepping through them with the step player.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, HTTPException, status
import logging

from nodeflow.api.schemas import (
    ErrorResponse,
    EventListResponse,
    PlayerResponse,
    RunCreateRequest,
    RunListResponse,
    RunResponse,
    RunSummary,
)
from nodeflow.engine.errors import (
    GraphValidationError,
    PresetNotFoundError,
    ScriptNotFoundError,
)
from nodeflow.engine.graph import Graph
from nodeflow.engine.player import LiveRunSource, RunRecorder, StepPlayer
from nodeflow.engine.scheduler import Scheduler
from nodeflow.presets import preset_registry
from nodeflow.storage.memory import StoredRun, run_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])

# Global scheduler shared by all API runs
scheduler = Scheduler()


# ============================================================
# Helpers
# ============================================================

def build_graph(document: Dict[str, Any]) -> Graph:
    """
    Resolve presets and build a validated graph.

    Raises:
        HTTPException: 400 for unknown presets/scripts or an invalid graph
    """
    try:
        resolved = preset_registry.resolve_document(document)
    except (PresetNotFoundError, ScriptNotFoundError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    graph = Graph.from_document(resolved)
    try:
        graph.ensure_valid()
    except GraphValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"message": "Graph validation failed", "errors": e.errors},
        )
    return graph


async def start_run(
    graph: Graph,
    name: str,
    wait: bool = True,
    scenario: Optional[str] = None,
) -> StoredRun:
    """Start a run with a recorder and player attached, and store it."""
    handle = scheduler.new_handle(graph)
    recorder = RunRecorder(handle)
    player = StepPlayer(LiveRunSource(scheduler, handle, recorder))
    stored = await run_storage.save(StoredRun(
        run_id=handle.run_id,
        name=name,
        handle=handle,
        recorder=recorder,
        player=player,
        scenario=scenario,
    ))

    scheduler.start(graph, handle)
    logger.info(f"Run {handle.run_id} started for '{name}'")
    if wait:
        await handle.wait()
    return stored


async def get_stored(run_id: str) -> StoredRun:
    stored = await run_storage.get(run_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return stored


def run_to_response(stored: StoredRun) -> RunResponse:
    data = stored.handle.to_dict()
    return RunResponse(
        name=stored.name,
        mermaid_diagram=stored.handle.graph.to_mermaid(),
        **data,
    )


def player_to_response(stored: StoredRun) -> PlayerResponse:
    return PlayerResponse(run_id=stored.run_id, **stored.player.to_dict())


# ============================================================
# Run Endpoints
# ============================================================

@router.post(
    "",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid graph document"}},
)
async def create_run(request: RunCreateRequest) -> RunResponse:
    """
    Start a run of a graph document.

    Node documents may reference presets; their config is merged under the
    document's. With ``wait`` false the run continues in the background.
    """
    graph = build_graph({
        "name": request.name,
        "description": request.description or "",
        "nodes": request.nodes,
        "edges": request.edges,
    })
    stored = await start_run(graph, request.name, wait=request.wait)
    return run_to_response(stored)


@router.get("", response_model=RunListResponse)
async def list_runs() -> RunListResponse:
    """List all runs."""
    runs = await run_storage.list_all()
    return RunListResponse(
        runs=[RunSummary(**r.to_dict()) for r in runs],
        total=len(runs),
    )


@router.get(
    "/{run_id}",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(run_id: str) -> RunResponse:
    """Get the current state of a run."""
    return run_to_response(await get_stored(run_id))


@router.get(
    "/{run_id}/events",
    response_model=EventListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run_events(run_id: str, node_id: Optional[str] = None) -> EventListResponse:
    """Events emitted during the run, optionally for one node."""
    stored = await get_stored(run_id)
    bus = stored.handle.bus
    events = bus.for_node(node_id) if node_id else bus.history()
    return EventListResponse(
        run_id=run_id,
        events=[e.to_dict() for e in events],
        total=len(events),
    )


@router.post(
    "/{run_id}/cancel",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str) -> RunResponse:
    """Cancel a running run; finished nodes keep their outputs."""
    stored = await get_stored(run_id)
    await scheduler.cancel(stored.handle)
    return run_to_response(stored)


@router.post(
    "/{run_id}/reset",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def reset_run(run_id: str) -> RunResponse:
    """Return every node to idle and discard recorded steps."""
    stored = await get_stored(run_id)
    await stored.player.reset()
    return run_to_response(stored)


@router.delete(
    "/{run_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_run(run_id: str):
    """Delete a run, cancelling it first if needed."""
    stored = await get_stored(run_id)
    await scheduler.cancel(stored.handle)
    stored.recorder.close()
    await run_storage.delete(run_id)
    logger.info(f"Deleted run: {run_id}")


# ============================================================
# Player Endpoints
# ============================================================

@router.get(
    "/{run_id}/player",
    response_model=PlayerResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_player(run_id: str) -> PlayerResponse:
    """Current player position."""
    return player_to_response(await get_stored(run_id))


@router.post(
    "/{run_id}/player/next",
    response_model=PlayerResponse,
    responses={404: {"model": ErrorResponse}},
)
async def player_next(run_id: str) -> PlayerResponse:
    """Show the next step (restarts the run after a reset)."""
    stored = await get_stored(run_id)
    await stored.player.next()
    return player_to_response(stored)


@router.post(
    "/{run_id}/player/prev",
    response_model=PlayerResponse,
    responses={404: {"model": ErrorResponse}},
)
async def player_prev(run_id: str) -> PlayerResponse:
    """Show the previous step without re-executing anything."""
    stored = await get_stored(run_id)
    stored.player.prev()
    return player_to_response(stored)


@router.post(
    "/{run_id}/player/reset",
    response_model=PlayerResponse,
    responses={404: {"model": ErrorResponse}},
)
async def player_reset(run_id: str) -> PlayerResponse:
    """Reset the player and the run behind it."""
    stored = await get_stored(run_id)
    await stored.player.reset()
    return player_to_response(stored)
