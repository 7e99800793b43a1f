"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


# ============================================================
# Run Schemas
# ============================================================

class RunCreateRequest(BaseModel):
    """Request to start a run of a graph document."""
    name: str = Field("Unnamed Workflow", description="Name of the workflow")
    description: Optional[str] = Field(None, description="What this workflow does")
    nodes: List[Dict[str, Any]] = Field(..., description="Node documents (may reference presets)")
    edges: List[Dict[str, Any]] = Field(default_factory=list, description="Edge documents")
    wait: bool = Field(
        True,
        description="If true, respond once the run is finished; otherwise return immediately",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "name": "counter",
                "nodes": [
                    {"id": "start", "preset": "starting", "config": {"input": {"counter": 10}}},
                    {
                        "id": "add1",
                        "preset": "job-py",
                        "label": "Add +1",
                        "config": {"script": "return {\"counter\": input[\"counter\"] + 1}"},
                    },
                ],
                "edges": [{"source": "start", "target": "add1"}],
                "wait": True,
            }
        }


class RunSummary(BaseModel):
    """Short description of a stored run."""
    run_id: str
    name: str
    scenario: Optional[str] = None
    status: str
    node_count: int
    step_count: int
    created_at: str


class RunListResponse(BaseModel):
    """Response listing runs."""
    runs: List[RunSummary]
    total: int


class RunResponse(BaseModel):
    """Full state of a run."""
    run_id: str
    graph_id: str
    name: str
    status: str
    nodes: Dict[str, Dict[str, Any]] = Field(..., description="Per-node state by id")
    inputs: Dict[str, Any]
    outputs: Dict[str, Any]
    errors: Dict[str, str]
    error: Optional[str] = None
    event_count: int
    transition_count: int
    started_at: Optional[str]
    completed_at: Optional[str]
    mermaid_diagram: Optional[str] = Field(None, description="Mermaid diagram of the graph")

    class Config:
        json_schema_extra = {
            "example": {
                "run_id": "run-1-3fa2",
                "graph_id": "three-jobs",
                "name": "Three Jobs",
                "status": "completed",
                "nodes": {"start": {"status": "done", "progress": 100}},
                "inputs": {"add1-first": {"counter": 10}},
                "outputs": {"add1-first": {"counter": 11}},
                "errors": {},
                "error": None,
                "event_count": 0,
                "transition_count": 13,
                "started_at": "2024-01-01T12:00:00",
                "completed_at": "2024-01-01T12:00:01",
                "mermaid_diagram": "graph LR\n    start --> add1-first",
            }
        }


class EventListResponse(BaseModel):
    """Events emitted during a run, in timestamp order."""
    run_id: str
    events: List[Dict[str, Any]]
    total: int


# ============================================================
# Player Schemas
# ============================================================

class PlayerResponse(BaseModel):
    """Step player position and the step it shows."""
    run_id: str
    state: str
    cursor: int
    total_steps: int
    label: str
    current_step: Optional[Dict[str, Any]] = None


class StepInfo(BaseModel):
    index: int
    label: str
    statuses: Dict[str, str]


class StepListResponse(BaseModel):
    """A full step sequence (labels and per-node statuses)."""
    name: str
    steps: List[StepInfo]
    total: int


# ============================================================
# Scenario & Preset Schemas
# ============================================================

class ScenarioInfo(BaseModel):
    name: str
    title: str
    description: str
    scripted_steps: int


class ScenarioListResponse(BaseModel):
    scenarios: List[ScenarioInfo]
    total: int


class ScenarioRunRequest(BaseModel):
    """Options for running a scenario."""
    wait: bool = Field(True, description="Respond once the run is finished")


class PresetInfo(BaseModel):
    """Information about a registered preset."""
    id: str
    type: str
    subType: Optional[str] = None
    label: str
    description: str
    tags: List[str]
    config: Dict[str, Any]
    ui: Dict[str, Any]


class PresetListResponse(BaseModel):
    """Response listing presets."""
    presets: List[PresetInfo]
    total: int


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[Any] = None
    status_code: int
