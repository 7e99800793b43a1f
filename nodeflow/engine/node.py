"""
Node Definition for the Execution Engine.

A node is an identified execution unit: a coarse type, an execution
flavour (script language), an optional preset, its run state and its
configuration. Documents use camelCase keys; attributes are snake_case.
"""

from typing import Any, Dict, FrozenSet, List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from nodeflow.engine.errors import InvalidTransitionError


class NodeType(str, Enum):
    """Coarse kinds of nodes in a graph."""
    STARTING = "starting"      # Entry point, emits its seed input
    JOB = "job"                # Scripted unit of work
    AGENT = "agent"            # Scripted agent (same execution model as job)
    GROUP = "group"
    SUBFLOW = "subflow"
    AGGREGATOR = "aggregator"  # Merges several predecessors


class NodeStatus(str, Enum):
    """Per-node execution status."""
    IDLE = "idle"
    WAKING = "waking"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


# Moves allowed during a run; returning to IDLE only happens through reset().
ALLOWED_TRANSITIONS: Dict[NodeStatus, FrozenSet[NodeStatus]] = {
    NodeStatus.IDLE: frozenset({NodeStatus.WAKING}),
    NodeStatus.WAKING: frozenset({NodeStatus.RUNNING, NodeStatus.ERROR}),
    NodeStatus.RUNNING: frozenset({NodeStatus.DONE, NodeStatus.ERROR}),
    NodeStatus.DONE: frozenset(),
    NodeStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES = frozenset({NodeStatus.DONE, NodeStatus.ERROR})


class NodeState(BaseModel):
    """
    Mutable run state of one node.

    Only the scheduler (or a scripted step source) writes to it, one
    writer per node.
    """

    status: NodeStatus = NodeStatus.IDLE
    current_task: str = Field("", alias="currentTask")
    thought: str = ""
    progress: float = Field(0, ge=0, le=100)
    exec_time: Optional[float] = Field(None, alias="execTime")  # milliseconds
    calls_count: int = Field(0, alias="callsCount", ge=0)
    logs: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    def can_transition(self, status: NodeStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: NodeStatus) -> None:
        """Move to a new status, enforcing the state machine."""
        status = NodeStatus(status)
        if not self.can_transition(status):
            raise InvalidTransitionError(
                f"Cannot move node from '{self.status.value}' to '{status.value}'"
            )
        self.status = status

    def report(self, progress: Optional[float] = None, task: Optional[str] = None) -> None:
        """Apply a progress/task report from a running node."""
        if progress is not None:
            # Progress never goes backwards within one execution.
            self.progress = max(self.progress, min(100.0, max(0.0, float(progress))))
        if task is not None:
            self.current_task = str(task)

    def reset(self) -> None:
        """Return to a pristine idle state."""
        self.status = NodeStatus.IDLE
        self.current_task = ""
        self.thought = ""
        self.progress = 0
        self.exec_time = None
        self.calls_count = 0
        self.logs = []

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class NodeConfig(BaseModel):
    """
    Execution parameters of a node.

    Preset-derived fields that the engine does not know about are kept
    as extra attributes and exposed to scripts through ``ctx.node.data``.
    """

    script: Optional[str] = None
    script_name: Optional[str] = Field(None, alias="scriptName")
    sandbox: bool = True
    timeout: Optional[float] = Field(None, gt=0)  # milliseconds
    retries: int = Field(0, ge=0)
    input: Optional[Any] = None  # seed payload for entry nodes
    ui: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        extra = "allow"


class Node(BaseModel):
    """
    A node in the workflow graph.

    Attributes:
        id: Unique identifier within the graph
        type: Coarse kind (starting, job, aggregator, ...)
        sub_type: Execution flavour, e.g. the script language
        preset: Id of the preset the config was derived from
        label: Human-readable name
        state: Run state
        config: Execution parameters and presentation hints
    """

    id: str = Field(..., min_length=1)
    type: NodeType = NodeType.JOB
    sub_type: Optional[str] = Field(None, alias="subType")
    preset: Optional[str] = None
    label: str = ""
    state: NodeState = Field(default_factory=NodeState)
    config: NodeConfig = Field(default_factory=NodeConfig)

    class Config:
        populate_by_name = True

    @property
    def name(self) -> str:
        """Display name: the label, falling back to the id."""
        return self.label or self.id

    @property
    def has_script(self) -> bool:
        return bool(self.config.script and self.config.script.strip())

    def data(self) -> Dict[str, Any]:
        """The node data a script may read (config without script body and ui)."""
        data = self.config.model_dump(exclude={"script", "ui"}, by_alias=True)
        data["label"] = self.name
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node as a document."""
        return self.model_dump(by_alias=True, mode="json")
