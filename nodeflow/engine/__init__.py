"""
Engine package - Graph model, sandbox, scheduler and step playback.
"""

from nodeflow.engine.errors import (
    EngineError,
    GraphValidationError,
    NeighborResolutionError,
    InvalidTransitionError,
    ScriptError,
    ScriptTimeoutError,
    PresetNotFoundError,
    ScriptNotFoundError,
)
from nodeflow.engine.ids import IdGenerator
from nodeflow.engine.node import Node, NodeConfig, NodeState, NodeStatus, NodeType
from nodeflow.engine.graph import Edge, Graph, Neighbors
from nodeflow.engine.context import ContextBuilder, ExecutionContext
from nodeflow.engine.events import EventBus, EventType, FlowEvent
from nodeflow.engine.sandbox import LogKind, ScriptSandbox, classify_log_line
from nodeflow.engine.state import RunSnapshot
from nodeflow.engine.scheduler import RunHandle, RunStatus, Scheduler, Transition, execute_graph
from nodeflow.engine.player import (
    LiveRunSource,
    PlayerState,
    RecordedSource,
    RunRecorder,
    ScriptedSource,
    Step,
    StepDef,
    StepPlayer,
)

__all__ = [
    "EngineError",
    "GraphValidationError",
    "NeighborResolutionError",
    "InvalidTransitionError",
    "ScriptError",
    "ScriptTimeoutError",
    "PresetNotFoundError",
    "ScriptNotFoundError",
    "IdGenerator",
    "Node",
    "NodeConfig",
    "NodeState",
    "NodeStatus",
    "NodeType",
    "Edge",
    "Graph",
    "Neighbors",
    "ContextBuilder",
    "ExecutionContext",
    "EventBus",
    "EventType",
    "FlowEvent",
    "LogKind",
    "ScriptSandbox",
    "classify_log_line",
    "RunSnapshot",
    "RunHandle",
    "RunStatus",
    "Scheduler",
    "Transition",
    "execute_graph",
    "LiveRunSource",
    "PlayerState",
    "RecordedSource",
    "RunRecorder",
    "ScriptedSource",
    "Step",
    "StepDef",
    "StepPlayer",
]
