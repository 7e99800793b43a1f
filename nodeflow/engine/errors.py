"""
Error taxonomy for the execution engine.

Validation errors are fatal for a run. Script errors, timeouts and
neighbor resolution errors are contained at node granularity.
"""

from typing import List, Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(EngineError):
    """The graph document is malformed (dangling edge, cycle, duplicate id)."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Graph validation failed: {'; '.join(self.errors)}")


class NeighborResolutionError(EngineError):
    """A node or predecessor output the graph cannot supply was requested."""


class InvalidTransitionError(EngineError):
    """A node status change not allowed by the state machine."""


class ScriptError(EngineError):
    """A node script raised (or could not be compiled)."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(f"Error in node '{node_id}': {message}")


class ScriptTimeoutError(ScriptError):
    """A node script exceeded its execution budget."""

    def __init__(self, node_id: str, timeout_ms: Optional[float]):
        self.timeout_ms = timeout_ms
        super().__init__(node_id, f"Timed out after {timeout_ms} ms")


class PresetNotFoundError(EngineError):
    """A node document references an unknown preset."""


class ScriptNotFoundError(EngineError):
    """A node references a workspace script that does not exist."""
