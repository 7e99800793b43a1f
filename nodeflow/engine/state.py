"""
Run state snapshots.

A snapshot freezes the per-node states and the events emitted so far at
one point of a run. Step playback is a sequence of these.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from nodeflow.engine.events import FlowEvent
from nodeflow.engine.node import NodeState, NodeStatus


class RunSnapshot(BaseModel):
    """Per-node states and events at a specific point in execution."""

    timestamp: datetime = Field(default_factory=datetime.now)
    run_status: Optional[str] = None
    nodes: Dict[str, NodeState] = Field(default_factory=dict)
    events: List[FlowEvent] = Field(default_factory=list)

    @classmethod
    def capture(
        cls,
        states: Dict[str, NodeState],
        events: List[FlowEvent],
        run_status: Optional[str] = None,
    ) -> "RunSnapshot":
        """Deep-copy live state into a snapshot."""
        return cls(
            run_status=run_status,
            nodes={node_id: state.model_copy(deep=True) for node_id, state in states.items()},
            events=list(events),
        )

    def status_of(self, node_id: str) -> NodeStatus:
        return self.nodes[node_id].status

    def statuses(self) -> Dict[str, str]:
        return {node_id: state.status.value for node_id, state in self.nodes.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "run_status": self.run_status,
            "nodes": {
                node_id: state.model_dump(by_alias=True, mode="json")
                for node_id, state in self.nodes.items()
            },
            "events": [event.to_dict() for event in self.events],
        }
