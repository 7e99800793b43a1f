"""
Scenarios package - Sample graphs shipped with the engine.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass

from nodeflow.engine.player import StepDef
from nodeflow.scenarios.three_jobs import create_three_jobs_document, create_three_jobs_graph
from nodeflow.scenarios.four_node import (
    create_four_node_document,
    create_four_node_graph,
    create_four_node_player,
    four_node_steps,
)


@dataclass
class Scenario:
    """A named sample graph, optionally with a scripted step sequence."""
    name: str
    title: str
    description: str
    document: Callable[[], Dict[str, Any]]
    steps: Optional[Callable[[], List[StepDef]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "scripted_steps": len(self.steps()) if self.steps else 0,
        }


SCENARIOS: Dict[str, Scenario] = {
    "three-jobs": Scenario(
        name="three-jobs",
        title="Three Jobs",
        description="Start {counter: 10} → +1 → ×3 → +1",
        document=create_three_jobs_document,
    ),
    "four-node": Scenario(
        name="four-node",
        title="Four-Node Concurrent",
        description="Orchestrator → Worker A & Worker B → Aggregator",
        document=create_four_node_document,
        steps=four_node_steps,
    ),
}


def get_scenario(name: str) -> Optional[Scenario]:
    return SCENARIOS.get(name)


def list_scenarios() -> List[Dict[str, Any]]:
    return [scenario.to_dict() for scenario in SCENARIOS.values()]


__all__ = [
    "Scenario",
    "SCENARIOS",
    "get_scenario",
    "list_scenarios",
    "create_three_jobs_document",
    "create_three_jobs_graph",
    "create_four_node_document",
    "create_four_node_graph",
    "create_four_node_player",
    "four_node_steps",
]
