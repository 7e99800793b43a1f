"""
Three Jobs Scenario.

A linear pipeline over a counter:

    Start {counter: 10} → Add +1 → Multiply ×3 → Add +1

Each job is a one-line script body; the final output is {counter: 34}.
"""

from typing import Any, Dict, List
import logging

from nodeflow.engine.graph import Graph
from nodeflow.engine.scheduler import RunHandle, Scheduler
from nodeflow.presets import preset_registry


logger = logging.getLogger(__name__)


INITIAL_INPUT = {"counter": 10}

JOBS: List[Dict[str, str]] = [
    {
        "id": "add1-first",
        "label": "Add +1",
        "script": 'return {"counter": input["counter"] + 1}',
        "description": "Adds 1 to counter",
    },
    {
        "id": "multiply3",
        "label": "Multiply ×3",
        "script": 'return {"counter": input["counter"] * 3}',
        "description": "Multiplies counter by 3",
    },
    {
        "id": "add1-last",
        "label": "Add +1",
        "script": 'return {"counter": input["counter"] + 1}',
        "description": "Adds 1 to counter",
    },
]


# ============================================================
# Workflow Factory
# ============================================================

def create_three_jobs_document(counter: int = 10) -> Dict[str, Any]:
    """
    Create the three-jobs graph document.

    Args:
        counter: Seed value of the starting node

    Returns:
        Unresolved graph document (nodes reference presets)
    """
    nodes: List[Dict[str, Any]] = [
        {
            "id": "start",
            "preset": "starting",
            "label": "Input",
            "config": {"input": {**INITIAL_INPUT, "counter": counter}},
        }
    ]
    for job in JOBS:
        nodes.append({
            "id": job["id"],
            "preset": "job-py",
            "label": job["label"],
            "config": {"script": job["script"], "description": job["description"]},
        })

    chain = ["start"] + [job["id"] for job in JOBS]
    edges = [
        {"id": f"{source}-{target}", "source": source, "target": target}
        for source, target in zip(chain, chain[1:])
    ]

    return {
        "id": "three-jobs",
        "name": "Three Jobs",
        "description": "Counter pipeline: +1, ×3, +1",
        "nodes": nodes,
        "edges": edges,
    }


def create_three_jobs_graph(counter: int = 10) -> Graph:
    """Build the resolved three-jobs graph."""
    document = preset_registry.resolve_document(create_three_jobs_document(counter))
    return Graph.from_document(document)


# ============================================================
# Example Usage
# ============================================================

async def run_three_jobs_demo(scheduler: Scheduler = None) -> RunHandle:
    """
    Run the pipeline and print each job's input and output.

    Usage:
        import asyncio
        from nodeflow.scenarios.three_jobs import run_three_jobs_demo
        asyncio.run(run_three_jobs_demo())
    """
    graph = create_three_jobs_graph()
    handle = await (scheduler or Scheduler()).run(graph)

    print(f"Run status: {handle.status.value}")
    for node_id in graph.topological_order():
        print(f"  {graph.node(node_id).name}: {handle.inputs.get(node_id)} -> {handle.outputs.get(node_id)}")

    return handle


if __name__ == "__main__":
    import asyncio
    asyncio.run(run_three_jobs_demo())
