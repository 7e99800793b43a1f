"""
Four-Node Concurrent Scenario.

    Orchestrator ─┬─→ Worker A ─┬─→ Aggregator
                  └─→ Worker B ─┘

The orchestrator dispatches two tasks, both workers run concurrently
and the aggregator merges their artifacts once both are done.

Two renditions share the same graph:
- a scripted step sequence (19 steps) for guided playback
- live Python scripts executed by the Scheduler
"""

from typing import Any, Dict, List
import logging

from nodeflow.engine.graph import Graph
from nodeflow.engine.player import ScriptedSource, StepDef, StepPlayer
from nodeflow.engine.scheduler import RunStatus
from nodeflow.presets import preset_registry


logger = logging.getLogger(__name__)


ORCHESTRATOR_SCRIPT = '''def activate(ctx):
    print("Analyzing workload...")
    ctx.report(progress=30, task="Planning tasks")
    tasks = {"task_a": "data validation", "task_b": "schema migration"}
    ctx.report(progress=60, task="Dispatching")
    print("⚡ dispatch: task_a → Worker A")
    print("⚡ dispatch: task_b → Worker B")
    ctx.emit("message", "dispatched 2 tasks")
    return tasks
'''

WORKER_A_SCRIPT = '''def activate(ctx):
    task = ctx.input["task_a"]
    print("Processing: " + task + "...")
    ctx.report(progress=35, task="Validating schema")
    print("⚡ tool_call: validate(schema)")
    print("← validation: 24/24 fields pass")
    ctx.report(progress=90, task="Publishing report")
    print("📦 publish: validation-report.json")
    print("✓ Worker A complete")
    return {"artifact": "validation-report.json", "fields": 24}
'''

WORKER_B_SCRIPT = '''def activate(ctx):
    task = ctx.input["task_b"]
    print("Processing: " + task + "...")
    ctx.report(progress=40, task="Migrating tables")
    print("⚡ tool_call: migrate(tables)")
    print("← migration: 8 tables updated")
    print("⚡ tool_call: run_tests()")
    print("← 15/15 tests pass ✓")
    ctx.report(progress=95, task="Publishing result")
    print("📦 publish: migration-result.sql")
    print("✓ Worker B complete")
    return {"artifact": "migration-result.sql", "tables": 8}
'''

AGGREGATOR_SCRIPT = '''def activate(ctx):
    artifacts = []
    for source in ctx.incoming:
        result = ctx.input[source.id]
        print("📥 read: " + result["artifact"])
        artifacts.append(result["artifact"])
    ctx.report(progress=60, task="Merging results")
    print("📦 publish: deploy-package.tar.gz")
    print("✓ Aggregator complete, ready to deploy")
    return {"package": "deploy-package.tar.gz", "artifacts": artifacts}
'''


# ============================================================
# Workflow Factory
# ============================================================

def create_four_node_document(live: bool = True) -> Dict[str, Any]:
    """
    Create the four-node graph document.

    Args:
        live: Attach the Python scripts (False gives script-less nodes,
              as used by the scripted playback)
    """

    def agent(node_id: str, label: str, task: str, script: str) -> Dict[str, Any]:
        config: Dict[str, Any] = {"task": task}
        if live:
            config["script"] = script
        return {
            "id": node_id,
            "type": "agent",
            "subType": "py",
            "label": label,
            "config": config,
        }

    aggregator = agent("agg", "Aggregator", "Merge results, create deploy package", AGGREGATOR_SCRIPT)
    aggregator.update({"type": "aggregator", "preset": "aggregator-merge"})

    return {
        "id": "four-node-concurrent",
        "name": "Four-Node Concurrent",
        "description": "Orchestrator fans out to two workers, aggregator fans in",
        "nodes": [
            agent("orch", "Orchestrator", "Plan and dispatch tasks to workers", ORCHESTRATOR_SCRIPT),
            agent("wa", "Worker A", "Data validation", WORKER_A_SCRIPT),
            agent("wb", "Worker B", "Schema migration", WORKER_B_SCRIPT),
            aggregator,
        ],
        "edges": [
            {"id": "orch-wa", "source": "orch", "target": "wa"},
            {"id": "orch-wb", "source": "orch", "target": "wb"},
            {"id": "wa-agg", "source": "wa", "target": "agg"},
            {"id": "wb-agg", "source": "wb", "target": "agg"},
        ],
    }


def create_four_node_graph(live: bool = True) -> Graph:
    """Build the resolved four-node graph."""
    document = preset_registry.resolve_document(create_four_node_document(live))
    return Graph.from_document(document)


# ============================================================
# Scripted steps
# ============================================================

def four_node_steps() -> List[StepDef]:
    """The scripted step sequence: 19 steps ending in "All nodes done"."""
    return [
        # Orchestrator phase
        StepDef("Orchestrator starting", {
            "orch": {"status": "waking", "logs": ["Initializing orchestrator..."]},
        }),
        StepDef("Orchestrator planning tasks", {
            "orch": {"status": "running", "progress": 30, "currentTask": "Planning tasks",
                     "logs": ["Analyzing workload..."]},
        }),
        StepDef("Orchestrator dispatching", {
            "orch": {"progress": 60, "currentTask": "Dispatching", "callsCount": 2,
                     "logs": ["⚡ dispatch: task_a → Worker A", "⚡ dispatch: task_b → Worker B"]},
        }, events=[("orch", "message", "dispatched 2 tasks")]),
        StepDef("Orchestrator dispatched", {
            "orch": {"status": "done", "progress": 100, "logs": ["✓ Tasks dispatched"]},
        }),

        # Concurrent workers phase
        StepDef("Workers A & B starting", {
            "wa": {"status": "waking", "logs": ["Initializing Worker A..."]},
            "wb": {"status": "waking", "logs": ["Initializing Worker B..."]},
        }),
        StepDef("Workers running (concurrent)", {
            "wa": {"status": "running", "progress": 15, "currentTask": "Data validation",
                   "logs": ["Processing: data validation..."]},
            "wb": {"status": "running", "progress": 20, "currentTask": "Schema migration",
                   "logs": ["Processing: schema migration..."]},
        }),
        StepDef("Workers progressing", {
            "wa": {"progress": 35, "callsCount": 1, "logs": ["⚡ tool_call: validate(schema)"]},
            "wb": {"progress": 40, "callsCount": 1, "logs": ["⚡ tool_call: migrate(tables)"]},
        }),
        StepDef("Tool results received", {
            "wa": {"progress": 50, "logs": ["← validation: 24/24 fields pass"]},
            "wb": {"progress": 55, "logs": ["← migration: 8 tables updated"]},
        }),
        StepDef("Workers continuing", {
            "wa": {"progress": 70, "logs": ["Generating validation report..."]},
            "wb": {"progress": 65, "logs": ["Running migration tests..."]},
        }),
        StepDef("Worker A finishing", {
            "wa": {"progress": 90, "logs": ["📦 publish: validation-report.json"]},
            "wb": {"progress": 80, "callsCount": 2, "logs": ["⚡ tool_call: run_tests()"]},
        }, events=[("wa", "message", "validation-report.json")]),
        StepDef("Worker A done, B still working", {
            "wa": {"status": "done", "progress": 100, "logs": ["✓ Worker A complete"]},
            "wb": {"progress": 90, "logs": ["← 15/15 tests pass ✓"]},
        }),
        StepDef("Worker B publishing", {
            "wb": {"progress": 95, "logs": ["📦 publish: migration-result.sql"]},
        }, events=[("wb", "message", "migration-result.sql")]),
        StepDef("Worker B done", {
            "wb": {"status": "done", "progress": 100, "logs": ["✓ Worker B complete"]},
        }),

        # Aggregator phase
        StepDef("Aggregator starting", {
            "agg": {"status": "waking", "logs": ["Initializing aggregator..."]},
        }),
        StepDef("Aggregator reading artifacts", {
            "agg": {"status": "running", "progress": 20, "currentTask": "Reading artifacts",
                    "logs": ["📥 read: validation-report.json", "📥 read: migration-result.sql"]},
        }),
        StepDef("Aggregator merging results", {
            "agg": {"progress": 60, "currentTask": "Merging results", "logs": ["Merging results..."]},
        }),
        StepDef("Aggregator verifying package", {
            "agg": {"progress": 75, "currentTask": "Verifying package", "logs": ["Verifying checksums..."]},
        }),
        StepDef("Aggregator publishing final artifact", {
            "agg": {"progress": 90, "logs": ["📦 publish: deploy-package.tar.gz"]},
        }, events=[("agg", "message", "deploy-package.tar.gz")]),
        StepDef("All nodes done", {
            "agg": {"status": "done", "progress": 100, "logs": ["✓ Aggregator complete, ready to deploy"]},
        }, run_status=RunStatus.COMPLETED),
    ]


def create_four_node_player(interval_ms: float = None) -> StepPlayer:
    """A player over the scripted four-node sequence."""
    source = ScriptedSource(create_four_node_graph(live=False), four_node_steps())
    return StepPlayer(source, interval_ms=interval_ms)
