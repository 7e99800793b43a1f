"""
Built-in presets.

Registered into the global preset registry on import.
"""

from nodeflow.presets.registry import Preset, PresetRegistry


PY_HELLO = '''def activate(ctx):
    print("Hello from", ctx.node.label)
'''

BUILTIN_PRESETS = [
    Preset(
        id="starting",
        node_type="starting",
        label="Start",
        description="Entry point; emits its seed input",
        tags=["start", "entry", "begin"],
        ui={"icons": {"default": "play"}, "color": "#22c55e"},
    ),
    Preset(
        id="job-py",
        node_type="job",
        sub_type="py",
        label="Python Script",
        description="Python for data processing and ML",
        tags=["script", "python", "py", "ml"],
        config={"script": PY_HELLO},
        ui={"icons": {"default": "script-py", "working": "loader-2"}},
    ),
    Preset(
        id="job-node-logger",
        node_type="job",
        sub_type="py",
        label="Node Logger",
        description="Logs this node's metadata and neighbors, passing input through",
        tags=["script", "py", "logger", "debug", "diagnostic"],
        config={"scriptName": "node_logger"},
        ui={"icons": {"default": "clipboard-list", "working": "loader-2"}},
    ),
    Preset(
        id="job-data-pipeline",
        node_type="job",
        sub_type="py",
        label="Data Pipeline",
        description="Validates, transforms and outputs structured records",
        tags=["script", "py", "etl", "pipeline", "data"],
        config={"scriptName": "data_pipeline", "records": 42},
        ui={"icons": {"default": "database", "working": "loader-2"}},
    ),
    Preset(
        id="job-test-runner",
        node_type="job",
        sub_type="py",
        label="Test Runner",
        description="Runs a set of assertions and reports results",
        tags=["script", "py", "test", "assert"],
        config={"scriptName": "test_runner"},
        ui={"icons": {"default": "flask-conical", "working": "loader-2"}},
    ),
    Preset(
        id="aggregator-merge",
        node_type="aggregator",
        label="Aggregator",
        description="Waits for every predecessor and merges their outputs",
        tags=["aggregator", "merge", "fan-in", "join"],
        ui={"icons": {"default": "merge", "working": "loader-2"}, "color": "#f59e0b"},
    ),
]


def register_builtin_presets(registry: PresetRegistry) -> PresetRegistry:
    """Add the built-in presets to a registry."""
    for preset in BUILTIN_PRESETS:
        registry.add(preset)
    return registry
