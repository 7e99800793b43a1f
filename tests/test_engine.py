"""
Tests for the Workflow Engine core components.
"""

import pytest
import asyncio
import itertools
from copy import deepcopy
from typing import Any, Dict, List

from nodeflow.engine.context import ContextBuilder
from nodeflow.engine.errors import (
    GraphValidationError,
    InvalidTransitionError,
    NeighborResolutionError,
    PresetNotFoundError,
    ScriptError,
    ScriptNotFoundError,
    ScriptTimeoutError,
)
from nodeflow.engine.events import EventBus, EventType
from nodeflow.engine.graph import Graph
from nodeflow.engine.ids import IdGenerator
from nodeflow.engine.node import Node, NodeState, NodeStatus
from nodeflow.engine.sandbox import LogKind, ScriptSandbox, classify_log_line
from nodeflow.engine.player import (
    LiveRunSource,
    PlayerState,
    RecordedSource,
    StepPlayer,
    join_names,
)
from nodeflow.engine.scheduler import RunStatus, Scheduler, TransitionKind
from nodeflow.presets import Preset, Registry, preset_registry
from nodeflow.scenarios import (
    create_four_node_graph,
    create_four_node_player,
    create_three_jobs_graph,
)
from nodeflow.workspace import list_scripts, load_script


def make_graph(nodes: List[Dict[str, Any]], edges: List[tuple] = ()) -> Graph:
    """Build a graph from short node docs and (source, target) pairs."""
    return Graph.from_document({
        "name": "test",
        "nodes": nodes,
        "edges": [{"source": s, "target": t} for s, t in edges],
    })


def job(node_id: str, script: str = None, **config) -> Dict[str, Any]:
    if script is not None:
        config["script"] = script
    return {"id": node_id, "type": "job", "subType": "py", "label": node_id.upper(), "config": config}


class FlakyRunner:
    """Script runner that fails a set number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.seen: List[Any] = []

    def execute(self, source, context, *, restricted, filename, write):
        self.seen.append(deepcopy(context.input))
        context.input["touched"] = context.input.get("touched", 0) + 1
        if len(self.seen) <= self.failures:
            raise ValueError("flaky")
        return {"attempts": len(self.seen), "input": context.input}


@pytest.fixture
def sandbox():
    sandbox = ScriptSandbox(max_workers=4)
    yield sandbox
    sandbox.shutdown()


@pytest.fixture
def scheduler(sandbox):
    return Scheduler(sandbox=sandbox)


# ============================================================
# Node Tests
# ============================================================

class TestNodeState:
    """Tests for the node status state machine."""

    def test_initial_state(self):
        """Test a fresh state is idle and empty."""
        state = NodeState()
        assert state.status == NodeStatus.IDLE
        assert state.progress == 0
        assert state.logs == []
        assert state.calls_count == 0

    def test_legal_transitions(self):
        """Test idle -> waking -> running -> done."""
        state = NodeState()
        state.transition(NodeStatus.WAKING)
        state.transition(NodeStatus.RUNNING)
        state.transition(NodeStatus.DONE)
        assert state.status == NodeStatus.DONE
        assert state.is_terminal

    def test_illegal_transition(self):
        """Test skipping states is rejected."""
        state = NodeState()
        with pytest.raises(InvalidTransitionError):
            state.transition(NodeStatus.DONE)

    def test_waking_can_fail(self):
        """Test a node can fail before running."""
        state = NodeState()
        state.transition(NodeStatus.WAKING)
        state.transition(NodeStatus.ERROR)
        assert state.status == NodeStatus.ERROR

    def test_progress_is_monotonic_and_clamped(self):
        """Test progress never goes backwards and stays within 0-100."""
        state = NodeState()
        state.report(progress=40)
        state.report(progress=20, task="Working")
        assert state.progress == 40
        assert state.current_task == "Working"
        state.report(progress=250)
        assert state.progress == 100

    def test_reset(self):
        """Test reset returns to a pristine idle state."""
        state = NodeState()
        state.transition(NodeStatus.WAKING)
        state.report(progress=50)
        state.logs.append("line")
        state.reset()
        assert state == NodeState()

    def test_camel_case_document(self):
        """Test documents use camelCase keys."""
        node = Node.model_validate({
            "id": "a",
            "subType": "py",
            "state": {"currentTask": "x", "callsCount": 2},
            "config": {"scriptName": "default", "color": "#fff"},
        })
        assert node.sub_type == "py"
        assert node.state.current_task == "x"
        assert node.config.script_name == "default"
        assert node.data()["color"] == "#fff"
        assert node.to_dict()["subType"] == "py"


# ============================================================
# Graph Tests
# ============================================================

class TestGraph:
    """Tests for the graph model and validator."""

    def test_valid_graph(self):
        """Test a simple chain validates."""
        graph = make_graph([job("a"), job("b")], [("a", "b")])
        assert graph.validate() == []
        assert graph.entry_nodes() == ["a"]

    def test_empty_graph(self):
        """Test a graph without nodes is invalid."""
        graph = make_graph([])
        assert graph.validate() == ["Graph must have at least one node"]

    def test_duplicate_ids(self):
        """Test duplicate node ids are reported."""
        graph = make_graph([job("a"), job("a")])
        errors = graph.validate()
        assert any("Duplicate" in e for e in errors)

    def test_dangling_edge(self):
        """Test edges to unknown nodes are reported."""
        graph = make_graph([job("a")], [("a", "ghost")])
        errors = graph.validate()
        assert len(errors) == 1
        assert "ghost" in errors[0]

    def test_cycle(self):
        """Test cycles are reported."""
        graph = make_graph([job("a"), job("b"), job("c")], [("a", "b"), ("b", "c"), ("c", "b")])
        errors = graph.validate()
        assert any("cycle" in e for e in errors)

    def test_ensure_valid_raises(self):
        """Test ensure_valid raises with the collected errors."""
        graph = make_graph([job("a")], [("a", "b")])
        with pytest.raises(GraphValidationError) as exc_info:
            graph.ensure_valid()
        assert exc_info.value.errors

    def test_neighbors_in_edge_order(self):
        """Test neighbors follow edge declaration order."""
        graph = create_four_node_graph()
        neighbors = graph.neighbors("agg")
        assert [n.id for n in neighbors.incoming] == ["wa", "wb"]
        assert neighbors.outgoing == []
        assert graph.is_aggregator("agg")

    def test_unknown_neighbor(self):
        """Test resolving an unknown node raises."""
        graph = make_graph([job("a")])
        with pytest.raises(NeighborResolutionError):
            graph.neighbors("missing")

    def test_topological_order(self):
        """Test dependency order with declaration order breaking ties."""
        graph = create_four_node_graph()
        assert graph.topological_order() == ["orch", "wa", "wb", "agg"]

    def test_descendants(self):
        """Test descendant computation."""
        graph = create_four_node_graph()
        assert graph.descendants("wa") == {"agg"}
        assert graph.descendants("orch") == {"wa", "wb", "agg"}

    def test_mermaid_generation(self):
        """Test Mermaid diagram generation."""
        graph = create_three_jobs_graph()
        mermaid = graph.to_mermaid()
        assert mermaid.startswith("graph LR")
        assert "start --> add1-first" in mermaid


# ============================================================
# Context Builder Tests
# ============================================================

class TestContextBuilder:
    """Tests for execution context construction."""

    def test_entry_node_gets_seed(self):
        """Test an entry node receives its own seed input."""
        graph = make_graph([job("a", input={"counter": 10})])
        ctx = ContextBuilder().build(graph.node("a"), graph, {})
        assert ctx.input == {"counter": 10}
        assert ctx.left_node is None
        assert ctx.right_node is None

    def test_missing_neighbors_are_none(self):
        """Test a lone node has no neighbors and an empty input."""
        graph = make_graph([job("solo")])
        ctx = ContextBuilder().build(graph.node("solo"), graph, {})
        assert ctx.input == {}
        assert ctx.left_node is None
        assert ctx.right_node is None
        assert ctx.incoming == ()

    def test_single_predecessor_output_verbatim(self):
        """Test one predecessor's output is the input as-is."""
        graph = make_graph([job("a"), job("b"), job("c")], [("a", "b"), ("b", "c")])
        ctx = ContextBuilder().build(graph.node("b"), graph, {"a": {"x": 1}})
        assert ctx.input == {"x": 1}
        assert ctx.left_node.id == "a"
        assert ctx.right_node.id == "c"

    def test_fan_in_keyed_by_predecessor(self):
        """Test several predecessors are merged by id in edge order."""
        graph = create_four_node_graph()
        ctx = ContextBuilder().build(graph.node("agg"), graph, {"wa": 1, "wb": 2})
        assert ctx.input == {"wa": 1, "wb": 2}
        assert list(ctx.input) == ["wa", "wb"]
        assert ctx.left_node.id == "wa"
        assert [n.id for n in ctx.incoming] == ["wa", "wb"]

    def test_input_is_a_copy(self):
        """Test scripts cannot mutate upstream outputs through their input."""
        graph = make_graph([job("a"), job("b")], [("a", "b")])
        outputs = {"a": {"items": [1]}}
        ctx = ContextBuilder().build(graph.node("b"), graph, outputs)
        ctx.input["items"].append(2)
        assert outputs["a"] == {"items": [1]}

    def test_missing_predecessor_output(self):
        """Test a predecessor without output raises."""
        graph = make_graph([job("a"), job("b")], [("a", "b")])
        with pytest.raises(NeighborResolutionError):
            ContextBuilder().build(graph.node("b"), graph, {})


# ============================================================
# Event Bus Tests
# ============================================================

class TestEventBus:
    """Tests for the event bus."""

    def test_history_in_timestamp_order(self):
        """Test history sorts by timestamp, not arrival."""
        times = iter([3.0, 1.0, 2.0])
        bus = EventBus(clock=lambda: next(times))
        bus.publish("a", "A", EventType.MESSAGE, "third")
        bus.publish("b", "B", EventType.MESSAGE, "first")
        bus.publish("c", "C", EventType.LOG, "second")
        assert [e.content for e in bus.history()] == ["first", "second", "third"]

    def test_ties_keep_emission_order(self):
        """Test equal timestamps fall back to emission order."""
        bus = EventBus(clock=lambda: 1.0)
        for i in range(5):
            bus.publish("a", "A", EventType.LOG, i)
        assert [e.content for e in bus.history()] == [0, 1, 2, 3, 4]

    def test_subscribe_and_unsubscribe(self):
        """Test observers receive events until unsubscribed."""
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        bus.publish("a", "A", EventType.MESSAGE, 1)
        unsubscribe()
        bus.publish("a", "A", EventType.MESSAGE, 2)
        assert [e.content for e in seen] == [1]

    def test_failing_observer_is_contained(self):
        """Test an observer error does not break emission."""
        bus = EventBus()

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.publish("a", "A", EventType.ERROR, "x")
        assert len(bus) == 1

    def test_seeded_ids_are_reproducible(self):
        """Test the same seed yields the same id sequence."""
        first = IdGenerator(prefix="evt", seed=7)
        second = IdGenerator(prefix="evt", seed=7)
        assert [first.next() for _ in range(3)] == [second.next() for _ in range(3)]
        assert first.next("run").startswith("run-4-")


# ============================================================
# Sandbox Tests
# ============================================================

class TestSandbox:
    """Tests for sandboxed script execution."""

    async def _run(self, sandbox, node_doc, input_payload=None, timeout_ms=2000):
        graph = make_graph([node_doc])
        node = graph.node(node_doc["id"])
        bus = EventBus()
        ctx = ContextBuilder().build(
            node, graph, {},
            emit=lambda t, c: bus.publish(node.id, node.name, EventType(t), c),
        )
        if input_payload is not None:
            ctx = ctx.__class__(**{**ctx.__dict__, "input": input_payload})
        result = await sandbox.run(node, ctx, timeout_ms)
        return result, bus

    @pytest.mark.asyncio
    async def test_body_script(self, sandbox):
        """Test a bare body sees ``input`` and returns the output."""
        result, _ = await self._run(
            sandbox, job("a", 'return {"counter": input["counter"] + 1}', input={"counter": 1})
        )
        assert result.output == {"counter": 2}

    @pytest.mark.asyncio
    async def test_module_script(self, sandbox):
        """Test a module defining activate(ctx)."""
        script = 'def activate(ctx):\n    print("Hello from", ctx.node.label)\n    return {"id": ctx.node.id}\n'
        result, bus = await self._run(sandbox, job("a", script))
        assert result.output == {"id": "a"}
        assert result.logs == ["Hello from A"]
        assert [e.content for e in bus.history()] == ["Hello from A"]
        assert bus.history()[0].type == EventType.LOG

    @pytest.mark.asyncio
    async def test_none_return_passes_input_through(self, sandbox):
        """Test a script returning nothing forwards its input."""
        result, _ = await self._run(sandbox, job("a", 'print("side effect")', input={"k": 1}))
        assert result.output == {"k": 1}

    @pytest.mark.asyncio
    async def test_no_script_passes_input_through(self, sandbox):
        """Test a node without a script forwards its input."""
        result, _ = await self._run(sandbox, job("a", input={"k": 2}))
        assert result.output == {"k": 2}

    @pytest.mark.asyncio
    async def test_emit_capability(self, sandbox):
        """Test scripts can emit messages on the bus."""
        result, bus = await self._run(sandbox, job("a", 'ctx.emit("message", {"n": 1})'))
        events = bus.history()
        assert events[0].type == EventType.MESSAGE
        assert events[0].content == {"n": 1}

    @pytest.mark.asyncio
    async def test_script_error(self, sandbox):
        """Test an exception becomes a ScriptError."""
        with pytest.raises(ScriptError) as exc_info:
            await self._run(sandbox, job("a", 'raise ValueError("bad input")'))
        assert exc_info.value.node_id == "a"
        assert exc_info.value.message == "ValueError: bad input"

    @pytest.mark.asyncio
    async def test_restricted_blocks_imports(self, sandbox):
        """Test restricted scripts cannot import modules."""
        with pytest.raises(ScriptError):
            await self._run(sandbox, job("a", "import os\nreturn os.getcwd()"))

    @pytest.mark.asyncio
    async def test_restricted_blocks_dunder_access(self, sandbox):
        """Test underscore attributes are rejected at compile time."""
        with pytest.raises(ScriptError) as exc_info:
            await self._run(sandbox, job("a", "return ctx.__class__"))
        assert exc_info.value.message.startswith("Syntax error")

    @pytest.mark.asyncio
    async def test_trusted_mode(self, sandbox):
        """Test sandbox=False runs with the full language."""
        script = "import math\nreturn {'v': math.floor(2.5), 's': f'{ctx.node.id}!'}"
        result, _ = await self._run(sandbox, job("a", script, sandbox=False))
        assert result.output == {"v": 2, "s": "a!"}

    @pytest.mark.asyncio
    async def test_timeout(self, sandbox):
        """Test a runaway script is aborted after its budget."""
        with pytest.raises(ScriptTimeoutError) as exc_info:
            await self._run(sandbox, job("a", "while True:\n    pass"), timeout_ms=200)
        assert "200" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unknown_sub_type(self, sandbox):
        """Test a node flavour without a runner fails cleanly."""
        node_doc = job("a", "echo hi")
        node_doc["subType"] = "sh"
        with pytest.raises(ScriptError):
            await self._run(sandbox, node_doc)

    def test_log_classification(self):
        """Test log lines are classified by their leading marker."""
        assert classify_log_line("⚡ tool_call: search()") == LogKind.TOOL_CALL
        assert classify_log_line("  📦 publish: report.json") == LogKind.ARTIFACT
        assert classify_log_line("← 200 OK") == LogKind.RESULT
        assert classify_log_line("ERROR: boom") == LogKind.ERROR
        assert classify_log_line("plain text") == LogKind.PLAIN


# ============================================================
# Scheduler Tests
# ============================================================

class TestScheduler:
    """Tests for the async scheduler."""

    @pytest.mark.asyncio
    async def test_three_jobs_pipeline(self, scheduler):
        """Test Start(10) -> +1 -> x3 -> +1 produces 34."""
        handle = await scheduler.run(create_three_jobs_graph())

        assert handle.status == RunStatus.COMPLETED
        assert handle.inputs["add1-first"] == {"counter": 10}
        assert handle.outputs["add1-first"] == {"counter": 11}
        assert handle.inputs["multiply3"] == {"counter": 11}
        assert handle.outputs["multiply3"] == {"counter": 33}
        assert handle.inputs["add1-last"] == {"counter": 33}
        assert handle.outputs["add1-last"] == {"counter": 34}
        assert handle.sink_outputs() == {"add1-last": {"counter": 34}}
        assert all(s.status == NodeStatus.DONE for s in handle.states.values())
        assert all(s.progress == 100 for s in handle.states.values())

    @pytest.mark.asyncio
    async def test_concurrent_branches(self, scheduler):
        """Test both workers run before either is done; the aggregator waits for both."""
        handle = await scheduler.run(create_four_node_graph())
        assert handle.status == RunStatus.COMPLETED

        status_changes = [t for t in handle.transitions if t.kind == TransitionKind.STATUS]

        def first(status, node_id):
            return next(
                i for i, t in enumerate(status_changes)
                if t.status == status and node_id in t.node_ids
            )

        both_running = [
            t for t in status_changes
            if t.status == NodeStatus.RUNNING and set(t.node_ids) == {"wa", "wb"}
        ]
        assert len(both_running) == 1
        running = first(NodeStatus.RUNNING, "wa")
        assert running < first(NodeStatus.DONE, "wa")
        assert running < first(NodeStatus.DONE, "wb")
        agg_waking = first(NodeStatus.WAKING, "agg")
        assert agg_waking > first(NodeStatus.DONE, "wa")
        assert agg_waking > first(NodeStatus.DONE, "wb")

        assert handle.inputs["agg"]["wa"]["artifact"] == "validation-report.json"
        assert handle.outputs["agg"]["artifacts"] == [
            "validation-report.json",
            "migration-result.sql",
        ]
        # Tool-call lines count as calls.
        assert handle.states["wb"].calls_count == 2

    @pytest.mark.asyncio
    async def test_failure_isolated_to_branch(self, scheduler):
        """Test a failing node skips its descendants but not unrelated branches."""
        graph = make_graph(
            [
                job("root", input={"v": 1}),
                job("bad", 'raise RuntimeError("exploded")'),
                job("after_bad"),
                job("good", 'return {"ok": True}'),
            ],
            [("root", "bad"), ("bad", "after_bad"), ("root", "good")],
        )
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED_WITH_ERRORS
        assert handle.status_of("bad") == NodeStatus.ERROR
        assert handle.status_of("after_bad") == NodeStatus.IDLE
        assert handle.status_of("good") == NodeStatus.DONE
        assert handle.errors["bad"] == "RuntimeError: exploded"
        assert handle.states["bad"].logs[-1] == "ERROR: RuntimeError: exploded"

        errors = [e for e in handle.bus.history() if e.type == EventType.ERROR]
        assert [e.node_id for e in errors] == ["bad"]

    @pytest.mark.asyncio
    async def test_timeout_fails_node(self, scheduler):
        """Test a timed-out node ends in error with the budget in its message."""
        graph = make_graph([job("slow", "while True:\n    pass", timeout=150)])
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED_WITH_ERRORS
        assert handle.status_of("slow") == NodeStatus.ERROR
        assert "Timed out" in handle.errors["slow"]

    @pytest.mark.asyncio
    async def test_retries(self, sandbox, scheduler):
        """Test a flaky node succeeds on retry, each attempt with a fresh input."""
        runner = FlakyRunner(failures=1)
        sandbox.register_runner("flaky", runner)
        node_doc = job("flaky", "flaky", retries=1, input={"v": 1})
        node_doc["subType"] = "flaky"
        handle = await scheduler.run(make_graph([node_doc]))

        assert handle.status == RunStatus.COMPLETED
        assert runner.seen == [{"v": 1}, {"v": 1}]
        assert handle.outputs["flaky"] == {"attempts": 2, "input": {"v": 1, "touched": 1}}
        assert handle.inputs["flaky"] == {"v": 1}
        logs = handle.states["flaky"].logs
        assert any(line.startswith("> Retrying (1/1)") for line in logs)
        assert logs.count("> Running...") == 2

    @pytest.mark.asyncio
    async def test_retry_does_not_see_earlier_attempts(self, scheduler):
        """Test changes a failed attempt made to its input are gone on retry."""
        script = (
            'input["items"].append("partial")\n'
            'if len(input["items"]) < 2:\n'
            '    raise ValueError("not enough items")\n'
            'return input'
        )
        graph = make_graph([job("collect", script, retries=1, input={"items": []})])
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED_WITH_ERRORS
        assert handle.status_of("collect") == NodeStatus.ERROR
        assert handle.errors["collect"] == "ValueError: not enough items"
        assert handle.inputs["collect"] == {"items": []}

    @pytest.mark.asyncio
    async def test_recorded_input_survives_in_place_changes(self, scheduler):
        """Test a script changing its input leaves the recorded input intact."""
        graph = make_graph(
            [
                job("start", input={"counter": 10}),
                job("add1", 'input["counter"] = input["counter"] + 1\nreturn input'),
            ],
            [("start", "add1")],
        )
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED
        assert handle.inputs["add1"] == {"counter": 10}
        assert handle.outputs["add1"] == {"counter": 11}
        assert handle.outputs["start"] == {"counter": 10}

    @pytest.mark.asyncio
    async def test_fan_in_with_failed_predecessor(self, scheduler):
        """Test an aggregator never starts when one of its predecessors fails."""
        graph = make_graph(
            [
                job("orch", input={"task": "x"}),
                job("a", 'raise RuntimeError("worker down")'),
                job("b", 'return {"b": 1}'),
                job("agg"),
            ],
            [("orch", "a"), ("orch", "b"), ("a", "agg"), ("b", "agg")],
        )
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED_WITH_ERRORS
        assert handle.status_of("a") == NodeStatus.ERROR
        assert handle.status_of("b") == NodeStatus.DONE
        assert handle.status_of("agg") == NodeStatus.IDLE
        assert "agg" not in handle.inputs
        assert handle.outputs["b"] == {"b": 1}

    @pytest.mark.asyncio
    async def test_run_markers_in_logs(self, scheduler):
        """Test node logs are framed by running and done markers."""
        graph = make_graph([job("a", 'print("hi")')])
        handle = await scheduler.run(graph)

        assert handle.states["a"].logs == ["> Running...", "hi", "> Done ✓"]

    @pytest.mark.asyncio
    async def test_camel_case_context_aliases(self, scheduler):
        """Test scripts can use the camelCase names of the context surface."""
        script = 'return {"left": ctx.leftNode.id, "right": ctx.rightNode, "sub": ctx.node.subType}'
        graph = make_graph([job("a"), job("b", script)], [("a", "b")])
        handle = await scheduler.run(graph)

        assert handle.outputs["b"] == {"left": "a", "right": None, "sub": "py"}

    @pytest.mark.asyncio
    async def test_validation_failure(self, scheduler):
        """Test an invalid graph never runs."""
        graph = make_graph([job("a"), job("b")], [("a", "b"), ("b", "a")])
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.FAILED
        assert "cycle" in handle.error
        assert all(s.status == NodeStatus.IDLE for s in handle.states.values())
        assert handle.transitions[-1].kind == TransitionKind.RUN

    @pytest.mark.asyncio
    async def test_cancel(self, scheduler):
        """Test cancellation aborts in-flight nodes and keeps finished outputs."""
        graph = make_graph(
            [job("first", 'return {"n": 1}'), job("spin", "while True:\n    pass", timeout=10000)],
            [("first", "spin")],
        )
        handle = scheduler.start(graph)
        while handle.status_of("spin") != NodeStatus.RUNNING:
            await asyncio.sleep(0.01)

        await scheduler.cancel(handle)

        assert handle.status == RunStatus.CANCELLED
        assert handle.outputs["first"] == {"n": 1}
        assert handle.status_of("spin") == NodeStatus.ERROR
        assert handle.errors["spin"] == "Cancelled"

    @pytest.mark.asyncio
    async def test_reset(self, scheduler):
        """Test reset restores idle state, swaps the bus and is idempotent."""
        handle = await scheduler.run(create_four_node_graph())
        old_bus = handle.bus
        assert len(old_bus) > 0

        await scheduler.reset(handle)

        assert handle.status == RunStatus.PENDING
        assert all(s == NodeState() for s in handle.states.values())
        assert handle.outputs == {}
        assert handle.inputs == {}
        assert handle.transitions == []
        assert handle.bus is not old_bus
        assert len(handle.bus) == 0
        assert handle.retired_buses == [old_bus]
        assert len(old_bus) > 0

        await scheduler.reset(handle)
        assert handle.retired_buses == [old_bus]

        handle.discard_history()
        assert handle.retired_buses == []

    @pytest.mark.asyncio
    async def test_rerun_after_reset(self, scheduler):
        """Test a reset handle can run again with the same results."""
        graph = create_three_jobs_graph()
        handle = await scheduler.run(graph)
        await scheduler.reset(handle)
        await scheduler.run(graph, handle)

        assert handle.status == RunStatus.COMPLETED
        assert handle.outputs["add1-last"] == {"counter": 34}

    @pytest.mark.asyncio
    async def test_events_in_timestamp_order(self, sandbox):
        """Test events come back by timestamp even when later arrivals are stamped earlier."""
        ticks = itertools.count(1000.0, -1.0)
        scheduler = Scheduler(sandbox=sandbox, clock=lambda: next(ticks))
        script = 'ctx.emit("message", ctx.node.id + "-1")\nctx.emit("message", ctx.node.id + "-2")'
        graph = make_graph([job("a", script), job("b", script)])

        handle = scheduler.new_handle(graph)
        arrivals = []
        handle.bus.subscribe(arrivals.append)
        await scheduler.run(graph, handle)

        history = handle.bus.history()
        assert {e.node_id for e in history} == {"a", "b"}
        assert len(history) == len(arrivals) == 4
        assert arrivals[0].timestamp > arrivals[-1].timestamp
        assert [e.id for e in history] == [e.id for e in sorted(arrivals, key=lambda e: e.timestamp)]
        assert [e.content for e in history if e.node_id == "a"] == ["a-2", "a-1"]


# ============================================================
# Workspace Script Tests
# ============================================================

class TestWorkspaceScripts:
    """Tests for the bundled workspace scripts running through the scheduler."""

    @pytest.mark.asyncio
    async def test_node_logger_sees_neighbors(self, scheduler):
        """Test the node logger reports its neighbors and passes input through."""
        graph = Graph.from_document(preset_registry.resolve_document({
            "nodes": [
                {"id": "start", "preset": "starting", "config": {"input": {"v": 1}}},
                {"id": "logger", "preset": "job-node-logger"},
                {"id": "sink", "preset": "job-py", "config": {"script": "return input"}},
            ],
            "edges": [
                {"source": "start", "target": "logger"},
                {"source": "logger", "target": "sink"},
            ],
        }))
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED
        assert handle.outputs["logger"] == {"v": 1}
        messages = [e.content for e in handle.bus.for_node("logger") if e.type == EventType.MESSAGE]
        assert messages == [{
            "self": {"type": "job", "subType": "py", "id": "logger"},
            "leftNode": {"id": "start", "type": "starting"},
            "rightNode": {"id": "sink", "type": "job"},
        }]

    @pytest.mark.asyncio
    async def test_node_logger_without_neighbors(self, scheduler):
        """Test a lone node logger gets None neighbors without failing."""
        graph = Graph.from_document(preset_registry.resolve_document({
            "nodes": [{"id": "logger", "preset": "job-node-logger"}],
        }))
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED
        message = handle.bus.for_node("logger")[-1].content
        assert message["leftNode"] is None
        assert message["rightNode"] is None

    @pytest.mark.asyncio
    async def test_data_pipeline(self, scheduler):
        """Test the data pipeline reports progress and writes its records."""
        graph = Graph.from_document(preset_registry.resolve_document({
            "nodes": [
                {"id": "start", "preset": "starting", "config": {"input": {"records": 5}}},
                {"id": "etl", "preset": "job-data-pipeline"},
            ],
            "edges": [{"source": "start", "target": "etl"}],
        }))
        handle = await scheduler.run(graph)

        assert handle.status == RunStatus.COMPLETED
        assert handle.outputs["etl"]["records"] == 5
        assert len(handle.outputs["etl"]["rows"]) == 5
        assert "📦 wrote 5 records" in handle.states["etl"].logs
        assert handle.states["etl"].progress == 100

    @pytest.mark.asyncio
    async def test_test_runner(self, scheduler):
        """Test the self-test harness passes all its checks."""
        graph = Graph.from_document(preset_registry.resolve_document({
            "nodes": [{"id": "tests", "preset": "job-test-runner"}],
        }))
        handle = await scheduler.run(graph)

        assert handle.outputs["tests"]["passed"] == 5
        assert handle.outputs["tests"]["failed"] == 0
        assert "✓ All tests passed!" in handle.states["tests"].logs
        assert handle.states["tests"].logs[-1] == "> Done ✓"


# ============================================================
# Step Player Tests
# ============================================================

class TestStepPlayer:
    """Tests for step-wise playback."""

    @pytest.mark.asyncio
    async def test_four_node_scripted_sequence(self):
        """Test the scripted four-node scenario always has 19 steps."""
        player = create_four_node_player(interval_ms=0)
        await player.play()

        assert player.state == PlayerState.FINISHED
        assert player.total_steps == 19
        assert player.cursor == 19
        assert player.current_step.index == player.total_steps
        assert player.label == "All nodes done"
        assert set(player.current_step.snapshot.statuses().values()) == {"done"}

    @pytest.mark.asyncio
    async def test_scripted_workers_overlap(self):
        """Test both workers are running before either is done."""
        player = create_four_node_player(interval_ms=0)
        await player.play()
        steps = player.source.steps

        concurrent = steps[5]
        assert concurrent.label == "Workers running (concurrent)"
        assert concurrent.snapshot.status_of("wa") == NodeStatus.RUNNING
        assert concurrent.snapshot.status_of("wb") == NodeStatus.RUNNING

        agg_started = next(i for i, s in enumerate(steps) if s.snapshot.status_of("agg") != NodeStatus.IDLE)
        assert steps[agg_started - 1].snapshot.status_of("wa") == NodeStatus.DONE
        assert steps[agg_started - 1].snapshot.status_of("wb") == NodeStatus.DONE

    @pytest.mark.asyncio
    async def test_scripted_sequence_is_reproducible(self):
        """Test two playbacks produce identical labels and statuses."""
        sequences = []
        for _ in range(2):
            player = create_four_node_player(interval_ms=0)
            await player.play()
            sequences.append([(s.label, s.snapshot.statuses()) for s in player.source.steps])
        assert sequences[0] == sequences[1]

    @pytest.mark.asyncio
    async def test_next_and_prev(self):
        """Test prev moves the cursor back without producing new steps."""
        player = create_four_node_player(interval_ms=0)
        assert player.state == PlayerState.IDLE
        assert player.label == "Ready"

        await player.next()
        await player.next()
        assert player.cursor == 2
        assert player.state == PlayerState.PAUSED

        step = player.prev()
        assert player.cursor == 1
        assert step.label == "Orchestrator starting"
        assert player.total_steps == 2

        await player.next()
        assert player.cursor == 2
        assert player.total_steps == 2
        assert player.label == "Orchestrator planning tasks"

        player.prev()
        player.prev()
        assert player.cursor == 0
        assert player.state == PlayerState.IDLE

    @pytest.mark.asyncio
    async def test_pause_stops_play(self):
        """Test pausing stops auto-advance after the current step."""
        player = create_four_node_player(interval_ms=50)
        task = player.start_play()
        await asyncio.sleep(0.01)
        player.pause()
        await task

        assert player.state == PlayerState.PAUSED
        assert 0 < player.cursor < 19

    @pytest.mark.asyncio
    async def test_reset(self):
        """Test reset discards steps and returns to idle."""
        player = create_four_node_player(interval_ms=0)
        await player.play()
        await player.reset()

        assert player.state == PlayerState.IDLE
        assert player.cursor == 0
        assert player.total_steps == 0
        assert player.current_step is None

        await player.next()
        assert player.cursor == 1
        assert player.current_step.snapshot.status_of("orch") == NodeStatus.WAKING

    @pytest.mark.asyncio
    async def test_live_run(self, scheduler):
        """Test a live run is stepped through to its completion step."""
        player = StepPlayer(LiveRunSource.for_graph(scheduler, create_three_jobs_graph()), interval_ms=0)

        first = await player.next()
        assert first.label == "Input starting"
        assert first.snapshot.status_of("start") == NodeStatus.WAKING

        await player.play()
        assert player.state == PlayerState.FINISHED
        assert player.label == "All nodes done"
        assert player.current_step.index == player.total_steps
        assert player.source.handle.outputs["add1-last"] == {"counter": 34}

    @pytest.mark.asyncio
    async def test_live_run_labels_concurrency_and_errors(self, scheduler):
        """Test concurrent batches and failures get their own labelled steps."""
        graph = make_graph(
            [
                job("root"),
                job("a", 'raise ValueError("nope")'),
                job("b", 'return {"b": 1}'),
            ],
            [("root", "a"), ("root", "b")],
        )
        player = StepPlayer(LiveRunSource.for_graph(scheduler, graph), interval_ms=0)
        await player.play()

        labels = [s.label for s in player.source.steps]
        assert "A & B running (concurrent)" in labels
        assert "A failed: ValueError: nope" in labels
        assert labels[-1] == "Completed with errors"

    @pytest.mark.asyncio
    async def test_live_reset(self, scheduler):
        """Test resetting a live player resets the run, idempotently."""
        source = LiveRunSource.for_graph(scheduler, create_three_jobs_graph())
        player = StepPlayer(source, interval_ms=0)
        await player.play()

        await player.reset()
        assert source.handle.status == RunStatus.PENDING
        assert all(s.status == NodeStatus.IDLE for s in source.handle.states.values())
        assert player.total_steps == 0

        await player.reset()
        assert player.state == PlayerState.IDLE
        assert player.cursor == 0

        await player.play()
        assert player.label == "All nodes done"

    @pytest.mark.asyncio
    async def test_replay_recording(self, scheduler):
        """Test a recorded run replays the same steps."""
        live = StepPlayer(LiveRunSource.for_graph(scheduler, create_four_node_graph()), interval_ms=0)
        await live.play()

        replay = StepPlayer(RecordedSource(live.source.steps), interval_ms=0)
        await replay.play()

        assert [s.label for s in replay.source.steps] == [s.label for s in live.source.steps]
        assert replay.label == "All nodes done"
        assert replay.state == PlayerState.FINISHED

    def test_label_join(self):
        """Test node names are joined for labels."""
        assert join_names(["A"]) == "A"
        assert join_names(["A", "B"]) == "A & B"
        assert join_names(["A", "B", "C"]) == "A, B & C"


# ============================================================
# Preset Tests
# ============================================================

class TestPresets:
    """Tests for the preset registry and workspace scripts."""

    def test_builtin_presets(self):
        """Test the built-in presets are registered."""
        assert "starting" in preset_registry
        assert "job-py" in preset_registry
        assert [p.id for p in preset_registry.by_type("aggregator")] == ["aggregator-merge"]

    def test_search(self):
        """Test search matches labels, descriptions and tags."""
        assert [p.id for p in preset_registry.search("python")] == ["job-py"]
        assert "job-data-pipeline" in [p.id for p in preset_registry.search("ETL")]

    def test_resolve_merges_under_document(self):
        """Test document config wins and ui hints merge one level deep."""
        resolved = preset_registry.resolve({
            "id": "a",
            "preset": "job-py",
            "config": {"timeout": 100, "ui": {"icons": {"default": "custom"}}},
        })
        assert resolved["type"] == "job"
        assert resolved["subType"] == "py"
        assert resolved["label"] == "Python Script"
        assert resolved["config"]["timeout"] == 100
        assert "def activate" in resolved["config"]["script"]
        assert resolved["config"]["ui"]["icons"] == {"default": "custom", "working": "loader-2"}

    def test_resolve_loads_workspace_script(self):
        """Test a named workspace script replaces the preset body."""
        resolved = preset_registry.resolve({
            "id": "a",
            "preset": "job-py",
            "config": {"scriptName": "default"},
        })
        assert resolved["config"]["script"] == load_script("default")

    def test_unknown_preset(self):
        """Test resolving an unknown preset raises."""
        with pytest.raises(PresetNotFoundError):
            preset_registry.resolve({"id": "a", "preset": "nope"})

    def test_generic_registry(self):
        """Test the generic registry on a custom searchable item."""
        registry: Registry[Preset] = Registry()
        registry.register("x", Preset(id="x", node_type="job", label="X", tags=["special"]))
        assert registry.search("SPECIAL")[0].id == "x"
        assert registry.unregister("x")
        assert len(registry) == 0

    def test_list_scripts(self):
        """Test the bundled scripts are listed."""
        assert list_scripts() == ["data_pipeline", "default", "node_logger", "test_runner"]

    def test_missing_script(self):
        """Test unknown or escaping script names are rejected."""
        with pytest.raises(ScriptNotFoundError):
            load_script("missing")
        with pytest.raises(ScriptNotFoundError):
            load_script("../config")
