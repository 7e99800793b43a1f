"""
Async Workflow Scheduler.

The scheduler walks a graph in dependency order, dispatching every node
whose predecessors are all done. Nodes that become eligible together
form a batch and run concurrently; aggregation nodes wait for all of
their predecessors. Every observable change is recorded as a Transition
on the run's handle.
"""

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from copy import deepcopy
import asyncio
import logging
import time

from nodeflow.config import settings
from nodeflow.engine.context import ContextBuilder, ExecutionContext
from nodeflow.engine.errors import (
    EngineError,
    GraphValidationError,
    NeighborResolutionError,
    ScriptError,
)
from nodeflow.engine.events import EventBus, EventType
from nodeflow.engine.graph import Graph
from nodeflow.engine.ids import IdGenerator
from nodeflow.engine.node import Node, NodeState, NodeStatus
from nodeflow.engine.sandbox import LogKind, ScriptSandbox, classify_log_line
from nodeflow.engine.state import RunSnapshot


logger = logging.getLogger(__name__)

RUNNING_MARKER = "> Running..."
DONE_MARKER = "> Done ✓"


class RunStatus(str, Enum):
    """Status of a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed-with-errors"
    CANCELLED = "cancelled"
    FAILED = "failed"  # validation failed, nothing ran


FINISHED_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.COMPLETED_WITH_ERRORS,
    RunStatus.CANCELLED,
    RunStatus.FAILED,
})


class TransitionKind(str, Enum):
    STATUS = "status"      # one or more nodes changed status together
    PROGRESS = "progress"  # a running node reported progress or a task
    RUN = "run"            # the run reached a terminal status


@dataclass(frozen=True)
class Transition:
    """One observable state change of a run."""
    seq: int
    kind: TransitionKind
    node_ids: Tuple[str, ...] = ()
    status: Optional[NodeStatus] = None
    run_status: Optional[RunStatus] = None
    progress: Optional[float] = None
    detail: str = ""
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "node_ids": list(self.node_ids),
            "status": self.status.value if self.status else None,
            "run_status": self.run_status.value if self.run_status else None,
            "progress": self.progress,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


TransitionObserver = Callable[["RunHandle", Transition], None]


class RunHandle:
    """
    A single run of a graph.

    Holds the per-node states, the inputs and outputs recorded so far, the
    transition log and the run's event bus.
    """

    def __init__(self, graph: Graph, run_id: str, bus: EventBus):
        self.run_id = run_id
        self.graph = graph
        self.bus = bus
        self.status = RunStatus.PENDING
        self.states: Dict[str, NodeState] = {node_id: NodeState() for node_id in graph.node_ids}
        self.inputs: Dict[str, Any] = {}
        self.outputs: Dict[str, Any] = {}
        self.errors: Dict[str, str] = {}
        self.transitions: List[Transition] = []
        self.error: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.retired_buses: List[EventBus] = []
        self._observers: List[TransitionObserver] = []
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_RUN_STATUSES

    @property
    def is_pristine(self) -> bool:
        """Nothing has happened on this handle since creation or reset."""
        return (
            self.status == RunStatus.PENDING
            and not self.transitions
            and not self.outputs
            and all(
                s.status == NodeStatus.IDLE and not s.logs and not s.progress
                for s in self.states.values()
            )
        )

    def subscribe(self, observer: TransitionObserver) -> Callable[[], None]:
        """Observe transitions as they are recorded. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def wait(self) -> "RunHandle":
        """Wait until the run reaches a terminal status."""
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        return self

    def status_of(self, node_id: str) -> NodeStatus:
        return self.states[node_id].status

    def sink_outputs(self) -> Dict[str, Any]:
        """Outputs of finished nodes without successors."""
        return {
            node_id: self.outputs[node_id]
            for node_id in self.graph.node_ids
            if not self.graph.successors(node_id) and node_id in self.outputs
        }

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot.capture(self.states, self.bus.history(), self.status.value)

    def discard_history(self) -> None:
        """Drop event buses retired by earlier resets."""
        self.retired_buses.clear()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph.graph_id,
            "status": self.status.value,
            "nodes": {
                node_id: state.model_dump(by_alias=True, mode="json")
                for node_id, state in self.states.items()
            },
            "inputs": self.inputs,
            "outputs": self.outputs,
            "errors": self.errors,
            "error": self.error,
            "event_count": len(self.bus),
            "transition_count": len(self.transitions),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"RunHandle(run_id='{self.run_id}', status='{self.status.value}')"


class Scheduler:
    """
    Async graph scheduler.

    Executes a graph handling:
    - Dependency ordering (a node starts only once all predecessors are done)
    - Concurrent batches of independent nodes
    - Fan-in at aggregation nodes
    - Per-node errors, timeouts and retries, skipping failed nodes' descendants
    - Cancellation and reset

    Usage:
        scheduler = Scheduler()
        handle = await scheduler.run(graph)
        handle.status, handle.outputs, handle.bus.history()
    """

    def __init__(
        self,
        sandbox: Optional[ScriptSandbox] = None,
        context_builder: Optional[ContextBuilder] = None,
        ids: Optional[IdGenerator] = None,
        clock: Optional[Callable[[], float]] = None,
        default_timeout_ms: Optional[float] = None,
    ):
        self.sandbox = sandbox or ScriptSandbox()
        self.context_builder = context_builder or ContextBuilder()
        self.ids = ids or IdGenerator(prefix="run", seed=settings.ID_SEED)
        self.clock = clock or time.time
        self.default_timeout_ms = default_timeout_ms or settings.DEFAULT_SCRIPT_TIMEOUT_MS

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def new_handle(self, graph: Graph) -> RunHandle:
        """Create an idle handle for a graph without starting it."""
        return RunHandle(graph, run_id=self.ids.next("run"), bus=self._new_bus())

    def start(self, graph: Graph, handle: Optional[RunHandle] = None) -> RunHandle:
        """
        Start a run in the background and return its handle.

        Must be called with a running event loop. A validation failure
        leaves the handle FAILED without executing any node.
        """
        handle = handle or self.new_handle(graph)
        if handle.status != RunStatus.PENDING:
            raise EngineError(f"Run '{handle.run_id}' already started; reset it first")

        handle.started_at = datetime.now()
        errors = handle.graph.validate()
        if errors:
            error = GraphValidationError(errors)
            logger.error(f"Run {handle.run_id} not started: {error}")
            handle.error = str(error)
            self._finish(handle, RunStatus.FAILED, detail=str(error))
            return handle

        handle.status = RunStatus.RUNNING
        logger.info(f"Starting run {handle.run_id} ({len(handle.graph.nodes)} nodes)")
        handle._task = asyncio.get_running_loop().create_task(
            self._drive(handle), name=f"run-{handle.run_id}"
        )
        return handle

    async def run(self, graph: Graph, handle: Optional[RunHandle] = None) -> RunHandle:
        """Start a run and wait for it to finish."""
        handle = self.start(graph, handle)
        return await handle.wait()

    async def cancel(self, handle: RunHandle) -> RunHandle:
        """
        Stop dispatching and abort in-flight nodes.

        Finished nodes keep their outputs; in-flight nodes end in error.
        """
        if not handle.is_running or handle._task is None:
            return handle
        handle._cancel_requested = True
        handle._task.cancel()
        await asyncio.wait({handle._task})
        if handle.is_running:
            # Cancelled before the driver got to run.
            self._finish(handle, RunStatus.CANCELLED)
        return handle

    async def reset(self, handle: RunHandle) -> RunHandle:
        """
        Return every node to idle and clear outputs, logs and transitions.

        The run gets a fresh event bus; the old one is kept on
        ``handle.retired_buses``. Resetting an untouched handle is a no-op.
        """
        if handle.is_running:
            await self.cancel(handle)
        if handle.is_pristine:
            return handle

        handle.retired_buses.append(handle.bus)
        handle.bus = self._new_bus()
        for state in handle.states.values():
            state.reset()
        handle.inputs.clear()
        handle.outputs.clear()
        handle.errors.clear()
        handle.transitions.clear()
        handle.error = None
        handle.status = RunStatus.PENDING
        handle.started_at = None
        handle.completed_at = None
        handle._task = None
        handle._cancel_requested = False
        logger.info(f"Reset run {handle.run_id}")
        return handle

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _drive(self, handle: RunHandle) -> None:
        graph = handle.graph
        waiting_on: Dict[str, Set[str]] = {
            node_id: set(graph.predecessors(node_id)) for node_id in graph.node_ids
        }
        dispatched: Set[str] = set()
        skipped: Set[str] = set()
        in_flight: Dict[asyncio.Task, str] = {}

        try:
            self._dispatch(
                handle, [n for n in graph.node_ids if not waiting_on[n]], in_flight, dispatched
            )
            while in_flight:
                finished, _ = await asyncio.wait(
                    list(in_flight), return_when=asyncio.FIRST_COMPLETED
                )
                ready: List[str] = []
                for task in sorted(finished, key=lambda t: graph.position(in_flight[t])):
                    node_id = in_flight.pop(task)
                    if handle.status_of(node_id) != NodeStatus.DONE:
                        downstream = graph.descendants(node_id) - dispatched
                        if downstream:
                            logger.info(f"Skipping {sorted(downstream)} after failure of {node_id}")
                        skipped |= downstream
                        continue
                    for succ in graph.successors(node_id):
                        waiting_on[succ].discard(node_id)
                        if not waiting_on[succ] and succ not in dispatched and succ not in ready:
                            ready.append(succ)

                ready = sorted((n for n in ready if n not in skipped), key=graph.position)
                self._dispatch(handle, ready, in_flight, dispatched)

        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            for node_id in in_flight.values():
                if handle.status_of(node_id) == NodeStatus.RUNNING:
                    # Cancelled before its first step.
                    self._fail_node(handle, graph.node(node_id), "Cancelled")
            self._finish(handle, RunStatus.CANCELLED)
            if not handle._cancel_requested:
                raise
            return

        except Exception as e:
            logger.exception(f"Run {handle.run_id} failed: {e}")
            handle.error = str(e)

        self._finish(handle)

    def _dispatch(
        self,
        handle: RunHandle,
        batch: List[str],
        in_flight: Dict[asyncio.Task, str],
        dispatched: Set[str],
    ) -> None:
        """Wake, prepare and start a batch of eligible nodes."""
        if not batch:
            return
        graph = handle.graph
        nodes = [graph.node(node_id) for node_id in batch]
        dispatched.update(batch)
        logger.debug(f"Dispatching batch: {batch}")

        for node in nodes:
            handle.states[node.id].transition(NodeStatus.WAKING)
        self._record(handle, TransitionKind.STATUS, tuple(batch), status=NodeStatus.WAKING)

        prepared: List[Tuple[Node, ExecutionContext]] = []
        for node in nodes:
            try:
                context = self._build_context(handle, node)
            except NeighborResolutionError as e:
                logger.error(f"Node {node.id} could not be prepared: {e}")
                self._fail_node(handle, node, str(e))
                continue
            handle.inputs[node.id] = deepcopy(context.input)
            prepared.append((node, context))

        if not prepared:
            return

        for node, _ in prepared:
            handle.states[node.id].transition(NodeStatus.RUNNING)
        self._record(
            handle,
            TransitionKind.STATUS,
            tuple(node.id for node, _ in prepared),
            status=NodeStatus.RUNNING,
        )

        loop = asyncio.get_running_loop()
        for node, context in prepared:
            task = loop.create_task(
                self._execute_node(handle, node, context), name=f"node-{node.id}"
            )
            in_flight[task] = node.id

    def _build_context(self, handle: RunHandle, node: Node) -> ExecutionContext:
        """Bind the node's capabilities and build its context."""
        loop = asyncio.get_running_loop()
        bus = handle.bus

        def emit(event_type: str, content: Any = None) -> None:
            bus.publish(node.id, node.name, EventType(event_type), content)

        def report(progress: Optional[float] = None, task: Optional[str] = None) -> None:
            loop.call_soon_threadsafe(self._apply_report, handle, bus, node.id, progress, task)

        return self.context_builder.build(
            node, handle.graph, handle.outputs, emit=emit, report=report
        )

    async def _execute_node(self, handle: RunHandle, node: Node, context: ExecutionContext) -> None:
        """Run one node through the sandbox, with retries."""
        state = handle.states[node.id]
        timeout_ms = node.config.timeout or self.default_timeout_ms
        attempts = node.config.retries + 1
        bus = handle.bus
        loop = asyncio.get_running_loop()
        started = time.perf_counter()

        def on_log(line: str) -> None:
            loop.call_soon_threadsafe(self._append_log, handle, bus, node.id, line)

        logger.info(f"Executing node: {node.id} (run {handle.run_id})")

        try:
            for attempt in range(1, attempts + 1):
                # Each attempt starts from the recorded input, untouched by earlier attempts.
                attempt_context = context.with_input(handle.inputs[node.id])
                self._append_log(handle, bus, node.id, RUNNING_MARKER)
                try:
                    result = await self.sandbox.run(
                        node, attempt_context, timeout_ms, on_log=on_log
                    )
                    break
                except ScriptError as e:
                    if attempt == attempts:
                        raise
                    logger.warning(f"Node {node.id} attempt {attempt} failed: {e.message}")
                    self._append_log(
                        handle, bus, node.id,
                        f"> Retrying ({attempt}/{node.config.retries}) after: {e.message}",
                    )

        except ScriptError as e:
            logger.error(f"Node {node.id} failed: {e.message}")
            self._fail_node(handle, node, e.message, started)
            return

        except asyncio.CancelledError:
            self._fail_node(handle, node, "Cancelled", started)
            raise

        except Exception as e:
            logger.exception(f"Node {node.id} crashed: {e}")
            self._fail_node(handle, node, str(e), started)
            return

        self._append_log(handle, bus, node.id, DONE_MARKER)
        handle.outputs[node.id] = result.output
        state.exec_time = (time.perf_counter() - started) * 1000
        state.report(progress=100)
        state.transition(NodeStatus.DONE)
        self._record(handle, TransitionKind.STATUS, (node.id,), status=NodeStatus.DONE)

    # ------------------------------------------------------------------
    # State updates (event loop thread only)
    # ------------------------------------------------------------------

    def _append_log(self, handle: RunHandle, bus: EventBus, node_id: str, line: str) -> None:
        state = handle.states[node_id]
        if handle.bus is not bus or state.status != NodeStatus.RUNNING:
            # Late output from an aborted or reset execution.
            return
        state.logs.append(line)
        if classify_log_line(line) == LogKind.TOOL_CALL:
            state.calls_count += 1

    def _apply_report(
        self,
        handle: RunHandle,
        bus: EventBus,
        node_id: str,
        progress: Optional[float],
        task: Optional[str],
    ) -> None:
        state = handle.states[node_id]
        if handle.bus is not bus or state.status != NodeStatus.RUNNING:
            return
        state.report(progress, task)
        self._record(
            handle,
            TransitionKind.PROGRESS,
            (node_id,),
            status=state.status,
            progress=state.progress,
            detail=state.current_task,
        )

    def _fail_node(
        self,
        handle: RunHandle,
        node: Node,
        message: str,
        started: Optional[float] = None,
    ) -> None:
        state = handle.states[node.id]
        state.logs.append(f"ERROR: {message}")
        if started is not None:
            state.exec_time = (time.perf_counter() - started) * 1000
        state.transition(NodeStatus.ERROR)
        handle.errors[node.id] = message
        handle.bus.publish(node.id, node.name, EventType.ERROR, message)
        self._record(
            handle, TransitionKind.STATUS, (node.id,), status=NodeStatus.ERROR, detail=message
        )

    def _finish(
        self,
        handle: RunHandle,
        status: Optional[RunStatus] = None,
        detail: str = "",
    ) -> None:
        if status is None:
            failed = any(s.status == NodeStatus.ERROR for s in handle.states.values())
            status = RunStatus.COMPLETED_WITH_ERRORS if failed or handle.error else RunStatus.COMPLETED
        handle.status = status
        handle.completed_at = datetime.now()
        self._record(handle, TransitionKind.RUN, run_status=status, detail=detail)
        logger.info(f"Run {handle.run_id} finished: {status.value}")

    def _record(
        self,
        handle: RunHandle,
        kind: TransitionKind,
        node_ids: Tuple[str, ...] = (),
        status: Optional[NodeStatus] = None,
        run_status: Optional[RunStatus] = None,
        progress: Optional[float] = None,
        detail: str = "",
    ) -> None:
        transition = Transition(
            seq=len(handle.transitions) + 1,
            kind=kind,
            node_ids=tuple(node_ids),
            status=status,
            run_status=run_status,
            progress=progress,
            detail=detail,
            timestamp=self.clock(),
        )
        handle.transitions.append(transition)
        for observer in list(handle._observers):
            try:
                observer(handle, transition)
            except Exception as e:
                logger.warning(f"Transition observer failed: {e}")

    def _new_bus(self) -> EventBus:
        return EventBus(ids=IdGenerator(prefix="evt", seed=settings.ID_SEED), clock=self.clock)


async def execute_graph(graph: Graph, scheduler: Optional[Scheduler] = None) -> RunHandle:
    """
    Convenience function to run a graph to completion.

    Args:
        graph: The workflow graph
        scheduler: Scheduler to use (a new one by default)

    Returns:
        The finished RunHandle
    """
    return await (scheduler or Scheduler()).run(graph)
