"""
Step Player.

Wraps a run as a finite, ordered sequence of labelled steps and walks it
one step at a time: next / prev / play / pause / reset.

Steps come from a StepSource:
- ScriptedSource: fixed step definitions applied to a working state
- LiveRunSource: a Scheduler run, recorded transition by transition
- RecordedSource: replay of steps captured earlier
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import time

from nodeflow.config import settings
from nodeflow.engine.events import EventBus, EventType
from nodeflow.engine.graph import Graph
from nodeflow.engine.ids import IdGenerator
from nodeflow.engine.node import NodeState, NodeStatus
from nodeflow.engine.scheduler import (
    RunHandle,
    RunStatus,
    Scheduler,
    Transition,
    TransitionKind,
)
from nodeflow.engine.state import RunSnapshot


logger = logging.getLogger(__name__)


class PlayerState(str, Enum):
    IDLE = "idle"            # nothing shown yet
    ADVANCING = "advancing"  # waiting for the next step to be produced
    PAUSED = "paused"
    PLAYING = "playing"      # auto-advancing on a timer
    FINISHED = "finished"    # showing the final step


FINAL_LABELS: Dict[RunStatus, str] = {
    RunStatus.COMPLETED: "All nodes done",
    RunStatus.COMPLETED_WITH_ERRORS: "Completed with errors",
    RunStatus.CANCELLED: "Run cancelled",
    RunStatus.FAILED: "Validation failed",
}


@dataclass
class Step:
    """One recorded observable transition."""
    index: int  # 1-based
    label: str
    snapshot: RunSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "label": self.label, "snapshot": self.snapshot.to_dict()}


def join_names(names: Sequence[str]) -> str:
    """'A', 'A & B', 'A, B & C'."""
    names = list(names)
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + " & " + names[-1]


def label_for(graph: Graph, transition: Transition) -> str:
    """Human-readable label for the dominant change of a transition."""
    if transition.kind == TransitionKind.RUN:
        return FINAL_LABELS.get(transition.run_status, str(transition.run_status))

    names = join_names([graph.node(node_id).name for node_id in transition.node_ids])

    if transition.kind == TransitionKind.PROGRESS:
        if transition.detail:
            return f"{names}: {transition.detail}"
        return f"{names} progressing ({transition.progress:.0f}%)"

    if transition.status == NodeStatus.WAKING:
        return f"{names} starting"
    if transition.status == NodeStatus.RUNNING:
        if len(transition.node_ids) > 1:
            return f"{names} running (concurrent)"
        return f"{names} running"
    if transition.status == NodeStatus.DONE:
        return f"{names} done"
    if transition.status == NodeStatus.ERROR:
        return f"{names} failed: {transition.detail}"
    return names


# ============================================================
# Recording
# ============================================================

class RunRecorder:
    """
    Turns a run's transitions into labelled steps as they happen.

    Attach before the run starts; every transition becomes one step
    carrying a snapshot of the run at that moment.
    """

    def __init__(self, handle: RunHandle):
        self.handle = handle
        self.steps: List[Step] = []
        self._changed = asyncio.Event()
        self._unsubscribe = handle.subscribe(self._on_transition)

    @property
    def complete(self) -> bool:
        """The final step (run end) has been recorded."""
        return bool(self.steps) and self.handle.is_finished and self._last_was_final

    @property
    def _last_was_final(self) -> bool:
        transitions = self.handle.transitions
        return bool(transitions) and transitions[-1].kind == TransitionKind.RUN

    def _on_transition(self, handle: RunHandle, transition: Transition) -> None:
        step = Step(
            index=len(self.steps) + 1,
            label=label_for(handle.graph, transition),
            snapshot=handle.snapshot(),
        )
        self.steps.append(step)
        logger.debug(f"Recorded step {step.index}: {step.label}")
        self._changed.set()

    async def wait_for(self, count: int) -> Optional[Step]:
        """Wait until ``count`` steps exist; None if the run ends first."""
        while len(self.steps) < count:
            if self.complete:
                return None
            self._changed.clear()
            await self._changed.wait()
        return self.steps[count - 1]

    def clear(self) -> None:
        self.steps = []
        self._changed.set()

    def close(self) -> None:
        self._unsubscribe()


# ============================================================
# Step sources
# ============================================================

class StepSource(Protocol):
    """Produces steps in order for a StepPlayer."""

    steps: List[Step]

    @property
    def complete(self) -> bool:
        """No further step will be produced."""
        ...

    async def advance(self) -> Optional[Step]:
        """Produce the next step, or None when exhausted."""
        ...

    async def reset(self) -> None:
        ...


@dataclass
class StepDef:
    """
    One scripted step.

    ``changes`` maps node ids to field updates using document keys:
    ``status`` (moved through the state machine), ``progress``,
    ``currentTask``, ``thought``, ``callsCount``, ``execTime`` and
    ``logs`` (lines appended). ``events`` are ``(node_id, type, content)``
    triples published on the source's bus.
    """
    label: str
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    events: List[Tuple[str, str, Any]] = field(default_factory=list)
    run_status: Optional[RunStatus] = None


def apply_changes(state: NodeState, changes: Dict[str, Any]) -> None:
    """Apply one node's scripted field updates."""
    if "status" in changes:
        state.transition(NodeStatus(changes["status"]))
    if "progress" in changes or "currentTask" in changes:
        state.report(changes.get("progress"), changes.get("currentTask"))
    if "thought" in changes:
        state.thought = changes["thought"]
    if "callsCount" in changes:
        state.calls_count = changes["callsCount"]
    if "execTime" in changes:
        state.exec_time = changes["execTime"]
    state.logs.extend(changes.get("logs", []))


class ScriptedSource:
    """Fixed step definitions applied to a working copy of node states."""

    def __init__(
        self,
        graph: Graph,
        definitions: Sequence[StepDef],
        clock: Optional[Callable[[], float]] = None,
    ):
        self.graph = graph
        self.definitions = list(definitions)
        self._clock = clock or time.time
        self._fresh()

    def _fresh(self) -> None:
        self.steps: List[Step] = []
        self.states: Dict[str, NodeState] = {node_id: NodeState() for node_id in self.graph.node_ids}
        self.bus = EventBus(ids=IdGenerator(prefix="evt", seed=settings.ID_SEED), clock=self._clock)
        self.run_status: Optional[RunStatus] = RunStatus.PENDING

    @property
    def complete(self) -> bool:
        return len(self.steps) >= len(self.definitions)

    async def advance(self) -> Optional[Step]:
        if self.complete:
            return None
        definition = self.definitions[len(self.steps)]
        for node_id, changes in definition.changes.items():
            apply_changes(self.states[node_id], changes)
        for node_id, event_type, content in definition.events:
            self.bus.publish(node_id, self.graph.node(node_id).name, EventType(event_type), content)
        if definition.run_status is not None:
            self.run_status = definition.run_status
        elif self.run_status == RunStatus.PENDING:
            self.run_status = RunStatus.RUNNING

        step = Step(
            index=len(self.steps) + 1,
            label=definition.label,
            snapshot=RunSnapshot.capture(self.states, self.bus.history(), self.run_status.value),
        )
        self.steps.append(step)
        return step

    async def reset(self) -> None:
        self._fresh()


class LiveRunSource:
    """
    Steps recorded from a Scheduler run.

    The run starts on the first advance (unless already started) and keeps
    going in the background; each advance waits for the next recorded step.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        handle: RunHandle,
        recorder: Optional[RunRecorder] = None,
    ):
        self.scheduler = scheduler
        self.handle = handle
        self.recorder = recorder or RunRecorder(handle)

    @classmethod
    def for_graph(cls, scheduler: Scheduler, graph: Graph) -> "LiveRunSource":
        return cls(scheduler, scheduler.new_handle(graph))

    @property
    def steps(self) -> List[Step]:
        return self.recorder.steps

    @property
    def complete(self) -> bool:
        return self.recorder.complete

    async def advance(self) -> Optional[Step]:
        if self.handle.status == RunStatus.PENDING:
            self.scheduler.start(self.handle.graph, self.handle)
        return await self.recorder.wait_for(len(self.steps) + 1)

    async def reset(self) -> None:
        await self.scheduler.reset(self.handle)
        self.recorder.clear()


class RecordedSource:
    """Replays a sequence of steps captured earlier."""

    def __init__(self, recording: Sequence[Step]):
        self.recording = list(recording)
        self.steps: List[Step] = []

    @property
    def complete(self) -> bool:
        return len(self.steps) >= len(self.recording)

    async def advance(self) -> Optional[Step]:
        if self.complete:
            return None
        step = self.recording[len(self.steps)]
        self.steps.append(step)
        return step

    async def reset(self) -> None:
        self.steps = []


# ============================================================
# Player
# ============================================================

class StepPlayer:
    """
    Deterministic step-wise playback controller.

    Usage:
        player = StepPlayer(ScriptedSource(graph, steps))
        await player.next()
        player.prev()
        await player.play()
        await player.reset()
    """

    def __init__(self, source: StepSource, interval_ms: Optional[float] = None):
        self.source = source
        self.interval_ms = interval_ms if interval_ms is not None else settings.PLAYER_INTERVAL_MS
        self.state = PlayerState.IDLE
        self.cursor = 0
        self._lock = asyncio.Lock()
        self._playing = False
        self._play_task: Optional[asyncio.Task] = None

    @property
    def total_steps(self) -> int:
        return len(self.source.steps)

    @property
    def current_step(self) -> Optional[Step]:
        if self.cursor == 0:
            return None
        return self.source.steps[self.cursor - 1]

    @property
    def label(self) -> str:
        step = self.current_step
        return step.label if step else "Ready"

    @property
    def at_end(self) -> bool:
        return self.source.complete and self.cursor >= self.total_steps

    async def next(self) -> Optional[Step]:
        """Show the next step, producing it if it was not recorded yet."""
        step = await self._forward()
        if self.state != PlayerState.FINISHED:
            self.state = PlayerState.PAUSED
        return step

    def prev(self) -> Optional[Step]:
        """Move back one step without re-executing anything."""
        if self.cursor > 0:
            self.cursor -= 1
        self.state = PlayerState.PAUSED if self.cursor else PlayerState.IDLE
        return self.current_step

    async def play(self) -> None:
        """Advance on a timer until finished or paused."""
        self._playing = True
        self.state = PlayerState.PLAYING
        try:
            while self._playing:
                await self._forward()
                if self.state == PlayerState.FINISHED or not self._playing:
                    break
                await asyncio.sleep(self.interval_ms / 1000)
        finally:
            self._playing = False

    def start_play(self) -> asyncio.Task:
        """Run play() in the background."""
        if self._play_task is None or self._play_task.done():
            self._play_task = asyncio.get_running_loop().create_task(self.play())
        return self._play_task

    def pause(self) -> None:
        """Stop auto-advancing after the step in progress."""
        self._playing = False
        if self.state == PlayerState.PLAYING:
            self.state = PlayerState.PAUSED

    async def reset(self) -> None:
        """Discard recorded steps and node state; back to idle at cursor 0."""
        self.pause()
        if self._play_task is not None and not self._play_task.done():
            self._play_task.cancel()
            await asyncio.wait({self._play_task})
        self._play_task = None
        async with self._lock:
            await self.source.reset()
            self.cursor = 0
            self.state = PlayerState.IDLE

    async def _forward(self) -> Optional[Step]:
        async with self._lock:
            if self.cursor < self.total_steps:
                # Already recorded: re-advance over it.
                self.cursor += 1
            elif not self.source.complete:
                self.state = PlayerState.ADVANCING
                step = await self.source.advance()
                if step is not None:
                    self.cursor += 1
                self.state = PlayerState.PLAYING if self._playing else PlayerState.PAUSED

            if self.at_end:
                self.state = PlayerState.FINISHED
            return self.current_step

    def to_dict(self) -> Dict[str, Any]:
        step = self.current_step
        return {
            "state": self.state.value,
            "cursor": self.cursor,
            "total_steps": self.total_steps,
            "label": self.label,
            "current_step": step.to_dict() if step else None,
        }
