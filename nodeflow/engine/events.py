"""
Event Bus for the Execution Engine.

An append-only, timestamped log of messages emitted by running nodes,
with fan-out to observers. One bus is owned by each run.
"""

from typing import Any, Callable, List, Optional
from enum import Enum
from pydantic import BaseModel, Field
import itertools
import logging
import time

from nodeflow.engine.ids import IdGenerator


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of flow events."""
    MESSAGE = "message"
    LOG = "log"
    ERROR = "error"


class FlowEvent(BaseModel):
    """A single message emitted during a run."""

    id: str
    seq: int = 0  # emission order, breaks timestamp ties
    timestamp: float = Field(default_factory=time.time)
    node_id: str
    node_name: str = ""
    type: EventType = EventType.MESSAGE
    content: Any = None

    class Config:
        frozen = True

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


Observer = Callable[[FlowEvent], None]


class EventBus:
    """
    Multi-writer append log of FlowEvents.

    Writers never wait on each other: an emission takes a sequence number
    and appends; history() sorts by ``(timestamp, seq)`` at read time.
    Observers are called synchronously on the emitting thread.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(lambda event: print(event.content))
        bus.publish("worker-a", "Worker A", EventType.MESSAGE, "hello")
        bus.history()
    """

    def __init__(
        self,
        ids: Optional[IdGenerator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._ids = ids or IdGenerator(prefix="evt")
        self._clock = clock or time.time
        self._seq = itertools.count(1)
        self._events: List[FlowEvent] = []
        self._observers: List[Observer] = []

    def next_seq(self) -> int:
        return next(self._seq)

    def emit(self, event: FlowEvent) -> FlowEvent:
        """Append an event and notify observers."""
        if not event.seq:
            event = event.model_copy(update={"seq": self.next_seq()})
        self._events.append(event)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning(f"Event observer failed: {e}")
        return event

    def publish(
        self,
        node_id: str,
        node_name: str,
        event_type: EventType,
        content: Any,
    ) -> FlowEvent:
        """Create a FlowEvent stamped with this bus's clock and emit it."""
        event = FlowEvent(
            id=self._ids.next(),
            seq=self.next_seq(),
            timestamp=self._clock(),
            node_id=node_id,
            node_name=node_name,
            type=EventType(event_type),
            content=content,
        )
        return self.emit(event)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def history(self) -> List[FlowEvent]:
        """All events in timestamp order, emission order breaking ties."""
        return sorted(list(self._events), key=lambda e: (e.timestamp, e.seq))

    def for_node(self, node_id: str) -> List[FlowEvent]:
        return [e for e in self.history() if e.node_id == node_id]

    def __len__(self) -> int:
        return len(self._events)
