"""
WebSocket Routes for Real-time Run Streaming.

Provides live events and transitions while a run executes.
"""

from typing import Any, Dict, Set
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import asyncio
import logging

from nodeflow.engine.events import FlowEvent
from nodeflow.engine.scheduler import RunHandle, Transition, TransitionKind
from nodeflow.storage.memory import run_storage


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, run_id: str):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.setdefault(run_id, set()).add(websocket)
        logger.info(f"WebSocket connected for run: {run_id}")

    def disconnect(self, websocket: WebSocket, run_id: str):
        """Remove a WebSocket connection."""
        if run_id in self.active_connections:
            self.active_connections[run_id].discard(websocket)
            if not self.active_connections[run_id]:
                del self.active_connections[run_id]
        logger.info(f"WebSocket disconnected for run: {run_id}")

    def count(self, run_id: str) -> int:
        return len(self.active_connections.get(run_id, ()))


# Global connection manager
manager = ConnectionManager()


def _completed_message(handle: RunHandle) -> Dict[str, Any]:
    return {
        "type": "completed",
        "run_id": handle.run_id,
        "status": handle.status.value,
        "outputs": handle.sink_outputs(),
        "errors": handle.errors,
    }


@router.websocket("/ws/runs/{run_id}")
async def websocket_run(websocket: WebSocket, run_id: str):
    """
    Stream a run's events and transitions.

    On connect the server sends the run's current state and event history,
    then live messages until the run finishes.

    Message format (server -> client):
    ```json
    {"type": "event", "event": {"node_id": "wa", "type": "log", "content": "..."}}
    {"type": "transition", "transition": {"kind": "status", "node_ids": ["wa", "wb"], ...}}
    {"type": "completed", "status": "completed", "outputs": {...}, "errors": {}}
    ```
    """
    stored = await run_storage.get(run_id)
    if not stored:
        await websocket.close(code=4004, reason=f"Run '{run_id}' not found")
        return

    handle = stored.handle
    await manager.connect(websocket, run_id)

    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def on_event(event: FlowEvent) -> None:
        # Called on script worker threads.
        loop.call_soon_threadsafe(queue.put_nowait, {"type": "event", "event": event.to_dict()})

    def on_transition(_: RunHandle, transition: Transition) -> None:
        queue.put_nowait({"type": "transition", "transition": transition.to_dict()})
        if transition.kind == TransitionKind.RUN:
            queue.put_nowait(_completed_message(handle))

    unsubscribe_events = handle.bus.subscribe(on_event)
    unsubscribe_transitions = handle.subscribe(on_transition)

    try:
        await websocket.send_json({
            "type": "current_state",
            "run": handle.to_dict(),
            "events": [e.to_dict() for e in handle.bus.history()],
        })

        if handle.is_finished:
            await websocket.send_json(_completed_message(handle))
            return

        while True:
            message = await queue.get()
            await websocket.send_json(message)
            if message["type"] == "completed":
                break

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from run {run_id}")
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
    finally:
        unsubscribe_events()
        unsubscribe_transitions()
        manager.disconnect(websocket, run_id)
