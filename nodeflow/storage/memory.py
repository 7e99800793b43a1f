"""
In-Memory Storage for Workflow Runs.

Keeps every run started through the API together with its recorder and
step player. Can be replaced with a persistent implementation.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
from dataclasses import dataclass, field

from nodeflow.engine.player import RunRecorder, StepPlayer
from nodeflow.engine.scheduler import RunHandle


@dataclass
class StoredRun:
    """A stored execution run."""
    run_id: str
    name: str
    handle: RunHandle
    recorder: RunRecorder
    player: StepPlayer
    scenario: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def status(self) -> str:
        return self.handle.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "scenario": self.scenario,
            "status": self.status,
            "node_count": len(self.handle.graph.nodes),
            "step_count": len(self.recorder.steps),
            "created_at": self.created_at.isoformat(),
        }


class RunStorage:
    """
    In-memory storage for execution runs.

    Access is serialized with an asyncio lock; the run handles themselves
    are only touched from the event loop.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def save(self, stored: StoredRun) -> StoredRun:
        async with self._lock:
            self._runs[stored.run_id] = stored
            return stored

    async def get(self, run_id: str) -> Optional[StoredRun]:
        """Get a run by ID."""
        async with self._lock:
            return self._runs.get(run_id)

    async def list_all(self) -> List[StoredRun]:
        """List all runs, oldest first."""
        async with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    async def delete(self, run_id: str) -> Optional[StoredRun]:
        """Remove a run and return it."""
        async with self._lock:
            return self._runs.pop(run_id, None)

    def __len__(self) -> int:
        return len(self._runs)


# Global storage instance
run_storage = RunStorage()
