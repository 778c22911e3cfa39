"""Step checkpoint stores.

A checkpoint is the persisted record `(instance_id, step_name) ->
{status, result}`. The SQL store survives restarts; the memory store is
process-local and lives as long as the store object.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from newsweave.core.db import AsyncSessionLocal
from newsweave.core.repositories import get_checkpoint, save_checkpoint, list_checkpoints
from newsweave.core.settings import Settings, get_settings

PENDING = "pending"
DONE = "done"
FAILED = "failed"


@dataclass
class Checkpoint:
    step_name: str
    status: str
    result: Any = None
    attempts: int = 0
    error: Optional[str] = None


class CheckpointStore(ABC):
    """Keyed map of step checkpoints."""

    @abstractmethod
    async def get(self, instance_id: str, step_name: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def save(
        self,
        instance_id: str,
        step_name: str,
        status: str,
        result: Any = None,
        attempts: int = 0,
        error: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def all(self, instance_id: str) -> Dict[str, Checkpoint]:
        """Checkpoints of one instance keyed by step name."""
        pass


class MemoryCheckpointStore(CheckpointStore):

    def __init__(self):
        self._checkpoints: Dict[Tuple[str, str], Checkpoint] = {}

    async def get(self, instance_id: str, step_name: str) -> Optional[Checkpoint]:
        return self._checkpoints.get((instance_id, step_name))

    async def save(self, instance_id, step_name, status, result=None, attempts=0, error=None) -> None:
        self._checkpoints[(instance_id, step_name)] = Checkpoint(step_name, status, result, attempts, error)

    async def all(self, instance_id: str) -> Dict[str, Checkpoint]:
        return {step: cp for (iid, step), cp in self._checkpoints.items() if iid == instance_id}


class SqlCheckpointStore(CheckpointStore):
    """Checkpoints in the workflow_checkpoints table."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def get(self, instance_id: str, step_name: str) -> Optional[Checkpoint]:
        async with self.session_factory() as session:
            row = await get_checkpoint(session, instance_id, step_name)
        if row is None:
            return None
        return Checkpoint(row.step_name, row.status, row.result, row.attempts, row.error)

    async def save(self, instance_id, step_name, status, result=None, attempts=0, error=None) -> None:
        async with self.session_factory() as session:
            await save_checkpoint(session, instance_id, step_name, status, result, attempts, error)

    async def all(self, instance_id: str) -> Dict[str, Checkpoint]:
        async with self.session_factory() as session:
            rows = await list_checkpoints(session, instance_id)
        return {r.step_name: Checkpoint(r.step_name, r.status, r.result, r.attempts, r.error) for r in rows}


def build_checkpoint_store(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> CheckpointStore:
    settings = settings or get_settings()
    if settings.checkpoint_backend.lower() == "memory":
        return MemoryCheckpointStore()
    return SqlCheckpointStore(session_factory)
