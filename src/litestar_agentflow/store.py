"""In-memory workflow store.

This module provides a :class:`~litestar_agentflow.core.protocols.WorkflowStore`
that keeps serialized workflow records, checkpoints and message logs in
process memory. It suits tests, examples and single-process deployments; use
:class:`~litestar_agentflow.db.store.SQLAlchemyWorkflowStore` for durability.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from litestar_agentflow.core.models import Workflow, utcnow
from litestar_agentflow.core.types import WorkflowStatus

if TYPE_CHECKING:
    from litestar_agentflow.core.messages import Message
    from litestar_agentflow.core.models import Checkpoint

__all__ = ["InMemoryWorkflowStore"]

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(status.value for status in WorkflowStatus if status.is_terminal)


class InMemoryWorkflowStore:
    """Workflow store backed by dictionaries.

    Records are stored in their serialized form and merged on save, so a
    partial save (status only) never loses the rest of the record.

    Example:
        >>> store = InMemoryWorkflowStore()
        >>> await store.save("wf-1", workflow.to_dict())
        >>> (await store.find("wf-1")).status
        <WorkflowStatus.RUNNING: 'running'>
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    async def find(self, workflow_id: str) -> Workflow | None:
        record = self._records.get(workflow_id)
        if record is None or "sequence" not in record:
            return None
        return Workflow.from_dict(copy.deepcopy(record))

    async def save(self, workflow_id: str, state: dict[str, Any], user_id: str | None = None) -> None:
        async with self._lock:
            record = self._records.setdefault(workflow_id, {"id": workflow_id})
            record.update(copy.deepcopy(state))
            if user_id is not None and not record.get("userId"):
                record["userId"] = user_id
            record["updatedAt"] = utcnow().isoformat()

    async def list_active(self) -> list[Workflow]:
        return [
            Workflow.from_dict(copy.deepcopy(record))
            for record in self._records.values()
            if "sequence" in record and record.get("status") not in TERMINAL_STATUSES
        ]

    async def get_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        return sorted(self._checkpoints.get(workflow_id, []), key=lambda checkpoint: checkpoint.timestamp, reverse=True)

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints.setdefault(checkpoint.workflow_id, []).append(checkpoint)

    async def cleanup_checkpoints(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        removed = 0
        for workflow_id, checkpoints in list(self._checkpoints.items()):
            kept = [checkpoint for checkpoint in checkpoints if checkpoint.timestamp >= cutoff]
            removed += len(checkpoints) - len(kept)
            self._checkpoints[workflow_id] = kept
        if removed:
            logger.info("Removed %d checkpoints older than %d days", removed, older_than_days)
        return removed

    async def append_message(self, message: Message) -> None:
        self._messages.setdefault(message.workflow_id, []).append(message)

    def messages(self, workflow_id: str) -> list[Message]:
        """Return the persisted message log of a workflow."""
        return list(self._messages.get(workflow_id, []))

    def record(self, workflow_id: str) -> dict[str, Any] | None:
        """Return a copy of the raw stored record."""
        record = self._records.get(workflow_id)
        return copy.deepcopy(record) if record is not None else None
