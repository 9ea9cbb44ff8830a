"""Database-backed workflow store.

This module provides :class:`SQLAlchemyWorkflowStore`, an implementation of
the workflow store protocol on top of the repositories in
:mod:`litestar_agentflow.db.repositories`.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from litestar_agentflow.core.messages import Message
from litestar_agentflow.core.models import Checkpoint, Workflow, from_iso, utcnow
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.db.models import CheckpointModel, MessageModel, WorkflowModel
from litestar_agentflow.db.repositories import CheckpointRepository, MessageRepository, WorkflowRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

__all__ = ["SQLAlchemyWorkflowStore"]

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SQLAlchemyWorkflowStore:
    """Workflow store persisting to a SQL database.

    Every write commits, so state survives a crash between steps.

    Attributes:
        session: SQLAlchemy async session for database operations.

    Example:
        >>> async with session_factory() as session:
        ...     store = SQLAlchemyWorkflowStore(session)
        ...     engine = StepExecutionEngine(store, catalog, completion)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the store.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session
        self._workflow_repo = WorkflowRepository(session=session)
        self._checkpoint_repo = CheckpointRepository(session=session)
        self._message_repo = MessageRepository(session=session)

    async def find(self, workflow_id: str) -> Workflow | None:
        record = await self._workflow_repo.get_by_key(workflow_id)
        if record is None or "sequence" not in record.state:
            return None
        return Workflow.from_dict(copy.deepcopy(record.state))

    async def save(self, workflow_id: str, state: dict[str, Any], user_id: str | None = None) -> None:
        """Merge state into the workflow record, creating it if needed.

        Args:
            workflow_id: The workflow to save.
            state: Full or partial serialized workflow state.
            user_id: The user on whose behalf the save happens.
        """
        record = await self._workflow_repo.get_by_key(workflow_id)
        if record is None:
            record = WorkflowModel(workflow_key=workflow_id, state={"id": workflow_id}, user_id=user_id)
            await self._workflow_repo.add(record, auto_commit=False)

        # Assign a new dict so the JSON column is flagged dirty.
        merged = {**record.state, **copy.deepcopy(state)}
        record.state = merged
        if "status" in state:
            record.status = WorkflowStatus(state["status"])
        if "currentStep" in state:
            record.current_step = int(state["currentStep"])
        if "title" in state:
            record.title = state["title"] or ""
        if "startedAt" in state:
            record.started_at = from_iso(state["startedAt"])
        if "completedAt" in state:
            record.completed_at = from_iso(state["completedAt"])
        if user_id is not None and record.user_id is None:
            record.user_id = user_id
        await self.session.commit()

    async def list_active(self) -> list[Workflow]:
        records = await self._workflow_repo.find_active()
        return [Workflow.from_dict(copy.deepcopy(record.state)) for record in records if "sequence" in record.state]

    async def get_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        records = await self._checkpoint_repo.find_by_workflow(workflow_id)
        return [
            Checkpoint(
                id=record.checkpoint_key,
                workflow_id=record.workflow_key,
                type=record.type,
                description=record.description or "",
                step=record.step,
                current_agent=record.current_agent,
                state=copy.deepcopy(record.state),
                timestamp=_aware(record.taken_at),
            )
            for record in records
        ]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        model = CheckpointModel(
            checkpoint_key=checkpoint.id,
            workflow_key=checkpoint.workflow_id,
            type=checkpoint.type,
            description=checkpoint.description,
            step=checkpoint.step,
            current_agent=checkpoint.current_agent,
            state=copy.deepcopy(checkpoint.state),
            taken_at=checkpoint.timestamp,
        )
        await self._checkpoint_repo.add(model, auto_commit=True)

    async def cleanup_checkpoints(self, older_than_days: int) -> int:
        removed = await self._checkpoint_repo.delete_older_than(utcnow() - timedelta(days=older_than_days))
        await self.session.commit()
        if removed:
            logger.info("Removed %d checkpoints older than %d days", removed, older_than_days)
        return removed

    async def append_message(self, message: Message) -> None:
        model = MessageModel(
            message_key=message.id,
            workflow_key=message.workflow_id,
            sender=message.sender,
            recipient=message.recipient,
            type=message.type,
            content=copy.deepcopy(message.content),
            sent_at=message.timestamp,
        )
        await self._message_repo.add(model, auto_commit=True)

    async def get_messages(self, workflow_id: str, limit: int | None = None) -> list[Message]:
        """Load the persisted message log of a workflow."""
        records = await self._message_repo.find_by_workflow(workflow_id, limit)
        return [
            Message(
                id=record.message_key,
                workflow_id=record.workflow_key,
                sender=record.sender,
                recipient=record.recipient,
                type=record.type,
                content=dict(record.content),
                timestamp=_aware(record.sent_at),
            )
            for record in records
        ]
