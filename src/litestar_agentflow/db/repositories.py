"""Repository implementations for workflow persistence.

This module provides async repositories for the workflow, checkpoint and
message models using advanced-alchemy's repository pattern.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from advanced_alchemy.filters import LimitOffset, OrderBy
from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import delete, select

from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.db.models import CheckpointModel, MessageModel, WorkflowModel

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

__all__ = [
    "CheckpointRepository",
    "MessageRepository",
    "WorkflowRepository",
]

TERMINAL_STATUSES = [status for status in WorkflowStatus if status.is_terminal]


class WorkflowRepository(SQLAlchemyAsyncRepository[WorkflowModel]):
    """Repository for workflow run records."""

    model_type = WorkflowModel

    async def get_by_key(self, workflow_key: str) -> WorkflowModel | None:
        """Get a workflow record by its engine-assigned id.

        Args:
            workflow_key: The workflow id.

        Returns:
            The workflow record or None if not found.
        """
        stmt = select(WorkflowModel).where(WorkflowModel.workflow_key == workflow_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active(self) -> Sequence[WorkflowModel]:
        """Find workflows that have not reached a terminal status.

        Returns:
            Active workflow records, oldest first.
        """
        stmt = (
            select(WorkflowModel)
            .where(WorkflowModel.status.not_in(TERMINAL_STATUSES))
            .order_by(WorkflowModel.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_by_user(
        self,
        user_id: str,
        status: WorkflowStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[Sequence[WorkflowModel], int]:
        """Find workflows started by a user.

        Args:
            user_id: The user ID to filter by.
            status: Optional status filter.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            Tuple of (workflows, total_count).
        """
        conditions = [WorkflowModel.user_id == user_id]
        if status:
            conditions.append(WorkflowModel.status == status)

        return await self.list_and_count(
            *conditions,
            LimitOffset(limit=limit, offset=offset),
            OrderBy(field_name="created_at", sort_order="desc"),
        )


class CheckpointRepository(SQLAlchemyAsyncRepository[CheckpointModel]):
    """Repository for checkpoint snapshots."""

    model_type = CheckpointModel

    async def find_by_workflow(self, workflow_key: str) -> Sequence[CheckpointModel]:
        """Find the checkpoints of a workflow, newest first."""
        stmt = (
            select(CheckpointModel)
            .where(CheckpointModel.workflow_key == workflow_key)
            .order_by(CheckpointModel.taken_at.desc())
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete checkpoints taken before a cutoff.

        Returns:
            Number of checkpoints deleted.
        """
        stmt = (
            delete(CheckpointModel)
            .where(CheckpointModel.taken_at < cutoff)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0


class MessageRepository(SQLAlchemyAsyncRepository[MessageModel]):
    """Repository for the persisted message log."""

    model_type = MessageModel

    async def find_by_workflow(self, workflow_key: str, limit: int | None = None) -> Sequence[MessageModel]:
        """Find the messages of a workflow in send order.

        Args:
            workflow_key: The workflow id.
            limit: Optional cap on the number of messages returned.

        Returns:
            Messages ordered by send time.
        """
        stmt = select(MessageModel).where(MessageModel.workflow_key == workflow_key).order_by(MessageModel.sent_at)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()
