"""SQLAlchemy models for workflow persistence.

This module defines the database models backing the SQLAlchemy workflow store:
- WorkflowModel: Stores the serialized state of a workflow run
- CheckpointModel: Stores checkpoint snapshots for rollback
- MessageModel: Stores the message log of a workflow run

Workflow, checkpoint and message ids are generated by the engine, so each
model keeps them in a unique string key column next to the UUID primary key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from advanced_alchemy.base import UUIDAuditBase
from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from litestar_agentflow.core.types import MessageType, WorkflowStatus

__all__ = [
    "CheckpointModel",
    "MessageModel",
    "WorkflowModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class WorkflowModel(UUIDAuditBase):
    """Persisted workflow run.

    The full serialized workflow lives in ``state``; the columns beside it are
    denormalized copies for querying.

    Attributes:
        workflow_key: Engine-assigned workflow id.
        title: Workflow title.
        status: Current status.
        current_step: Index of the next step to execute.
        state: Serialized workflow as produced by ``Workflow.to_dict``.
        user_id: User that started the run.
        started_at: When the run started.
        completed_at: When the run reached a terminal status.
    """

    __tablename__ = "agentflow_workflows"
    __table_args__ = (
        Index("ix_agentflow_workflows_status", "status"),
        Index("ix_agentflow_workflows_user_id", "user_id"),
    )

    workflow_key: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    status: Mapped[WorkflowStatus] = mapped_column(
        Enum(WorkflowStatus, native_enum=False, length=50),
        default=WorkflowStatus.INITIALIZING,
    )
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CheckpointModel(UUIDAuditBase):
    """Persisted checkpoint snapshot.

    Attributes:
        checkpoint_key: Engine-assigned checkpoint id.
        workflow_key: Workflow the snapshot belongs to.
        type: Checkpoint label such as ``before_agent_pm``.
        description: Human-readable description.
        step: Step index at snapshot time.
        current_agent: Agent about to run at snapshot time.
        state: Snapshot of the restorable workflow state.
        taken_at: When the snapshot was taken.
    """

    __tablename__ = "agentflow_checkpoints"
    __table_args__ = (Index("ix_agentflow_checkpoints_workflow_taken", "workflow_key", "taken_at"),)

    checkpoint_key: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    workflow_key: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    step: Mapped[int] = mapped_column(Integer, default=0)
    current_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    taken_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class MessageModel(UUIDAuditBase):
    """Persisted bus message.

    Attributes:
        message_key: Bus-assigned message id.
        workflow_key: Workflow the message belongs to.
        sender: Sending participant.
        recipient: Receiving participant.
        type: Message type.
        content: Message payload.
        sent_at: When the message was sent.
    """

    __tablename__ = "agentflow_messages"
    __table_args__ = (Index("ix_agentflow_messages_workflow_sent", "workflow_key", "sent_at"),)

    message_key: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    workflow_key: Mapped[str] = mapped_column(String(255))
    sender: Mapped[str] = mapped_column(String(255))
    recipient: Mapped[str] = mapped_column(String(255))
    type: Mapped[MessageType] = mapped_column(Enum(MessageType, native_enum=False, length=50))
    content: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
