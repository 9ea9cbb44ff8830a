"""Database persistence layer for litestar-agentflow.

This module provides SQLAlchemy models, repositories and a workflow store
for persisting workflow runs, checkpoints and message logs.
"""

from __future__ import annotations

from litestar_agentflow.db.models import CheckpointModel, MessageModel, WorkflowModel
from litestar_agentflow.db.repositories import CheckpointRepository, MessageRepository, WorkflowRepository
from litestar_agentflow.db.store import SQLAlchemyWorkflowStore

__all__ = [
    "CheckpointModel",
    "CheckpointRepository",
    "MessageModel",
    "MessageRepository",
    "SQLAlchemyWorkflowStore",
    "WorkflowModel",
    "WorkflowRepository",
]
