"""Checkpoint creation and rollback.

Checkpoints are taken when a workflow starts, immediately before every
agent step, when a rolled-back workflow resumes and when a workflow
completes, as long as checkpointing is enabled. When a step raises an
unhandled exception the engine asks this module for a rollback target:
the newest checkpoint that was *not* taken for the failing step itself,
since that snapshot may already carry the state that led to the failure.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from litestar_agentflow.core.messages import new_message_id
from litestar_agentflow.core.models import Checkpoint, ErrorRecord, WorkflowContext, utcnow
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.exceptions import CheckpointError

if TYPE_CHECKING:
    from litestar_agentflow.core.models import Workflow
    from litestar_agentflow.core.protocols import WorkflowStore

__all__ = [
    "RESUME_FROM_ROLLBACK",
    "WORKFLOW_COMPLETED",
    "WORKFLOW_INITIALIZED",
    "CheckpointManager",
    "agent_checkpoint_type",
]

logger = logging.getLogger(__name__)

MAX_CHECKPOINTS = 10

WORKFLOW_INITIALIZED = "workflow_initialized"
RESUME_FROM_ROLLBACK = "resume_from_rollback"
WORKFLOW_COMPLETED = "workflow_completed"


def agent_checkpoint_type(agent_id: str) -> str:
    """Checkpoint label used before running an agent step."""
    return f"before_agent_{agent_id}"


def snapshot_state(workflow: Workflow) -> dict[str, Any]:
    """Deep copy of the restorable parts of a workflow."""
    return {
        "currentStep": workflow.current_step,
        "currentAgent": workflow.current_agent,
        "context": workflow.context.to_dict(),
        "errors": [record.to_dict() for record in workflow.errors],
        "metadata": copy.deepcopy(workflow.metadata),
    }


class CheckpointManager:
    """Creates checkpoints and restores workflows from them.

    Attributes:
        store: Workflow store checkpoints are persisted to.
        enabled: Global switch; workflows can also opt out individually.
        max_checkpoints: Checkpoints kept in memory per workflow.
    """

    def __init__(self, store: WorkflowStore, enabled: bool = True, max_checkpoints: int = MAX_CHECKPOINTS) -> None:
        """Initialize the checkpoint manager.

        Args:
            store: Workflow store checkpoints are persisted to.
            enabled: Global switch for checkpoint creation.
            max_checkpoints: Checkpoints kept in memory per workflow.
        """
        self.store = store
        self.enabled = enabled
        self.max_checkpoints = max_checkpoints
        self._recent: dict[str, list[Checkpoint]] = {}

    async def create(self, workflow: Workflow, checkpoint_type: str, description: str) -> Checkpoint | None:
        """Snapshot a workflow.

        A store failure is logged and the checkpoint is kept in memory only.

        Args:
            workflow: The workflow to snapshot.
            checkpoint_type: Label such as ``before_agent_pm`` or ``workflow_initialized``.
            description: Human-readable description.

        Returns:
            The checkpoint, or None when checkpointing is disabled.
        """
        if not (self.enabled and workflow.checkpoint_enabled):
            return None
        checkpoint = Checkpoint(
            id=new_message_id("checkpoint"),
            workflow_id=workflow.id,
            type=checkpoint_type,
            description=description,
            step=workflow.current_step,
            current_agent=workflow.current_agent,
            state=snapshot_state(workflow),
        )
        recent = [*self._recent.get(workflow.id, []), checkpoint]
        self._recent[workflow.id] = recent[-self.max_checkpoints :]
        try:
            await self.store.save_checkpoint(checkpoint)
        except Exception:
            logger.exception("Could not persist checkpoint %s for workflow %s, keeping it in memory", checkpoint.id, workflow.id)
        logger.debug("Created checkpoint %s (%s) for workflow %s", checkpoint.id, checkpoint_type, workflow.id)
        return checkpoint

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        """Return a workflow's checkpoints, newest first.

        Falls back to the in-memory copies when the store cannot be read, and
        includes in-memory copies the store failed to persist.
        """
        recent = self._recent.get(workflow_id, [])
        try:
            checkpoints = await self.store.get_checkpoints(workflow_id)
        except Exception:
            logger.exception("Could not read checkpoints for workflow %s, using in-memory copies", workflow_id)
            checkpoints = list(recent)
        else:
            stored = {checkpoint.id for checkpoint in checkpoints}
            checkpoints = [*checkpoints, *(checkpoint for checkpoint in recent if checkpoint.id not in stored)]
        return sorted(checkpoints, key=lambda checkpoint: (checkpoint.timestamp, checkpoint.step), reverse=True)

    async def find_rollback_target(self, workflow: Workflow, failing_agent: str | None) -> Checkpoint | None:
        """Pick the checkpoint to roll back to after a failure.

        The checkpoint taken for the failing agent at the current step is
        skipped; the next most recent one is returned.

        Args:
            workflow: The failing workflow.
            failing_agent: Agent of the failing step, if it is an agent step.

        Returns:
            The rollback target, or None if no eligible checkpoint exists.
        """
        excluded = agent_checkpoint_type(failing_agent) if failing_agent else None
        for checkpoint in await self.list_checkpoints(workflow.id):
            if checkpoint.type == excluded and checkpoint.step == workflow.current_step:
                continue
            if checkpoint.step > workflow.current_step:
                continue
            return checkpoint
        return None

    def restore(self, workflow: Workflow, checkpoint: Checkpoint) -> Workflow:
        """Apply a checkpoint's snapshot to a workflow in place."""
        state = checkpoint.state
        workflow.current_step = int(state["currentStep"])
        workflow.current_agent = state.get("currentAgent")
        workflow.context = WorkflowContext.from_dict(state.get("context") or {})
        workflow.errors = [ErrorRecord.from_dict(raw) for raw in state.get("errors") or []]
        workflow.metadata = copy.deepcopy(state.get("metadata") or {})
        workflow.elicitation_details = None
        return workflow

    async def rollback(self, workflow: Workflow, checkpoint: Checkpoint) -> Workflow:
        """Restore a workflow from a checkpoint and mark it rolled back.

        Args:
            workflow: The workflow to restore.
            checkpoint: The checkpoint to restore from.

        Returns:
            The restored workflow in status ROLLED_BACK.

        Raises:
            CheckpointError: If the snapshot cannot be applied. The workflow is
                then marked ERROR with a ``rollback_error`` record.
        """
        if checkpoint.workflow_id != workflow.id:
            msg = f"Checkpoint '{checkpoint.id}' does not belong to workflow '{workflow.id}'"
            raise CheckpointError(msg)
        try:
            self.restore(workflow, checkpoint)
        except (KeyError, TypeError, ValueError) as exc:
            workflow.status = WorkflowStatus.ERROR
            workflow.add_error(
                ErrorRecord(
                    message=f"Rollback to {checkpoint.id} failed: {exc}",
                    step=workflow.current_step,
                    agent_id=workflow.current_agent,
                    type="rollback_error",
                )
            )
            msg = f"Could not restore checkpoint '{checkpoint.id}': {exc}"
            raise CheckpointError(msg) from exc

        workflow.status = WorkflowStatus.ROLLED_BACK
        workflow.metadata["lastRollback"] = {
            "checkpointId": checkpoint.id,
            "step": checkpoint.step,
            "timestamp": utcnow().isoformat(),
        }
        logger.info("Rolled back workflow %s to checkpoint %s (step %d)", workflow.id, checkpoint.id, checkpoint.step)
        return workflow

    async def get_checkpoint(self, workflow_id: str, checkpoint_id: str) -> Checkpoint:
        """Find one checkpoint by id.

        Raises:
            CheckpointError: If the workflow has no such checkpoint.
        """
        for checkpoint in await self.list_checkpoints(workflow_id):
            if checkpoint.id == checkpoint_id:
                return checkpoint
        msg = f"Checkpoint '{checkpoint_id}' not found for workflow '{workflow_id}'"
        raise CheckpointError(msg)

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete old checkpoints from the store and forget in-memory copies.

        Returns:
            Number of checkpoints the store deleted.
        """
        cutoff = utcnow().timestamp() - older_than_days * 86400
        for workflow_id, recent in list(self._recent.items()):
            kept = [checkpoint for checkpoint in recent if checkpoint.timestamp.timestamp() >= cutoff]
            if kept:
                self._recent[workflow_id] = kept
            else:
                del self._recent[workflow_id]
        return await self.store.cleanup_checkpoints(older_than_days)

    def forget(self, workflow_id: str) -> None:
        self._recent.pop(workflow_id, None)
