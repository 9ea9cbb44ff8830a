"""Collaborator protocols for litestar-agentflow.

The engine treats persistence, the agent catalog, the completion service and
real-time push delivery as black boxes. This module defines the structural
interfaces it calls them through; any object with matching methods works.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from litestar_agentflow.core.messages import Message
    from litestar_agentflow.core.models import AgentPersona, Checkpoint, CompletionResult, Workflow

__all__ = ["AgentCatalog", "CompletionService", "EventBroadcaster", "WorkflowStore"]


@runtime_checkable
class WorkflowStore(Protocol):
    """Protocol for workflow persistence.

    ``save`` merges ``state`` into the stored record, so it serves both full
    saves (``workflow.to_dict()``) and partial, status-only updates.

    Example:
        >>> await store.save(workflow.id, {"status": "paused_for_elicitation"})
    """

    async def find(self, workflow_id: str) -> Workflow | None:
        """Load a workflow by id.

        Args:
            workflow_id: The workflow to load.

        Returns:
            The workflow, or None if the store has no record of it.
        """
        ...

    async def save(self, workflow_id: str, state: dict[str, Any], user_id: str | None = None) -> None:
        """Create or update a workflow record.

        Args:
            workflow_id: The workflow to save.
            state: Full or partial serialized state to merge into the record.
            user_id: The user on whose behalf the save happens.
        """
        ...

    async def list_active(self) -> list[Workflow]:
        """Return workflows that are not in a terminal status."""
        ...

    async def get_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        """Return the checkpoints of a workflow, newest first."""
        ...

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint."""
        ...

    async def cleanup_checkpoints(self, older_than_days: int) -> int:
        """Delete checkpoints older than the given age.

        Returns:
            Number of checkpoints deleted.
        """
        ...

    async def append_message(self, message: Message) -> None:
        """Append a message to the workflow's message log."""
        ...


@runtime_checkable
class AgentCatalog(Protocol):
    """Protocol for loading agent personas and permission rules."""

    async def load_agent(self, agent_id: str) -> AgentPersona | None:
        """Load a persona by agent id, or None if unknown."""
        ...

    def can_edit_section(self, agent_id: str, section_id: str) -> bool:
        """Return whether an agent may write the given document section."""
        ...


@runtime_checkable
class CompletionService(Protocol):
    """Protocol for the text-generation service.

    Implementations may raise on credential, quota or network failure and may
    be slow; the engine wraps every call in a timeout.
    """

    async def call(
        self,
        prompt: str,
        *,
        agent: AgentPersona | None = None,
        complexity: str = "complex",
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> CompletionResult:
        """Generate text for a prompt.

        Args:
            prompt: The full prompt.
            agent: Persona the text is generated as.
            complexity: Hint for model selection (``simple`` or ``complex``).
            context: Extra context for the provider.
            user_id: User on whose behalf the call is made.

        Returns:
            The generated content with provider and usage details.
        """
        ...


@runtime_checkable
class EventBroadcaster(Protocol):
    """Protocol for best-effort real-time push delivery."""

    async def trigger(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        """Push an event to a channel. Failures are logged by callers, never raised further."""
        ...
