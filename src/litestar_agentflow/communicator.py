"""Agent message bus.

The communicator validates, records and dispatches every message exchanged
between the engine, the agents and the user-facing channel. Sending is a
fixed pipeline: validate, stamp, record in memory, persist to the message log
(best effort), run the type-specific handler, notify local subscribers and
finally push to the event broadcaster (best effort).
"""

from __future__ import annotations

import inspect
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from litestar_agentflow.core.messages import Message, new_message_id, validate_message_fields
from litestar_agentflow.core.models import utcnow
from litestar_agentflow.core.types import MessageType, WorkflowStatus
from litestar_agentflow.exceptions import MessageValidationError

if TYPE_CHECKING:
    from litestar_agentflow.core.protocols import EventBroadcaster, WorkflowStore

__all__ = ["AgentCommunicator", "Subscriber", "summarize_message"]

logger = logging.getLogger(__name__)

Subscriber = Callable[[Message], Awaitable[None] | None]
"""Callback notified of every message sent for a workflow."""

ALL_WORKFLOWS = "*"


def summarize_message(message: Message) -> str:
    """Human-readable one-line summary of a message."""
    content = message.content
    if message.type == MessageType.ACTIVATION:
        return f"Activating {message.recipient} agent"
    if message.type == MessageType.COMPLETION:
        return f"{message.sender} completed task"
    if message.type == MessageType.ERROR:
        return f"Error in {message.sender}: {content.get('error') or 'Unknown error'}"
    if message.type == MessageType.INTER_AGENT:
        return f"{message.sender} -> {message.recipient}: {content.get('summary') or 'Communication'}"
    if message.type == MessageType.ELICITATION_REQUEST:
        return f"{message.sender} requests user input: {content.get('sectionTitle') or 'Input required'}"
    if message.type == MessageType.WORKFLOW_STEP_UPDATE:
        return f"Workflow step {content.get('stepIndex')}: {content.get('stepName') or 'Step update'}"
    return f"Workflow progress: {content.get('currentStep')}/{content.get('totalSteps')}"


class AgentCommunicator:
    """Typed publish/dispatch of workflow messages.

    Attributes:
        store: Workflow store used for the message log and elicitation state.
        broadcaster: Event broadcaster for real-time push, if any.

    Example:
        >>> communicator = AgentCommunicator(store=store)
        >>> await communicator.send_message(
        ...     workflow.id,
        ...     sender="orchestrator",
        ...     recipient="pm",
        ...     message_type=MessageType.ACTIVATION,
        ...     content={"action": "create prd"},
        ... )
    """

    def __init__(self, store: WorkflowStore | None = None, broadcaster: EventBroadcaster | None = None) -> None:
        """Initialize the communicator.

        Args:
            store: Workflow store for the message log and elicitation state.
            broadcaster: Event broadcaster for real-time push.
        """
        self.store = store
        self.broadcaster = broadcaster
        self._history: dict[str, list[Message]] = {}
        self._channels: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._handlers: dict[MessageType, Callable[[Message], Awaitable[None]]] = {
            MessageType.ACTIVATION: self._handle_activation,
            MessageType.COMPLETION: self._handle_completion,
            MessageType.ERROR: self._handle_error,
            MessageType.ELICITATION_REQUEST: self._handle_elicitation_request,
        }

    async def send_message(
        self,
        workflow_id: str,
        *,
        sender: str,
        recipient: str,
        message_type: MessageType | str,
        content: dict[str, Any],
    ) -> Message:
        """Validate and send a message.

        Args:
            workflow_id: Workflow the message belongs to.
            sender: Sending participant.
            recipient: Receiving participant.
            message_type: One of :class:`MessageType`.
            content: Payload.

        Returns:
            The sent message.

        Raises:
            MessageValidationError: If a field is missing or the type is unknown.
                Nothing is recorded or sent in that case.
        """
        errors = validate_message_fields({"from": sender, "to": recipient, "type": message_type, "content": content})
        if errors:
            raise MessageValidationError(errors)

        message = Message(
            id=new_message_id(),
            workflow_id=workflow_id,
            sender=sender,
            recipient=recipient,
            type=MessageType(message_type),
            content=dict(content),
        )
        self._history.setdefault(workflow_id, []).append(message)

        if self.store is not None:
            try:
                await self.store.append_message(message)
            except Exception:
                logger.exception("Failed to persist message %s for workflow %s", message.id, workflow_id)

        handler = self._handlers.get(message.type)
        if handler is not None:
            await handler(message)

        await self._notify(message)
        await self._broadcast(message)
        return message

    async def send_inter_agent_message(
        self,
        workflow_id: str,
        sender: str,
        recipient: str,
        message: str,
        data: dict[str, Any] | None = None,
        summary: str | None = None,
    ) -> Message:
        """Send a message from one agent to another."""
        return await self.send_message(
            workflow_id,
            sender=sender,
            recipient=recipient,
            message_type=MessageType.INTER_AGENT,
            content={"message": message, "data": data or {}, "summary": summary or message},
        )

    async def broadcast_message(
        self,
        workflow_id: str,
        sender: str,
        recipients: Iterable[str],
        content: dict[str, Any],
    ) -> list[Message]:
        """Send the same inter-agent content to several agents."""
        return [
            await self.send_message(
                workflow_id,
                sender=sender,
                recipient=recipient,
                message_type=MessageType.INTER_AGENT,
                content=content,
            )
            for recipient in recipients
        ]

    def subscribe(self, workflow_id: str | None, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for a workflow's messages, or for all with None.

        Returns:
            A function that removes the subscription.
        """
        key = workflow_id or ALL_WORKFLOWS
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def get_message_history(
        self,
        workflow_id: str,
        message_type: MessageType | str | None = None,
        agent_id: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return a workflow's messages, optionally filtered.

        Args:
            workflow_id: Workflow to read.
            message_type: Keep only this type.
            agent_id: Keep only messages from or to this agent.
            limit: Keep only the most recent ``limit`` messages.
        """
        messages = list(self._history.get(workflow_id, []))
        if message_type is not None:
            messages = [message for message in messages if message.type == message_type]
        if agent_id is not None:
            messages = [message for message in messages if agent_id in message.agents]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def get_active_channels(self, workflow_id: str) -> list[dict[str, Any]]:
        """Return tracked agent channels of a workflow."""
        prefix = f"{workflow_id}:"
        return [dict(channel) for key, channel in self._channels.items() if key.startswith(prefix)]

    def get_communication_timeline(self, workflow_id: str) -> list[dict[str, Any]]:
        """Summarize a workflow's messages in order."""
        return [
            {
                "id": message.id,
                "timestamp": message.timestamp.isoformat(),
                "from": message.sender,
                "to": message.recipient,
                "type": message.type.value,
                "summary": summarize_message(message),
                "status": message.status,
            }
            for message in self._history.get(workflow_id, [])
        ]

    def get_statistics(self, workflow_id: str) -> dict[str, Any]:
        """Count messages by type and by sender/recipient pair."""
        messages = self._history.get(workflow_id, [])
        return {
            "totalMessages": len(messages),
            "messagesByType": dict(Counter(message.type.value for message in messages)),
            "activeChannels": len(self.get_active_channels(workflow_id)),
            "communicationFlow": dict(Counter(f"{message.sender} -> {message.recipient}" for message in messages)),
        }

    def cleanup(self, older_than_hours: float = 24) -> int:
        """Drop history older than the given age and forget empty workflows.

        Returns:
            Number of messages dropped.
        """
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        dropped = 0
        for workflow_id in list(self._history):
            kept = [message for message in self._history[workflow_id] if message.timestamp >= cutoff]
            dropped += len(self._history[workflow_id]) - len(kept)
            if kept:
                self._history[workflow_id] = kept
            else:
                self.clear_workflow(workflow_id)
        return dropped

    def clear_workflow(self, workflow_id: str) -> None:
        """Forget a workflow's history, channels and subscribers."""
        self._history.pop(workflow_id, None)
        self._subscribers.pop(workflow_id, None)
        prefix = f"{workflow_id}:"
        for key in [key for key in self._channels if key.startswith(prefix)]:
            del self._channels[key]

    async def _handle_activation(self, message: Message) -> None:
        self._channels[f"{message.workflow_id}:{message.recipient}"] = {
            "agentId": message.recipient,
            "status": "active",
            "activatedAt": message.timestamp.isoformat(),
            "lastMessage": message.id,
        }

    async def _handle_completion(self, message: Message) -> None:
        channel = self._channels.setdefault(f"{message.workflow_id}:{message.sender}", {"agentId": message.sender})
        channel.update(
            status="completed",
            completedAt=message.timestamp.isoformat(),
            result=message.content.get("summary") or message.content.get("message"),
            lastMessage=message.id,
        )

    async def _handle_error(self, message: Message) -> None:
        channel = self._channels.setdefault(f"{message.workflow_id}:{message.sender}", {"agentId": message.sender})
        channel.update(
            status="error",
            error=message.content.get("error"),
            errorAt=message.timestamp.isoformat(),
            lastMessage=message.id,
        )

    async def _handle_elicitation_request(self, message: Message) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(
                message.workflow_id,
                {
                    "status": WorkflowStatus.PAUSED_FOR_ELICITATION.value,
                    "elicitationDetails": message.content.get("elicitationDetails"),
                },
            )
        except Exception:
            logger.exception("Failed to persist elicitation state for workflow %s", message.workflow_id)

    async def _notify(self, message: Message) -> None:
        callbacks = [*self._subscribers.get(message.workflow_id, []), *self._subscribers.get(ALL_WORKFLOWS, [])]
        for callback in callbacks:
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Message subscriber failed for message %s", message.id)

    async def _broadcast(self, message: Message) -> None:
        if self.broadcaster is None:
            return
        payload = {**message.to_dict(), "summary": summarize_message(message)}
        try:
            await self.broadcaster.trigger(f"workflow-{message.workflow_id}", message.type.value, payload)
        except Exception:
            logger.warning("Event broadcast failed for message %s", message.id, exc_info=True)
