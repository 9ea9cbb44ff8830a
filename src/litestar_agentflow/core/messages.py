"""Messages exchanged on the agent message bus.

Messages are append-only records addressed from one participant (an agent,
the orchestrator, the user or ``system``) to another. They double as the
events other components subscribe to.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from litestar_agentflow.core.models import from_iso, to_iso, utcnow
from litestar_agentflow.core.types import MessageType

__all__ = ["ORCHESTRATOR", "SYSTEM", "USER", "Message", "new_message_id", "validate_message_fields"]

USER = "user"
SYSTEM = "system"
ORCHESTRATOR = "orchestrator"


def new_message_id(prefix: str = "msg") -> str:
    """Generate an id of the form ``<prefix>_<millis>_<random>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def validate_message_fields(data: dict[str, Any]) -> list[str]:
    """Check the raw fields of a message before it is built.

    Args:
        data: Mapping with ``from``, ``to``, ``type`` and ``content``.

    Returns:
        List of validation error messages. Empty list if valid.
    """
    errors = [f"Message missing required field: {name}" for name in ("from", "to", "type") if not data.get(name)]
    if data.get("content") is None:
        errors.append("Message missing required field: content")
    message_type = data.get("type")
    if message_type and str(message_type) not in {member.value for member in MessageType}:
        errors.append(f"Invalid message type: {message_type}")
    return errors


@dataclass(frozen=True)
class Message:
    """An immutable bus message.

    Attributes:
        id: Unique message id.
        workflow_id: Workflow the message belongs to.
        sender: Participant that sent the message (``from`` on the wire).
        recipient: Participant the message is addressed to (``to`` on the wire).
        type: Message type.
        content: Payload; always carries a human-readable ``message`` where
            the message is user-facing.
        timestamp: When the message was sent.
        status: Delivery status.
    """

    id: str
    workflow_id: str
    sender: str
    recipient: str
    type: MessageType
    content: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
    status: str = "sent"

    @property
    def agents(self) -> set[str]:
        return {self.sender, self.recipient}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "from": self.sender,
            "to": self.recipient,
            "type": self.type.value,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            workflow_id=data["workflowId"],
            sender=data["from"],
            recipient=data["to"],
            type=MessageType(data["type"]),
            content=dict(data.get("content") or {}),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
            status=data.get("status", "sent"),
        )
