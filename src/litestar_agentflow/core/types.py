"""Core type definitions for litestar-agentflow.

This module defines the enums and type aliases shared by the engine, the
message bus, the recovery manager and the persistence layer.
"""

from __future__ import annotations

from enum import StrEnum, auto
from typing import Any, TypeAlias

__all__ = [
    "ErrorCategory",
    "JSONDict",
    "MessageType",
    "RecoveryStrategy",
    "Severity",
    "StepOutcome",
    "StepType",
    "WorkflowStatus",
]


class WorkflowStatus(StrEnum):
    """Overall status of a workflow run.

    Attributes:
        INITIALIZING: Workflow has been created but no step has run yet.
        RUNNING: Workflow is actively executing steps.
        PAUSED_FOR_ELICITATION: Workflow is waiting for the user's answer.
        COMPLETED: Workflow finished, either by running out of steps or via a terminal route.
        ERROR: Workflow terminated after an unrecoverable failure.
        CANCELLED: Workflow was cancelled by a caller.
        ROLLED_BACK: Workflow state was restored from a checkpoint and can be resumed.
    """

    INITIALIZING = auto()
    RUNNING = auto()
    PAUSED_FOR_ELICITATION = auto()
    COMPLETED = auto()
    ERROR = auto()
    CANCELLED = auto()
    ROLLED_BACK = auto()

    @property
    def is_terminal(self) -> bool:
        """Whether no further step can run from this status."""
        return self in {WorkflowStatus.COMPLETED, WorkflowStatus.ERROR, WorkflowStatus.CANCELLED}


class StepType(StrEnum):
    """Classification of steps within a workflow sequence.

    Attributes:
        AGENT: Invokes an agent persona through the completion service.
        ROUTING: Resolves a routing decision and may end the workflow on a terminal route.
        DECISION: Autonomous classification through the decision engine.
        CYCLE: Marker for a repeated section, advances without side effects.
        WORKFLOW_CONTROL: Informational control step, advances without side effects.
    """

    AGENT = auto()
    ROUTING = auto()
    DECISION = auto()
    CYCLE = auto()
    WORKFLOW_CONTROL = auto()


class StepOutcome(StrEnum):
    """Classified result of executing an agent step."""

    SUCCESS = auto()
    ELICITATION = auto()
    TIMED_OUT = auto()
    FAILURE = auto()


class MessageType(StrEnum):
    """Types of messages carried by the agent message bus."""

    ACTIVATION = auto()
    COMPLETION = auto()
    ERROR = auto()
    INTER_AGENT = auto()
    ELICITATION_REQUEST = auto()
    WORKFLOW_STEP_UPDATE = auto()
    WORKFLOW_PROGRESS = auto()


class ErrorCategory(StrEnum):
    """Failure categories assigned by the error recovery manager."""

    INITIALIZATION = auto()
    NETWORK = auto()
    SERVICE = auto()
    VALIDATION = auto()
    AUTHENTICATION = auto()
    WORKFLOW = auto()
    PERSISTENCE = auto()
    FILESYSTEM = auto()
    RESOURCE = auto()
    UNKNOWN = auto()


class Severity(StrEnum):
    """Severity levels used to override strategy selection."""

    CRITICAL = auto()
    HIGH = auto()
    MEDIUM = auto()
    LOW = auto()


class RecoveryStrategy(StrEnum):
    """Recovery strategies the error recovery manager can apply."""

    RETRY_WITH_BACKOFF = auto()
    SWITCH_ENDPOINT = auto()
    OFFLINE_MODE = auto()
    SWITCH_PROVIDER = auto()
    USE_FALLBACK_MODEL = auto()
    FAIL_FAST = auto()
    SANITIZE_INPUT = auto()
    USE_FALLBACK_FORMAT = auto()
    REQUEST_USER_INPUT = auto()
    REFRESH_TOKEN = auto()
    PROMPT_REAUTH = auto()
    USE_FALLBACK_AUTH = auto()
    RESET_STEP = auto()
    SKIP_STEP = auto()
    USE_ALTERNATIVE_PATH = auto()
    RETRY_CONNECTION = auto()
    USE_CACHE = auto()
    TEMPORARY_STORAGE = auto()
    CREATE_MISSING_PATHS = auto()
    USE_TEMP_LOCATION = auto()
    REQUEST_PERMISSIONS = auto()
    CLEAR_CACHE = auto()
    REDUCE_COMPLEXITY = auto()
    SPLIT_TASK = auto()


JSONDict: TypeAlias = dict[str, Any]
"""Type alias for JSON-compatible dictionaries exchanged with collaborators."""
