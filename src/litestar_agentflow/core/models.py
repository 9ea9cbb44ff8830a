"""Workflow runtime data models.

This module provides the dataclasses that hold the state of a workflow run
(the workflow itself, its context, artifacts, error records, checkpoints and
pending elicitation) together with the result records exchanged with the
agent catalog and the completion service. Every persisted model round-trips
through ``to_dict``/``from_dict`` so stores only ever see JSON-compatible data.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from litestar_agentflow.core.definition import Step, parse_sequence
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.exceptions import WorkflowValidationError

__all__ = [
    "TEMPLATE_NOT_FOUND",
    "AgentExecutionResult",
    "AgentPersona",
    "Artifact",
    "Checkpoint",
    "CompletionResult",
    "ElicitationDetails",
    "ErrorRecord",
    "Workflow",
    "WorkflowContext",
    "from_iso",
    "to_iso",
    "utcnow",
]

TEMPLATE_NOT_FOUND = "template_not_found"


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_iso(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Artifact:
    """Named content produced by a successful agent step.

    Artifacts are never mutated; producing the same name again supersedes the
    previous artifact.

    Attributes:
        name: Artifact name, unique within a workflow.
        type: Type tag (``document``, ``classification``, ...).
        content: Generated content.
        created_by: Agent id that produced the artifact.
        step: Index of the producing step.
        timestamp: When the artifact was produced.
    """

    name: str
    content: str
    created_by: str
    step: int
    type: str = "document"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "content": self.content,
            "createdBy": self.created_by,
            "step": self.step,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        return cls(
            name=data["name"],
            type=data.get("type", "document"),
            content=data.get("content", ""),
            created_by=data.get("createdBy", ""),
            step=int(data.get("step", 0)),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class ErrorRecord:
    """Structured record of a workflow-level failure.

    Attributes:
        message: Error message.
        step: Index of the step that failed.
        agent_id: Agent involved, if any.
        type: Machine-readable type tag (``timeout``, ``execution_error``, ...).
        category: Error category assigned by the recovery manager, if classified.
        timestamp: When the failure happened.
    """

    message: str
    step: int
    agent_id: str | None = None
    type: str = "execution_error"
    category: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "step": self.step,
            "agentId": self.agent_id,
            "type": self.type,
            "category": self.category,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        return cls(
            message=data.get("message", ""),
            step=int(data.get("step", 0)),
            agent_id=data.get("agentId"),
            type=data.get("type", "execution_error"),
            category=data.get("category"),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
        )


@dataclass
class ElicitationDetails:
    """The single outstanding elicitation of a paused workflow.

    Attributes:
        section_title: Title shown to the user.
        instruction: What the user is asked for.
        agent_id: Agent that asked.
        step: Index of the paused step.
        section_id: Section or artifact the answer feeds into.
        command: Task command of the paused step, used for mode selection.
        uses: Template of the paused step, used for mode selection.
        content: Partial content produced before the pause.
        kind: ``section`` for content questions, ``agent_selection`` for ``various`` steps.
        request: The prepared request sent to the user (numbered or free text).
        message_id: Id of the elicitation request message.
        requires_method_selection: Explicit override of the mode selection rules.
    """

    section_title: str
    instruction: str
    agent_id: str
    step: int
    section_id: str | None = None
    command: str | None = None
    uses: str | None = None
    content: str | None = None
    kind: str = "section"
    request: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    requires_method_selection: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sectionTitle": self.section_title,
            "instruction": self.instruction,
            "agentId": self.agent_id,
            "step": self.step,
            "sectionId": self.section_id,
            "command": self.command,
            "uses": self.uses,
            "content": self.content,
            "kind": self.kind,
            "request": self.request,
            "messageId": self.message_id,
            "requiresMethodSelection": self.requires_method_selection,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ElicitationDetails:
        return cls(
            section_title=data.get("sectionTitle", "User Input Required"),
            instruction=data.get("instruction", "Please provide additional information"),
            agent_id=data.get("agentId", ""),
            step=int(data.get("step", 0)),
            section_id=data.get("sectionId"),
            command=data.get("command"),
            uses=data.get("uses"),
            content=data.get("content"),
            kind=data.get("kind", "section"),
            request=dict(data.get("request") or {}),
            message_id=data.get("messageId"),
            requires_method_selection=data.get("requiresMethodSelection"),
        )


@dataclass
class WorkflowContext:
    """Mutable context shared by the steps of one workflow run.

    Attributes:
        user_prompt: The user's original request.
        artifacts: Artifacts by name.
        routing_decisions: Persisted routing/decision outcomes by key.
        elicitation_history: Ordered record of answered elicitations.
        agent_overrides: Agents chosen by the user for ``various`` steps, by step index.
        shared_data: Free-form data steps may share.
    """

    user_prompt: str = ""
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    routing_decisions: dict[str, str] = field(default_factory=dict)
    elicitation_history: list[dict[str, Any]] = field(default_factory=list)
    agent_overrides: dict[int, str] = field(default_factory=dict)
    shared_data: dict[str, Any] = field(default_factory=dict)

    def has_artifact(self, name: str) -> bool:
        return name in self.artifacts

    def responses_for_step(self, step: int, kind: str = "section") -> list[dict[str, Any]]:
        """Return recorded elicitation answers of one kind for a step index."""
        return [
            entry
            for entry in self.elicitation_history
            if entry.get("step") == step and entry.get("kind", "section") == kind
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "userPrompt": self.user_prompt,
            "artifacts": {name: artifact.to_dict() for name, artifact in self.artifacts.items()},
            "routingDecisions": dict(self.routing_decisions),
            "elicitationHistory": copy.deepcopy(self.elicitation_history),
            "agentOverrides": {str(index): agent for index, agent in self.agent_overrides.items()},
            "sharedData": copy.deepcopy(self.shared_data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowContext:
        return cls(
            user_prompt=data.get("userPrompt", ""),
            artifacts={name: Artifact.from_dict(raw) for name, raw in (data.get("artifacts") or {}).items()},
            routing_decisions=dict(data.get("routingDecisions") or {}),
            elicitation_history=list(data.get("elicitationHistory") or []),
            agent_overrides={int(index): agent for index, agent in (data.get("agentOverrides") or {}).items()},
            shared_data=dict(data.get("sharedData") or {}),
        )


@dataclass
class Workflow:
    """A stateful run of a step sequence.

    The engine owns a workflow exclusively while executing it and persists it
    through the workflow store between steps.

    Attributes:
        id: Unique identifier of the run.
        title: Human-readable title.
        sequence: Ordered, immutable steps.
        current_step: Index of the next step to execute, ``0..len(sequence)``.
        status: Current status.
        context: Artifacts, routing decisions and elicitation history.
        errors: Ordered error records.
        elicitation_details: The outstanding elicitation, if paused.
        metadata: Free-form metadata (definition id, timings, ...).
        user_id: User that started the run.
        checkpoint_enabled: Whether checkpoints are created before agent steps.
        current_agent: Agent of the step currently executing.
        started_at: When the run started.
        completed_at: When the run reached a terminal status.
    """

    id: str
    title: str
    sequence: tuple[Step, ...]
    current_step: int = 0
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    context: WorkflowContext = field(default_factory=WorkflowContext)
    errors: list[ErrorRecord] = field(default_factory=list)
    elicitation_details: ElicitationDetails | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    checkpoint_enabled: bool = True
    current_agent: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        """Whether every step has been consumed."""
        return self.current_step >= len(self.sequence)

    @property
    def step(self) -> Step | None:
        """The step at ``current_step``, or None past the end."""
        if self.is_finished:
            return None
        return self.sequence[self.current_step]

    @property
    def progress(self) -> int:
        """Percentage of steps consumed."""
        if not self.sequence:
            return 100
        return round(min(self.current_step, len(self.sequence)) / len(self.sequence) * 100)

    def add_error(self, record: ErrorRecord) -> ErrorRecord:
        self.errors.append(record)
        return record

    def to_dict(self) -> dict[str, Any]:
        """Serialize the workflow for the workflow store."""
        return {
            "id": self.id,
            "title": self.title,
            "sequence": [step.to_dict() for step in self.sequence],
            "currentStep": self.current_step,
            "status": self.status.value,
            "context": self.context.to_dict(),
            "errors": [record.to_dict() for record in self.errors],
            "elicitationDetails": self.elicitation_details.to_dict() if self.elicitation_details else None,
            "metadata": copy.deepcopy(self.metadata),
            "userId": self.user_id,
            "checkpointEnabled": self.checkpoint_enabled,
            "currentAgent": self.current_agent,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workflow:
        """Rebuild a workflow from its stored form.

        Raises:
            WorkflowValidationError: If the stored sequence no longer parses.
        """
        errors: list[str] = []
        sequence = parse_sequence(list(data.get("sequence") or []), errors)
        if errors:
            raise WorkflowValidationError(errors)
        details = data.get("elicitationDetails")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            sequence=sequence,
            current_step=int(data.get("currentStep", 0)),
            status=WorkflowStatus(data.get("status", WorkflowStatus.INITIALIZING)),
            context=WorkflowContext.from_dict(data.get("context") or {}),
            errors=[ErrorRecord.from_dict(raw) for raw in data.get("errors") or []],
            elicitation_details=ElicitationDetails.from_dict(details) if details else None,
            metadata=dict(data.get("metadata") or {}),
            user_id=data.get("userId"),
            checkpoint_enabled=bool(data.get("checkpointEnabled", True)),
            current_agent=data.get("currentAgent"),
            started_at=from_iso(data.get("startedAt")),
            completed_at=from_iso(data.get("completedAt")),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Named snapshot of workflow state usable for rollback.

    Attributes:
        id: Unique checkpoint id (``checkpoint_<ts>_<rand>``).
        workflow_id: Workflow the snapshot belongs to.
        type: Label such as ``before_agent_<agent id>``.
        description: Human-readable description.
        step: Step index at snapshot time.
        current_agent: Agent about to run at snapshot time.
        state: Opaque deep copy of the restorable workflow state.
        timestamp: When the snapshot was taken.
    """

    id: str
    workflow_id: str
    type: str
    description: str
    step: int
    state: dict[str, Any]
    current_agent: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "type": self.type,
            "description": self.description,
            "step": self.step,
            "currentAgent": self.current_agent,
            "state": copy.deepcopy(self.state),
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=data["id"],
            workflow_id=data["workflowId"],
            type=data.get("type", ""),
            description=data.get("description", ""),
            step=int(data.get("step", 0)),
            current_agent=data.get("currentAgent"),
            state=dict(data.get("state") or {}),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class AgentPersona:
    """Persona definition returned by the agent catalog.

    Attributes:
        id: Agent id.
        name: Display name.
        title: Role title.
        persona: Persona description injected into prompts.
        dependencies: Tasks, templates and checklists the agent may use.
    """

    id: str
    name: str = ""
    title: str = ""
    persona: str = ""
    dependencies: dict[str, list[str]] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class CompletionResult:
    """Reply of the completion service."""

    content: str
    provider: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentExecutionResult:
    """Outcome of one agent invocation, before classification by the engine.

    Attributes:
        success: Whether usable content was produced.
        content: The produced content.
        type: Result type; ``elicitation_required`` asks for user input.
        elicitation_required: Explicit request for user input.
        elicitation_data: Section title, instruction and section id for the question.
        timed_out: Whether the invocation hit its timeout.
        error: Error message on failure.
        error_code: Machine-readable failure code (e.g. ``template_not_found``).
        exception: The exception behind a failure, if any.
        provider: Completion provider that answered.
        usage: Token usage reported by the provider.
    """

    success: bool
    content: str = ""
    type: str | None = None
    elicitation_required: bool = False
    elicitation_data: dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False
    error: str | None = None
    error_code: str | None = None
    exception: BaseException | None = None
    provider: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def explicitly_requests_elicitation(self) -> bool:
        return self.elicitation_required or self.type == "elicitation_required"

    @property
    def template_missing(self) -> bool:
        return self.error_code == TEMPLATE_NOT_FOUND


