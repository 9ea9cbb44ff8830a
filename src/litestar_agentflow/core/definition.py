"""Workflow definition structures.

This module provides the declarative step variants that make up a workflow
sequence and the parser that turns raw definition records (as loaded from YAML
or JSON) into validated, immutable step objects. Each step type is its own
frozen dataclass, so dispatch never has to guess which optional fields apply.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeAlias

from litestar_agentflow.core.types import StepType
from litestar_agentflow.exceptions import WorkflowValidationError

__all__ = [
    "DECISION_ACTIONS",
    "DECISION_PATTERNS",
    "VARIOUS_AGENT",
    "AgentStep",
    "CycleStep",
    "DecisionStep",
    "Route",
    "RoutingStep",
    "Step",
    "WorkflowControlStep",
    "WorkflowDefinition",
    "is_decision_action",
    "parse_sequence",
    "parse_step",
    "parse_workflow_definition",
]

logger = logging.getLogger(__name__)

VARIOUS_AGENT = "various"
"""Sentinel agent id meaning the user picks which agent performs the step."""

DECISION_ACTIONS: tuple[str, ...] = (
    "check existing documentation",
    "determine if architecture document needed",
    "assess documentation quality",
    "evaluate existing resources",
    "analyze current state",
)
"""Actions that are always decision steps, matched exactly."""

DECISION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^check\s+existing", re.IGNORECASE),
    re.compile(r"^determine\s+(if|whether)", re.IGNORECASE),
    re.compile(r"^assess\s+", re.IGNORECASE),
    re.compile(r"^evaluate\s+", re.IGNORECASE),
    re.compile(r"^analyze\s+current", re.IGNORECASE),
)
"""Prefix patterns for decision actions, checked in order after the exact list."""


def is_decision_action(action: str | None) -> bool:
    """Return whether an action names an autonomous decision.

    The exact action list is consulted first, then the prefix patterns in
    order; the first match wins.

    Args:
        action: The step action text.

    Returns:
        True if the action is a decision action.
    """
    if not action:
        return False
    normalized = action.strip()
    if normalized in DECISION_ACTIONS:
        return True
    return any(pattern.search(normalized) for pattern in DECISION_PATTERNS)


@dataclass(frozen=True)
class Route:
    """Target of a routing step for one classification value.

    Attributes:
        goto: Name of the workflow or step this route hands off to. A route
            with a ``goto`` is terminal for the current workflow.
        description: Optional human-readable note.
    """

    goto: str | None = None
    description: str = ""

    @property
    def is_terminal(self) -> bool:
        return bool(self.goto)


@dataclass(frozen=True)
class _BaseStep:
    agent_id: str
    action: str = ""
    name: str | None = None
    condition: str | None = None
    notes: str = ""

    step_type: ClassVar[StepType]

    @property
    def key(self) -> str:
        """Stable identifier for the step: its name, else its action in snake case."""
        if self.name:
            return self.name
        if self.action:
            return re.sub(r"\s+", "_", self.action.strip()).lower()
        return self.step_type.value

    @property
    def label(self) -> str:
        """Human-readable title derived from the name or action."""
        source = self.action or self.name or self.step_type.value
        return source.replace("_", " ").replace("-", " ").strip().capitalize()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the step back into definition-record form."""
        data: dict[str, Any] = {"type": self.step_type.value, "agentId": self.agent_id}
        if self.action:
            data["action"] = self.action
        if self.name:
            data["step"] = self.name
        if self.condition:
            data["condition"] = self.condition
        if self.notes:
            data["notes"] = self.notes
        return data


@dataclass(frozen=True)
class AgentStep(_BaseStep):
    """A step executed by an agent persona through the completion service.

    Attributes:
        agent_id: Persona that performs the step, or ``various``.
        action: What the agent is asked to do.
        name: Optional step name used as decision and section key.
        condition: Named condition that must hold for the step to run.
        notes: Extra instructions for the agent.
        requires: Artifact names that must exist before the step runs.
        creates: Artifact name stored from the step's output.
        uses: External template the step renders into.
        command: Task command the agent runs (e.g. ``create-doc``).
        timeout: Per-step timeout in seconds, clamped by the engine.
    """

    requires: tuple[str, ...] = ()
    creates: str | None = None
    uses: str | None = None
    command: str | None = None
    timeout: float | None = None

    step_type: ClassVar[StepType] = StepType.AGENT

    @property
    def wants_agent_selection(self) -> bool:
        return self.agent_id == VARIOUS_AGENT

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.requires:
            data["requires"] = list(self.requires)
        if self.creates:
            data["creates"] = self.creates
        if self.uses:
            data["uses"] = self.uses
        if self.command:
            data["command"] = self.command
        if self.timeout is not None:
            data["timeout"] = int(self.timeout * 1000)
        return data


@dataclass(frozen=True)
class DecisionStep(_BaseStep):
    """A step resolved autonomously by the decision engine.

    Attributes:
        timeout: Per-step timeout in seconds for the completion call.
    """

    timeout: float | None = None

    step_type: ClassVar[StepType] = StepType.DECISION

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.timeout is not None:
            data["timeout"] = int(self.timeout * 1000)
        return data


@dataclass(frozen=True)
class RoutingStep(_BaseStep):
    """A step that resolves a routing decision and follows its route.

    Attributes:
        routes: Mapping of classification value to route.
        based_on: Routing decision key consulted for the value.
    """

    routes: Mapping[str, Route] = field(default_factory=dict)
    based_on: str = "enhancement_classification"

    step_type: ClassVar[StepType] = StepType.ROUTING

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["routes"] = {
            value: {"goto": route.goto, "description": route.description} if route.goto or route.description else {}
            for value, route in self.routes.items()
        }
        data["basedOn"] = self.based_on
        return data


@dataclass(frozen=True)
class CycleStep(_BaseStep):
    """Marker for a repeated section of the workflow."""

    step_type: ClassVar[StepType] = StepType.CYCLE


@dataclass(frozen=True)
class WorkflowControlStep(_BaseStep):
    """Informational control step."""

    step_type: ClassVar[StepType] = StepType.WORKFLOW_CONTROL


Step: TypeAlias = AgentStep | DecisionStep | RoutingStep | CycleStep | WorkflowControlStep
"""Tagged union of every step variant."""

_STEP_CLASSES: dict[StepType, type[Step]] = {
    StepType.AGENT: AgentStep,
    StepType.DECISION: DecisionStep,
    StepType.ROUTING: RoutingStep,
    StepType.CYCLE: CycleStep,
    StepType.WORKFLOW_CONTROL: WorkflowControlStep,
}

_SYSTEM_AGENT = "orchestrator"


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _infer_type(raw: Mapping[str, Any], action: str) -> StepType:
    if raw.get("routes"):
        return StepType.ROUTING
    if is_decision_action(action):
        return StepType.DECISION
    return StepType.AGENT


def _parse_timeout(value: Any, where: str, errors: list[str]) -> float | None:
    """Definition timeouts are milliseconds; steps carry seconds."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        errors.append(f"{where}: timeout must be a positive number of milliseconds")
        return None
    return float(value) / 1000


def _parse_routes(value: Any, where: str, errors: list[str]) -> dict[str, Route]:
    if not isinstance(value, Mapping) or not value:
        errors.append(f"{where}: routes must be a non-empty mapping")
        return {}
    routes: dict[str, Route] = {}
    for classification, target in value.items():
        if target is None:
            routes[str(classification)] = Route()
        elif isinstance(target, str):
            routes[str(classification)] = Route(goto=target)
        elif isinstance(target, Mapping):
            routes[str(classification)] = Route(
                goto=target.get("goto"),
                description=str(target.get("description") or ""),
            )
        else:
            errors.append(f"{where}: route '{classification}' must be a mapping, a string or empty")
    return routes


def parse_step(raw: Mapping[str, Any], index: int, errors: list[str]) -> Step | None:
    """Parse one raw step record into its step variant.

    Validation problems are appended to ``errors`` rather than raised so a
    whole definition can be reported at once.

    Args:
        raw: The raw step record. Keys may be camelCase or snake_case.
        index: Position of the step in the sequence, used in messages.
        errors: Accumulator for validation error messages.

    Returns:
        The parsed step, or None if the record is unusable.
    """
    where = f"Step {index}"
    if not isinstance(raw, Mapping):
        errors.append(f"{where}: must be a mapping")
        return None

    action = str(_pick(raw, "action") or "").strip()
    explicit_type = _pick(raw, "type")
    if explicit_type is not None:
        try:
            step_type = StepType(str(explicit_type).lower())
        except ValueError:
            errors.append(f"{where}: unknown step type '{explicit_type}'")
            return None
    else:
        step_type = _infer_type(raw, action)

    agent_id = _pick(raw, "agentId", "agent_id", "agent")
    if step_type in {StepType.AGENT, StepType.DECISION}:
        if not agent_id or not isinstance(agent_id, str):
            errors.append(f"{where}: agentId is required for {step_type} steps")
            return None
    agent_id = str(agent_id or _SYSTEM_AGENT)

    common: dict[str, Any] = {
        "agent_id": agent_id,
        "action": action,
        "name": _pick(raw, "step", "name"),
        "condition": _pick(raw, "condition"),
        "notes": str(_pick(raw, "notes") or ""),
    }

    if step_type == StepType.AGENT:
        requires = _pick(raw, "requires") or ()
        if isinstance(requires, str):
            requires = (requires,)
        if not all(isinstance(item, str) for item in requires):
            errors.append(f"{where}: requires must list artifact names")
            requires = ()
        return AgentStep(
            **common,
            requires=tuple(requires),
            creates=_pick(raw, "creates"),
            uses=_pick(raw, "uses"),
            command=_pick(raw, "command"),
            timeout=_parse_timeout(_pick(raw, "timeout"), where, errors),
        )
    if step_type == StepType.DECISION:
        return DecisionStep(**common, timeout=_parse_timeout(_pick(raw, "timeout"), where, errors))
    if step_type == StepType.ROUTING:
        routes = _parse_routes(_pick(raw, "routes"), where, errors)
        based_on = _pick(raw, "basedOn", "based_on")
        if based_on is None and _pick(raw, "routing_decision", "routingDecision") == "based_on_classification":
            based_on = "enhancement_classification"
        return RoutingStep(**common, routes=routes, based_on=str(based_on or "enhancement_classification"))
    return _STEP_CLASSES[step_type](**common)


@dataclass(frozen=True)
class WorkflowDefinition:
    """Declarative, validated workflow structure.

    Attributes:
        id: Identifier of the workflow definition.
        title: Human-readable title.
        sequence: Ordered, immutable tuple of steps.
        description: Optional description of the workflow's purpose.
        metadata: Free-form metadata carried onto workflow runs.

    Example:
        >>> definition = parse_workflow_definition(
        ...     {
        ...         "id": "brownfield-fullstack",
        ...         "title": "Brownfield Full-Stack Enhancement",
        ...         "sequence": [
        ...             {"agentId": "analyst", "action": "classify enhancement scope"},
        ...             {"agentId": "pm", "action": "create prd", "creates": "prd.md"},
        ...         ],
        ...     }
        ... )
    """

    id: str
    title: str
    sequence: tuple[Step, ...]
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        """Validate cross-step constraints of the definition.

        Returns:
            List of validation error messages. Empty list if valid.
        """
        errors: list[str] = []
        if not self.sequence:
            errors.append("Workflow sequence must contain at least one step")

        created: set[str] = set()
        for index, step in enumerate(self.sequence):
            if isinstance(step, AgentStep):
                unknown = [name for name in step.requires if name not in created]
                if unknown:
                    logger.debug(
                        "Step %d of %s requires artifacts no earlier step creates: %s", index, self.id, unknown
                    )
                if step.creates:
                    created.add(step.creates)
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize the definition into its raw record form."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "metadata": dict(self.metadata),
            "sequence": [step.to_dict() for step in self.sequence],
        }


def parse_sequence(raw_sequence: Any, errors: list[str]) -> tuple[Step, ...]:
    """Parse a raw step list, collecting errors."""
    if not isinstance(raw_sequence, list):
        errors.append("sequence must be a list of steps")
        return ()
    steps = [parse_step(raw, index, errors) for index, raw in enumerate(raw_sequence)]
    return tuple(step for step in steps if step is not None)


def parse_workflow_definition(raw: Mapping[str, Any]) -> WorkflowDefinition:
    """Parse and validate a raw workflow definition.

    Args:
        raw: Mapping with ``id`` (or ``name``), ``title`` and ``sequence``.

    Returns:
        The validated workflow definition.

    Raises:
        WorkflowValidationError: If any step or cross-step check fails. All
            problems found are reported together.
    """
    errors: list[str] = []
    workflow_id = _pick(raw, "id", "name")
    if not workflow_id:
        errors.append("Workflow definition requires an id")
    sequence = parse_sequence(_pick(raw, "sequence", "steps"), errors)
    definition = WorkflowDefinition(
        id=str(workflow_id or ""),
        title=str(_pick(raw, "title", "name") or workflow_id or ""),
        sequence=sequence,
        description=str(_pick(raw, "description") or ""),
        metadata=dict(_pick(raw, "metadata") or {}),
    )
    errors.extend(definition.validate())
    if errors:
        raise WorkflowValidationError(errors)
    return definition
