"""Autonomous decision steps.

Decision steps classify the workflow's situation without asking the user:
the decision engine prompts the step's agent, normalizes the reply into a
routing decision and always advances the workflow. When anything in that
path fails a deterministic, conservative fallback is stored instead, so a
decision step never blocks a workflow.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from litestar_agentflow.config import EngineConfig
from litestar_agentflow.core.definition import DecisionStep, is_decision_action
from litestar_agentflow.core.messages import USER
from litestar_agentflow.core.models import ErrorRecord
from litestar_agentflow.core.types import MessageType
from litestar_agentflow.engine.responses import ResponseParser
from litestar_agentflow.exceptions import AgentNotFoundError, ResponseValidationError

if TYPE_CHECKING:
    from litestar_agentflow.communicator import AgentCommunicator
    from litestar_agentflow.core.definition import Step
    from litestar_agentflow.core.models import Workflow
    from litestar_agentflow.core.protocols import AgentCatalog, CompletionService, WorkflowStore

__all__ = ["DecisionEngine", "DecisionOutcome"]

logger = logging.getLogger(__name__)

DOCUMENTATION_CHECK = "check existing documentation"
ARCHITECTURE_DECISION = "determine if architecture document needed"

DECISION_KEYS: dict[str, str] = {
    DOCUMENTATION_CHECK: "documentation_check",
    ARCHITECTURE_DECISION: "architecture_decision",
}

FALLBACK_DECISIONS: dict[str, str] = {
    DOCUMENTATION_CHECK: "inadequate",
    ARCHITECTURE_DECISION: "needed",
}
DEFAULT_FALLBACK = "continue"

DECISION_INSTRUCTIONS: dict[str, str] = {
    DOCUMENTATION_CHECK: (
        '- If user mentioned having documentation, API specs, architecture docs, or existing resources -> respond "adequate"\n'
        '- If user said "no", "none", "don\'t have", or similar negative responses -> respond "inadequate"\n'
        '- If unclear or mixed information -> respond "inadequate" (safer to gather more info)'
    ),
    ARCHITECTURE_DECISION: (
        '- If PRD mentions new architectural patterns, frameworks, or infrastructure changes -> respond "needed"\n'
        '- If following existing patterns with no architectural changes -> respond "not_needed"'
    ),
}
DEFAULT_INSTRUCTION = "Analyze the context and respond with an appropriate decision value."

ADEQUATE_WORDS = (
    "yes",
    "good",
    "comprehensive",
    "complete",
    "adequate",
    "sufficient",
    "up-to-date",
    "current",
    "detailed",
    "thorough",
    "exists",
    "have",
)
INADEQUATE_WORDS = (
    "no",
    "none",
    "missing",
    "incomplete",
    "outdated",
    "limited",
    "poor",
    "minimal",
    "insufficient",
    "old",
    "lacking",
    "partial",
)

DECISION_PREFIX = re.compile(r"^(the\s+)?(decision\s+is\s*:?\s*)?", re.IGNORECASE)
RECENT_ELICITATIONS = 3


def _mentions(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"(?<![\w-]){re.escape(word)}(?![\w-])", text) for word in words)


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of a decision step.

    Attributes:
        decision: The stored decision value.
        key: Routing decision key it is stored under.
        success: False when the fallback was used.
        error: Why the fallback was used.
    """

    decision: str
    key: str
    success: bool
    error: str | None = None


class DecisionEngine:
    """Resolves decision steps through the completion service.

    Attributes:
        catalog: Agent catalog the deciding persona is loaded from.
        completion: Completion service asked for the decision.
        communicator: Message bus the decision announcement goes through.
        store: Workflow store the advanced workflow is persisted to.
        engine_config: Engine options (timeout clamp).
        parser: Staged parser replies are run through.

    Example:
        >>> outcome = await decisions.handle_decision_step(workflow, step)
        >>> workflow.context.routing_decisions["documentation_check"]
        'adequate'
    """

    def __init__(
        self,
        catalog: AgentCatalog,
        completion: CompletionService,
        communicator: AgentCommunicator,
        store: WorkflowStore,
        engine_config: EngineConfig | None = None,
        parser: ResponseParser | None = None,
    ) -> None:
        self.catalog = catalog
        self.completion = completion
        self.communicator = communicator
        self.store = store
        self.engine_config = engine_config or EngineConfig()
        self.parser = parser or ResponseParser()

    @staticmethod
    def is_decision_step(step: Step) -> bool:
        """Return whether a step is resolved autonomously.

        Explicitly typed decision steps qualify, as does any step whose action
        matches the decision action list or prefix patterns.
        """
        return isinstance(step, DecisionStep) or is_decision_action(step.action)

    @staticmethod
    def decision_key(step: Step) -> str:
        """Routing decision key a step's outcome is stored under."""
        return DECISION_KEYS.get(step.action) or step.name or step.key or "decision"

    @staticmethod
    def fallback_decision(step: Step) -> str:
        return FALLBACK_DECISIONS.get(step.action, DEFAULT_FALLBACK)

    @staticmethod
    def normalize_decision(reply: str) -> str:
        """Reduce a reply to a bare decision value.

        Example:
            >>> DecisionEngine.normalize_decision('The decision is: "Adequate."')
            'adequate'
        """
        value = reply.strip().lower()
        value = DECISION_PREFIX.sub("", value)
        return re.sub(r"[.!\"']", "", value).strip()

    @staticmethod
    def format_decision_message(step: Step, decision: str) -> str:
        """Human-readable announcement of a decision."""
        if step.action == DOCUMENTATION_CHECK:
            if decision == "adequate":
                return "Documentation Check: Found adequate existing documentation. Proceeding with PRD creation."
            return "Documentation Check: Insufficient documentation found. Will gather project information first."
        if step.action == ARCHITECTURE_DECISION:
            if decision == "needed":
                return "Architecture Review: Architectural changes required. Will create architecture document."
            return "Architecture Review: No architectural changes needed. Proceeding with current patterns."
        return f"{step.action or 'Decision'}: {decision}"

    def build_prompt(self, workflow: Workflow, step: Step) -> str:
        """Build the decision prompt from a compact view of the context."""
        context = workflow.context
        recent = context.elicitation_history[-RECENT_ELICITATIONS:]
        return (
            f"You are the {step.agent_id} agent making a workflow decision.\n\n"
            f"TASK: {step.action}\n"
            f"STEP NOTES: {step.notes or 'None provided'}\n\n"
            "CONTEXT:\n"
            f'- User\'s original request: "{context.user_prompt}"\n'
            f"- Current workflow step: {workflow.current_step}\n"
            f"- Previous decisions: {json.dumps(context.routing_decisions, indent=2)}\n"
            f"- Available artifacts: {', '.join(context.artifacts) or 'None'}\n"
            f"- Recent user responses: {json.dumps(recent, indent=2, default=str)}\n\n"
            "INSTRUCTIONS:\n"
            "1. Analyze the available context and information\n"
            "2. Make a decision based on the task requirements\n"
            "3. Respond with a clear, single decision value\n"
            "4. Be concise and decisive\n\n"
            f'For "{step.action}":\n'
            f"{DECISION_INSTRUCTIONS.get(step.action, DEFAULT_INSTRUCTION)}\n\n"
            "Respond with just the decision value (no explanation needed):"
        )

    async def decide(self, workflow: Workflow, step: Step) -> str:
        """Ask the step's agent for a decision and normalize it.

        Raises:
            AgentNotFoundError: If the deciding agent is unknown.
            ResponseValidationError: If the reply is empty.
            TimeoutError: If the completion call exceeds the clamped timeout.
        """
        persona = await self.catalog.load_agent(step.agent_id)
        if persona is None:
            raise AgentNotFoundError(step.agent_id)

        timeout = self.engine_config.clamp_timeout(getattr(step, "timeout", None))
        reply = await asyncio.wait_for(
            self.completion.call(
                self.build_prompt(workflow, step),
                agent=persona,
                complexity="simple",
                context={},
                user_id=workflow.user_id,
            ),
            timeout=timeout,
        )
        parsed = self.parser.parse(reply.content if reply else None)
        if not parsed.is_valid:
            raise ResponseValidationError(["AI decision response was empty", *parsed.errors])
        data = parsed.json_object or {}
        raw = str(data.get("decision")) if data.get("decision") is not None else parsed.content
        return self.normalize_decision(raw)

    async def handle_decision_step(self, workflow: Workflow, step: Step) -> DecisionOutcome:
        """Resolve a decision step, store the decision and advance.

        Failures never propagate: the error is recorded, the fallback
        decision stored, and the workflow still advances.

        Args:
            workflow: The workflow, positioned at the decision step.
            step: The decision step.

        Returns:
            The stored decision.
        """
        key = self.decision_key(step)
        try:
            decision = await self.decide(workflow, step)
        except Exception as exc:
            decision = self.fallback_decision(step)
            logger.warning("Decision %s failed (%s), using fallback %s", key, exc, decision)
            workflow.add_error(
                ErrorRecord(
                    message=str(exc) or type(exc).__name__,
                    step=workflow.current_step,
                    agent_id=step.agent_id,
                    type="decision_error",
                )
            )
            outcome = DecisionOutcome(decision, key, success=False, error=str(exc))
        else:
            logger.info("Decision %s for workflow %s: %s", key, workflow.id, decision)
            outcome = DecisionOutcome(decision, key, success=True)

        workflow.context.routing_decisions[key] = decision
        await self._announce(workflow, step, outcome)
        workflow.current_step += 1
        await self.store.save(workflow.id, workflow.to_dict(), workflow.user_id)
        return outcome

    def process_elicitation_response(self, step: Step, response: str) -> str | None:
        """Turn a user's free-text answer into a decision.

        Only the documentation check is interpreted. Answers that mention both
        or neither kind of indicator count as inadequate.

        Returns:
            The decision, or None if the step has no interpretation.
        """
        if step.name != "documentation_check" and step.action != DOCUMENTATION_CHECK:
            return None
        text = response.lower()
        adequate = _mentions(text, ADEQUATE_WORDS)
        inadequate = _mentions(text, INADEQUATE_WORDS)
        decision = "adequate" if adequate and not inadequate else "inadequate"
        logger.debug("Documentation check answer classified as %s", decision)
        return decision

    async def _announce(self, workflow: Workflow, step: Step, outcome: DecisionOutcome) -> None:
        content: dict[str, Any] = {
            "message": self.format_decision_message(step, outcome.decision),
            "agentId": step.agent_id,
            "stepName": step.name or step.action or "Decision Step",
            "decisionKey": outcome.key,
            "decision": outcome.decision,
            "type": "decision",
            "fallback": not outcome.success,
        }
        try:
            await self.communicator.send_message(
                workflow.id,
                sender=step.agent_id,
                recipient=USER,
                message_type=MessageType.WORKFLOW_PROGRESS,
                content=content,
            )
        except Exception:
            logger.exception("Failed to announce decision %s for workflow %s", outcome.key, workflow.id)
