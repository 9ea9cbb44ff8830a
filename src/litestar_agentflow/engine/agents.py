"""Agent step execution.

The :class:`AgentExecutor` runs one agent step: it loads the persona, decides
whether the step must first ask the user for input, loads the step's template,
builds the prompt, calls the completion service under a clamped timeout and
runs the reply through the staged response parser. It never changes workflow
state; the engine classifies the returned :class:`AgentExecutionResult`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any

import yaml

from litestar_agentflow.config import EngineConfig
from litestar_agentflow.core.models import TEMPLATE_NOT_FOUND, AgentExecutionResult, AgentPersona
from litestar_agentflow.engine.responses import ResponseParser
from litestar_agentflow.exceptions import AgentNotFoundError, ResponseValidationError

if TYPE_CHECKING:
    from litestar_agentflow.cache import CacheManager
    from litestar_agentflow.config import ConfigurationManager
    from litestar_agentflow.core.definition import AgentStep
    from litestar_agentflow.core.models import Workflow
    from litestar_agentflow.core.protocols import AgentCatalog, CompletionService

__all__ = ["HUMAN_INPUT_ACTIONS", "INTERACTIVE_COMMANDS", "AgentExecutor", "is_interactive_step"]

logger = logging.getLogger(__name__)

HUMAN_INPUT_ACTIONS: frozenset[str] = frozenset(
    {
        "classify enhancement scope",
        "check existing documentation",
        "elicit",
        "determine if architecture document needed",
        "create project brief",
    }
)
"""Actions whose failure means the user has to supply the missing input."""

INTERACTIVE_COMMANDS: frozenset[str] = frozenset(
    {"create-doc", "create-doc.md", "advanced-elicitation", "advanced-elicitation.md"}
)

DOCUMENT_ACTIONS = ("create-prd", "create-brownfield-prd", "create-doc")
ASK_USER = "Ask user:"


def is_interactive_step(step: AgentStep) -> bool:
    """Return whether a step needs the user's input before the agent runs.

    A step is interactive when it runs an interactive task command, renders
    a structured ``-tmpl`` template, creates a document, or its notes ask the
    user something.
    """
    if step.command and step.command.strip().lower() in INTERACTIVE_COMMANDS:
        return True
    if step.uses and "-tmpl" in step.uses:
        return True
    action = step.action.lower()
    if any(name in action for name in DOCUMENT_ACTIONS) or ("create" in action and "doc" in action):
        return True
    return ASK_USER.lower() in step.notes.lower()


def template_filename(uses: str) -> str:
    """Map a step's ``uses`` value to a template file name."""
    if uses.endswith((".yaml", ".yml", ".md")):
        return uses
    return f"{uses}.yaml" if uses.endswith("-tmpl") else f"{uses}-tmpl.yaml"


def first_elicit_section(template: str | None) -> dict[str, Any] | None:
    """Return the first template section flagged for elicitation, if any."""
    if not template:
        return None
    try:
        data = yaml.safe_load(template)
    except yaml.YAMLError:
        return None
    if not isinstance(data, dict):
        return None
    sections = data.get("sections") or []
    if isinstance(sections, dict):
        sections = [{"id": key, **value} if isinstance(value, dict) else {"id": key} for key, value in sections.items()]
    for section in sections:
        if isinstance(section, dict) and section.get("elicit"):
            return section
    return None


class AgentExecutor:
    """Runs agent steps through the completion service.

    Attributes:
        catalog: Agent catalog personas are loaded from.
        completion: Completion service used for generation.
        cache: Cache manager holding loaded templates and built prompts.
        config: Loaded configuration manager, used to locate templates.
        engine_config: Engine options (timeout clamp).
        parser: Staged parser replies are run through.
    """

    def __init__(
        self,
        catalog: AgentCatalog,
        completion: CompletionService,
        cache: CacheManager,
        config: ConfigurationManager | None = None,
        engine_config: EngineConfig | None = None,
        parser: ResponseParser | None = None,
    ) -> None:
        self.catalog = catalog
        self.completion = completion
        self.cache = cache
        self.config = config
        self.engine_config = engine_config or EngineConfig()
        self.parser = parser or ResponseParser()

    async def load_agent(self, agent_id: str) -> AgentPersona:
        """Load a persona.

        Raises:
            AgentNotFoundError: If the catalog does not know the agent.
        """
        persona = await self.catalog.load_agent(agent_id)
        if persona is None:
            raise AgentNotFoundError(agent_id)
        return persona

    def load_template(self, uses: str) -> str | None:
        """Load a template through the template cache.

        Returns:
            The template text, or None when no configuration is loaded.

        Raises:
            FileNotFoundError: If the configured templates directory lacks it.
        """
        cached = self.cache.templates.get(uses)
        if cached is not None:
            return cached
        if self.config is None or not self.config.is_loaded:
            return None
        path = self.config.resource_path("templates") / template_filename(uses)
        text = path.read_text(encoding="utf-8")
        self.cache.templates.set(uses, text)
        return text

    async def execute(self, workflow: Workflow, step: AgentStep, agent_id: str, **overrides: Any) -> AgentExecutionResult:
        """Execute an agent step.

        Args:
            workflow: The workflow the step belongs to.
            step: The step to execute.
            agent_id: Agent performing the step (resolved for ``various`` steps).
            **overrides: Adjustments from recovery, ``complexity`` and ``userPrompt``.

        Returns:
            The unclassified execution result. Failures are returned, not raised.
        """
        step_index = workflow.current_step
        try:
            persona = await self.load_agent(agent_id)
        except AgentNotFoundError as exc:
            return AgentExecutionResult(success=False, error=str(exc), exception=exc)

        template: str | None = None
        if step.uses:
            try:
                template = self.load_template(step.uses)
            except OSError as exc:
                logger.warning("Template %s for step %d not found: %s", step.uses, step_index, exc)
                return AgentExecutionResult(
                    success=False,
                    error=f"Template '{step.uses}' not found",
                    error_code=TEMPLATE_NOT_FOUND,
                    exception=exc,
                )

        responses = workflow.context.responses_for_step(step_index)
        if not responses and is_interactive_step(step):
            logger.debug("Step %d of workflow %s needs user input first", step_index, workflow.id)
            return self._elicitation_result(step, persona, template)

        prompt = self.build_prompt(workflow, step, persona, template, overrides.get("userPrompt"))
        self.cache.prompts.set(f"{workflow.id}:{step_index}", prompt)
        timeout = self.engine_config.clamp_timeout(step.timeout)

        try:
            completion = await asyncio.wait_for(
                self.completion.call(
                    prompt,
                    agent=persona,
                    complexity=overrides.get("complexity", "complex"),
                    context={"workflowId": workflow.id, "step": step_index, "action": step.action},
                    user_id=workflow.user_id,
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            logger.warning("Agent %s timed out after %.0fs on step %d", agent_id, timeout, step_index)
            return AgentExecutionResult(
                success=False,
                timed_out=True,
                error=f"Agent {agent_id} execution timed out after {timeout:.0f}s",
                exception=exc,
            )
        except Exception as exc:
            return AgentExecutionResult(success=False, error=str(exc), exception=exc)

        return self._classify_reply(completion.content, completion.provider, completion.usage)

    def build_prompt(
        self,
        workflow: Workflow,
        step: AgentStep,
        persona: AgentPersona,
        template: str | None = None,
        user_prompt: str | None = None,
    ) -> str:
        """Assemble the prompt for an agent step."""
        context = workflow.context
        parts = [f"You are {persona.display_name}" + (f", {persona.title}." if persona.title else ".")]
        if persona.persona:
            parts.append(persona.persona)
        parts.append(f"Task: {step.action or step.label}")
        if step.notes:
            parts.append(f"Instructions: {step.notes}")
        parts.append(f"User request: {user_prompt or context.user_prompt}")

        for name in step.requires:
            artifact = context.artifacts.get(name)
            if artifact is not None:
                parts.append(f"## {name}\n{artifact.content}")
        if template:
            parts.append(f"## Template ({step.uses})\n{template}")

        responses = context.responses_for_step(workflow.current_step)
        if responses:
            parts.append(f"## User input\n{responses[-1].get('response', '')}")
        return "\n\n".join(parts)

    def _elicitation_result(self, step: AgentStep, persona: AgentPersona, template: str | None) -> AgentExecutionResult:
        section = first_elicit_section(template) or {}
        notes_question = step.notes.split(ASK_USER, 1)[1].strip() if ASK_USER in step.notes else ""
        title = str(section.get("title") or step.label)
        instruction = str(
            section.get("instruction") or notes_question or f"Please provide input for: {step.action or step.label}"
        )
        return AgentExecutionResult(
            success=False,
            type="elicitation_required",
            elicitation_required=True,
            content=instruction,
            elicitation_data={
                "sectionTitle": title,
                "instruction": instruction,
                "sectionId": section.get("id") or step.creates or step.key,
                "agentName": persona.display_name,
            },
        )

    def _classify_reply(self, content: str, provider: str | None, usage: dict[str, Any]) -> AgentExecutionResult:
        parsed = self.parser.parse(content)
        if not parsed.is_valid:
            exc = ResponseValidationError(parsed.errors)
            return AgentExecutionResult(success=False, error=str(exc), exception=exc, provider=provider, usage=usage)
        if parsed.warnings:
            logger.debug("Reply accepted with warnings: %s", parsed.warnings)

        data = parsed.json_object or {}
        if data.get("type") == "elicitation_required":
            return AgentExecutionResult(
                success=False,
                type="elicitation_required",
                content=str(data.get("content") or data.get("instruction") or ""),
                elicitation_data={
                    key: data[key] for key in ("sectionTitle", "instruction", "sectionId") if data.get(key)
                },
                provider=provider,
                usage=usage,
            )
        body = data.get("content") if isinstance(data.get("content"), str) else parsed.content
        return AgentExecutionResult(success=True, content=re.sub(r"\n{3,}", "\n\n", body), provider=provider, usage=usage)
