"""Tests for agent step execution."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from litestar_agentflow.cache import CacheManager
from litestar_agentflow.config import ConfigurationManager, EngineConfig
from litestar_agentflow.core.definition import AgentStep
from litestar_agentflow.core.models import TEMPLATE_NOT_FOUND, Artifact, Workflow, WorkflowContext
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.engine.agents import (
    AgentExecutor,
    first_elicit_section,
    is_interactive_step,
    template_filename,
)
from litestar_agentflow.exceptions import ResponseValidationError

from conftest import FakeCatalog, ScriptedCompletion

if TYPE_CHECKING:
    from pathlib import Path

PRD_TEMPLATE = """\
template:
  id: prd-template
sections:
  - id: intro
    title: Introduction
  - id: goals
    title: Goals and Background Context
    instruction: Describe the goals of the enhancement.
    elicit: true
"""


def make_workflow(*steps: AgentStep, prompt: str = "Build a recipe app") -> Workflow:
    return Workflow(
        id="wf-1",
        title="Agents",
        sequence=steps,
        status=WorkflowStatus.RUNNING,
        context=WorkflowContext(user_prompt=prompt),
    )


@pytest.fixture
def config(tmp_path: Path) -> ConfigurationManager:
    core = tmp_path / ".bmad-core"
    (core / "templates").mkdir(parents=True)
    (core / "core-config.yaml").write_text("slashPrefix: BMad\n", encoding="utf-8")
    (core / "templates" / "prd-tmpl.yaml").write_text(PRD_TEMPLATE, encoding="utf-8")
    manager = ConfigurationManager(tmp_path)
    manager.load()
    return manager


@pytest.fixture
def executor(
    catalog: FakeCatalog,
    completion: ScriptedCompletion,
    config: ConfigurationManager,
    engine_config: EngineConfig,
) -> AgentExecutor:
    return AgentExecutor(catalog, completion, CacheManager(), config=config, engine_config=engine_config)


@pytest.mark.unit
class TestInteractiveSteps:
    """Tests for is_interactive_step and template helpers."""

    @pytest.mark.parametrize(
        ("step", "expected"),
        [
            (AgentStep(agent_id="pm", action="outline plan"), False),
            (AgentStep(agent_id="pm", action="run task", command="create-doc"), True),
            (AgentStep(agent_id="pm", action="draft", uses="prd-tmpl"), True),
            (AgentStep(agent_id="pm", action="create-prd"), True),
            (AgentStep(agent_id="analyst", action="create project doc"), True),
            (AgentStep(agent_id="analyst", action="scope", notes="Ask user: what is in scope?"), True),
        ],
    )
    def test_is_interactive_step(self, step: AgentStep, expected: bool) -> None:
        assert is_interactive_step(step) is expected

    @pytest.mark.parametrize(
        ("uses", "expected"),
        [
            ("prd-tmpl", "prd-tmpl.yaml"),
            ("prd", "prd-tmpl.yaml"),
            ("brief.md", "brief.md"),
        ],
    )
    def test_template_filename(self, uses: str, expected: str) -> None:
        assert template_filename(uses) == expected

    def test_first_elicit_section(self) -> None:
        assert first_elicit_section(PRD_TEMPLATE)["id"] == "goals"  # type: ignore[index]
        assert first_elicit_section("sections:\n  scope:\n    elicit: true\n") == {"id": "scope", "elicit": True}
        assert first_elicit_section("sections: [unclosed") is None
        assert first_elicit_section(None) is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestAgentExecutor:
    """Tests for AgentExecutor.execute."""

    async def test_successful_step(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="pm", action="outline plan", requires=("summary.md",))
        workflow = make_workflow(step)
        workflow.context.artifacts["summary.md"] = Artifact(
            name="summary.md", content="Recipes with tags", created_by="analyst", step=0
        )
        completion.queue("# Plan\n\n\n\nShip it")

        result = await executor.execute(workflow, step, "pm")

        assert result.success is True
        assert result.content == "# Plan\n\nShip it"
        assert result.provider == "fake"

        call = completion.calls[0]
        assert call["agent"] == "pm"
        assert call["complexity"] == "complex"
        assert "User request: Build a recipe app" in call["prompt"]
        assert "## summary.md\nRecipes with tags" in call["prompt"]
        assert executor.cache.prompts.get("wf-1:0") == call["prompt"]

    async def test_overrides(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="pm", action="outline plan")

        await executor.execute(make_workflow(step), step, "pm", complexity="simple", userPrompt="Build recipes")

        assert completion.calls[0]["complexity"] == "simple"
        assert "User request: Build recipes" in completion.calls[0]["prompt"]

    async def test_unknown_agent(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="ghost", action="haunt")

        result = await executor.execute(make_workflow(step), step, "ghost")

        assert result.success is False
        assert result.error == "Agent 'ghost' not found"
        assert completion.calls == []

    async def test_interactive_step_asks_first(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="analyst", action="classify enhancement scope", notes="Ask user: What is the scope?")

        result = await executor.execute(make_workflow(step), step, "analyst")

        assert result.elicitation_required is True
        assert result.type == "elicitation_required"
        assert result.content == "What is the scope?"
        assert result.elicitation_data["agentName"] == "Analyst"
        assert completion.calls == []

    async def test_interactive_step_with_answer_runs(
        self,
        executor: AgentExecutor,
        completion: ScriptedCompletion,
    ) -> None:
        step = AgentStep(agent_id="analyst", action="classify enhancement scope", notes="Ask user: What is the scope?")
        workflow = make_workflow(step)
        workflow.context.elicitation_history.append({"step": 0, "response": "A small bug fix"})

        result = await executor.execute(workflow, step, "analyst")

        assert result.success is True
        assert "## User input\nA small bug fix" in completion.calls[0]["prompt"]

    async def test_template_section_drives_question(self, executor: AgentExecutor) -> None:
        step = AgentStep(agent_id="pm", action="draft requirements", uses="prd-tmpl", creates="prd.md")

        result = await executor.execute(make_workflow(step), step, "pm")

        assert result.elicitation_data["sectionTitle"] == "Goals and Background Context"
        assert result.elicitation_data["sectionId"] == "goals"
        assert result.content == "Describe the goals of the enhancement."
        assert executor.cache.templates.get("prd-tmpl") == PRD_TEMPLATE

    async def test_missing_template(self, executor: AgentExecutor) -> None:
        step = AgentStep(agent_id="architect", action="draft", uses="architecture-tmpl")

        result = await executor.execute(make_workflow(step), step, "architect")

        assert result.success is False
        assert result.error_code == TEMPLATE_NOT_FOUND
        assert result.error == "Template 'architecture-tmpl' not found"

    async def test_template_skipped_without_configuration(
        self,
        catalog: FakeCatalog,
        completion: ScriptedCompletion,
    ) -> None:
        executor = AgentExecutor(catalog, completion, CacheManager())
        step = AgentStep(agent_id="pm", action="draft", uses="prd-tmpl")

        result = await executor.execute(make_workflow(step), step, "pm")

        assert result.elicitation_required is True
        assert result.elicitation_data["sectionTitle"] == "Draft"

    async def test_reply_requests_elicitation(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="pm", action="outline plan")
        completion.queue('{"type": "elicitation_required", "instruction": "Which stack?", "sectionTitle": "Stack"}')

        result = await executor.execute(make_workflow(step), step, "pm")

        assert result.success is False
        assert result.type == "elicitation_required"
        assert result.content == "Which stack?"
        assert result.elicitation_data == {"sectionTitle": "Stack", "instruction": "Which stack?"}

    async def test_empty_reply_is_failure(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="pm", action="outline plan")
        completion.queue("")

        result = await executor.execute(make_workflow(step), step, "pm")

        assert result.success is False
        assert isinstance(result.exception, ResponseValidationError)

    async def test_completion_error_is_returned(self, executor: AgentExecutor, completion: ScriptedCompletion) -> None:
        step = AgentStep(agent_id="pm", action="outline plan")
        completion.queue(ConnectionError("connection reset"))

        result = await executor.execute(make_workflow(step), step, "pm")

        assert result.success is False
        assert result.error == "connection reset"
        assert isinstance(result.exception, ConnectionError)
