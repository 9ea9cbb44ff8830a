"""Tests for autonomous decision steps."""

from __future__ import annotations

import pytest

from litestar_agentflow.communicator import AgentCommunicator
from litestar_agentflow.core.definition import AgentStep, DecisionStep, Step
from litestar_agentflow.core.models import Workflow, WorkflowContext
from litestar_agentflow.core.types import MessageType, WorkflowStatus
from litestar_agentflow.engine.decisions import DecisionEngine
from litestar_agentflow.store import InMemoryWorkflowStore

from conftest import FakeCatalog, ScriptedCompletion

DOCUMENTATION_CHECK = DecisionStep(agent_id="analyst", action="check existing documentation")


def make_workflow(step: Step) -> Workflow:
    return Workflow(
        id="wf-1",
        title="Decisions",
        sequence=(step,),
        status=WorkflowStatus.RUNNING,
        context=WorkflowContext(user_prompt="Add billing to our app, we have full API docs"),
    )


@pytest.fixture
def communicator(store: InMemoryWorkflowStore) -> AgentCommunicator:
    return AgentCommunicator(store=store)


@pytest.fixture
def decisions(
    catalog: FakeCatalog,
    completion: ScriptedCompletion,
    communicator: AgentCommunicator,
    store: InMemoryWorkflowStore,
) -> DecisionEngine:
    return DecisionEngine(catalog, completion, communicator, store)


@pytest.mark.unit
class TestDecisionHelpers:
    """Tests for the static helpers."""

    @pytest.mark.parametrize(
        ("step", "expected"),
        [
            (DOCUMENTATION_CHECK, True),
            (AgentStep(agent_id="analyst", action="Assess integration risk"), True),
            (AgentStep(agent_id="pm", action="create prd"), False),
        ],
    )
    def test_is_decision_step(self, step: Step, expected: bool) -> None:
        assert DecisionEngine.is_decision_step(step) is expected

    def test_decision_key(self) -> None:
        assert DecisionEngine.decision_key(DOCUMENTATION_CHECK) == "documentation_check"
        assert DecisionEngine.decision_key(DecisionStep(agent_id="po", name="scope_gate")) == "scope_gate"
        assert DecisionEngine.decision_key(DecisionStep(agent_id="po", action="Evaluate options")) == "evaluate_options"

    @pytest.mark.parametrize(
        ("reply", "expected"),
        [
            ("adequate", "adequate"),
            ('The decision is: "Adequate."', "adequate"),
            ("  NEEDED! ", "needed"),
            ("decision is not_needed", "not_needed"),
        ],
    )
    def test_normalize_decision(self, reply: str, expected: str) -> None:
        assert DecisionEngine.normalize_decision(reply) == expected

    def test_fallbacks(self) -> None:
        architecture = DecisionStep(agent_id="architect", action="determine if architecture document needed")

        assert DecisionEngine.fallback_decision(DOCUMENTATION_CHECK) == "inadequate"
        assert DecisionEngine.fallback_decision(architecture) == "needed"
        assert DecisionEngine.fallback_decision(DecisionStep(agent_id="po", action="evaluate scope")) == "continue"

    def test_format_decision_message(self) -> None:
        assert DecisionEngine.format_decision_message(DOCUMENTATION_CHECK, "adequate").startswith(
            "Documentation Check: Found adequate"
        )
        assert DecisionEngine.format_decision_message(DecisionStep(agent_id="po", action="Evaluate scope"), "go") == (
            "Evaluate scope: go"
        )


@pytest.mark.unit
@pytest.mark.asyncio
class TestHandleDecisionStep:
    """Tests for handle_decision_step."""

    async def test_decision_is_stored_and_announced(
        self,
        decisions: DecisionEngine,
        completion: ScriptedCompletion,
        communicator: AgentCommunicator,
        store: InMemoryWorkflowStore,
    ) -> None:
        completion.queue("Adequate.")
        workflow = make_workflow(DOCUMENTATION_CHECK)

        outcome = await decisions.handle_decision_step(workflow, DOCUMENTATION_CHECK)

        assert outcome.success is True
        assert outcome.decision == "adequate"
        assert workflow.context.routing_decisions == {"documentation_check": "adequate"}
        assert workflow.current_step == 1

        record = store.record("wf-1")
        assert record is not None
        assert record["currentStep"] == 1

        call = completion.calls[0]
        assert call["complexity"] == "simple"
        assert "TASK: check existing documentation" in call["prompt"]
        assert "we have full API docs" in call["prompt"]

        announcement = communicator.get_message_history("wf-1", message_type=MessageType.WORKFLOW_PROGRESS)[-1]
        assert announcement.content["decision"] == "adequate"
        assert announcement.content["fallback"] is False

    async def test_json_reply(self, decisions: DecisionEngine, completion: ScriptedCompletion) -> None:
        step = DecisionStep(agent_id="architect", action="determine if architecture document needed")
        completion.queue('{"decision": "Not_Needed", "reason": "existing patterns"}')

        outcome = await decisions.handle_decision_step(make_workflow(step), step)

        assert outcome.decision == "not_needed"
        assert outcome.key == "architecture_decision"

    @pytest.mark.parametrize(
        "reply",
        [ConnectionError("connection reset"), "   "],
    )
    async def test_failure_uses_fallback_and_advances(
        self,
        decisions: DecisionEngine,
        completion: ScriptedCompletion,
        reply: str | Exception,
    ) -> None:
        completion.queue(reply)
        workflow = make_workflow(DOCUMENTATION_CHECK)

        outcome = await decisions.handle_decision_step(workflow, DOCUMENTATION_CHECK)

        assert outcome.success is False
        assert outcome.decision == "inadequate"
        assert workflow.current_step == 1
        assert workflow.context.routing_decisions["documentation_check"] == "inadequate"
        assert workflow.errors[-1].type == "decision_error"

    async def test_unknown_agent_uses_fallback(
        self,
        decisions: DecisionEngine,
        completion: ScriptedCompletion,
    ) -> None:
        step = DecisionStep(agent_id="oracle", action="evaluate scope")

        outcome = await decisions.handle_decision_step(make_workflow(step), step)

        assert outcome.decision == "continue"
        assert "oracle" in (outcome.error or "")
        assert completion.calls == []


@pytest.mark.unit
class TestProcessElicitationResponse:
    """Tests for interpreting documentation answers."""

    @pytest.mark.parametrize(
        ("answer", "expected"),
        [
            ("Yes, we have comprehensive API docs", "adequate"),
            ("No, there is none", "inadequate"),
            ("We have docs but they are outdated", "inadequate"),
            ("Not sure", "inadequate"),
        ],
    )
    def test_documentation_answers(self, decisions: DecisionEngine, answer: str, expected: str) -> None:
        assert decisions.process_elicitation_response(DOCUMENTATION_CHECK, answer) == expected

    def test_other_steps_are_not_interpreted(self, decisions: DecisionEngine) -> None:
        step = DecisionStep(agent_id="po", action="evaluate scope")

        assert decisions.process_elicitation_response(step, "yes") is None
