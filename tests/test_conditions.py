"""Tests for step conditions and routing values."""

from __future__ import annotations

import pytest

from litestar_agentflow.core.definition import Route, RoutingStep
from litestar_agentflow.core.models import Artifact, WorkflowContext
from litestar_agentflow.engine.conditions import (
    classify_enhancement_scope,
    evaluate_condition,
    resolve_routing_value,
)


@pytest.mark.unit
class TestEvaluateCondition:
    """Tests for evaluate_condition."""

    def test_no_condition_runs(self) -> None:
        assert evaluate_condition(None, WorkflowContext()) is True

    def test_unknown_condition_runs(self) -> None:
        assert evaluate_condition("moon_is_full", WorkflowContext()) is True

    def test_documentation_inadequate(self) -> None:
        context = WorkflowContext(routing_decisions={"documentation_check": "inadequate"})

        assert evaluate_condition("documentation_inadequate", context) is True
        context.routing_decisions["documentation_check"] = "adequate"
        assert evaluate_condition("documentation_inadequate", context) is False

    def test_major_enhancement_path(self) -> None:
        context = WorkflowContext(routing_decisions={"enhancement_classification": "small_feature"})

        assert evaluate_condition("major_enhancement_path", context) is False

    def test_after_prd_creation(self) -> None:
        context = WorkflowContext()
        assert evaluate_condition("after_prd_creation", context) is False

        context.artifacts["prd.md"] = Artifact(name="prd.md", content="# PRD", created_by="pm", step=2)
        assert evaluate_condition("after_prd_creation", context) is True

    def test_architecture_changes_needed(self) -> None:
        context = WorkflowContext(routing_decisions={"architecture_decision": "needed"})

        assert evaluate_condition("architecture_changes_needed", context) is True

    def test_ui_changes_always_true(self) -> None:
        assert evaluate_condition("enhancement_includes_ui_changes", WorkflowContext()) is True


@pytest.mark.unit
class TestClassifyEnhancementScope:
    """Tests for keyword scope classification."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Just a simple CRUD page", "single_story"),
            ("Add user management with a few features", "small_feature"),
            ("A comprehensive, scalable enterprise platform", "major_enhancement"),
            ("Redesign the billing flow", "small_feature"),
            ("A simple but scalable and distributed system", "major_enhancement"),
        ],
    )
    def test_classification(self, text: str, expected: str) -> None:
        assert classify_enhancement_scope(text) == expected


@pytest.mark.unit
class TestResolveRoutingValue:
    """Tests for routing value resolution."""

    @pytest.fixture
    def step(self) -> RoutingStep:
        return RoutingStep(agent_id="orchestrator", routes={"single_story": Route(goto="create-brownfield-story")})

    def test_persisted_decision_wins(self, step: RoutingStep) -> None:
        context = WorkflowContext(routing_decisions={"enhancement_classification": "small_feature"})

        assert resolve_routing_value(step, context) == "small_feature"

    def test_classification_artifact(self, step: RoutingStep) -> None:
        context = WorkflowContext()
        context.artifacts["scope.md"] = Artifact(
            name="scope.md",
            content="Only a quick fix",
            created_by="analyst",
            step=0,
            type="classification",
        )

        assert resolve_routing_value(step, context) == "single_story"
        assert context.routing_decisions["enhancement_classification"] == "single_story"

    def test_defaults_to_major_enhancement(self, step: RoutingStep) -> None:
        context = WorkflowContext()

        assert resolve_routing_value(step, context) == "major_enhancement"
        assert context.routing_decisions == {"enhancement_classification": "major_enhancement"}
