"""Tests for the in-memory workflow store."""

from __future__ import annotations

from typing import Any

import pytest

from litestar_agentflow.core.definition import parse_workflow_definition
from litestar_agentflow.core.models import Workflow
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.store import InMemoryWorkflowStore


def make_workflow(definition: dict[str, Any], workflow_id: str, status: WorkflowStatus) -> Workflow:
    parsed = parse_workflow_definition(definition)
    return Workflow(id=workflow_id, title=parsed.title, sequence=parsed.sequence, status=status)


@pytest.mark.unit
@pytest.mark.asyncio
class TestInMemoryWorkflowStore:
    """Tests for InMemoryWorkflowStore."""

    async def test_save_and_find(self, store: InMemoryWorkflowStore, simple_definition: dict[str, Any]) -> None:
        workflow = make_workflow(simple_definition, "wf-1", WorkflowStatus.RUNNING)

        await store.save(workflow.id, workflow.to_dict(), user_id="alice")
        found = await store.find("wf-1")

        assert found is not None
        assert found.title == "Simple Flow"
        assert found.status == WorkflowStatus.RUNNING
        assert len(found.sequence) == 2
        assert found is not workflow

    async def test_partial_save_merges(self, store: InMemoryWorkflowStore, simple_definition: dict[str, Any]) -> None:
        workflow = make_workflow(simple_definition, "wf-1", WorkflowStatus.RUNNING)
        await store.save(workflow.id, workflow.to_dict(), user_id="alice")

        await store.save("wf-1", {"status": WorkflowStatus.PAUSED_FOR_ELICITATION.value}, user_id="bob")

        found = await store.find("wf-1")
        record = store.record("wf-1")
        assert found is not None
        assert found.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        assert found.title == "Simple Flow"
        assert record is not None
        assert record["userId"] == "alice"
        assert "updatedAt" in record

    async def test_partial_record_is_not_a_workflow(self, store: InMemoryWorkflowStore) -> None:
        await store.save("wf-9", {"status": "paused_for_elicitation"})

        assert await store.find("wf-9") is None
        assert await store.find("missing") is None
        assert await store.list_active() == []

    async def test_list_active_skips_terminal(
        self,
        store: InMemoryWorkflowStore,
        simple_definition: dict[str, Any],
    ) -> None:
        for workflow_id, status in (
            ("running", WorkflowStatus.RUNNING),
            ("paused", WorkflowStatus.PAUSED_FOR_ELICITATION),
            ("done", WorkflowStatus.COMPLETED),
            ("cancelled", WorkflowStatus.CANCELLED),
        ):
            workflow = make_workflow(simple_definition, workflow_id, status)
            await store.save(workflow_id, workflow.to_dict())

        active = await store.list_active()

        assert sorted(workflow.id for workflow in active) == ["paused", "running"]

    async def test_stored_record_is_isolated(
        self,
        store: InMemoryWorkflowStore,
        simple_definition: dict[str, Any],
    ) -> None:
        workflow = make_workflow(simple_definition, "wf-1", WorkflowStatus.RUNNING)
        state = workflow.to_dict()
        await store.save(workflow.id, state)

        state["metadata"]["leak"] = True
        found = await store.find("wf-1")

        assert found is not None
        assert "leak" not in found.metadata
