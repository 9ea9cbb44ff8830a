"""Tests for the user-response wait registry."""

from __future__ import annotations

import asyncio

import pytest

from litestar_agentflow.engine.waits import ElicitationWaitRegistry
from litestar_agentflow.exceptions import ElicitationCancelledError, ElicitationTimeoutError

from conftest import RecordingBroadcaster


async def started(registry: ElicitationWaitRegistry, coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    while registry.pending_count == 0 and not task.done():
        await asyncio.sleep(0)
    return task


@pytest.mark.unit
@pytest.mark.asyncio
class TestElicitationWaitRegistry:
    """Tests for ElicitationWaitRegistry."""

    async def test_response_resolves_wait(self, broadcaster: RecordingBroadcaster) -> None:
        registry = ElicitationWaitRegistry(broadcaster=broadcaster)
        task = await started(
            registry,
            registry.send_and_wait("wf-1", "elicitation_request", {"messageId": "msg-1", "question": "Scope?"}),
        )

        assert registry.is_pending("msg-1") is True
        assert registry.handle_user_response("msg-1", "Small") is True
        assert await task == "Small"
        assert registry.pending_count == 0

        channel, event_type, payload = broadcaster.events[0]
        assert channel == "workflow-wf-1"
        assert event_type == "elicitation_request"
        assert payload["requiresResponse"] is True
        assert payload["workflowId"] == "wf-1"

    async def test_unknown_response_is_ignored(self) -> None:
        assert ElicitationWaitRegistry().handle_user_response("missing", "x") is False

    async def test_timeout(self) -> None:
        registry = ElicitationWaitRegistry()

        with pytest.raises(ElicitationTimeoutError) as exc_info:
            await registry.send_and_wait("wf-1", "elicitation_request", {"messageId": "msg-1"}, timeout=0.01)

        assert exc_info.value.message_id == "msg-1"
        assert registry.pending_count == 0

    async def test_cancel_single_wait(self) -> None:
        registry = ElicitationWaitRegistry()
        task = await started(registry, registry.send_and_wait("wf-1", "question", {"messageId": "msg-1"}))

        assert registry.cancel_pending_response("msg-1", "User left") is True

        with pytest.raises(ElicitationCancelledError, match="User left"):
            await task
        assert registry.cancel_pending_response("msg-1") is False

    async def test_reused_message_id_rejects_earlier_wait(self) -> None:
        registry = ElicitationWaitRegistry()
        first = await started(registry, registry.send_and_wait("wf-1", "question", {"messageId": "msg-1"}))
        second = asyncio.create_task(registry.send_and_wait("wf-1", "question", {"messageId": "msg-1"}))
        while not first.done():
            await asyncio.sleep(0)

        with pytest.raises(ElicitationCancelledError, match="Superseded"):
            await first
        assert registry.is_pending("msg-1") is True

        assert registry.handle_user_response("msg-1", "Large") is True
        assert await second == "Large"
        assert registry.pending_count == 0

    async def test_cancel_workflow_waits_only(self) -> None:
        registry = ElicitationWaitRegistry()
        first = await started(registry, registry.send_and_wait("wf-1", "question", {"messageId": "a"}))
        second = asyncio.create_task(registry.send_and_wait("wf-1", "question", {"messageId": "b"}))
        other = asyncio.create_task(registry.send_and_wait("wf-2", "question", {"messageId": "c"}))
        while registry.pending_count < 3:
            await asyncio.sleep(0)

        assert registry.cancel_workflow_responses("wf-1") == 2

        for task in (first, second):
            with pytest.raises(ElicitationCancelledError):
                await task
        assert registry.is_pending("c") is True
        registry.handle_user_response("c", "ok")
        assert await other == "ok"

    async def test_sweep_stale(self) -> None:
        registry = ElicitationWaitRegistry()
        task = await started(registry, registry.send_and_wait("wf-1", "question", {"messageId": "old"}))

        assert registry.sweep_stale(max_age=3600) == 0
        assert registry.sweep_stale(max_age=0) == 1

        with pytest.raises(ElicitationCancelledError, match="expired"):
            await task

    async def test_broadcast_failure_still_waits(self) -> None:
        registry = ElicitationWaitRegistry(broadcaster=RecordingBroadcaster(fail=True))
        task = await started(registry, registry.send_and_wait("wf-1", "question", {"messageId": "msg-1"}))

        registry.handle_user_response("msg-1", 1)

        assert await task == 1
