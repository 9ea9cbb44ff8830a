"""Tests for the agent message bus."""

from __future__ import annotations

import pytest

from litestar_agentflow.communicator import AgentCommunicator, summarize_message
from litestar_agentflow.core.messages import Message
from litestar_agentflow.core.types import MessageType, WorkflowStatus
from litestar_agentflow.exceptions import MessageValidationError
from litestar_agentflow.store import InMemoryWorkflowStore

from conftest import RecordingBroadcaster


@pytest.fixture
def communicator(store: InMemoryWorkflowStore, broadcaster: RecordingBroadcaster) -> AgentCommunicator:
    return AgentCommunicator(store=store, broadcaster=broadcaster)


async def activate(communicator: AgentCommunicator, agent_id: str, workflow_id: str = "wf-1") -> Message:
    return await communicator.send_message(
        workflow_id,
        sender="orchestrator",
        recipient=agent_id,
        message_type=MessageType.ACTIVATION,
        content={"action": "run", "message": f"Activating {agent_id}"},
    )


@pytest.mark.unit
@pytest.mark.asyncio
class TestSendMessage:
    """Tests for the send pipeline."""

    async def test_message_is_recorded_persisted_and_broadcast(
        self,
        communicator: AgentCommunicator,
        store: InMemoryWorkflowStore,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        message = await activate(communicator, "pm")

        assert message.id.startswith("msg_")
        assert message.status == "sent"
        assert communicator.get_message_history("wf-1") == [message]
        assert store.messages("wf-1") == [message]

        channel, event_type, payload = broadcaster.events[0]
        assert channel == "workflow-wf-1"
        assert event_type == "activation"
        assert payload["from"] == "orchestrator"
        assert payload["summary"] == "Activating pm agent"

    @pytest.mark.parametrize(
        ("sender", "message_type", "content", "expected"),
        [
            ("", MessageType.ACTIVATION, {}, "Message missing required field: from"),
            ("pm", "telepathy", {}, "Invalid message type: telepathy"),
            ("pm", MessageType.COMPLETION, None, "Message missing required field: content"),
        ],
    )
    async def test_invalid_message_is_rejected(
        self,
        communicator: AgentCommunicator,
        broadcaster: RecordingBroadcaster,
        sender: str,
        message_type: str,
        content: dict | None,
        expected: str,
    ) -> None:
        with pytest.raises(MessageValidationError) as exc_info:
            await communicator.send_message(
                "wf-1",
                sender=sender,
                recipient="user",
                message_type=message_type,
                content=content,  # type: ignore[arg-type]
            )

        assert expected in exc_info.value.errors
        assert communicator.get_message_history("wf-1") == []
        assert broadcaster.events == []

    async def test_broadcast_failure_is_tolerated(self, store: InMemoryWorkflowStore) -> None:
        communicator = AgentCommunicator(store=store, broadcaster=RecordingBroadcaster(fail=True))

        message = await activate(communicator, "pm")

        assert communicator.get_message_history("wf-1") == [message]

    async def test_works_without_store_or_broadcaster(self) -> None:
        communicator = AgentCommunicator()

        message = await activate(communicator, "analyst")

        assert communicator.get_message_history("wf-1") == [message]

    async def test_elicitation_request_saves_pause_state(
        self,
        communicator: AgentCommunicator,
        store: InMemoryWorkflowStore,
    ) -> None:
        details = {"sectionTitle": "Goals", "instruction": "What are the goals?"}

        await communicator.send_message(
            "wf-1",
            sender="pm",
            recipient="user",
            message_type=MessageType.ELICITATION_REQUEST,
            content={"sectionTitle": "Goals", "elicitationDetails": details},
        )

        record = store.record("wf-1")
        assert record is not None
        assert record["status"] == WorkflowStatus.PAUSED_FOR_ELICITATION.value
        assert record["elicitationDetails"] == details

    async def test_inter_agent_and_broadcast(self, communicator: AgentCommunicator) -> None:
        direct = await communicator.send_inter_agent_message("wf-1", "pm", "architect", "PRD is ready")
        fanned = await communicator.broadcast_message("wf-1", "pm", ["dev", "po"], {"message": "Heads up"})

        assert direct.content == {"message": "PRD is ready", "data": {}, "summary": "PRD is ready"}
        assert [message.recipient for message in fanned] == ["dev", "po"]
        assert all(message.type == MessageType.INTER_AGENT for message in fanned)


@pytest.mark.unit
@pytest.mark.asyncio
class TestSubscribers:
    """Tests for local subscribers."""

    async def test_sync_and_async_subscribers(self, communicator: AgentCommunicator) -> None:
        seen: list[str] = []
        everywhere: list[str] = []

        async def on_any(message: Message) -> None:
            everywhere.append(message.workflow_id)

        unsubscribe = communicator.subscribe("wf-1", lambda message: seen.append(message.recipient))
        communicator.subscribe(None, on_any)

        await activate(communicator, "pm")
        await activate(communicator, "dev", workflow_id="wf-2")
        unsubscribe()
        await activate(communicator, "po")

        assert seen == ["pm"]
        assert everywhere == ["wf-1", "wf-2", "wf-1"]

    async def test_failing_subscriber_does_not_block_send(self, communicator: AgentCommunicator) -> None:
        def explode(message: Message) -> None:
            msg = "subscriber bug"
            raise RuntimeError(msg)

        communicator.subscribe("wf-1", explode)

        message = await activate(communicator, "pm")

        assert communicator.get_message_history("wf-1") == [message]


@pytest.mark.unit
@pytest.mark.asyncio
class TestHistoryAndChannels:
    """Tests for history queries, channels and statistics."""

    async def test_history_filters(self, communicator: AgentCommunicator) -> None:
        await activate(communicator, "analyst")
        await activate(communicator, "pm")
        completion = await communicator.send_message(
            "wf-1",
            sender="pm",
            recipient="orchestrator",
            message_type=MessageType.COMPLETION,
            content={"summary": "PRD done"},
        )

        assert len(communicator.get_message_history("wf-1")) == 3
        assert communicator.get_message_history("wf-1", message_type=MessageType.COMPLETION) == [completion]
        assert len(communicator.get_message_history("wf-1", agent_id="pm")) == 2
        assert communicator.get_message_history("wf-1", limit=1) == [completion]
        assert communicator.get_message_history("wf-1", limit=0) == []
        assert communicator.get_message_history("unknown") == []

    async def test_channels_follow_lifecycle(self, communicator: AgentCommunicator) -> None:
        await activate(communicator, "pm")
        await activate(communicator, "architect")
        await communicator.send_message(
            "wf-1",
            sender="pm",
            recipient="orchestrator",
            message_type=MessageType.COMPLETION,
            content={"summary": "PRD done"},
        )
        await communicator.send_message(
            "wf-1",
            sender="architect",
            recipient="orchestrator",
            message_type=MessageType.ERROR,
            content={"error": "model unavailable"},
        )

        channels = {channel["agentId"]: channel for channel in communicator.get_active_channels("wf-1")}

        assert channels["pm"]["status"] == "completed"
        assert channels["pm"]["result"] == "PRD done"
        assert channels["architect"]["status"] == "error"
        assert channels["architect"]["error"] == "model unavailable"

    async def test_timeline_and_statistics(self, communicator: AgentCommunicator) -> None:
        await activate(communicator, "pm")
        await communicator.send_message(
            "wf-1",
            sender="pm",
            recipient="orchestrator",
            message_type=MessageType.COMPLETION,
            content={"summary": "PRD done"},
        )

        timeline = communicator.get_communication_timeline("wf-1")
        stats = communicator.get_statistics("wf-1")

        assert [entry["summary"] for entry in timeline] == ["Activating pm agent", "pm completed task"]
        assert stats["totalMessages"] == 2
        assert stats["messagesByType"] == {"activation": 1, "completion": 1}
        assert stats["activeChannels"] == 1
        assert stats["communicationFlow"] == {"orchestrator -> pm": 1, "pm -> orchestrator": 1}

    async def test_cleanup_drops_old_history(self, communicator: AgentCommunicator) -> None:
        await activate(communicator, "pm")
        await activate(communicator, "dev", workflow_id="wf-2")

        assert communicator.cleanup(older_than_hours=24) == 0
        assert communicator.cleanup(older_than_hours=-1) == 2
        assert communicator.get_message_history("wf-1") == []
        assert communicator.get_active_channels("wf-1") == []


@pytest.mark.unit
class TestSummarizeMessage:
    """Tests for summarize_message."""

    @pytest.mark.parametrize(
        ("message_type", "sender", "recipient", "content", "expected"),
        [
            (MessageType.ERROR, "dev", "orchestrator", {}, "Error in dev: Unknown error"),
            (MessageType.INTER_AGENT, "pm", "dev", {"summary": "Ready"}, "pm -> dev: Ready"),
            (
                MessageType.ELICITATION_REQUEST,
                "pm",
                "user",
                {"sectionTitle": "Goals"},
                "pm requests user input: Goals",
            ),
            (
                MessageType.WORKFLOW_STEP_UPDATE,
                "orchestrator",
                "user",
                {"stepIndex": 2, "stepName": "create prd"},
                "Workflow step 2: create prd",
            ),
            (
                MessageType.WORKFLOW_PROGRESS,
                "orchestrator",
                "user",
                {"currentStep": 1, "totalSteps": 4},
                "Workflow progress: 1/4",
            ),
        ],
    )
    def test_summaries(
        self,
        message_type: MessageType,
        sender: str,
        recipient: str,
        content: dict,
        expected: str,
    ) -> None:
        message = Message(
            id="msg_1",
            workflow_id="wf-1",
            sender=sender,
            recipient=recipient,
            type=message_type,
            content=content,
        )

        assert summarize_message(message) == expected
