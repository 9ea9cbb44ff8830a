"""Shared test fixtures for litestar-agentflow test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from litestar_agentflow.config import EngineConfig
from litestar_agentflow.core.models import AgentPersona, CompletionResult
from litestar_agentflow.engine.executor import StepExecutionEngine
from litestar_agentflow.engine.recovery import ErrorRecoveryManager
from litestar_agentflow.store import InMemoryWorkflowStore

DEFAULT_REPLY = "Generated document content for the request."

Reply = str | BaseException | Callable[[str], Any]


class FakeCatalog:
    """Agent catalog backed by a dict of personas."""

    def __init__(self, agent_ids: tuple[str, ...] = ("analyst", "pm", "architect", "po", "dev")) -> None:
        self.personas = {
            agent_id: AgentPersona(id=agent_id, name=agent_id.title(), title=f"{agent_id} agent")
            for agent_id in agent_ids
        }

    async def load_agent(self, agent_id: str) -> AgentPersona | None:
        return self.personas.get(agent_id)

    def can_edit_section(self, agent_id: str, section_id: str) -> bool:
        return True


class ScriptedCompletion:
    """Completion service that plays back queued replies.

    Each queued reply is a string, an exception to raise, or a callable taking
    the prompt. Once the queue is empty the default reply is returned.
    """

    def __init__(self, *replies: Reply, default: str = DEFAULT_REPLY) -> None:
        self.replies: list[Reply] = list(replies)
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    async def call(
        self,
        prompt: str,
        *,
        agent: AgentPersona | None = None,
        complexity: str = "complex",
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> CompletionResult:
        self.calls.append({"prompt": prompt, "agent": agent.id if agent else None, "complexity": complexity})
        reply: Reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(prompt)
            if isinstance(reply, BaseException):
                raise reply
        return CompletionResult(content=reply, provider="fake")


class RecordingBroadcaster:
    """Event broadcaster that records every pushed event."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def trigger(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        if self.fail:
            msg = "broadcast channel unavailable"
            raise ConnectionError(msg)
        self.events.append((channel, event_type, payload))


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    """In-memory workflow store."""
    return InMemoryWorkflowStore()


@pytest.fixture
def catalog() -> FakeCatalog:
    """Catalog with the standard planning agents."""
    return FakeCatalog()


@pytest.fixture
def completion() -> ScriptedCompletion:
    """Completion service answering with the default reply."""
    return ScriptedCompletion()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    """Broadcaster recording pushed events."""
    return RecordingBroadcaster()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine options with instant retries."""
    return EngineConfig(retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def recovery() -> ErrorRecoveryManager:
    """Recovery manager that never sleeps between attempts."""
    return ErrorRecoveryManager(base_delay=0.0, max_delay=0.0, sleep=no_sleep)


@pytest.fixture
def engine(
    store: InMemoryWorkflowStore,
    catalog: FakeCatalog,
    completion: ScriptedCompletion,
    broadcaster: RecordingBroadcaster,
    engine_config: EngineConfig,
    recovery: ErrorRecoveryManager,
) -> StepExecutionEngine:
    """Step execution engine wired to the fakes above."""
    return StepExecutionEngine(
        store,
        catalog,
        completion,
        broadcaster=broadcaster,
        engine_config=engine_config,
        recovery=recovery,
    )


@pytest.fixture
def simple_definition() -> dict[str, Any]:
    """Two non-interactive agent steps."""
    return {
        "id": "simple-flow",
        "title": "Simple Flow",
        "sequence": [
            {"agentId": "analyst", "action": "summarize request", "creates": "summary.md"},
            {"agentId": "pm", "action": "outline plan", "requires": ["summary.md"], "creates": "plan.md"},
        ],
    }


@pytest.fixture
def brownfield_definition() -> dict[str, Any]:
    """Classification, routing, decision and conditional document steps."""
    return {
        "id": "brownfield-fullstack",
        "title": "Brownfield Full-Stack Enhancement",
        "sequence": [
            {"agentId": "analyst", "action": "classify enhancement scope", "notes": "Ask user: What is the scope?"},
            {
                "step": "routing_decision",
                "agentId": "orchestrator",
                "routes": {
                    "single_story": {"goto": "create-brownfield-story"},
                    "small_feature": {"goto": "brownfield-create-epic"},
                    "major_enhancement": {"description": "Continue with the full workflow"},
                },
            },
            {"agentId": "analyst", "action": "check existing documentation"},
            {
                "agentId": "analyst",
                "action": "document existing system",
                "condition": "documentation_inadequate",
                "creates": "project-docs.md",
            },
            {"agentId": "pm", "action": "draft requirements", "creates": "prd.md"},
        ],
    }
