"""Minimal example of litestar-agentflow integration.

This example wires the AgentFlowPlugin to a toy agent catalog and an echo
completion service, then exposes a small REST API to start a planning
workflow, answer its questions and follow its progress.

Run with:
    cd examples/minimal
    litestar run
"""

from __future__ import annotations

from typing import Any

from litestar import Controller, Litestar, get, post

from litestar_agentflow import AgentCommunicator, AgentFlowPlugin, AgentFlowPluginConfig, StepExecutionEngine
from litestar_agentflow.core.models import AgentPersona, CompletionResult

# =============================================================================
# Collaborators
# =============================================================================


class StaticAgentCatalog:
    """Agent catalog with a fixed set of personas."""

    def __init__(self) -> None:
        self.personas = {
            "analyst": AgentPersona(id="analyst", name="Mary", title="Business Analyst"),
            "pm": AgentPersona(id="pm", name="John", title="Product Manager"),
            "architect": AgentPersona(id="architect", name="Winston", title="Architect"),
        }

    async def load_agent(self, agent_id: str) -> AgentPersona | None:
        return self.personas.get(agent_id)

    def can_edit_section(self, agent_id: str, section_id: str) -> bool:
        return agent_id in self.personas


class EchoCompletionService:
    """Completion service that echoes the task line of the prompt.

    Replace with a client for a real model provider.
    """

    async def call(
        self,
        prompt: str,
        *,
        agent: AgentPersona | None = None,
        complexity: str = "complex",
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> CompletionResult:
        task = next((line for line in prompt.splitlines() if line.startswith("Task:")), "Task: respond")
        if "Respond with just the decision value" in prompt:
            return CompletionResult(content="needed", provider="echo")
        author = agent.display_name if agent else "assistant"
        return CompletionResult(content=f"# {task[6:].strip().title()}\n\nDrafted by {author}.", provider="echo")


# =============================================================================
# Workflow Definition
# =============================================================================

GREENFIELD_PLANNING: dict[str, Any] = {
    "id": "greenfield-planning",
    "title": "Greenfield Planning",
    "sequence": [
        {
            "agentId": "analyst",
            "action": "create project brief",
            "creates": "project-brief.md",
            "notes": "Ask user: Who are the target users and what problem do they have?",
        },
        {"agentId": "pm", "action": "draft requirements", "requires": ["project-brief.md"], "creates": "prd.md"},
        {"agentId": "architect", "action": "determine if architecture document needed"},
        {
            "agentId": "architect",
            "action": "outline architecture",
            "condition": "architecture_changes_needed",
            "requires": ["prd.md"],
            "creates": "architecture.md",
        },
    ],
}


# =============================================================================
# API Controller
# =============================================================================


class WorkflowController(Controller):
    """REST API for workflow runs."""

    path = "/workflows"
    tags = ["Workflows"]

    @post("/")
    async def start_workflow(self, data: dict[str, Any], agentflow_engine: StepExecutionEngine) -> dict[str, Any]:
        """Start a planning workflow for a user request."""
        workflow = await agentflow_engine.start_workflow(GREENFIELD_PLANNING, data["prompt"], data.get("userId"))
        return await agentflow_engine.get_status(workflow.id)

    @get("/")
    async def list_workflows(self, agentflow_engine: StepExecutionEngine) -> list[dict[str, Any]]:
        """List workflows that have not finished."""
        return [
            {"workflowId": workflow.id, "title": workflow.title, "status": workflow.status.value}
            for workflow in await agentflow_engine.list_active()
        ]

    @get("/{workflow_id:str}")
    async def get_workflow(self, workflow_id: str, agentflow_engine: StepExecutionEngine) -> dict[str, Any]:
        """Get the status of a workflow."""
        return await agentflow_engine.get_status(workflow_id)

    @post("/{workflow_id:str}/respond")
    async def respond(
        self,
        workflow_id: str,
        data: dict[str, Any],
        agentflow_engine: StepExecutionEngine,
    ) -> dict[str, Any]:
        """Answer the outstanding question, by method number or free text."""
        workflow = await agentflow_engine.resume_with_response(workflow_id, data["response"], data.get("userId"))
        return await agentflow_engine.get_status(workflow.id)

    @post("/{workflow_id:str}/cancel")
    async def cancel(self, workflow_id: str, agentflow_engine: StepExecutionEngine) -> dict[str, Any]:
        """Cancel a workflow."""
        workflow = await agentflow_engine.cancel(workflow_id)
        return {"workflowId": workflow.id, "status": workflow.status.value}

    @get("/{workflow_id:str}/timeline")
    async def timeline(self, workflow_id: str, agentflow_communicator: AgentCommunicator) -> list[dict[str, Any]]:
        """Get the message timeline of a workflow."""
        return agentflow_communicator.get_communication_timeline(workflow_id)


# =============================================================================
# Application
# =============================================================================

plugin_config = AgentFlowPluginConfig(
    catalog=StaticAgentCatalog(),
    completion=EchoCompletionService(),
)

app = Litestar(
    route_handlers=[WorkflowController],
    plugins=[AgentFlowPlugin(config=plugin_config)],
    debug=True,
)


@get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


app.register(health_check)
