"""Litestar AgentFlow - Multi-agent document workflow orchestration for Litestar.

This package drives declarative, multi-step workflows in which AI agent
personas collaborate to produce planning documents, pausing to ask the user
for input whenever an agent needs it.

Key Features:
    - Declarative step sequences with agent, decision and routing steps
    - Elicitation with numbered method selection or free-text answers
    - Autonomous decisions with deterministic fallbacks
    - Categorized error recovery with retry, backoff and fail-fast
    - Checkpoints with automatic and manual rollback
    - A typed message bus with optional real-time broadcast
    - In-memory and SQLAlchemy workflow stores

Example:
    >>> from litestar_agentflow import InMemoryWorkflowStore, StepExecutionEngine
    >>>
    >>> engine = StepExecutionEngine(InMemoryWorkflowStore(), catalog, completion)
    >>> workflow = await engine.start_workflow(
    ...     {
    ...         "id": "greenfield-prd",
    ...         "title": "Greenfield PRD",
    ...         "sequence": [{"agentId": "pm", "action": "draft prd", "creates": "prd.md"}],
    ...     },
    ...     "Build a recipe sharing app",
    ... )
"""

from __future__ import annotations

from litestar_agentflow.__metadata__ import __project__, __version__
from litestar_agentflow.communicator import AgentCommunicator
from litestar_agentflow.config import ConfigurationManager, EngineConfig
from litestar_agentflow.core.definition import WorkflowDefinition, parse_workflow_definition
from litestar_agentflow.core.models import Workflow
from litestar_agentflow.core.types import WorkflowStatus
from litestar_agentflow.engine.executor import StepExecutionEngine
from litestar_agentflow.exceptions import (
    AgentFlowError,
    AgentNotFoundError,
    CheckpointError,
    ConfigurationError,
    ElicitationError,
    FailFastError,
    InvalidWorkflowStateError,
    StepExecutionError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from litestar_agentflow.plugin import AgentFlowPlugin, AgentFlowPluginConfig
from litestar_agentflow.store import InMemoryWorkflowStore

__all__ = (
    "AgentCommunicator",
    "AgentFlowError",
    "AgentFlowPlugin",
    "AgentFlowPluginConfig",
    "AgentNotFoundError",
    "CheckpointError",
    "ConfigurationError",
    "ConfigurationManager",
    "ElicitationError",
    "EngineConfig",
    "FailFastError",
    "InMemoryWorkflowStore",
    "InvalidWorkflowStateError",
    "StepExecutionEngine",
    "StepExecutionError",
    "Workflow",
    "WorkflowDefinition",
    "WorkflowNotFoundError",
    "WorkflowStatus",
    "WorkflowValidationError",
    "__project__",
    "__version__",
    "parse_workflow_definition",
)
