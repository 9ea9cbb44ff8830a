"""Core domain module for litestar-agentflow.

This module exports the fundamental building blocks: types, step definitions,
runtime models, bus messages and collaborator protocols.
"""

from __future__ import annotations

from litestar_agentflow.core.definition import (
    AgentStep,
    CycleStep,
    DecisionStep,
    Route,
    RoutingStep,
    Step,
    WorkflowControlStep,
    WorkflowDefinition,
    is_decision_action,
    parse_workflow_definition,
)
from litestar_agentflow.core.messages import Message
from litestar_agentflow.core.models import (
    AgentExecutionResult,
    AgentPersona,
    Artifact,
    Checkpoint,
    CompletionResult,
    ElicitationDetails,
    ErrorRecord,
    Workflow,
    WorkflowContext,
)
from litestar_agentflow.core.protocols import AgentCatalog, CompletionService, EventBroadcaster, WorkflowStore
from litestar_agentflow.core.types import (
    ErrorCategory,
    MessageType,
    RecoveryStrategy,
    Severity,
    StepOutcome,
    StepType,
    WorkflowStatus,
)

__all__ = [
    "AgentCatalog",
    "AgentExecutionResult",
    "AgentPersona",
    "AgentStep",
    "Artifact",
    "Checkpoint",
    "CompletionResult",
    "CompletionService",
    "CycleStep",
    "DecisionStep",
    "ElicitationDetails",
    "ErrorCategory",
    "ErrorRecord",
    "EventBroadcaster",
    "Message",
    "MessageType",
    "RecoveryStrategy",
    "Route",
    "RoutingStep",
    "Severity",
    "Step",
    "StepOutcome",
    "StepType",
    "Workflow",
    "WorkflowContext",
    "WorkflowControlStep",
    "WorkflowDefinition",
    "WorkflowStatus",
    "WorkflowStore",
    "is_decision_action",
    "parse_workflow_definition",
]
