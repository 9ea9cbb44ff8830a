"""Workflow execution engine.

This module provides the step execution engine together with the components
it composes: agent step execution, autonomous decisions, elicitation,
response parsing, error recovery, checkpoints and pending user-response waits.
"""

from __future__ import annotations

from litestar_agentflow.engine.agents import AgentExecutor
from litestar_agentflow.engine.batch import BatchItemResult, run_in_batches
from litestar_agentflow.engine.checkpoints import CheckpointManager
from litestar_agentflow.engine.conditions import evaluate_condition, resolve_routing_value
from litestar_agentflow.engine.decisions import DecisionEngine, DecisionOutcome
from litestar_agentflow.engine.elicitation import ElicitationHandler, ElicitationMethod, ElicitationResponse
from litestar_agentflow.engine.executor import StepExecutionEngine, classify_outcome
from litestar_agentflow.engine.recovery import ErrorRecoveryManager, RecoveryContext, RecoveryResult
from litestar_agentflow.engine.responses import ParsedResponse, ResponseParser
from litestar_agentflow.engine.waits import ElicitationWaitRegistry

__all__ = [
    "AgentExecutor",
    "BatchItemResult",
    "CheckpointManager",
    "DecisionEngine",
    "DecisionOutcome",
    "ElicitationHandler",
    "ElicitationMethod",
    "ElicitationResponse",
    "ElicitationWaitRegistry",
    "ErrorRecoveryManager",
    "ParsedResponse",
    "RecoveryContext",
    "RecoveryResult",
    "ResponseParser",
    "StepExecutionEngine",
    "classify_outcome",
    "evaluate_condition",
    "resolve_routing_value",
]
