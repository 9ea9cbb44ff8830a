"""Step execution engine.

This module provides the top-level driver that advances a workflow through
its step sequence. It composes the agent executor, the decision engine, the
elicitation handler, the error recovery manager, the checkpoint manager and
the message bus.

Workflows are driven by an explicit loop: one step per iteration, each under
the workflow's lock, so a long sequence never grows the call stack and a
cancellation can interleave between steps. Agent step results are classified
by an ordered outcome table (:data:`OUTCOME_RULES`).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar_agentflow.cache import CacheManager
from litestar_agentflow.communicator import AgentCommunicator
from litestar_agentflow.config import EngineConfig
from litestar_agentflow.core.definition import (
    AgentStep,
    DecisionStep,
    RoutingStep,
    WorkflowDefinition,
    parse_workflow_definition,
)
from litestar_agentflow.core.messages import ORCHESTRATOR, USER
from litestar_agentflow.core.models import (
    AgentExecutionResult,
    Artifact,
    ElicitationDetails,
    ErrorRecord,
    Workflow,
    WorkflowContext,
    utcnow,
)
from litestar_agentflow.core.types import ErrorCategory, MessageType, StepOutcome, WorkflowStatus
from litestar_agentflow.engine.agents import HUMAN_INPUT_ACTIONS, AgentExecutor
from litestar_agentflow.engine.batch import BatchItemResult, run_in_batches
from litestar_agentflow.engine.checkpoints import (
    RESUME_FROM_ROLLBACK,
    WORKFLOW_COMPLETED,
    WORKFLOW_INITIALIZED,
    CheckpointManager,
    agent_checkpoint_type,
)
from litestar_agentflow.engine.conditions import (
    ENHANCEMENT_CLASSIFICATION,
    classify_enhancement_scope,
    evaluate_condition,
    resolve_routing_value,
)
from litestar_agentflow.engine.decisions import DecisionEngine
from litestar_agentflow.engine.elicitation import ElicitationHandler
from litestar_agentflow.engine.recovery import ErrorRecoveryManager, RecoveryContext
from litestar_agentflow.engine.waits import ElicitationWaitRegistry
from litestar_agentflow.exceptions import (
    CheckpointError,
    ElicitationError,
    FailFastError,
    InvalidWorkflowStateError,
    StepExecutionError,
    StepRequirementsError,
    WorkflowNotFoundError,
)

if TYPE_CHECKING:
    from litestar_agentflow.config import ConfigurationManager
    from litestar_agentflow.core.definition import Step
    from litestar_agentflow.core.messages import Message
    from litestar_agentflow.core.protocols import AgentCatalog, CompletionService, EventBroadcaster, WorkflowStore

__all__ = ["OUTCOME_RULES", "OutcomeFacts", "StepExecutionEngine", "classify_outcome"]

logger = logging.getLogger(__name__)

CLASSIFY_ACTION = "classify enhancement scope"
AGENT_SELECTION = "agent_selection"


@dataclass(frozen=True)
class OutcomeFacts:
    """Workflow facts the outcome table consults besides the result.

    Attributes:
        resuming: The step is re-running right after the user answered.
        human_input_action: The step's action is one that needs the user's input.
        has_response: A user response is already recorded for this step.
        uses_template: The step references an external template.
    """

    resuming: bool
    human_input_action: bool
    has_response: bool
    uses_template: bool


OutcomeRule = tuple[str, Callable[[AgentExecutionResult, OutcomeFacts], bool], StepOutcome]

OUTCOME_RULES: tuple[OutcomeRule, ...] = (
    # A resumed step advances on success and only re-elicits on an explicit request.
    ("resumed_success", lambda result, facts: facts.resuming and result.success, StepOutcome.SUCCESS),
    (
        "resumed_explicit_request",
        lambda result, facts: facts.resuming and result.explicitly_requests_elicitation,
        StepOutcome.ELICITATION,
    ),
    ("resumed_timeout", lambda result, facts: facts.resuming and result.timed_out, StepOutcome.TIMED_OUT),
    ("resumed_failure", lambda result, facts: facts.resuming, StepOutcome.FAILURE),
    ("explicit_request", lambda result, facts: result.explicitly_requests_elicitation, StepOutcome.ELICITATION),
    ("timeout", lambda result, facts: result.timed_out, StepOutcome.TIMED_OUT),
    ("success", lambda result, facts: result.success, StepOutcome.SUCCESS),
    (
        "human_input_failure",
        lambda result, facts: facts.human_input_action and not facts.has_response,
        StepOutcome.ELICITATION,
    ),
    (
        "missing_template",
        lambda result, facts: result.template_missing and facts.uses_template,
        StepOutcome.ELICITATION,
    ),
    ("failure", lambda result, facts: True, StepOutcome.FAILURE),
)
"""Ordered (name, predicate, outcome) rows; the first matching row wins."""


def classify_outcome(result: AgentExecutionResult, facts: OutcomeFacts) -> StepOutcome:
    """Classify an agent execution result by the first matching rule."""
    for name, predicate, outcome in OUTCOME_RULES:
        if predicate(result, facts):
            logger.debug("Agent result classified as %s by rule %s", outcome, name)
            return outcome
    return StepOutcome.FAILURE


def _artifact_type(step: AgentStep) -> str:
    names = f"{step.creates or ''} {step.action}".lower()
    return "classification" if "classif" in names else "document"


class StepExecutionEngine:
    """Drives workflows through their step sequence.

    The engine holds at most one in-memory representation of each active
    workflow and serializes every mutation of a workflow behind a per-id
    lock. Distinct workflows run concurrently.

    Attributes:
        store: Workflow store state is persisted to between steps.
        communicator: Message bus for activation, completion, error and progress messages.
        engine_config: Runtime options.
        cache: Per-instance caches.
        recovery: Error recovery manager.
        checkpoints: Checkpoint manager.
        elicitation: Elicitation handler.
        waits: Registry of pending user-response waits.
        decisions: Decision engine.
        agents: Agent step executor.

    Example:
        >>> engine = StepExecutionEngine(store, catalog, completion)
        >>> workflow = await engine.start_workflow(definition, "Add CSV export to reports")
        >>> if workflow.status == WorkflowStatus.PAUSED_FOR_ELICITATION:
        ...     workflow = await engine.resume_with_response(workflow.id, "1")
    """

    def __init__(
        self,
        store: WorkflowStore,
        catalog: AgentCatalog,
        completion: CompletionService,
        *,
        broadcaster: EventBroadcaster | None = None,
        communicator: AgentCommunicator | None = None,
        config: ConfigurationManager | None = None,
        engine_config: EngineConfig | None = None,
        cache: CacheManager | None = None,
        recovery: ErrorRecoveryManager | None = None,
        waits: ElicitationWaitRegistry | None = None,
    ) -> None:
        """Initialize the engine and the components it owns.

        Args:
            store: Workflow store.
            catalog: Agent catalog.
            completion: Completion service.
            broadcaster: Event broadcaster for real-time push.
            communicator: Message bus; one is built on ``store`` and ``broadcaster`` if omitted.
            config: Loaded configuration manager (templates, elicitation methods).
            engine_config: Runtime options.
            cache: Cache manager; a fresh one per engine if omitted.
            recovery: Error recovery manager; built from ``engine_config`` if omitted.
            waits: Wait registry; built from ``engine_config`` if omitted.
        """
        self.store = store
        self.engine_config = engine_config or EngineConfig()
        self.communicator = communicator or AgentCommunicator(store=store, broadcaster=broadcaster)
        self.cache = cache or CacheManager()
        self.recovery = recovery or ErrorRecoveryManager(
            max_retry_attempts=self.engine_config.max_retry_attempts,
            base_delay=self.engine_config.retry_base_delay,
            max_delay=self.engine_config.retry_max_delay,
        )
        self.checkpoints = CheckpointManager(
            store,
            enabled=self.engine_config.checkpoint_enabled,
            max_checkpoints=self.engine_config.max_checkpoints,
        )
        self.elicitation = ElicitationHandler(config)
        self.waits = waits or ElicitationWaitRegistry(
            broadcaster=broadcaster,
            default_timeout=self.engine_config.elicitation_timeout,
            stale_age=self.engine_config.stale_wait_age,
        )
        self.decisions = DecisionEngine(catalog, completion, self.communicator, store, self.engine_config)
        self.agents = AgentExecutor(catalog, completion, self.cache, config, self.engine_config)
        self._workflows: dict[str, Workflow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, workflow_id: str) -> AsyncIterator[None]:
        """Hold a workflow's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        self._lock_users[workflow_id] = self._lock_users.get(workflow_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                del self._locks[workflow_id]

    # Lifecycle

    async def start_workflow(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        user_prompt: str,
        user_id: str | None = None,
        workflow_id: str | None = None,
        checkpoint_enabled: bool = True,
    ) -> Workflow:
        """Create a workflow run and drive it until it pauses or finishes.

        Args:
            definition: Parsed definition, or a raw definition mapping.
            user_prompt: The user's request.
            user_id: User starting the run.
            workflow_id: Explicit run id; a UUID is generated if omitted.
            checkpoint_enabled: Whether this run takes checkpoints.

        Returns:
            The workflow in its resulting status.

        Raises:
            WorkflowValidationError: If a raw definition does not parse.
            FailFastError: If the completion service is not configured.
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = parse_workflow_definition(definition)

        workflow = Workflow(
            id=workflow_id or str(uuid4()),
            title=definition.title,
            sequence=definition.sequence,
            context=WorkflowContext(user_prompt=user_prompt),
            metadata={**definition.metadata, "definitionId": definition.id, "description": definition.description},
            user_id=user_id,
            checkpoint_enabled=checkpoint_enabled,
        )
        async with self._lock(workflow.id):
            self._workflows[workflow.id] = workflow
            await self._save(workflow)
            workflow.status = WorkflowStatus.RUNNING
            workflow.started_at = utcnow()
            await self._save(workflow)
            await self.checkpoints.create(workflow, WORKFLOW_INITIALIZED, f"Workflow {definition.id} started")
            logger.info("Started workflow %s (%s, %d steps)", workflow.id, definition.id, len(workflow.sequence))
            first_agent = workflow.sequence[0].agent_id if workflow.sequence else ORCHESTRATOR
            await self._send(
                workflow,
                MessageType.ACTIVATION,
                {
                    "message": f"Starting workflow: {workflow.title}",
                    "type": "workflow_started",
                    "totalSteps": len(workflow.sequence),
                },
                recipient=first_agent,
            )
        return await self._run(workflow.id)

    async def execute_next_step(self, workflow_id: str) -> Workflow:
        """Execute exactly one step of a running workflow.

        Completes the workflow when no step is left.

        Raises:
            InvalidWorkflowStateError: If the workflow is not running.
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.RUNNING:
            raise InvalidWorkflowStateError(workflow_id, workflow.status, WorkflowStatus.RUNNING)
        return await self._advance_once(workflow_id, resuming=False)

    async def resume_with_response(self, workflow_id: str, response: Any, user_id: str | None = None) -> Workflow:
        """Answer the outstanding elicitation and continue the workflow.

        Args:
            workflow_id: The paused workflow.
            response: The user's answer: a number, a string, or a mapping with
                ``selection`` or ``text``.
            user_id: User answering.

        Returns:
            The workflow in its resulting status.

        Raises:
            InvalidWorkflowStateError: If the workflow is not paused for elicitation.
            InvalidElicitationSelectionError: If a numbered answer has no method behind it.
                The workflow stays paused.
        """
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            details = workflow.elicitation_details
            if workflow.status != WorkflowStatus.PAUSED_FOR_ELICITATION or details is None:
                raise InvalidWorkflowStateError(workflow_id, workflow.status, WorkflowStatus.PAUSED_FOR_ELICITATION)

            step = workflow.sequence[details.step]
            if details.kind == AGENT_SELECTION:
                self._record_agent_selection(workflow, details, response)
            else:
                self._record_section_response(workflow, step, details, response)

            workflow.elicitation_details = None
            workflow.status = WorkflowStatus.RUNNING
            if user_id:
                workflow.metadata["lastRespondedBy"] = user_id
            await self._save(workflow)
            logger.info("Resumed workflow %s at step %d", workflow.id, workflow.current_step)
        return await self._run(workflow_id, resuming=True)

    async def resume_from_rollback(self, workflow_id: str) -> Workflow:
        """Continue a rolled-back workflow from its restored step.

        Raises:
            InvalidWorkflowStateError: If the workflow is not rolled back.
        """
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow.status != WorkflowStatus.ROLLED_BACK:
                raise InvalidWorkflowStateError(workflow_id, workflow.status, WorkflowStatus.ROLLED_BACK)
            workflow.status = WorkflowStatus.RUNNING
            await self._save(workflow)
            await self.checkpoints.create(
                workflow, RESUME_FROM_ROLLBACK, f"Resuming workflow from step {workflow.current_step}"
            )
            logger.info("Resuming workflow %s from rollback at step %d", workflow.id, workflow.current_step)
        return await self._run(workflow_id)

    async def rollback_to_checkpoint(self, workflow_id: str, checkpoint_id: str) -> Workflow:
        """Manually restore a workflow from one of its checkpoints.

        Raises:
            InvalidWorkflowStateError: If the workflow was cancelled.
            CheckpointError: If the checkpoint does not exist or cannot be applied.
        """
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow.status == WorkflowStatus.CANCELLED:
                raise InvalidWorkflowStateError(workflow_id, workflow.status)
            checkpoint = await self.checkpoints.get_checkpoint(workflow_id, checkpoint_id)
            try:
                await self.checkpoints.rollback(workflow, checkpoint)
            except CheckpointError:
                await self._save(workflow)
                raise
            workflow.completed_at = None
            self._workflows[workflow.id] = workflow
            await self._save(workflow)
            await self._send(
                workflow,
                MessageType.WORKFLOW_PROGRESS,
                {
                    "message": f"Workflow restored to step {checkpoint.step}",
                    "type": "manual_rollback",
                    "checkpointId": checkpoint.id,
                    "canResume": True,
                },
            )
            return workflow

    async def cancel(self, workflow_id: str, reason: str = "Cancelled by user") -> Workflow:
        """Cancel a workflow and reject its pending user-response waits.

        Raises:
            InvalidWorkflowStateError: If the workflow already finished.
        """
        self.waits.cancel_workflow_responses(workflow_id, reason)
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow.status.is_terminal:
                raise InvalidWorkflowStateError(workflow_id, workflow.status, "an active status")
            workflow.status = WorkflowStatus.CANCELLED
            workflow.completed_at = utcnow()
            workflow.elicitation_details = None
            workflow.metadata["cancellation"] = {"reason": reason, "timestamp": workflow.completed_at.isoformat()}
            await self._save(workflow)
            logger.info("Cancelled workflow %s: %s", workflow_id, reason)
            await self._send(
                workflow,
                MessageType.WORKFLOW_PROGRESS,
                {"message": f"Workflow cancelled: {reason}", "type": "cancelled", "category": "workflow"},
            )
            self._release(workflow)
            return workflow

    async def cancel_many(self, workflow_ids: Sequence[str], reason: str = "Cancelled by user") -> list[BatchItemResult[str]]:
        """Cancel several workflows in bounded concurrent batches."""
        return await run_in_batches(
            workflow_ids,
            lambda workflow_id: self.cancel(workflow_id, reason),
            batch_size=self.engine_config.batch_size,
        )

    async def acknowledge_errors(self, workflow_id: str, user_id: str | None = None) -> int:
        """Mark a workflow's error records as seen.

        Returns:
            Number of error records acknowledged.
        """
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            workflow.metadata["errorsAcknowledged"] = {
                "count": len(workflow.errors),
                "by": user_id,
                "timestamp": utcnow().isoformat(),
            }
            await self._save(workflow)
            return len(workflow.errors)

    async def acknowledge_errors_many(
        self, workflow_ids: Sequence[str], user_id: str | None = None
    ) -> list[BatchItemResult[str]]:
        """Acknowledge the errors of several workflows in bounded concurrent batches."""
        return await run_in_batches(
            workflow_ids,
            lambda workflow_id: self.acknowledge_errors(workflow_id, user_id),
            batch_size=self.engine_config.batch_size,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """Return the in-memory workflow, loading it from the store if needed.

        Raises:
            WorkflowNotFoundError: If neither memory nor the store has it.
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is not None:
            return workflow
        workflow = await self.store.find(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.status.is_terminal:
            self._workflows[workflow_id] = workflow
        return workflow

    async def get_status(self, workflow_id: str) -> dict[str, Any]:
        """Summarize a workflow for status displays."""
        workflow = await self.get_workflow(workflow_id)
        details = workflow.elicitation_details
        return {
            "workflowId": workflow.id,
            "title": workflow.title,
            "status": workflow.status.value,
            "currentStep": workflow.current_step,
            "totalSteps": len(workflow.sequence),
            "progress": workflow.progress,
            "currentAgent": workflow.current_agent,
            "elicitationDetails": details.to_dict() if details else None,
            "artifacts": list(workflow.context.artifacts),
            "routingDecisions": dict(workflow.context.routing_decisions),
            "errorCount": len(workflow.errors),
            "startedAt": workflow.started_at.isoformat() if workflow.started_at else None,
            "completedAt": workflow.completed_at.isoformat() if workflow.completed_at else None,
        }

    async def list_active(self) -> list[Workflow]:
        return await self.store.list_active()

    async def cleanup(self, checkpoint_days: int = 7) -> dict[str, int]:
        """Drop stale waits, old message history and old checkpoints."""
        return {
            "staleWaits": self.waits.sweep_stale(),
            "messages": self.communicator.cleanup(self.engine_config.message_retention_hours),
            "checkpoints": await self.checkpoints.cleanup(checkpoint_days),
        }

    # Driver loop

    async def _run(self, workflow_id: str, resuming: bool = False) -> Workflow:
        workflow = await self._advance_once(workflow_id, resuming=resuming)
        while workflow.status == WorkflowStatus.RUNNING:
            workflow = await self._advance_once(workflow_id, resuming=False)
        return workflow

    async def _advance_once(self, workflow_id: str, resuming: bool) -> Workflow:
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow.status != WorkflowStatus.RUNNING:
                return workflow
            if workflow.is_finished:
                await self._complete(workflow)
            else:
                await self._execute_step(workflow, resuming)
            return workflow

    async def _execute_step(self, workflow: Workflow, resuming: bool) -> None:
        step = workflow.sequence[workflow.current_step]
        if not evaluate_condition(step.condition, workflow.context):
            logger.info("Skipping step %d of workflow %s: condition %s not met", workflow.current_step, workflow.id, step.condition)
            await self._send_step_update(workflow, step, skipped=True)
            await self._advance(workflow)
            return

        try:
            if isinstance(step, RoutingStep):
                await self._execute_routing_step(workflow, step)
            elif isinstance(step, DecisionStep):
                await self.decisions.handle_decision_step(workflow, step)
            elif isinstance(step, AgentStep):
                await self._execute_agent_step(workflow, step, resuming)
            else:
                await self._send_step_update(workflow, step)
                await self._advance(workflow)
        except FailFastError as exc:
            await self._fail_fast(workflow, step, exc)
            raise
        except Exception as exc:
            await self._handle_step_exception(workflow, step, exc)

    # Step types

    async def _execute_agent_step(self, workflow: Workflow, step: AgentStep, resuming: bool) -> None:
        index = workflow.current_step
        agent_id = workflow.context.agent_overrides.get(index, step.agent_id)
        if step.wants_agent_selection and index not in workflow.context.agent_overrides:
            await self._pause_for_agent_selection(workflow, step)
            return

        missing = [name for name in step.requires if not workflow.context.has_artifact(name)]
        if missing:
            await self._fail_missing_requirements(workflow, step, agent_id, StepRequirementsError(step.label, missing))
            return

        workflow.current_agent = agent_id
        await self.checkpoints.create(workflow, agent_checkpoint_type(agent_id), f"Before {agent_id}: {step.label}")
        await self._send(
            workflow,
            MessageType.ACTIVATION,
            {"message": f"Activating {agent_id} for {step.label}", "action": step.action, "step": index},
            recipient=agent_id,
        )

        result = await self.agents.execute(workflow, step, agent_id)
        facts = OutcomeFacts(
            resuming=resuming,
            human_input_action=step.action in HUMAN_INPUT_ACTIONS,
            has_response=bool(workflow.context.responses_for_step(index)),
            uses_template=bool(step.uses),
        )
        outcome = classify_outcome(result, facts)
        if outcome == StepOutcome.SUCCESS:
            await self._complete_agent_step(workflow, step, agent_id, result)
        elif outcome == StepOutcome.ELICITATION:
            await self._pause_for_elicitation(workflow, step, agent_id, result)
        elif outcome == StepOutcome.TIMED_OUT:
            await self._record_timeout(workflow, step, agent_id, result)
        else:
            await self._recover_agent_step(workflow, step, agent_id, result)

    async def _complete_agent_step(
        self, workflow: Workflow, step: AgentStep, agent_id: str, result: AgentExecutionResult
    ) -> None:
        index = workflow.current_step
        if step.creates:
            workflow.context.artifacts[step.creates] = Artifact(
                name=step.creates,
                type=_artifact_type(step),
                content=result.content,
                created_by=agent_id,
                step=index,
            )
        self.cache.add_agent_output(workflow.id, agent_id, {"step": index, "creates": step.creates})
        await self._send(
            workflow,
            MessageType.COMPLETION,
            {
                "message": f"{agent_id} completed {step.label}",
                "summary": result.content[:200],
                "artifact": step.creates,
                "step": index,
                "provider": result.provider,
            },
            sender=agent_id,
            recipient=ORCHESTRATOR,
        )
        workflow.current_agent = None
        await self._advance(workflow)

    async def _record_timeout(
        self, workflow: Workflow, step: AgentStep, agent_id: str, result: AgentExecutionResult
    ) -> None:
        message = result.error or f"Agent {agent_id} timed out"
        workflow.add_error(ErrorRecord(message=message, step=workflow.current_step, agent_id=agent_id, type="timeout"))
        await self._send(
            workflow,
            MessageType.ERROR,
            {"error": message, "message": f"{step.label} timed out and was skipped", "category": "timeout"},
            sender=agent_id,
            recipient=USER,
        )
        workflow.current_agent = None
        await self._advance(workflow)

    async def _recover_agent_step(
        self, workflow: Workflow, step: AgentStep, agent_id: str, result: AgentExecutionResult
    ) -> None:
        error: BaseException = result.exception or StepExecutionError(step.label, result.error)

        async def retry() -> AgentExecutionResult:
            again = await self.agents.execute(workflow, step, agent_id)
            if not again.success:
                raise again.exception or StepExecutionError(step.label, again.error)
            return again

        recovery = await self.recovery.handle_error(
            error,
            RecoveryContext(
                retry_callback=retry,
                workflow_id=workflow.id,
                step=workflow.current_step,
                agent_id=agent_id,
                user_prompt=workflow.context.user_prompt,
                extra={"action": step.action},
            ),
        )
        if recovery.retried and isinstance(recovery.result, AgentExecutionResult):
            await self._complete_agent_step(workflow, step, agent_id, recovery.result)
            return
        if recovery.success and recovery.action == "skip_to_next_step":
            workflow.add_error(
                ErrorRecord(
                    message=f"Skipped after failure: {error}",
                    step=workflow.current_step,
                    agent_id=agent_id,
                    type="skipped",
                    category=recovery.category.value,
                )
            )
            workflow.current_agent = None
            await self._advance(workflow)
            return
        if recovery.success and recovery.requires_retry:
            again = await self.agents.execute(workflow, step, agent_id, **recovery.adjusted_context)
            if again.success:
                await self._complete_agent_step(workflow, step, agent_id, again)
                return
            error = again.exception or StepExecutionError(step.label, again.error)

        workflow.status = WorkflowStatus.ERROR
        workflow.completed_at = utcnow()
        workflow.add_error(
            ErrorRecord(
                message=str(error),
                step=workflow.current_step,
                agent_id=agent_id,
                type="execution_error",
                category=recovery.category.value,
            )
        )
        await self._save(workflow)
        logger.info("Workflow %s failed at step %d: %s", workflow.id, workflow.current_step, error)
        await self._send(
            workflow,
            MessageType.ERROR,
            {
                "error": str(error),
                "message": recovery.user_message or recovery.message or str(error),
                "category": recovery.category.value,
                "action": recovery.action,
                "strategy": recovery.strategy,
            },
            sender=agent_id,
            recipient=USER,
        )
        self._release(workflow)

    async def _execute_routing_step(self, workflow: Workflow, step: RoutingStep) -> None:
        value = resolve_routing_value(step, workflow.context)
        route = step.routes.get(value)
        if route is None:
            logger.warning("Routing value %s has no route in step %d of %s", value, workflow.current_step, workflow.id)
        await self._send(
            workflow,
            MessageType.WORKFLOW_PROGRESS,
            {"message": f"Routing: {value}", "type": "routing", "decisionKey": step.based_on, "decision": value},
        )
        if route is not None and route.is_terminal:
            workflow.metadata["completedVia"] = {"route": value, "goto": route.goto}
            await self._complete(workflow, f"Completed via {value} route")
            return
        await self._advance(workflow)

    # Elicitation

    async def _pause_for_elicitation(
        self, workflow: Workflow, step: AgentStep, agent_id: str, result: AgentExecutionResult
    ) -> None:
        data = result.elicitation_data
        if result.template_missing:
            instruction = f"The template '{step.uses}' could not be loaded. Please provide the content for {step.label}."
        else:
            instruction = data.get("instruction") or result.content or f"Please provide input for: {step.label}"
        details = ElicitationDetails(
            section_title=data.get("sectionTitle") or step.label,
            instruction=instruction,
            agent_id=agent_id,
            step=workflow.current_step,
            section_id=data.get("sectionId") or step.creates or step.key,
            command=step.command,
            uses=step.uses,
            content=result.content or None,
            requires_method_selection=data.get("requiresMethodSelection"),
        )
        details.request = self.elicitation.prepare_request(details, data.get("agentName") or agent_id)
        await self._pause(workflow, details, category="template" if result.template_missing else "elicitation")

    async def _pause_for_agent_selection(self, workflow: Workflow, step: AgentStep) -> None:
        instruction = f"Which agent should perform '{step.label}'?"
        details = ElicitationDetails(
            section_title="Agent Selection",
            instruction=instruction,
            agent_id=ORCHESTRATOR,
            step=workflow.current_step,
            section_id=step.key,
            kind=AGENT_SELECTION,
            request={
                "type": AGENT_SELECTION,
                "title": "Agent Selection",
                "instruction": instruction,
                "expectsTextResponse": True,
                "requiresNumberedSelection": False,
                "acceptsFreeText": True,
            },
        )
        await self._pause(workflow, details, category=AGENT_SELECTION)

    async def _pause(self, workflow: Workflow, details: ElicitationDetails, category: str) -> None:
        workflow.status = WorkflowStatus.PAUSED_FOR_ELICITATION
        workflow.elicitation_details = details
        message = await self._send(
            workflow,
            MessageType.ELICITATION_REQUEST,
            {
                "message": details.instruction,
                "sectionTitle": details.section_title,
                "instruction": details.instruction,
                "type": details.request.get("type", category),
                "category": category,
                "elicitationDetails": details.to_dict(),
            },
            sender=details.agent_id,
            recipient=USER,
        )
        details.message_id = message.id
        await self._save(workflow)
        logger.info("Workflow %s paused for %s at step %d", workflow.id, category, details.step)

    def _record_agent_selection(self, workflow: Workflow, details: ElicitationDetails, response: Any) -> None:
        answer = (response.get("text") or response.get("selection")) if isinstance(response, Mapping) else response
        agent_id = str(answer or "").strip()
        if not agent_id:
            msg = "Agent selection requires an agent id"
            raise ElicitationError(msg)
        workflow.context.agent_overrides[details.step] = agent_id
        workflow.context.elicitation_history.append(
            {
                "step": details.step,
                "kind": AGENT_SELECTION,
                "sectionId": details.section_id,
                "agentId": agent_id,
                "response": agent_id,
                "timestamp": utcnow().isoformat(),
            }
        )

    def _record_section_response(
        self, workflow: Workflow, step: Step, details: ElicitationDetails, response: Any
    ) -> None:
        processed = self.elicitation.process_response(response)
        context = workflow.context
        context.elicitation_history.append(
            {
                "step": details.step,
                "kind": "section",
                "sectionId": details.section_id,
                "agentId": details.agent_id,
                "instruction": details.instruction,
                "response": processed.response,
                "mode": processed.mode,
                "method": processed.method,
                "timestamp": utcnow().isoformat(),
            }
        )
        if step.action == CLASSIFY_ACTION or step.key == ENHANCEMENT_CLASSIFICATION:
            context.routing_decisions[ENHANCEMENT_CLASSIFICATION] = classify_enhancement_scope(processed.response)
        decision = self.decisions.process_elicitation_response(step, processed.response)
        if decision is not None:
            context.routing_decisions[self.decisions.decision_key(step)] = decision

    # Failure paths

    async def _fail_missing_requirements(
        self, workflow: Workflow, step: AgentStep, agent_id: str, exc: StepRequirementsError
    ) -> None:
        """Fail a step whose required artifacts do not exist.

        No retry or rollback can produce the artifacts, so the workflow goes
        straight to ERROR with the existing artifacts intact.
        """
        self.recovery.record_error(
            exc,
            RecoveryContext(
                workflow_id=workflow.id,
                step=workflow.current_step,
                agent_id=agent_id,
                extra={"action": step.action, "missing": exc.missing},
            ),
        )
        workflow.status = WorkflowStatus.ERROR
        workflow.completed_at = utcnow()
        workflow.current_agent = None
        workflow.add_error(
            ErrorRecord(
                message=str(exc),
                step=workflow.current_step,
                agent_id=agent_id,
                type="missing_requirements",
                category=ErrorCategory.WORKFLOW.value,
            )
        )
        await self._save(workflow)
        logger.info("Workflow %s failed at step %d: missing %s", workflow.id, workflow.current_step, exc.missing)
        await self._send(
            workflow,
            MessageType.ERROR,
            {
                "error": str(exc),
                "message": f"{step.label} needs {', '.join(exc.missing)}, which no earlier step produced",
                "category": ErrorCategory.WORKFLOW.value,
                "missing": exc.missing,
                "canResume": False,
            },
            recipient=USER,
        )
        self._release(workflow)

    async def _fail_fast(self, workflow: Workflow, step: Step, exc: FailFastError) -> None:
        workflow.status = WorkflowStatus.ERROR
        workflow.completed_at = utcnow()
        workflow.add_error(
            ErrorRecord(
                message=str(exc),
                step=workflow.current_step,
                agent_id=step.agent_id,
                type="fail_fast",
                category=ErrorCategory.INITIALIZATION.value,
            )
        )
        await self._save(workflow)
        logger.info("Workflow %s stopped: completion service is not configured", workflow.id)
        await self._send(
            workflow,
            MessageType.ERROR,
            {
                "error": str(exc),
                "message": "Please configure your API keys in the user settings, then restart the workflow.",
                "category": ErrorCategory.INITIALIZATION.value,
                "action": "configure_api_keys",
            },
            recipient=USER,
        )
        self._release(workflow)

    async def _handle_step_exception(self, workflow: Workflow, step: Step, exc: Exception) -> None:
        """Roll back to the last safe checkpoint, or fail the workflow and re-raise."""
        category = self.recovery.classify_error(exc)
        logger.error("Step %d of workflow %s raised %s: %s", workflow.current_step, workflow.id, type(exc).__name__, exc)
        failing_agent = workflow.context.agent_overrides.get(workflow.current_step, step.agent_id)
        target = await self.checkpoints.find_rollback_target(workflow, failing_agent if isinstance(step, AgentStep) else None)

        if target is not None:
            try:
                await self.checkpoints.rollback(workflow, target)
            except CheckpointError:
                await self._save(workflow)
                self._release(workflow)
                raise
            workflow.add_error(
                ErrorRecord(
                    message=str(exc),
                    step=target.step,
                    agent_id=failing_agent,
                    type="auto_rollback",
                    category=category.value,
                )
            )
            await self._save(workflow)
            await self._send(
                workflow,
                MessageType.ERROR,
                {
                    "error": str(exc),
                    "message": f"An error occurred, so the workflow was restored to step {target.step}. You can resume it.",
                    "category": category.value,
                    "type": "auto_rollback",
                    "checkpointId": target.id,
                    "canResume": True,
                },
                recipient=USER,
            )
            return

        workflow.status = WorkflowStatus.ERROR
        workflow.completed_at = utcnow()
        workflow.add_error(
            ErrorRecord(
                message=str(exc),
                step=workflow.current_step,
                agent_id=failing_agent,
                type="execution_error",
                category=category.value,
            )
        )
        await self._save(workflow)
        await self._send(
            workflow,
            MessageType.ERROR,
            {"error": str(exc), "message": f"{step.label} failed: {exc}", "category": category.value, "canResume": False},
            recipient=USER,
        )
        self._release(workflow)
        raise exc

    # Helpers

    async def _advance(self, workflow: Workflow) -> None:
        workflow.current_step += 1
        await self._save(workflow)
        await self._send(
            workflow,
            MessageType.WORKFLOW_PROGRESS,
            {
                "currentStep": workflow.current_step,
                "totalSteps": len(workflow.sequence),
                "progress": workflow.progress,
                "type": "progress",
            },
        )

    async def _complete(self, workflow: Workflow, message: str | None = None) -> None:
        workflow.status = WorkflowStatus.COMPLETED
        workflow.completed_at = utcnow()
        workflow.current_agent = None
        await self._save(workflow)
        await self.checkpoints.create(workflow, WORKFLOW_COMPLETED, "Workflow completed successfully")
        started = workflow.started_at or workflow.completed_at
        logger.info("Workflow %s completed", workflow.id)
        await self._send(
            workflow,
            MessageType.COMPLETION,
            {
                "message": message or "Workflow completed successfully",
                "type": "workflow_complete",
                "totalSteps": len(workflow.sequence),
                "executionTime": (workflow.completed_at - started).total_seconds(),
                "artifactCount": len(workflow.context.artifacts),
            },
            recipient=USER,
        )
        self._release(workflow)

    async def _send_step_update(self, workflow: Workflow, step: Step, skipped: bool = False) -> None:
        content: dict[str, Any] = {
            "stepIndex": workflow.current_step,
            "stepName": step.label,
            "type": step.step_type.value,
            "message": step.notes or step.label,
        }
        if skipped:
            content.update(skipped=True, reason=f"Condition '{step.condition}' not met")
        await self._send(workflow, MessageType.WORKFLOW_STEP_UPDATE, content)

    async def _send(
        self,
        workflow: Workflow,
        message_type: MessageType,
        content: dict[str, Any],
        sender: str = ORCHESTRATOR,
        recipient: str = USER,
    ) -> Message:
        return await self.communicator.send_message(
            workflow.id,
            sender=sender,
            recipient=recipient,
            message_type=message_type,
            content=content,
        )

    async def _save(self, workflow: Workflow) -> None:
        await self.store.save(workflow.id, workflow.to_dict(), workflow.user_id)

    def _release(self, workflow: Workflow) -> None:
        """Drop in-memory state of a workflow that reached a terminal status."""
        self._workflows.pop(workflow.id, None)
        self.checkpoints.forget(workflow.id)
        self.cache.clear_workflow_state(workflow.id)
