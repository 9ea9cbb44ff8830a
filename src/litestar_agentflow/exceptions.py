"""Exception hierarchy for litestar-agentflow."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = (
    "AgentFlowError",
    "AgentNotFoundError",
    "CheckpointError",
    "ConfigurationError",
    "ElicitationCancelledError",
    "ElicitationError",
    "ElicitationTimeoutError",
    "FailFastError",
    "InvalidElicitationSelectionError",
    "InvalidWorkflowStateError",
    "MessageValidationError",
    "RecoveryError",
    "ResponseValidationError",
    "RetryExhaustedError",
    "StepExecutionError",
    "StepRequirementsError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
)


class AgentFlowError(Exception):
    """Base exception for all litestar-agentflow errors.

    All exceptions raised by litestar-agentflow inherit from this class so
    callers can catch every orchestration error with a single except clause.
    """


class ConfigurationError(AgentFlowError):
    """Raised when the system configuration is missing or invalid.

    The orchestrator must not start without a valid configuration, so every
    message is prefixed with ``CRITICAL:``.

    Attributes:
        path: The configuration file involved, if known.
        reason: Description of what went wrong.
    """

    def __init__(self, reason: str, path: str | None = None) -> None:
        """Initialize the exception with configuration details.

        Args:
            reason: Description of what went wrong.
            path: The configuration file involved, if known.
        """
        self.reason = reason
        self.path = path
        msg = f"CRITICAL: {reason}"
        if path:
            msg += f" ({path})"
        super().__init__(msg)


class WorkflowValidationError(AgentFlowError):
    """Raised when a workflow definition fails validation at parse time.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = list(errors)
        super().__init__(f"Workflow validation failed: {'; '.join(self.errors)}")


class WorkflowNotFoundError(AgentFlowError):
    """Raised when a workflow cannot be found in memory or in the store.

    Attributes:
        workflow_id: The ID of the workflow that was not found.
    """

    def __init__(self, workflow_id: str) -> None:
        """Initialize the exception with workflow details.

        Args:
            workflow_id: The ID of the workflow that was not found.
        """
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class InvalidWorkflowStateError(AgentFlowError):
    """Raised when an operation is not allowed in the workflow's current status.

    Attributes:
        workflow_id: The ID of the workflow.
        status: The status the workflow is currently in.
        expected: The status the operation requires, if a single one applies.
    """

    def __init__(self, workflow_id: str, status: str, expected: str | None = None) -> None:
        """Initialize the exception with workflow state details.

        Args:
            workflow_id: The ID of the workflow.
            status: The status the workflow is currently in.
            expected: The status the operation requires, if a single one applies.
        """
        self.workflow_id = workflow_id
        self.status = status
        self.expected = expected
        msg = f"Workflow '{workflow_id}' is {status}"
        if expected:
            msg += f", expected {expected}"
        super().__init__(msg)


class AgentNotFoundError(AgentFlowError):
    """Raised when the agent catalog has no persona for an agent id.

    Attributes:
        agent_id: The agent that could not be loaded.
    """

    def __init__(self, agent_id: str) -> None:
        """Initialize the exception with agent details.

        Args:
            agent_id: The agent that could not be loaded.
        """
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' not found")


class StepExecutionError(AgentFlowError):
    """Raised when a step fails to execute.

    Attributes:
        step_name: The name of the step that failed.
        cause: The underlying exception or error text, if any.
    """

    def __init__(self, step_name: str, cause: Exception | str | None = None) -> None:
        """Initialize the exception with step execution details.

        Args:
            step_name: The name of the step that failed.
            cause: The underlying exception or error text, if any.
        """
        self.step_name = step_name
        self.cause = cause
        msg = f"Step '{step_name}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class StepRequirementsError(StepExecutionError):
    """Raised when an agent step's required artifacts are missing.

    Attributes:
        missing: Names of the artifacts that do not exist yet.
    """

    def __init__(self, step_name: str, missing: Sequence[str]) -> None:
        """Initialize the exception with the missing artifact names.

        Args:
            step_name: The name of the step that could not run.
            missing: Names of the artifacts that do not exist yet.
        """
        self.missing = list(missing)
        super().__init__(step_name, f"requirements not met, missing {', '.join(self.missing)}")


class MessageValidationError(AgentFlowError):
    """Raised when a bus message is rejected before sending.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = list(errors)
        super().__init__(f"Invalid message: {'; '.join(self.errors)}")


class ElicitationError(AgentFlowError):
    """Base exception for elicitation related errors."""


class InvalidElicitationSelectionError(ElicitationError):
    """Raised when a numbered selection has no loaded method behind it.

    Attributes:
        selection: The option number the user picked.
    """

    def __init__(self, selection: int) -> None:
        """Initialize the exception with the selected option.

        Args:
            selection: The option number the user picked.
        """
        self.selection = selection
        super().__init__(f"Invalid elicitation selection: No method available for option {selection}")


class ElicitationTimeoutError(ElicitationError):
    """Raised when no response arrives for an elicitation wait in time.

    Attributes:
        message_id: The wait slot that expired.
        timeout: The timeout in seconds.
    """

    def __init__(self, message_id: str, timeout: float) -> None:
        """Initialize the exception with wait details.

        Args:
            message_id: The wait slot that expired.
            timeout: The timeout in seconds.
        """
        self.message_id = message_id
        self.timeout = timeout
        super().__init__(f"Response timeout for message '{message_id}' after {timeout:g}s")


class ElicitationCancelledError(ElicitationError):
    """Raised into an elicitation wait that was cancelled.

    Attributes:
        reason: Why the wait was cancelled.
    """

    def __init__(self, reason: str) -> None:
        """Initialize the exception with the cancellation reason.

        Args:
            reason: Why the wait was cancelled.
        """
        self.reason = reason
        super().__init__(f"Elicitation cancelled: {reason}")


class RecoveryError(AgentFlowError):
    """Base exception for errors raised by recovery strategies."""


class FailFastError(RecoveryError):
    """Raised by the ``fail_fast`` strategy; never retried.

    Attributes:
        original: The error that triggered the strategy.
    """

    def __init__(self, original: BaseException | str) -> None:
        """Initialize the exception with a user-actionable message.

        Args:
            original: The error that triggered the strategy.
        """
        self.original = original
        super().__init__(
            "AI Service initialization failed. Please configure your API keys in the user settings. "
            f"Error: {original}"
        )


class RetryExhaustedError(RecoveryError):
    """Raised when every retry attempt of a strategy has failed.

    Attributes:
        attempts: Number of attempts made.
        last_error: The error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        """Initialize the exception with attempt details.

        Args:
            attempts: Number of attempts made.
            last_error: The error raised by the final attempt.
        """
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All {attempts} retry attempts failed. Last error: {last_error}")


class CheckpointError(AgentFlowError):
    """Raised when a checkpoint cannot be created or restored."""


class ResponseValidationError(AgentFlowError):
    """Raised when a completion response cannot be used at all.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = list(errors)
        super().__init__(f"Response validation failed: {'; '.join(self.errors)}")
