"""Error classification and recovery.

Every failure the engine cannot handle inline passes through the
:class:`ErrorRecoveryManager`: the error is classified by an ordered table of
patterns, given a severity, matched to a recovery strategy (escalating along
the category's strategy list as the same error recurs) and the strategy is
executed. Transient failures are retried with exponential backoff; missing
credentials fail fast; everything else that cannot be recovered yields a
fallback response for the caller instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from litestar_agentflow.core.models import utcnow
from litestar_agentflow.core.types import ErrorCategory, RecoveryStrategy, Severity
from litestar_agentflow.exceptions import FailFastError, RecoveryError, RetryExhaustedError

__all__ = [
    "CATEGORY_PATTERNS",
    "CRITICAL_OVERRIDES",
    "STRATEGIES",
    "ErrorRecoveryManager",
    "RecoveryContext",
    "RecoveryResult",
    "error_fingerprint",
]

logger = logging.getLogger(__name__)

CATEGORY_PATTERNS: tuple[tuple[re.Pattern[str], ErrorCategory], ...] = (
    (
        re.compile(r"not initialized|api key|configure.*key|initialization failed|please call initialize", re.I),
        ErrorCategory.INITIALIZATION,
    ),
    (re.compile(r"network|connection|timeout|timed out|ENOTFOUND|ECONNREFUSED", re.I), ErrorCategory.NETWORK),
    (re.compile(r"ai service|openai|anthropic|rate limit|quota|provider", re.I), ErrorCategory.SERVICE),
    (re.compile(r"validation|invalid|malformed|parse error", re.I), ErrorCategory.VALIDATION),
    (re.compile(r"auth|unauthorized|forbidden|token|credential", re.I), ErrorCategory.AUTHENTICATION),
    (re.compile(r"workflow|step|agent|routing", re.I), ErrorCategory.WORKFLOW),
    (re.compile(r"database|mongo|sql|query|integrity", re.I), ErrorCategory.PERSISTENCE),
    (re.compile(r"ENOENT|EACCES|file not found|no such file|permission denied", re.I), ErrorCategory.FILESYSTEM),
    (re.compile(r"memory|disk|cpu|resource", re.I), ErrorCategory.RESOURCE),
)
"""Ordered (pattern, category) pairs; the first match wins."""

STRATEGIES: dict[ErrorCategory, tuple[RecoveryStrategy, ...]] = {
    ErrorCategory.INITIALIZATION: (RecoveryStrategy.FAIL_FAST,),
    ErrorCategory.NETWORK: (
        RecoveryStrategy.RETRY_WITH_BACKOFF,
        RecoveryStrategy.SWITCH_ENDPOINT,
        RecoveryStrategy.OFFLINE_MODE,
    ),
    ErrorCategory.SERVICE: (
        RecoveryStrategy.RETRY_WITH_BACKOFF,
        RecoveryStrategy.SWITCH_PROVIDER,
        RecoveryStrategy.USE_FALLBACK_MODEL,
    ),
    ErrorCategory.VALIDATION: (
        RecoveryStrategy.SANITIZE_INPUT,
        RecoveryStrategy.USE_FALLBACK_FORMAT,
        RecoveryStrategy.REQUEST_USER_INPUT,
    ),
    ErrorCategory.AUTHENTICATION: (
        RecoveryStrategy.REFRESH_TOKEN,
        RecoveryStrategy.PROMPT_REAUTH,
        RecoveryStrategy.USE_FALLBACK_AUTH,
    ),
    ErrorCategory.WORKFLOW: (
        RecoveryStrategy.RESET_STEP,
        RecoveryStrategy.SKIP_STEP,
        RecoveryStrategy.USE_ALTERNATIVE_PATH,
    ),
    ErrorCategory.PERSISTENCE: (
        RecoveryStrategy.RETRY_CONNECTION,
        RecoveryStrategy.USE_CACHE,
        RecoveryStrategy.TEMPORARY_STORAGE,
    ),
    ErrorCategory.FILESYSTEM: (
        RecoveryStrategy.CREATE_MISSING_PATHS,
        RecoveryStrategy.USE_TEMP_LOCATION,
        RecoveryStrategy.REQUEST_PERMISSIONS,
    ),
    ErrorCategory.RESOURCE: (
        RecoveryStrategy.CLEAR_CACHE,
        RecoveryStrategy.REDUCE_COMPLEXITY,
        RecoveryStrategy.SPLIT_TASK,
    ),
    ErrorCategory.UNKNOWN: (RecoveryStrategy.RETRY_WITH_BACKOFF,),
}
"""Ordered strategy list per category; recurrences escalate along it."""

CRITICAL_OVERRIDES: dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.AUTHENTICATION: RecoveryStrategy.REFRESH_TOKEN,
    ErrorCategory.PERSISTENCE: RecoveryStrategy.RETRY_CONNECTION,
    ErrorCategory.WORKFLOW: RecoveryStrategy.RESET_STEP,
    ErrorCategory.SERVICE: RecoveryStrategy.SWITCH_PROVIDER,
}
"""Strategy forced for CRITICAL errors regardless of recurrence."""

SEVERITIES: dict[ErrorCategory, Severity] = {
    ErrorCategory.AUTHENTICATION: Severity.CRITICAL,
    ErrorCategory.PERSISTENCE: Severity.CRITICAL,
    ErrorCategory.WORKFLOW: Severity.HIGH,
    ErrorCategory.SERVICE: Severity.HIGH,
    ErrorCategory.NETWORK: Severity.MEDIUM,
    ErrorCategory.VALIDATION: Severity.MEDIUM,
}

RETRY_LIMITS: dict[RecoveryStrategy, int] = {
    RecoveryStrategy.RETRY_WITH_BACKOFF: 3,
    RecoveryStrategy.RETRY_CONNECTION: 3,
}

# (action, message, requires_retry) for strategies that adjust state and let the caller act.
ADVISORY_ACTIONS: dict[RecoveryStrategy, tuple[str, str, bool]] = {
    RecoveryStrategy.SWITCH_ENDPOINT: ("switch_endpoint", "Switching to an alternate service endpoint", True),
    RecoveryStrategy.OFFLINE_MODE: ("offline_mode", "Continuing in offline mode with cached data", False),
    RecoveryStrategy.SWITCH_PROVIDER: ("switch_provider", "Switching to an alternative AI provider", True),
    RecoveryStrategy.USE_FALLBACK_FORMAT: ("use_fallback_format", "Falling back to plain text output", True),
    RecoveryStrategy.REQUEST_USER_INPUT: ("request_user_input", "User input is needed to continue", False),
    RecoveryStrategy.REFRESH_TOKEN: ("refresh_auth_tokens", "Refreshing authentication tokens", True),
    RecoveryStrategy.PROMPT_REAUTH: ("prompt_reauth", "Please reconnect your account and try again", False),
    RecoveryStrategy.USE_FALLBACK_AUTH: ("use_fallback_auth", "Using fallback authentication", True),
    RecoveryStrategy.RESET_STEP: ("reset_current_step", "Resetting the current step", True),
    RecoveryStrategy.SKIP_STEP: ("skip_to_next_step", "Skipping the failing step", False),
    RecoveryStrategy.USE_ALTERNATIVE_PATH: ("route_to_alternative", "Routing to an alternative path", False),
    RecoveryStrategy.USE_CACHE: ("use_cache", "Serving from cache while storage is unavailable", False),
    RecoveryStrategy.TEMPORARY_STORAGE: ("temporary_storage", "Writing to temporary storage", True),
    RecoveryStrategy.CREATE_MISSING_PATHS: ("create_directories", "Creating missing directories", True),
    RecoveryStrategy.USE_TEMP_LOCATION: ("use_temp_location", "Writing to a temporary location", True),
    RecoveryStrategy.REQUEST_PERMISSIONS: ("request_permissions", "File permissions need to be granted", False),
    RecoveryStrategy.CLEAR_CACHE: ("clear_caches", "Clearing caches to free resources", True),
    RecoveryStrategy.SPLIT_TASK: ("split_task", "Splitting the task into smaller parts", False),
}

MAX_TRACKED_CONTEXTS = 5
TOP_ERRORS = 10


def error_fingerprint(message: str) -> str:
    """Normalize an error message so recurrences of the same error match.

    Digits runs become ``N``, quotes are dropped and the result is truncated
    to 100 characters.
    """
    normalized = re.sub(r"\d+", "N", message)
    normalized = re.sub(r"[\"'`]", "", normalized)
    return normalized[:100]


@dataclass
class RecoveryContext:
    """Inputs a strategy may need.

    Attributes:
        retry_callback: Re-runs the failed operation; raises on failure.
        workflow_id: Workflow being recovered.
        step: Index of the failing step.
        agent_id: Agent of the failing step.
        user_prompt: Prompt a sanitizing strategy may clean up.
        complexity: Current completion complexity hint.
        extra: Free-form details recorded with the error.
    """

    retry_callback: Callable[[], Awaitable[Any]] | None = None
    workflow_id: str | None = None
    step: int | None = None
    agent_id: str | None = None
    user_prompt: str | None = None
    complexity: str = "complex"
    extra: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "step": self.step,
            "agentId": self.agent_id,
            **self.extra,
        }


@dataclass
class RecoveryResult:
    """Outcome of a recovery attempt.

    Attributes:
        success: Whether the strategy recovered or produced a usable adjustment.
        strategy: Strategy applied, or ``fallback``.
        category: Category assigned to the error.
        severity: Severity assigned to the error.
        message: What the strategy did.
        attempts: Attempts made by retrying strategies.
        result: Value returned by a successful retry.
        action: Machine-readable action the caller should take.
        requires_retry: Whether the caller should run the operation again.
        adjusted_context: Context changes to apply before retrying.
        fallback: True when recovery failed and this is the fallback response.
        original_error: Message of the error being recovered.
        recovery_error: Message of the error raised while recovering.
        user_message: Explanation for the user.
    """

    success: bool
    strategy: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: Severity = Severity.LOW
    message: str = ""
    attempts: int = 0
    result: Any = None
    action: str | None = None
    requires_retry: bool = False
    adjusted_context: dict[str, Any] = field(default_factory=dict)
    fallback: bool = False
    original_error: str | None = None
    recovery_error: str | None = None
    user_message: str | None = None

    @property
    def retried(self) -> bool:
        """Whether a retry strategy actually re-ran the operation successfully."""
        return self.success and self.attempts > 0


@dataclass
class _ErrorStats:
    count: int = 0
    last_occurrence: datetime | None = None
    contexts: list[dict[str, Any]] = field(default_factory=list)


class ErrorRecoveryManager:
    """Classifies failures and executes recovery strategies.

    Attributes:
        max_retry_attempts: Attempts for strategies without their own limit.
        base_delay: Backoff base delay in seconds.
        max_delay: Backoff delay cap in seconds.

    Example:
        >>> manager = ErrorRecoveryManager(base_delay=0.1)
        >>> result = await manager.handle_error(
        ...     ConnectionError("network unreachable"),
        ...     RecoveryContext(retry_callback=call_again),
        ... )
        >>> result.success, result.attempts
        (True, 2)
    """

    def __init__(
        self,
        max_retry_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the recovery manager.

        Args:
            max_retry_attempts: Attempts for strategies without their own limit.
            base_delay: Backoff base delay in seconds.
            max_delay: Backoff delay cap in seconds.
            sleep: Coroutine used to wait between attempts.
        """
        self.max_retry_attempts = max_retry_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._error_history: dict[str, _ErrorStats] = {}

    def classify_error(self, error: BaseException | str) -> ErrorCategory:
        """Assign a category by the first matching pattern.

        Each pattern is tried against the error message, then the exception
        class name, then the message of a chained cause.
        """
        message = str(error)
        candidates = [message]
        if isinstance(error, BaseException):
            candidates.append(type(error).__name__)
            if error.__cause__ is not None:
                candidates.append(str(error.__cause__))
        for pattern, category in CATEGORY_PATTERNS:
            if any(pattern.search(candidate) for candidate in candidates):
                logger.debug("Classified error %r as %s", message[:100], category)
                return category
        return ErrorCategory.UNKNOWN

    @staticmethod
    def assess_severity(category: ErrorCategory) -> Severity:
        return SEVERITIES.get(category, Severity.LOW)

    def select_strategy(self, category: ErrorCategory, severity: Severity, fingerprint: str) -> RecoveryStrategy:
        """Pick a strategy for an error.

        CRITICAL errors use the category override. Otherwise the strategy at
        index ``min(occurrences, len - 1)`` of the category list is used, so a
        first occurrence that has not been recorded yet gets the first entry
        and recurrences escalate.
        """
        if severity == Severity.CRITICAL:
            return CRITICAL_OVERRIDES.get(category, RecoveryStrategy.RETRY_WITH_BACKOFF)
        strategies = STRATEGIES.get(category, STRATEGIES[ErrorCategory.UNKNOWN])
        stats = self._error_history.get(fingerprint)
        occurrences = stats.count - 1 if stats else 0
        return strategies[min(max(occurrences, 0), len(strategies) - 1)]

    def retry_limit(self, strategy: RecoveryStrategy) -> int:
        return RETRY_LIMITS.get(strategy, self.max_retry_attempts)

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay before ``attempt`` (1-based) with +/-25% jitter."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return max(0.0, delay + delay * random.uniform(-0.25, 0.25))

    def record_error(self, error: BaseException | str, context: RecoveryContext | None = None) -> str:
        """Track an error occurrence and return its fingerprint."""
        fingerprint = error_fingerprint(str(error))
        stats = self._error_history.setdefault(fingerprint, _ErrorStats())
        stats.count += 1
        stats.last_occurrence = utcnow()
        if context is not None:
            stats.contexts = [*stats.contexts, context.summary()][-MAX_TRACKED_CONTEXTS:]
        return fingerprint

    def get_error_stats(self) -> dict[str, Any]:
        """Summarize tracked errors, most frequent first."""
        ranked = sorted(self._error_history.items(), key=lambda item: item[1].count, reverse=True)
        return {
            "totalErrors": sum(stats.count for stats in self._error_history.values()),
            "uniqueErrors": len(self._error_history),
            "recurringErrors": sum(1 for stats in self._error_history.values() if stats.count > 1),
            "topErrors": [
                {
                    "fingerprint": fingerprint,
                    "count": stats.count,
                    "lastOccurrence": stats.last_occurrence.isoformat() if stats.last_occurrence else None,
                }
                for fingerprint, stats in ranked[:TOP_ERRORS]
            ],
        }

    def reset_error_tracking(self) -> None:
        self._error_history.clear()

    async def handle_error(self, error: BaseException, context: RecoveryContext | None = None) -> RecoveryResult:
        """Classify an error and run the selected strategy.

        Args:
            error: The failure to recover from.
            context: Inputs the strategies may need.

        Returns:
            The strategy result, or a fallback response when recovery failed.

        Raises:
            FailFastError: For initialization/credential failures; never retried.
        """
        context = context or RecoveryContext()
        fingerprint = self.record_error(error, context)
        category = self.classify_error(error)
        severity = self.assess_severity(category)
        strategy = self.select_strategy(category, severity, fingerprint)
        logger.info("Recovering from %s error (%s) with %s", category, severity, strategy)

        try:
            result = await self.execute_strategy(strategy, error, context)
        except FailFastError:
            raise
        except Exception as recovery_error:
            logger.warning("Recovery strategy %s failed: %s", strategy, recovery_error)
            return self.fallback_response(error, recovery_error, category, severity)
        result.category = category
        result.severity = severity
        result.original_error = str(error)
        return result

    async def execute_strategy(
        self,
        strategy: RecoveryStrategy,
        error: BaseException,
        context: RecoveryContext,
    ) -> RecoveryResult:
        """Run one strategy.

        Raises:
            FailFastError: For ``fail_fast``.
            RetryExhaustedError: When every retry attempt failed.
            RecoveryError: When a retry strategy has no callback.
        """
        if strategy == RecoveryStrategy.FAIL_FAST:
            raise FailFastError(error)
        if strategy in {RecoveryStrategy.RETRY_WITH_BACKOFF, RecoveryStrategy.RETRY_CONNECTION}:
            return await self._retry_with_backoff(strategy, context)
        if strategy == RecoveryStrategy.USE_FALLBACK_MODEL:
            return RecoveryResult(
                success=True,
                strategy=strategy.value,
                message="Using a simpler fallback model",
                action="use_fallback_model",
                requires_retry=True,
                adjusted_context={"complexity": "simple", "fallbackMode": True},
            )
        if strategy == RecoveryStrategy.REDUCE_COMPLEXITY:
            return RecoveryResult(
                success=True,
                strategy=strategy.value,
                message="Reducing request complexity",
                action="reduce_complexity",
                requires_retry=True,
                adjusted_context={"complexity": "simple"},
            )
        if strategy == RecoveryStrategy.SANITIZE_INPUT:
            prompt = context.user_prompt or ""
            sanitized = re.sub(r"\s+", " ", re.sub(r"[<>]", "", prompt)).strip()
            return RecoveryResult(
                success=True,
                strategy=strategy.value,
                message="Sanitized input and retrying",
                action="sanitize_input",
                requires_retry=True,
                adjusted_context={"userPrompt": sanitized},
            )
        advisory = ADVISORY_ACTIONS.get(strategy)
        if advisory is None:
            msg = f"Unknown recovery strategy: {strategy}"
            raise RecoveryError(msg)
        action, message, requires_retry = advisory
        return RecoveryResult(
            success=True,
            strategy=strategy.value,
            message=message,
            action=action,
            requires_retry=requires_retry,
        )

    async def _retry_with_backoff(self, strategy: RecoveryStrategy, context: RecoveryContext) -> RecoveryResult:
        if context.retry_callback is None:
            msg = "No retry callback provided"
            raise RecoveryError(msg)

        max_attempts = self.retry_limit(strategy)
        last_error: BaseException | None = None
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = self.compute_delay(attempt - 1)
                logger.debug("Retry attempt %d/%d in %.2fs", attempt, max_attempts, delay)
                await self._sleep(delay)
            try:
                result = await context.retry_callback()
            except Exception as exc:
                last_error = exc
                logger.debug("Retry attempt %d/%d failed: %s", attempt, max_attempts, exc)
                continue
            return RecoveryResult(
                success=True,
                strategy=strategy.value,
                message=f"Recovered after {attempt} attempt(s)",
                attempts=attempt,
                result=result,
                action="retried",
            )
        raise RetryExhaustedError(max_attempts, last_error)

    @staticmethod
    def fallback_response(
        error: BaseException,
        recovery_error: BaseException,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: Severity = Severity.LOW,
    ) -> RecoveryResult:
        """Build the response returned when no strategy could recover."""
        attempts = recovery_error.attempts if isinstance(recovery_error, RetryExhaustedError) else 0
        return RecoveryResult(
            success=False,
            strategy="fallback",
            category=category,
            severity=severity,
            message="Automatic recovery failed",
            attempts=attempts,
            action="user_intervention_required",
            fallback=True,
            original_error=str(error),
            recovery_error=str(recovery_error),
            user_message=(
                f"I encountered an issue that I couldn't automatically resolve: {error}. "
                "Please check the system and try again."
            ),
        )
