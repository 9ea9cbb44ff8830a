"""Tests for error classification and recovery."""

from __future__ import annotations

from typing import Any

import pytest

from litestar_agentflow.core.types import ErrorCategory, RecoveryStrategy, Severity
from litestar_agentflow.engine.recovery import ErrorRecoveryManager, RecoveryContext, error_fingerprint
from litestar_agentflow.exceptions import FailFastError


class FlakyOperation:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "recovered"


@pytest.fixture
def delays() -> list[float]:
    return []


@pytest.fixture
def manager(delays: list[float]) -> ErrorRecoveryManager:
    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    return ErrorRecoveryManager(base_delay=1.0, max_delay=10.0, sleep=record_sleep)


@pytest.mark.unit
class TestClassifyError:
    """Tests for the ordered category patterns."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (RuntimeError("AI service not initialized"), ErrorCategory.INITIALIZATION),
            (RuntimeError("API key missing"), ErrorCategory.INITIALIZATION),
            (ConnectionError("connection refused"), ErrorCategory.NETWORK),
            (RuntimeError("request timed out"), ErrorCategory.NETWORK),
            (RuntimeError("rate limit exceeded"), ErrorCategory.SERVICE),
            (ValueError("invalid payload"), ErrorCategory.VALIDATION),
            (PermissionError("unauthorized"), ErrorCategory.AUTHENTICATION),
            (RuntimeError("step failed"), ErrorCategory.WORKFLOW),
            (RuntimeError("integrity constraint violated"), ErrorCategory.PERSISTENCE),
            (OSError("no such file or directory"), ErrorCategory.FILESYSTEM),
            (MemoryError("out of memory"), ErrorCategory.RESOURCE),
            (RuntimeError("kaboom"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, manager: ErrorRecoveryManager, error: Exception, category: ErrorCategory) -> None:
        assert manager.classify_error(error) == category

    def test_first_pattern_wins(self, manager: ErrorRecoveryManager) -> None:
        """Test that an initialization message mentioning the network still fails fast."""
        assert manager.classify_error("API key rejected by network gateway") == ErrorCategory.INITIALIZATION

    def test_class_name_is_consulted(self, manager: ErrorRecoveryManager) -> None:
        class TimeoutWhileWaiting(Exception):
            pass

        assert manager.classify_error(TimeoutWhileWaiting("waited too long")) == ErrorCategory.NETWORK

    def test_chained_cause_is_consulted(self, manager: ErrorRecoveryManager) -> None:
        try:
            try:
                raise ConnectionError("connection reset")
            except ConnectionError as cause:
                raise RuntimeError("kaboom") from cause
        except RuntimeError as error:
            assert manager.classify_error(error) == ErrorCategory.NETWORK


@pytest.mark.unit
class TestStrategySelection:
    """Tests for severity and escalation."""

    def test_critical_uses_override(self, manager: ErrorRecoveryManager) -> None:
        strategy = manager.select_strategy(ErrorCategory.PERSISTENCE, Severity.CRITICAL, "fp")

        assert strategy == RecoveryStrategy.RETRY_CONNECTION

    def test_recurrence_escalates(self, manager: ErrorRecoveryManager) -> None:
        error = ValueError("invalid payload")
        fingerprint = error_fingerprint(str(error))

        manager.record_error(error)
        assert manager.select_strategy(ErrorCategory.VALIDATION, Severity.MEDIUM, fingerprint) == (
            RecoveryStrategy.SANITIZE_INPUT
        )
        manager.record_error(error)
        assert manager.select_strategy(ErrorCategory.VALIDATION, Severity.MEDIUM, fingerprint) == (
            RecoveryStrategy.USE_FALLBACK_FORMAT
        )
        for _ in range(3):
            manager.record_error(error)
        assert manager.select_strategy(ErrorCategory.VALIDATION, Severity.MEDIUM, fingerprint) == (
            RecoveryStrategy.REQUEST_USER_INPUT
        )

    def test_fingerprint_normalizes_numbers_and_quotes(self) -> None:
        assert error_fingerprint("Step '12' failed after 3 tries") == "Step N failed after N tries"


@pytest.mark.unit
class TestBackoff:
    """Tests for backoff delays."""

    def test_delay_is_capped_with_jitter(self, manager: ErrorRecoveryManager) -> None:
        for attempt in range(1, 8):
            nominal = min(2 ** (attempt - 1), 10.0)
            delay = manager.compute_delay(attempt)
            assert nominal * 0.75 <= delay <= nominal * 1.25


@pytest.mark.unit
@pytest.mark.asyncio
class TestHandleError:
    """Tests for handle_error."""

    async def test_network_error_retried_until_success(
        self,
        manager: ErrorRecoveryManager,
        delays: list[float],
    ) -> None:
        operation = FlakyOperation(failures=1)

        result = await manager.handle_error(ConnectionError("connection reset"), RecoveryContext(retry_callback=operation))

        assert result.success is True
        assert result.retried is True
        assert result.result == "recovered"
        assert result.attempts == 2
        assert result.category == ErrorCategory.NETWORK
        assert operation.calls == 2
        assert len(delays) == 1

    async def test_retry_exhaustion_returns_fallback(self, manager: ErrorRecoveryManager) -> None:
        operation = FlakyOperation(failures=10)

        result = await manager.handle_error(ConnectionError("connection reset"), RecoveryContext(retry_callback=operation))

        assert result.success is False
        assert result.fallback is True
        assert result.strategy == "fallback"
        assert result.action == "user_intervention_required"
        assert result.attempts == 3
        assert "connection reset" in (result.user_message or "")
        assert operation.calls == 3

    async def test_retry_without_callback_returns_fallback(self, manager: ErrorRecoveryManager) -> None:
        result = await manager.handle_error(RuntimeError("kaboom"))

        assert result.fallback is True
        assert result.recovery_error == "No retry callback provided"

    async def test_initialization_failure_fails_fast(self, manager: ErrorRecoveryManager) -> None:
        operation = FlakyOperation(failures=0)

        with pytest.raises(FailFastError):
            await manager.handle_error(RuntimeError("AI service not initialized"), RecoveryContext(retry_callback=operation))
        assert operation.calls == 0

    async def test_sanitize_input(self, manager: ErrorRecoveryManager) -> None:
        context = RecoveryContext(user_prompt="  Build <script>x</script>   now ")

        result = await manager.handle_error(ValueError("invalid payload"), context)

        assert result.requires_retry is True
        assert result.action == "sanitize_input"
        assert result.adjusted_context == {"userPrompt": "Build scriptx/script now"}

    @pytest.mark.parametrize(
        ("error", "action", "requires_retry"),
        [
            (RuntimeError("step failed"), "reset_current_step", True),
            (PermissionError("unauthorized"), "refresh_auth_tokens", True),
            (OSError("no such file or directory"), "create_directories", True),
            (MemoryError("out of memory"), "clear_caches", True),
        ],
    )
    async def test_advisory_strategies(
        self,
        manager: ErrorRecoveryManager,
        error: Exception,
        action: str,
        requires_retry: bool,
    ) -> None:
        result = await manager.handle_error(error)

        assert result.success is True
        assert result.retried is False
        assert result.action == action
        assert result.requires_retry is requires_retry

    async def test_resource_escalation_reduces_complexity(self, manager: ErrorRecoveryManager) -> None:
        error = MemoryError("out of memory")
        await manager.handle_error(error)

        result = await manager.handle_error(error)

        assert result.action == "reduce_complexity"
        assert result.adjusted_context == {"complexity": "simple"}

    async def test_error_stats(self, manager: ErrorRecoveryManager) -> None:
        context: dict[str, Any] = {"workflow_id": "wf-1", "step": 2, "agent_id": "pm"}
        for _ in range(2):
            await manager.handle_error(ValueError("invalid payload"), RecoveryContext(**context))
        await manager.handle_error(RuntimeError("step failed"))

        stats = manager.get_error_stats()

        assert stats["totalErrors"] == 3
        assert stats["uniqueErrors"] == 2
        assert stats["recurringErrors"] == 1
        assert stats["topErrors"][0]["fingerprint"] == "invalid payload"
        assert stats["topErrors"][0]["count"] == 2

        manager.reset_error_tracking()
        assert manager.get_error_stats()["totalErrors"] == 0
