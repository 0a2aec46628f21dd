"""
Tests for error categorisation and retry with backoff.
"""

import logging
from unittest.mock import AsyncMock, Mock

import pytest

from cloudsql_migrator.core.error_handler import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    RecoveryStrategy,
    RetryConfig,
    RetryHandler,
    create_connection_retry_config,
)
from cloudsql_migrator.core.exceptions import (
    AuthenticationFailedError,
    CompatibilityError,
    ConnectionError as MigratorConnectionError,
    ConfigValidationError,
    DatabaseOperationError,
    InvalidProjectIdError,
    MigrationCancelledError,
    UnreachableError,
)


class TestErrorHandler:
    """Test error categorisation."""

    def setup_method(self):
        self.logger = Mock(spec=logging.Logger)
        self.handler = ErrorHandler(self.logger)

    @pytest.mark.parametrize("error,category,recoverable", [
        (ConfigValidationError("bad"), ErrorCategory.CONFIGURATION, False),
        (InvalidProjectIdError("bad id"), ErrorCategory.CONFIGURATION, False),
        (AuthenticationFailedError("no password"), ErrorCategory.AUTHENTICATION, True),
        (UnreachableError("refused"), ErrorCategory.CONNECTIVITY, True),
        (MigratorConnectionError("connection dropped"), ErrorCategory.CONNECTIVITY, True),
        (CompatibilityError("15 > 14"), ErrorCategory.COMPATIBILITY, False),
        (DatabaseOperationError("pg_dump failed"), ErrorCategory.DATABASE, True),
        (MigrationCancelledError(), ErrorCategory.CANCELLED, True),
        (TimeoutError(), ErrorCategory.CONNECTIVITY, True),
        (ValueError("?"), ErrorCategory.UNKNOWN, True),
    ])
    def test_categorize_error(self, error, category, recoverable):
        info = self.handler.categorize_error(error)
        assert info.category == category
        assert info.is_recoverable is recoverable
        assert info.remediation_steps

    def test_subclass_falls_back_to_parent_mapping(self):
        class PeerReset(UnreachableError):
            pass

        info = self.handler.categorize_error(PeerReset("reset"))
        assert info.category == ErrorCategory.CONNECTIVITY
        assert RecoveryStrategy.RETRY in info.recovery_strategies

    @pytest.mark.asyncio
    async def test_handle_error_logs_with_context(self):
        context = ErrorContext(operation="migration_0_a_to_b", phase="Export", execution_id="exec-1")
        info = await self.handler.handle_error(DatabaseOperationError("dump failed"), context)

        assert info.severity == ErrorSeverity.CRITICAL
        self.logger.critical.assert_called_once()
        extra = self.logger.critical.call_args.kwargs["extra"]
        assert extra["phase"] == "Export"
        assert extra["operation"] == "migration_0_a_to_b"
        assert extra["error_type"] == "DatabaseOperationError"

    @pytest.mark.asyncio
    async def test_low_severity_logged_as_info(self):
        await self.handler.handle_error(MigrationCancelledError())
        self.logger.info.assert_called_once()
        self.logger.error.assert_not_called()


class TestRetryHandler:
    """Test retry with exponential backoff."""

    def setup_method(self):
        self.sleep = AsyncMock()
        self.handler = RetryHandler(ErrorHandler(Mock(spec=logging.Logger)), sleep=self.sleep)

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = AsyncMock(return_value="ok")
        assert await self.handler.retry_with_backoff(func, 1, key="v") == "ok"
        func.assert_awaited_once_with(1, key="v")
        self.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[UnreachableError("down"), UnreachableError("down"), "ok"])
        config = RetryConfig(max_attempts=3, base_delay=1.0)
        on_retry = Mock()

        result = await self.handler.retry_with_backoff(func, retry_config=config, on_retry=on_retry)

        assert result == "ok"
        assert [c.args[0] for c in self.sleep.await_args_list] == [1.0, 2.0]
        assert [c.args[0] for c in on_retry.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        errors = [UnreachableError("first"), UnreachableError("second")]
        func = AsyncMock(side_effect=errors)

        with pytest.raises(UnreachableError) as exc_info:
            await self.handler.retry_with_backoff(func, retry_config=RetryConfig(max_attempts=2))

        assert exc_info.value is errors[1]
        assert exc_info.value._retry_count == 2
        assert self.sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        func = AsyncMock(side_effect=AuthenticationFailedError("bad password"))
        config = RetryConfig(max_attempts=5, retryable_exceptions=[UnreachableError])

        with pytest.raises(AuthenticationFailedError):
            await self.handler.retry_with_backoff(func, retry_config=config)

        assert func.await_count == 1
        self.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_function(self):
        func = Mock(side_effect=[OSError("refused"), 42])
        result = await self.handler.retry_with_backoff(func, retry_config=RetryConfig(max_attempts=2))
        assert result == 42

    def test_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert RetryHandler.compute_delay(0, config) == 1.0
        assert RetryHandler.compute_delay(2, config) == 4.0
        assert RetryHandler.compute_delay(5, config) == 5.0

    def test_jitter_within_bounds(self):
        config = RetryConfig(base_delay=4.0, jitter=True)
        for _ in range(20):
            assert 2.0 <= RetryHandler.compute_delay(0, config) <= 4.0


class TestConnectionRetryConfig:
    """Test the connection retry configuration."""

    def test_defaults(self):
        config = create_connection_retry_config()
        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.jitter is False
        assert UnreachableError in config.retryable_exceptions
        assert not any(issubclass(AuthenticationFailedError, t) for t in config.retryable_exceptions)

    def test_at_least_one_attempt(self):
        assert create_connection_retry_config(max_attempts=0).max_attempts == 1
