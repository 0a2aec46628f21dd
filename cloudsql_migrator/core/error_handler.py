"""
Error categorisation and retry logic for the CloudSQL migrator.

``ErrorHandler`` turns an exception into an ``ErrorInfo`` (category,
severity, recovery strategies and remediation steps) that the batch
report and the logs use. ``RetryHandler`` retries connection attempts
with exponential backoff.
"""

import asyncio
import logging
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from .exceptions import (
    ApiDisabledError,
    AuthenticationFailedError,
    CompatibilityError,
    ConfigValidationError,
    ConnectionError,
    DatabaseOperationError,
    InstanceNotFoundError,
    InvalidProjectIdError,
    MigrationCancelledError,
    PermissionDeniedError,
    PhaseExecutionError,
    PostValidationError,
    UnreachableError,
)


class ErrorCategory(str, Enum):
    """What kind of problem an error is."""
    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    COMPATIBILITY = "compatibility"
    DATABASE = "database"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    MANUAL = "manual"
    ABORT = "abort"


@dataclass
class ErrorContext:
    """Where an error happened."""
    timestamp: datetime = field(default_factory=datetime.now)
    operation: Optional[str] = None
    phase: Optional[str] = None
    execution_id: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetryConfig:
    """Backoff policy: ``base_delay * exponential_base ** attempt`` capped at ``max_delay``.

    An empty ``retryable_exceptions`` list retries every exception.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


@dataclass
class ErrorInfo:
    """A categorised error with guidance for the operator."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    context: ErrorContext
    recovery_strategies: List[RecoveryStrategy]
    remediation_steps: List[str]
    traceback_str: str
    retry_count: int = 0
    is_recoverable: bool = True


@dataclass(frozen=True)
class _Rule:
    category: ErrorCategory
    severity: ErrorSeverity
    recoverable: bool = True


_UNKNOWN_RULE = _Rule(ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM)

# looked up along the exception's MRO, so the most specific class wins
ERROR_RULES: Dict[Type[BaseException], _Rule] = {
    ConfigValidationError: _Rule(ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, recoverable=False),
    InvalidProjectIdError: _Rule(ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, recoverable=False),
    ApiDisabledError: _Rule(ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH),
    AuthenticationFailedError: _Rule(ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH),
    PermissionDeniedError: _Rule(ErrorCategory.PERMISSION, ErrorSeverity.HIGH),
    ConnectionError: _Rule(ErrorCategory.CONNECTIVITY, ErrorSeverity.HIGH),
    CompatibilityError: _Rule(ErrorCategory.COMPATIBILITY, ErrorSeverity.HIGH, recoverable=False),
    DatabaseOperationError: _Rule(ErrorCategory.DATABASE, ErrorSeverity.CRITICAL),
    PostValidationError: _Rule(ErrorCategory.VALIDATION, ErrorSeverity.CRITICAL),
    PhaseExecutionError: _Rule(ErrorCategory.DATABASE, ErrorSeverity.HIGH),
    MigrationCancelledError: _Rule(ErrorCategory.CANCELLED, ErrorSeverity.LOW),
    TimeoutError: _Rule(ErrorCategory.CONNECTIVITY, ErrorSeverity.MEDIUM),
    FileNotFoundError: _Rule(ErrorCategory.CONFIGURATION, ErrorSeverity.MEDIUM),
    OSError: _Rule(ErrorCategory.RESOURCE, ErrorSeverity.MEDIUM),
}

RECOVERY_STRATEGIES: Dict[ErrorCategory, List[RecoveryStrategy]] = {
    ErrorCategory.CONFIGURATION: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
    ErrorCategory.CONNECTIVITY: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
    ErrorCategory.AUTHENTICATION: [RecoveryStrategy.MANUAL, RecoveryStrategy.RETRY],
    ErrorCategory.PERMISSION: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
    ErrorCategory.COMPATIBILITY: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
    ErrorCategory.DATABASE: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
    ErrorCategory.VALIDATION: [RecoveryStrategy.MANUAL, RecoveryStrategy.RETRY],
    ErrorCategory.CANCELLED: [RecoveryStrategy.RETRY, RecoveryStrategy.SKIP],
    ErrorCategory.RESOURCE: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
    ErrorCategory.UNKNOWN: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
}

REMEDIATION_STEPS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.CONFIGURATION: [
        "Check project ids, instance names and database selections",
        "Make sure schema-only and data-only are not combined",
        "Enable the Cloud SQL Admin API for the project if it is disabled",
    ],
    ErrorCategory.CONNECTIVITY: [
        "Check network connectivity to the instance private IP",
        "Verify authorized networks or start the Cloud SQL proxy",
        "Confirm the instance is running",
    ],
    ErrorCategory.AUTHENTICATION: [
        "Verify the database user and password",
        "Set PGPASSWORD_SOURCE / PGPASSWORD_TARGET or store the credential",
    ],
    ErrorCategory.PERMISSION: [
        "Grant the database user CONNECT and CREATEDB privileges",
        "Check the IAM roles of the calling account",
    ],
    ErrorCategory.COMPATIBILITY: [
        "Restore into a target running the same or a newer major version",
        "Use force compatibility only after testing the restore manually",
    ],
    ErrorCategory.DATABASE: [
        "Inspect pg_dump / pg_restore stderr in the task log",
        "Check free disk space in the backup directory",
        "Check for locks or active sessions on the target database",
    ],
    ErrorCategory.VALIDATION: [
        "Connect to the target database manually and inspect the restore",
        "Re-run the task once the target is reachable",
    ],
    ErrorCategory.CANCELLED: [
        "Re-run the cancelled task when ready",
    ],
    ErrorCategory.RESOURCE: [
        "Free disk space in the backup directory",
        "Check file permissions in the backup directory",
    ],
    ErrorCategory.UNKNOWN: [
        "Review the task log for additional context",
        "Re-run with verbose logging enabled",
    ],
}

_LOG_METHODS = {
    ErrorSeverity.CRITICAL: "critical",
    ErrorSeverity.HIGH: "error",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.LOW: "info",
}


class ErrorHandler:
    """
    Categorises errors and logs them with structured context.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _rule_for(error: BaseException) -> _Rule:
        for cls in type(error).__mro__:
            rule = ERROR_RULES.get(cls)
            if rule is not None:
                return rule
        return _UNKNOWN_RULE

    def categorize_error(self, error: Exception, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """
        Build the ErrorInfo for an exception.

        Args:
            error: The exception to categorise
            context: Where it happened

        Returns:
            ErrorInfo with category, severity and operator guidance
        """
        rule = self._rule_for(error)
        return ErrorInfo(
            error=error,
            category=rule.category,
            severity=rule.severity,
            context=context or ErrorContext(),
            recovery_strategies=list(RECOVERY_STRATEGIES.get(rule.category, [RecoveryStrategy.MANUAL])),
            remediation_steps=list(REMEDIATION_STEPS.get(rule.category, [])),
            traceback_str=traceback.format_exc(),
            is_recoverable=rule.recoverable,
        )

    async def handle_error(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> ErrorInfo:
        """Categorise and log an error; the retry count is attached when retrying."""
        error_info = self.categorize_error(error, context)
        if retry_config is not None:
            error_info.retry_count = getattr(error, '_retry_count', 0)
        self._log_error(error_info)
        return error_info

    def _log_error(self, error_info: ErrorInfo) -> None:
        context = error_info.context
        extra = {
            "error_type": type(error_info.error).__name__,
            "error_message": str(error_info.error),
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "operation": context.operation,
            "phase": context.phase,
            "execution_id": context.execution_id,
            "retry_count": error_info.retry_count,
            "is_recoverable": error_info.is_recoverable,
        }
        where = context.operation or "migration"
        if context.phase:
            where += f" ({context.phase})"

        log = getattr(self.logger, _LOG_METHODS[error_info.severity])
        log(f"{error_info.category.value.capitalize()} error in {where}: {error_info.error}", extra=extra)

        if error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            self.logger.debug("Error traceback", extra={"traceback": error_info.traceback_str})


class RetryHandler:
    """
    Runs a callable until it succeeds, backing off between attempts.
    """

    def __init__(
        self,
        error_handler: Optional[ErrorHandler] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def compute_delay(attempt: int, config: RetryConfig) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        delay = min(config.base_delay * config.exponential_base ** attempt, config.max_delay)
        if config.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    @staticmethod
    def _is_retryable(error: Exception, config: RetryConfig) -> bool:
        if not config.retryable_exceptions:
            return True
        return isinstance(error, tuple(config.retryable_exceptions))

    async def retry_with_backoff(
        self,
        func: Callable,
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: Optional[ErrorContext] = None,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        **kwargs
    ) -> Any:
        """
        Call ``func`` until it returns, at most ``max_attempts`` times.

        Args:
            func: Function or coroutine function to call
            retry_config: Backoff policy (defaults to RetryConfig())
            context: Passed to the error handler for every failure
            on_retry: Called with (attempt, error, delay) before each sleep

        Returns:
            Whatever ``func`` returns

        Raises:
            The first non-retryable exception, or the last one once
            attempts are exhausted. ``_retry_count`` on it holds the
            number of attempts made.
        """
        config = retry_config or RetryConfig()
        attempts = max(1, config.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                result = func(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result
                return result
            except Exception as e:
                e._retry_count = attempt
                await self.error_handler.handle_error(e, context, config)

                if not self._is_retryable(e, config):
                    self.logger.info(f"{type(e).__name__} is not retryable, giving up")
                    raise
                if attempt == attempts:
                    raise

                delay = self.compute_delay(attempt - 1, config)
                if on_retry:
                    on_retry(attempt, e, delay)
                self.logger.info(f"Attempt {attempt}/{attempts} failed, retrying in {delay:.2f}s")
                await self._sleep(delay)


def create_connection_retry_config(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> RetryConfig:
    """Retry policy for opening Cloud SQL connections.

    Unreachable and not-found instances are retried; authentication,
    permission and configuration problems fail on the first attempt.
    """
    return RetryConfig(
        max_attempts=max(1, max_attempts),
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=False,
        retryable_exceptions=[UnreachableError, InstanceNotFoundError, TimeoutError, OSError],
    )
