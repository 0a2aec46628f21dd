"""
Custom exceptions for the CloudSQL migrator.

This module defines the exception hierarchy used by the mapping layer,
the connection manager, the migration engine and the batch coordinator.
"""

from typing import Any, Dict, List, Optional


class MigrationEngineError(Exception):
    """Base exception class for migrator errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigValidationError(MigrationEngineError):
    """Raised when an operation config or mapping fails validation."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class MappingConflictError(ConfigValidationError):
    """Raised when database names collide under the 'fail' conflict policy."""
    pass


class ConnectionError(MigrationEngineError):
    """Raised when a connection to a Cloud SQL instance cannot be established."""

    kind = "unreachable"

    def __init__(
        self,
        message: str,
        project: Optional[str] = None,
        instance: Optional[str] = None,
        attempts: int = 0,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.project = project
        self.instance = instance
        self.attempts = attempts


class PermissionDeniedError(ConnectionError):
    """The database user lacks the privileges to connect."""
    kind = "permission-denied"


class InstanceNotFoundError(ConnectionError):
    """The instance, host or database does not exist."""
    kind = "not-found"


class ApiDisabledError(ConnectionError):
    """The Cloud SQL Admin API is not enabled for the project."""
    kind = "api-disabled"


class InvalidProjectIdError(ConnectionError):
    """The project id does not follow the GCP naming rules."""
    kind = "invalid-project-id-format"


class AuthenticationFailedError(ConnectionError):
    """Password authentication failed or no password was available."""
    kind = "auth-failure"


class UnreachableError(ConnectionError):
    """The instance could not be reached (refused, timed out)."""
    kind = "unreachable"


class PhaseExecutionError(MigrationEngineError):
    """Raised when a migration phase fails."""

    def __init__(self, message: str, phase: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.phase = phase


class DiscoveryEmptyError(PhaseExecutionError):
    """Raised when discovery leaves no database to migrate."""
    pass


class DatabaseNotFoundError(PhaseExecutionError):
    """Raised when explicitly requested databases are missing on the source."""

    def __init__(self, message: str, missing: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.missing = missing or []


class PreflightError(PhaseExecutionError):
    """Raised when pre-flight connectivity checks fail."""
    pass


class DatabaseOperationError(PhaseExecutionError):
    """Raised when a dump or restore fails."""
    pass


class PostValidationError(PhaseExecutionError):
    """Raised when a migrated database cannot be reached on the target."""
    pass


class CompatibilityError(PhaseExecutionError):
    """Raised when source and target server versions are incompatible."""
    pass


class MigrationCancelledError(MigrationEngineError):
    """Raised when a migration observes a cancellation request."""

    def __init__(self, message: str = "Migration cancelled", phase: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.phase = phase


class ExecutionStateError(MigrationEngineError):
    """Raised on an invalid execution state transition."""
    pass


class SecurityError(MigrationEngineError):
    """Raised when the secret store cannot be used."""
    pass
