"""
Core module for the CloudSQL migrator.

This module contains the exception hierarchy, error categorisation
and retry logic used throughout the package.
"""

from cloudsql_migrator.core.exceptions import (
    MigrationEngineError,
    ConfigValidationError,
    MappingConflictError,
    ConnectionError,
    PermissionDeniedError,
    InstanceNotFoundError,
    ApiDisabledError,
    InvalidProjectIdError,
    AuthenticationFailedError,
    UnreachableError,
    PhaseExecutionError,
    DiscoveryEmptyError,
    DatabaseNotFoundError,
    PreflightError,
    DatabaseOperationError,
    PostValidationError,
    CompatibilityError,
    MigrationCancelledError,
    ExecutionStateError,
    SecurityError,
)

__all__ = [
    "MigrationEngineError",
    "ConfigValidationError",
    "MappingConflictError",
    "ConnectionError",
    "PermissionDeniedError",
    "InstanceNotFoundError",
    "ApiDisabledError",
    "InvalidProjectIdError",
    "AuthenticationFailedError",
    "UnreachableError",
    "PhaseExecutionError",
    "DiscoveryEmptyError",
    "DatabaseNotFoundError",
    "PreflightError",
    "DatabaseOperationError",
    "PostValidationError",
    "CompatibilityError",
    "MigrationCancelledError",
    "ExecutionStateError",
    "SecurityError",
]
