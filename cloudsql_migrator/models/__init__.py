"""
Data models for the CloudSQL migrator.

This module contains the pydantic models for operation configuration,
migration mappings, execution state, results and engine settings.
"""

from cloudsql_migrator.models.config import (
    OperationConfig,
    OperationOptions,
    OperationMetadata,
    SourceConfig,
    TargetConfig,
    ValidationResult,
)
from cloudsql_migrator.models.execution_state import (
    ExecutionState,
    ExecutionStatus,
)
from cloudsql_migrator.models.mapping import (
    InstanceRef,
    MigrationMapping,
    MigrationMappingBuilder,
    MigrationPair,
    MigrationTask,
    VersionGroup,
)
from cloudsql_migrator.models.results import (
    BatchReport,
    BatchSummary,
    ConnectionTestResult,
    DatabaseDetail,
    DatabaseInfo,
    ExportResult,
    ImportResult,
    MigrationResult,
    TaskOutcome,
    TaskStatus,
)
from cloudsql_migrator.models.settings import (
    EngineSettings,
    load_settings,
)

__all__ = [
    # Operation configuration
    "OperationConfig",
    "OperationOptions",
    "OperationMetadata",
    "SourceConfig",
    "TargetConfig",
    "ValidationResult",
    # Execution state
    "ExecutionState",
    "ExecutionStatus",
    # Mappings
    "InstanceRef",
    "MigrationMapping",
    "MigrationMappingBuilder",
    "MigrationPair",
    "MigrationTask",
    "VersionGroup",
    # Results
    "BatchReport",
    "BatchSummary",
    "ConnectionTestResult",
    "DatabaseDetail",
    "DatabaseInfo",
    "ExportResult",
    "ImportResult",
    "MigrationResult",
    "TaskOutcome",
    "TaskStatus",
    # Settings
    "EngineSettings",
    "load_settings",
]
