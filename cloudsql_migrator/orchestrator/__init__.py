"""
Migration orchestration.

This module provides the single-task migration engine and the batch
coordinator that runs many tasks with bounded parallelism.
"""

from cloudsql_migrator.orchestrator.batch import (
    BatchMigrationCoordinator,
    BatchOperation,
    BatchPhase,
)
from cloudsql_migrator.orchestrator.engine import (
    PHASES,
    MigrationPhase,
    ModernMigrationEngine,
)

__all__ = [
    "BatchMigrationCoordinator",
    "BatchOperation",
    "BatchPhase",
    "MigrationPhase",
    "ModernMigrationEngine",
    "PHASES",
]
