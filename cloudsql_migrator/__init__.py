"""
CloudSQL Migrator

Orchestrates PostgreSQL database migrations between Google Cloud SQL
instances, from single source to target transfers up to batch topologies
with many sources and targets.
"""

__version__ = "1.0.0"

from cloudsql_migrator.models.config import OperationConfig
from cloudsql_migrator.models.mapping import MigrationMapping, MigrationMappingBuilder
from cloudsql_migrator.orchestrator.batch import BatchMigrationCoordinator
from cloudsql_migrator.orchestrator.engine import ModernMigrationEngine

__all__ = [
    "OperationConfig",
    "MigrationMapping",
    "MigrationMappingBuilder",
    "BatchMigrationCoordinator",
    "ModernMigrationEngine",
]
