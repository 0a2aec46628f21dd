"""
Pytest configuration and fixtures for the CloudSQL migrator tests.

This module provides sample configurations and mocked collaborators
(connection manager, database operations) shared by the tests.
"""

import asyncio
from typing import List
from unittest.mock import AsyncMock, Mock

import pytest

from cloudsql_migrator.models.config import (
    OperationConfig,
    OperationMetadata,
    OperationOptions,
    SourceConfig,
    TargetConfig,
)
from cloudsql_migrator.models.results import (
    ConnectionTestResult,
    DatabaseInfo,
    ExportResult,
    ImportResult,
)
from cloudsql_migrator.models.settings import EngineSettings

MB = 1024 * 1024


@pytest.fixture
def operation_config() -> OperationConfig:
    """A migrate task for two explicit databases."""
    return OperationConfig(
        source=SourceConfig(
            project="source-project",
            instance="source-instance",
            password="source-secret",
            databases=["app", "analytics"],
        ),
        target=TargetConfig(
            project="target-project",
            instance="target-instance",
            password="target-secret",
        ),
        options=OperationOptions(retry_attempts=1),
        metadata=OperationMetadata(tool_name="gcp.cloudsql.migrate"),
    )


@pytest.fixture
def source_databases() -> List[DatabaseInfo]:
    return [
        DatabaseInfo(name="analytics", size_bytes=20 * MB, size_formatted="20.0 MB"),
        DatabaseInfo(name="app", size_bytes=10 * MB, size_formatted="10.0 MB"),
        DatabaseInfo(name="postgres", size_bytes=8 * MB, size_formatted="8.0 MB"),
    ]


class FakePoolEntry:
    """Stand-in for a pool entry."""

    def __init__(self, key: str = "target-project:target-instance:postgres"):
        self.key = key
        self.version = "15.4"


@pytest.fixture
def mock_connection_manager(source_databases):
    """Connection manager whose instances are reachable and run PostgreSQL 15."""
    manager = Mock()
    manager.list_databases = AsyncMock(return_value=source_databases)
    manager.test_connection = AsyncMock(
        return_value=ConnectionTestResult(success=True, version="15.4", database="postgres")
    )
    manager.connect = AsyncMock(return_value=FakePoolEntry())
    manager.release = AsyncMock(return_value=[])
    locks = {}
    manager.write_lock = Mock(side_effect=lambda project, instance: locks.setdefault(instance, asyncio.Lock()))
    return manager


@pytest.fixture
def mock_database_ops():
    """Database operations that write nothing and succeed."""
    ops = Mock()

    async def export_database(project, instance, database, options):
        return ExportResult(database=database, backup_file=f"/tmp/{database}.dump", size=MB, duration=0.5)

    async def import_database(project, instance, database, backup_file, options):
        return ImportResult(
            database=database,
            target_database=options.get("target_database") or database,
            duration=0.7,
        )

    ops.export_database = AsyncMock(side_effect=export_database)
    ops.import_database = AsyncMock(side_effect=import_database)
    ops.remove_backups = AsyncMock(return_value=2)
    return ops


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings()
