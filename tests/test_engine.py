"""
Tests for the single-task migration engine.
"""

from unittest.mock import AsyncMock

import pytest

from cloudsql_migrator.core.exceptions import (
    CompatibilityError,
    ConfigValidationError,
    DatabaseNotFoundError,
    DatabaseOperationError,
    DiscoveryEmptyError,
    MigrationCancelledError,
    PhaseExecutionError,
    PostValidationError,
    PreflightError,
)
from cloudsql_migrator.models.execution_state import ExecutionStatus
from cloudsql_migrator.models.results import ConnectionTestResult, DatabaseInfo, DatabaseStatus, ExportResult
from cloudsql_migrator.orchestrator.engine import PHASES, MigrationPhase, ModernMigrationEngine
from cloudsql_migrator.utils.logging import MigrationLogger

MB = 1024 * 1024


def connection_result(success=True, version="15.4", error=None, kind=None):
    return ConnectionTestResult(success=success, version=version if success else None,
                                error=error, error_kind=kind)


class TestEngineSuccess:
    """Test a full successful run."""

    @pytest.fixture(autouse=True)
    def setup(self, mock_connection_manager, mock_database_ops, engine_settings, operation_config):
        self.manager = mock_connection_manager
        self.ops = mock_database_ops
        self.config = operation_config
        self.events = []
        self.engine = ModernMigrationEngine(self.manager, self.ops, engine_settings, self.events.append)

    @pytest.mark.asyncio
    async def test_runs_all_phases_in_order(self):
        result = await self.engine.migrate(self.config)

        assert result.success
        assert [entry["phase"] for entry in self.engine.phase_history] == PHASES
        assert all(entry["status"] == "completed" for entry in self.engine.phase_history)
        assert self.engine.state.status == ExecutionStatus.COMPLETED
        assert self.engine.state.completed_phases == PHASES
        assert self.engine.get_status()["progress"] == 100

    @pytest.mark.asyncio
    async def test_result(self):
        result = await self.engine.migrate(self.config)

        assert result.migration_id == self.config.execution_id
        assert result.processed_databases == 2
        assert result.migrated_databases == ["app", "analytics"]
        assert result.dry_run is False
        assert result.metrics["total_size"] == 30 * MB
        assert result.metrics["processed_size"] == 30 * MB
        assert result.metrics["source_version"] == "15.4"
        assert result.metrics["estimated_duration"] > 0
        assert [d.status for d in result.database_details] == [DatabaseStatus.COMPLETED] * 2
        assert self.engine.state.result["migration_id"] == result.migration_id

    @pytest.mark.asyncio
    async def test_database_operations(self):
        await self.engine.migrate(self.config)

        exported = [c.args[2] for c in self.ops.export_database.await_args_list]
        assert exported == ["app", "analytics"]
        export_options = self.ops.export_database.await_args_list[0].args[3]
        assert export_options["connection_info"]["password"] == "source-secret"

        first_import = self.ops.import_database.await_args_list[0].args
        assert first_import[:4] == ("target-project", "target-instance", "app", "/tmp/app.dump")
        assert first_import[4]["target_database"] == "app"
        assert first_import[4]["connection_info"]["password"] == "target-secret"

    @pytest.mark.asyncio
    async def test_connections_used_and_released(self):
        await self.engine.migrate(self.config)
        owner = self.engine.state.id

        self.manager.list_databases.assert_awaited_once()
        assert self.manager.list_databases.await_args.kwargs["owner"] == owner
        databases_tested = [c.args[2] for c in self.manager.test_connection.await_args_list]
        assert databases_tested == ["postgres", "postgres", "app", "analytics"]
        self.manager.release.assert_awaited_once_with(owner)
        self.ops.remove_backups.assert_awaited_once_with(["/tmp/app.dump", "/tmp/analytics.dump"])

        bound_owner, bound_log = self.manager.bind_logger.call_args.args
        assert bound_owner == owner
        assert isinstance(bound_log, MigrationLogger)
        assert bound_log.execution_id == owner
        locked = [c.args for c in self.manager.write_lock.call_args_list]
        assert locked == [("target-project", "target-instance")] * 2

    @pytest.mark.asyncio
    async def test_renamed_targets(self):
        result = await self.engine.migrate(self.config.with_options(prefix_with="legacy"))

        assert result.migrated_databases == ["legacy_app", "legacy_analytics"]
        targets = [c.args[4]["target_database"] for c in self.ops.import_database.await_args_list]
        assert targets == ["legacy_app", "legacy_analytics"]
        databases_tested = [c.args[2] for c in self.manager.test_connection.await_args_list]
        assert databases_tested[2:] == ["legacy_app", "legacy_analytics"]

    @pytest.mark.asyncio
    async def test_merged_databases_flagged(self):
        result = await self.engine.migrate(self.config.with_options(merged_databases=["analytics"]))

        merged = {d.name: d.merged for d in result.database_details}
        assert merged == {"app": False, "analytics": True}

    @pytest.mark.asyncio
    async def test_include_all_skips_system_databases(self):
        config = self.config.model_copy(update={
            "source": self.config.source.model_copy(update={"databases": None}),
        }).with_options(include_all=True)

        result = await self.engine.migrate(config)
        assert result.migrated_databases == ["analytics", "app"]

    @pytest.mark.asyncio
    async def test_progress_events(self):
        await self.engine.migrate(self.config)

        progress = [event.progress for event in self.events]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert {event.execution_id for event in self.events} == {self.config.execution_id}
        assert any(event.database == "analytics" and event.item_progress == 100.0 for event in self.events)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_ignored(self, mock_connection_manager, mock_database_ops):
        def broken(event):
            raise RuntimeError("display closed")

        engine = ModernMigrationEngine(mock_connection_manager, mock_database_ops, progress_callback=broken)
        result = await engine.migrate(self.config)
        assert result.success

    @pytest.mark.asyncio
    async def test_keep_backups(self):
        await self.engine.migrate(self.config.with_options(keep_backups=True))
        self.ops.remove_backups.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_failures_become_warnings(self):
        self.manager.release.side_effect = RuntimeError("pool already closed")
        self.ops.remove_backups.side_effect = OSError("read-only file system")

        result = await self.engine.migrate(self.config)

        assert result.success
        assert any("Failed to release connections" in w for w in result.warnings)
        assert any("Failed to remove backup files" in w for w in result.warnings)


class TestEngineDryRun:
    """Test dry runs."""

    @pytest.mark.asyncio
    async def test_dry_run_simulates(self, mock_connection_manager, mock_database_ops, operation_config):
        engine = ModernMigrationEngine(mock_connection_manager, mock_database_ops)
        result = await engine.migrate(operation_config.with_options(dry_run=True))

        assert result.dry_run is True
        assert result.migrated_databases == ["app", "analytics"]
        assert [d.status for d in result.database_details] == [DatabaseStatus.SIMULATED] * 2
        mock_database_ops.export_database.assert_not_awaited()
        mock_database_ops.import_database.assert_not_awaited()
        mock_database_ops.remove_backups.assert_not_awaited()
        mock_connection_manager.connect.assert_not_awaited()
        assert mock_connection_manager.test_connection.await_count == 2
        assert [entry["phase"] for entry in engine.phase_history] == PHASES


class TestEngineFailures:
    """Test phase failures and error propagation."""

    @pytest.fixture(autouse=True)
    def setup(self, mock_connection_manager, mock_database_ops, operation_config):
        self.manager = mock_connection_manager
        self.ops = mock_database_ops
        self.config = operation_config
        self.engine = ModernMigrationEngine(self.manager, self.ops)

    def assert_cleaned_up_once(self):
        cleanup = [e for e in self.engine.phase_history if e["phase"] == MigrationPhase.CLEANUP.value]
        assert len(cleanup) == 1
        self.manager.release.assert_awaited_once_with(self.engine.state.id)

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        config = self.config.with_options(schema_only=True, data_only=True)

        with pytest.raises(ConfigValidationError) as exc_info:
            await self.engine.migrate(config)

        assert exc_info.value.phase == "Validation"
        assert "Cannot specify both schemaOnly and dataOnly options" in exc_info.value.errors
        self.manager.list_databases.assert_not_awaited()
        assert self.engine.state.status == ExecutionStatus.FAILED
        assert self.engine.state.errors[0].phase == "Validation"
        assert [e["status"] for e in self.engine.phase_history] == ["failed", "completed"]
        self.assert_cleaned_up_once()

    @pytest.mark.asyncio
    async def test_missing_database(self):
        config = self.config.model_copy(update={
            "source": self.config.source.model_copy(update={"databases": ["app", "billing"]}),
        })

        with pytest.raises(DatabaseNotFoundError) as exc_info:
            await self.engine.migrate(config)

        assert exc_info.value.missing == ["billing"]
        assert exc_info.value.phase == "Discovery"
        self.assert_cleaned_up_once()

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self):
        self.manager.list_databases.return_value = [DatabaseInfo(name="postgres", size_bytes=MB)]
        config = self.config.model_copy(update={
            "source": self.config.source.model_copy(update={"databases": None}),
        }).with_options(include_all=True)

        with pytest.raises(DiscoveryEmptyError):
            await self.engine.migrate(config)

    @pytest.mark.asyncio
    async def test_target_unreachable(self):
        self.manager.test_connection.side_effect = [
            connection_result(),
            connection_result(False, error="Failed to connect after 3 attempt(s)", kind="unreachable"),
        ]

        with pytest.raises(PreflightError) as exc_info:
            await self.engine.migrate(self.config)

        assert exc_info.value.phase == "Pre-flight Checks"
        assert exc_info.value.details == {"side": "target", "kind": "unreachable"}
        self.ops.export_database.assert_not_awaited()
        self.assert_cleaned_up_once()

    @pytest.mark.asyncio
    async def test_newer_source_rejected(self):
        self.manager.test_connection.side_effect = [
            connection_result(version="16.1"),
            connection_result(version="14.9"),
        ]

        with pytest.raises(CompatibilityError) as exc_info:
            await self.engine.migrate(self.config)

        assert "newer than target PostgreSQL 14.9" in exc_info.value.message
        self.ops.export_database.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_compatibility(self):
        self.manager.test_connection.side_effect = [
            connection_result(version="16.1"),
            connection_result(version="14.9"),
            connection_result(),
            connection_result(),
        ]

        result = await self.engine.migrate(self.config.with_options(force_compatibility=True))

        assert result.success
        assert any("force compatibility" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_export_failure_keeps_error_and_cleans_up(self):
        async def export(project, instance, database, options):
            if database == "analytics":
                raise DatabaseOperationError("Export of analytics failed: disk full", phase="Export")
            return ExportResult(database=database, backup_file=f"/tmp/{database}.dump", size=MB)

        self.ops.export_database.side_effect = export

        with pytest.raises(DatabaseOperationError) as exc_info:
            await self.engine.migrate(self.config)

        assert exc_info.value.phase == "Export"
        self.ops.import_database.assert_not_awaited()
        self.ops.remove_backups.assert_awaited_once_with(["/tmp/app.dump"])
        assert self.engine.state.errors[0].message == "Export of analytics failed: disk full"
        self.assert_cleaned_up_once()

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self):
        self.ops.import_database.side_effect = RuntimeError("connection reset")

        with pytest.raises(PhaseExecutionError) as exc_info:
            await self.engine.migrate(self.config)

        error = exc_info.value
        assert error.phase == "Import"
        assert error.message == "Import failed: connection reset"
        assert isinstance(error.__cause__, RuntimeError)
        assert self.engine.phase_history[-2] == {
            "phase": "Import",
            "status": "failed",
            "duration": self.engine.phase_history[-2]["duration"],
            "error": "Import failed: connection reset",
        }

    @pytest.mark.asyncio
    async def test_post_validation_failure(self):
        async def test_connection(project, instance, database="postgres", **kwargs):
            if database == "analytics":
                return connection_result(False, error='database "analytics" does not exist')
            return connection_result()

        self.manager.test_connection.side_effect = test_connection

        with pytest.raises(PostValidationError) as exc_info:
            await self.engine.migrate(self.config)

        assert "analytics" in exc_info.value.message
        assert exc_info.value.phase == "Post-migration Validation"
        self.ops.remove_backups.assert_awaited_once()


class TestEngineCancellation:
    """Test cooperative cancellation."""

    @pytest.fixture(autouse=True)
    def setup(self, mock_connection_manager, mock_database_ops, operation_config):
        self.manager = mock_connection_manager
        self.ops = mock_database_ops
        self.config = operation_config
        self.engine = ModernMigrationEngine(self.manager, self.ops)

    def test_cancel_before_start(self):
        assert self.engine.cancel() is False
        assert self.engine.get_status() is None

    @pytest.mark.asyncio
    async def test_cancel_between_databases(self):
        async def export(project, instance, database, options):
            self.engine.cancel()
            return ExportResult(database=database, backup_file=f"/tmp/{database}.dump", size=MB)

        self.ops.export_database.side_effect = export

        with pytest.raises(MigrationCancelledError) as exc_info:
            await self.engine.migrate(self.config)

        assert exc_info.value.phase == "Export"
        assert self.ops.export_database.await_count == 1
        self.ops.import_database.assert_not_awaited()
        self.ops.remove_backups.assert_awaited_once_with(["/tmp/app.dump"])
        self.manager.release.assert_awaited_once()

        state = self.engine.state
        assert state.status == ExecutionStatus.CANCELLED
        assert state.errors[-1].error_type == "MigrationCancelledError"
        assert {"phase": "Export", "status": "cancelled"}.items() <= self.engine.phase_history[-2].items()

    @pytest.mark.asyncio
    async def test_cancel_during_last_phase(self):
        async def test_connection(project, instance, database="postgres", **kwargs):
            if database == "analytics":
                self.engine.cancel()
            return connection_result()

        self.manager.test_connection.side_effect = test_connection

        with pytest.raises(MigrationCancelledError):
            await self.engine.migrate(self.config)

        assert self.engine.state.status == ExecutionStatus.CANCELLED
        assert self.engine.state.result is None

    @pytest.mark.asyncio
    async def test_cancel_after_completion(self):
        await self.engine.migrate(self.config)
        assert self.engine.cancel() is False
        assert self.engine.state.status == ExecutionStatus.COMPLETED
