"""
Tests for batch coordination of migration tasks.
"""

import asyncio

import pytest

from cloudsql_migrator.core.exceptions import (
    ConfigValidationError,
    MigrationCancelledError,
    PhaseExecutionError,
)
from cloudsql_migrator.models.execution_state import ExecutionStatus
from cloudsql_migrator.models.mapping import MigrationMapping
from cloudsql_migrator.models.results import MigrationResult, TaskStatus
from cloudsql_migrator.models.settings import BatchSettings
from cloudsql_migrator.orchestrator.batch import (
    SKIPPED_AFTER_CANCEL,
    SKIPPED_AFTER_FAILURE,
    BatchMigrationCoordinator,
)
from cloudsql_migrator.strategies.patterns import ConflictResolution, MigrationStrategy

MB = 1024 * 1024


class FakeEngine:
    """Engine double that fails for selected source instances."""

    def __init__(self, failures, attempts):
        self.failures = failures
        self.attempts = attempts
        self.cancelled = False

    async def migrate(self, config):
        instance = config.source.instance
        self.attempts[instance] = self.attempts.get(instance, 0) + 1
        if self.failures.get(instance, 0) >= self.attempts[instance]:
            raise PhaseExecutionError("Export failed: disk full", phase="Export")
        return MigrationResult(
            success=True,
            migration_id=config.execution_id,
            duration=0.1,
            metrics={"total_size": 10 * MB},
            processed_databases=len(config.source.databases or []),
            migrated_databases=list(config.source.databases or []),
        )

    def cancel(self):
        self.cancelled = True
        return True


class EngineFactory:
    """Creates FakeEngines and remembers them."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.attempts = {}
        self.engines = []

    def __call__(self):
        engine = FakeEngine(self.failures, self.attempts)
        self.engines.append(engine)
        return engine


class BlockingEngine:
    """Engine double that runs until it is cancelled."""

    def __init__(self):
        self.released = asyncio.Event()

    async def migrate(self, config):
        await self.released.wait()
        raise MigrationCancelledError("Migration cancelled before Export", phase="Export")

    def cancel(self):
        self.released.set()
        return True


def simple_mapping(count=5):
    return MigrationMapping(
        strategy=MigrationStrategy.SIMPLE,
        sources=[
            {"project": "proj-src", "instance": f"src-{i}", "password": "pw", "databases": ["app"]}
            for i in range(count)
        ],
        targets=[{"project": "proj-tgt", "instance": f"tgt-{i}"} for i in range(count)],
    )


def task_id(index):
    return f"migration_{index}_src-{index}_to_tgt-{index}"


class TestBatchExecution:
    """Test the main execution pass."""

    @pytest.mark.asyncio
    async def test_all_tasks_succeed(self):
        factory = EngineFactory()
        coordinator = BatchMigrationCoordinator(factory, max_parallel=2)

        report = await coordinator.execute_batch(simple_mapping(3))

        assert [o.task_id for o in report.successful] == [task_id(i) for i in range(3)]
        assert report.summary.total_tasks == 3
        assert report.summary.successful == 3
        assert report.summary.success_rate == 100.0
        assert report.summary.total_size_bytes == 30 * MB
        assert report.summary.strategy == "simple"
        assert report.successful[0].databases == ["app"]
        assert report.successful[0].attempts == 1
        assert report.performance["min_duration"] <= report.performance["max_duration"]
        assert report.batch_id == coordinator.state.id
        assert coordinator.state.status == ExecutionStatus.COMPLETED
        assert len(factory.engines) == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_tasks(self):
        coordinator = BatchMigrationCoordinator(EngineFactory({"src-2": 1}), max_parallel=2, stop_on_error=False)

        report = await coordinator.execute_batch(simple_mapping())

        assert report.summary.successful == 4
        assert report.summary.failed == 1
        assert report.summary.skipped == 0
        assert report.summary.success_rate == 80.0
        failure = report.failed[0]
        assert failure.task_id == task_id(2)
        assert failure.error == "Export failed: disk full"
        assert failure.error_type == "PhaseExecutionError"
        assert failure.phase == "Export"
        assert failure.category == "database"
        assert failure.source == "proj-src:src-2"
        assert failure.target == "proj-tgt:tgt-2"

    @pytest.mark.asyncio
    async def test_stop_on_error_skips_remaining_tasks(self):
        coordinator = BatchMigrationCoordinator(EngineFactory({"src-2": 1}), max_parallel=2, stop_on_error=True)

        report = await coordinator.execute_batch(simple_mapping())

        assert report.summary.failed == 1
        assert report.summary.successful + report.summary.failed + report.summary.skipped == 5
        assert report.summary.stopped is True
        assert report.summary.skipped >= 1
        assert all(o.reason == SKIPPED_AFTER_FAILURE for o in report.skipped)
        assert all(o.index > 2 for o in report.skipped)

    @pytest.mark.asyncio
    async def test_accepts_config_list(self, operation_config):
        second = operation_config.model_copy(update={
            "source": operation_config.source.model_copy(update={"instance": "other-source"}),
        })
        coordinator = BatchMigrationCoordinator(EngineFactory(), max_parallel=1)

        report = await coordinator.execute_batch([operation_config, second])

        assert [o.task_id for o in report.successful] == [
            "migration_0_source-instance_to_target-instance",
            "migration_1_other-source_to_target-instance",
        ]
        assert report.summary.strategy is None
        assert report.summary.mapping_type == "N:1"

    @pytest.mark.asyncio
    async def test_settings_provide_defaults(self):
        coordinator = BatchMigrationCoordinator(
            EngineFactory(),
            settings=BatchSettings(max_parallel=4, stop_on_error=False, retry_failed=True),
        )
        assert coordinator.max_parallel == 4
        assert coordinator.stop_on_error is False
        assert coordinator.retry_failed is True

        report = await coordinator.execute_batch(simple_mapping(1))
        assert report.metadata["max_parallel"] == 4
        assert report.metadata["coordinator"] == "BatchMigrationCoordinator"


class TestBatchProgress:
    """Test progress reporting."""

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        events = []
        coordinator = BatchMigrationCoordinator(EngineFactory({"src-2": 1}), max_parallel=2, stop_on_error=False)

        await coordinator.execute_batch(simple_mapping(), progress_callback=lambda *args: events.append(args))

        assert events[0] == ("Initialization", 0, 5, "Preparing batch migration")
        assert events[1] == ("Validation", 0, 5, "Validating all migrations")
        execution = [e for e in events if e[0] == "Execution"]
        assert [e[1] for e in execution] == [1, 2, 3, 4, 5]
        assert ("Execution", 3, 5, f"Failed {task_id(2)}: Export failed: disk full") in execution
        assert events[-1] == ("Complete", 5, 5, "Batch migration completed: 4/5 successful")

    @pytest.mark.asyncio
    async def test_callback_errors_ignored(self):
        def broken(*args):
            raise RuntimeError("terminal gone")

        coordinator = BatchMigrationCoordinator(EngineFactory(), max_parallel=2)
        report = await coordinator.execute_batch(simple_mapping(2), progress_callback=broken)
        assert report.summary.successful == 2


class TestBatchRetry:
    """Test the retry pass over failed tasks."""

    @pytest.mark.asyncio
    async def test_failed_task_recovers_on_retry(self):
        events = []
        factory = EngineFactory({"src-2": 1})
        coordinator = BatchMigrationCoordinator(factory, max_parallel=2, stop_on_error=False, retry_failed=True)

        report = await coordinator.execute_batch(simple_mapping(), progress_callback=lambda *args: events.append(args))

        assert report.summary.successful == 5
        assert report.summary.failed == 0
        recovered = next(o for o in report.successful if o.task_id == task_id(2))
        assert recovered.attempts == 2
        assert factory.attempts["src-2"] == 2
        assert ("Retry", 0, 1, "Retrying 1 failed migration(s)") in events
        assert coordinator.get_status()["failed"] == 0

    @pytest.mark.asyncio
    async def test_persistent_failure_stays_failed(self):
        coordinator = BatchMigrationCoordinator(
            EngineFactory({"src-2": 5}), max_parallel=2, stop_on_error=False, retry_failed=True,
        )

        report = await coordinator.execute_batch(simple_mapping())

        assert report.summary.failed == 1
        assert report.failed[0].attempts == 2


class TestBatchConsolidation:
    """Test N:1 merge bookkeeping."""

    @pytest.mark.asyncio
    async def test_merged_databases_recorded(self):
        mapping = MigrationMapping(
            strategy=MigrationStrategy.CONSOLIDATE,
            sources=[
                {"project": "proj-a1", "instance": "src-a", "databases": ["app", "shared"]},
                {"project": "proj-b1", "instance": "src-b", "databases": ["shared"]},
            ],
            target={"project": "proj-t1", "instance": "central"},
            conflict_resolution=ConflictResolution.MERGE,
        )
        events = []
        coordinator = BatchMigrationCoordinator(EngineFactory(), max_parallel=2)

        report = await coordinator.execute_batch(mapping, progress_callback=lambda *args: events.append(args))

        assert report.summary.mapping_type == "N:1"
        assert report.metadata["consolidation"] == {"proj-t1:central": {"shared": ["src-a", "src-b"]}}
        assert ("Consolidation", 2, 2, "Consolidating databases") in events

    @pytest.mark.asyncio
    async def test_no_consolidation_without_merge(self):
        coordinator = BatchMigrationCoordinator(EngineFactory(), max_parallel=2)
        report = await coordinator.execute_batch(simple_mapping(2))
        assert "consolidation" not in report.metadata


class TestBatchValidation:
    """Test validation before anything runs."""

    @pytest.mark.asyncio
    async def test_invalid_mapping(self):
        factory = EngineFactory()
        coordinator = BatchMigrationCoordinator(factory)

        with pytest.raises(ConfigValidationError) as exc_info:
            await coordinator.execute_batch(MigrationMapping(targets=["tgt"]))

        assert "At least one source instance is required" in exc_info.value.errors
        assert factory.engines == []
        assert coordinator.state.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_config_stops_whole_batch(self, operation_config):
        broken = operation_config.model_copy(update={
            "source": operation_config.source.model_copy(update={"databases": None}),
        })
        factory = EngineFactory()
        coordinator = BatchMigrationCoordinator(factory)

        with pytest.raises(ConfigValidationError) as exc_info:
            await coordinator.execute_batch([operation_config, broken])

        assert exc_info.value.errors == [
            "migration_1_source-instance_to_target-instance: Either specify databases or use includeAll option"
        ]
        assert factory.engines == []


class TestBatchCancellation:
    """Test cancelling a running batch."""

    @pytest.mark.asyncio
    async def test_cancel_batch(self):
        engines = []

        def factory():
            engine = BlockingEngine()
            engines.append(engine)
            return engine

        coordinator = BatchMigrationCoordinator(factory, max_parallel=1)
        assert coordinator.get_status()["active"] == 0

        run = asyncio.create_task(coordinator.execute_batch(simple_mapping(3)))
        for _ in range(20):
            await asyncio.sleep(0)
            if coordinator.get_status()["active"]:
                break

        status = coordinator.get_status()
        assert status["active"] == 1
        assert status["pending"] == 2
        assert status["active_migrations"][0]["id"] == task_id(0)

        cancelled = await coordinator.cancel_batch()
        assert cancelled == {"cancelled": True, "running_cancelled": 1, "completed": 0, "failed": 0}

        report = await run

        assert len(engines) == 1
        assert report.summary.cancelled is True
        assert report.failed[0].category == "cancelled"
        assert [o.task_id for o in report.skipped] == [task_id(1), task_id(2)]
        assert all(o.reason == SKIPPED_AFTER_CANCEL for o in report.skipped)
