"""
Migration engine for a single source to target task.

The engine runs a fixed sequence of phases against one OperationConfig:

    Validation -> Discovery -> Pre-flight Checks -> Export -> Import
    -> Post-migration Validation -> Cleanup

Every phase goes through the same wrapper that updates the execution
state, logs timing and notifies progress callbacks. Cleanup runs exactly
once whether the earlier phases succeed, fail or are cancelled, and its
own failures are recorded as warnings.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cloudsql_migrator.core.exceptions import (
    CompatibilityError,
    ConfigValidationError,
    DatabaseNotFoundError,
    DiscoveryEmptyError,
    MigrationCancelledError,
    MigrationEngineError,
    PhaseExecutionError,
    PostValidationError,
    PreflightError,
)
from cloudsql_migrator.database.connection import ConnectionManager, major_version
from cloudsql_migrator.database.operations import DatabaseOperations
from cloudsql_migrator.models.config import InstanceEndpoint, OperationConfig
from cloudsql_migrator.models.execution_state import ExecutionState
from cloudsql_migrator.models.results import (
    DatabaseDetail,
    DatabaseInfo,
    DatabaseStatus,
    MigrationResult,
)
from cloudsql_migrator.models.settings import EngineSettings
from cloudsql_migrator.monitoring.progress import (
    PredictiveProgressEstimator,
    ProgressEvent,
    build_estimate,
    track_predictive_progress,
)
from cloudsql_migrator.utils.helpers import format_bytes, sanitize_dict
from cloudsql_migrator.utils.logging import LogCategory, MigrationLogger

logger = logging.getLogger(__name__)


class MigrationPhase(str, Enum):
    """Engine phases in execution order."""
    VALIDATION = "Validation"
    DISCOVERY = "Discovery"
    PREFLIGHT = "Pre-flight Checks"
    EXPORT = "Export"
    IMPORT = "Import"
    POST_VALIDATION = "Post-migration Validation"
    CLEANUP = "Cleanup"


PHASES = [phase.value for phase in MigrationPhase]

# never migrated, even with include_all
EXCLUDED_DATABASES = frozenset({"postgres", "template0", "template1"})


@dataclass
class _RunContext:
    """Mutable data shared by the phases of one run."""
    config: OperationConfig
    state: ExecutionState
    log: MigrationLogger
    owner: str
    databases: List[DatabaseInfo] = field(default_factory=list)
    details: Dict[str, DatabaseDetail] = field(default_factory=dict)
    backup_files: List[str] = field(default_factory=list)
    processed_size: int = 0
    cleaned_up: bool = False


class ModernMigrationEngine:
    """
    Runs one migration task through all phases.

    An engine instance runs one task at a time; the batch coordinator
    creates one engine per task and shares the connection manager
    between them.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        database_ops: DatabaseOperations,
        settings: Optional[EngineSettings] = None,
        progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        """
        Initialize the migration engine.

        Args:
            connection_manager: Shared connection pool
            database_ops: Dump and restore implementation
            settings: Engine settings (defaults are used when omitted)
            progress_callback: Receives a ProgressEvent on every progress change
        """
        self.connection_manager = connection_manager
        self.database_ops = database_ops
        self.settings = settings or EngineSettings()
        self.progress_callback = progress_callback

        self.state: Optional[ExecutionState] = None
        self.phase_history: List[Dict[str, Any]] = []

        self._phase_handlers: Dict[str, Callable[[_RunContext], Awaitable[None]]] = {
            MigrationPhase.VALIDATION.value: self._validate,
            MigrationPhase.DISCOVERY.value: self._discover,
            MigrationPhase.PREFLIGHT.value: self._preflight,
            MigrationPhase.EXPORT.value: self._export,
            MigrationPhase.IMPORT.value: self._import,
            MigrationPhase.POST_VALIDATION.value: self._post_validate,
        }

    async def migrate(self, config: OperationConfig) -> MigrationResult:
        """
        Execute a migration.

        Args:
            config: The task to run

        Returns:
            MigrationResult describing every processed database

        Raises:
            ConfigValidationError: If the configuration is invalid
            PhaseExecutionError: If a phase fails; ``phase`` names it
            MigrationCancelledError: If the run was cancelled
        """
        state = ExecutionState.for_config(config)
        self.state = state
        self.phase_history = []
        ctx = _RunContext(
            config=config,
            state=state,
            log=MigrationLogger(state.id),
            owner=state.id,
        )

        self.connection_manager.bind_logger(ctx.owner, ctx.log)
        state.start(PHASES)
        ctx.log.info(
            f"Starting migration {config.source.label} -> {config.target.label}",
            metadata={"config": sanitize_dict(config.to_dict())},
        )

        failure: Optional[Exception] = None
        try:
            for phase, handler in self._phase_handlers.items():
                self._raise_if_cancelled(ctx, phase)
                await self._run_phase(ctx, phase, handler)
        except Exception as e:
            failure = e
        finally:
            await self._cleanup(ctx)

        if failure is None and state.cancel_requested:
            failure = MigrationCancelledError("Migration cancelled", phase=state.current_phase)

        if failure is not None:
            self._record_failure(ctx, failure)
            raise failure

        result = self._build_result(ctx)
        state.complete(result.model_dump(mode="json"))
        ctx.log.info(
            f"Migration completed: {result.processed_databases} database(s) in {result.duration:.2f}s",
            duration=result.duration,
        )
        self._emit(ctx, MigrationPhase.CLEANUP.value, "Migration completed")
        return result

    def cancel(self) -> bool:
        """Request cancellation; observed at the next phase or database boundary."""
        if self.state is None:
            return False
        cancelled = self.state.cancel()
        if cancelled:
            logger.info(f"Cancellation requested for {self.state.id}")
        return cancelled

    def get_status(self) -> Optional[Dict[str, Any]]:
        return self.state.get_status_summary() if self.state else None

    # -- phase plumbing -----------------------------------------------------

    def _raise_if_cancelled(self, ctx: _RunContext, phase: str) -> None:
        if ctx.state.cancel_requested:
            raise MigrationCancelledError(f"Migration cancelled before {phase}", phase=phase)

    async def _run_phase(
        self,
        ctx: _RunContext,
        phase: str,
        handler: Callable[[_RunContext], Awaitable[None]],
    ) -> None:
        ctx.state.set_current_phase(phase)
        ctx.log.phase_start(phase)
        self._emit(ctx, phase, f"{phase} started")
        start = time.monotonic()

        try:
            await handler(ctx)
        except MigrationCancelledError:
            self._record_phase(phase, "cancelled", time.monotonic() - start)
            raise
        except MigrationEngineError as e:
            if getattr(e, "phase", None) is None:
                e.phase = phase
            self._phase_failed(ctx, phase, e, start)
            raise
        except Exception as e:
            wrapped = PhaseExecutionError(
                f"{phase} failed: {e}",
                phase=phase,
                details={"original_error": type(e).__name__},
            )
            self._phase_failed(ctx, phase, wrapped, start)
            raise wrapped from e

        duration = time.monotonic() - start
        self._record_phase(phase, "completed", duration)
        ctx.log.phase_complete(phase, duration)
        self._emit(ctx, phase, f"{phase} completed", fraction=1.0)

    def _phase_failed(self, ctx: _RunContext, phase: str, error: MigrationEngineError, start: float) -> None:
        self._record_phase(phase, "failed", time.monotonic() - start, error=error.message)
        ctx.log.phase_failed(phase, error.message, error.code)
        self._emit(ctx, phase, f"{phase} failed: {error.message}")

    def _record_phase(self, phase: str, status: str, duration: float, error: Optional[str] = None) -> None:
        entry: Dict[str, Any] = {"phase": phase, "status": status, "duration": duration}
        if error:
            entry["error"] = error
        self.phase_history.append(entry)

    def _record_failure(self, ctx: _RunContext, error: Exception) -> None:
        if isinstance(error, MigrationCancelledError) or ctx.state.is_terminal:
            ctx.state.add_error(error)
            ctx.log.warning(f"Migration cancelled: {error}")
            return
        ctx.state.fail(error)

    def _emit(
        self,
        ctx: _RunContext,
        phase: str,
        message: Optional[str] = None,
        database: Optional[str] = None,
        item_progress: Optional[float] = None,
        fraction: float = 0.0,
    ) -> None:
        if not self.progress_callback:
            return

        state = ctx.state
        if state.is_terminal and state.result is not None:
            progress = 100
        elif state.total_phases:
            done = len(state.completed_phases) + min(max(fraction, 0.0), 1.0)
            progress = min(round(done / len(state.total_phases) * 100), 100)
        else:
            progress = 0

        event = ProgressEvent(
            execution_id=state.id,
            phase=phase,
            progress=progress,
            message=message,
            database=database,
            item_progress=item_progress,
        )
        try:
            self.progress_callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _with_predictive_progress(
        self,
        ctx: _RunContext,
        phase: str,
        database: DatabaseInfo,
        index: int,
        throughput: float,
        operation: Awaitable[Any],
    ) -> Any:
        """Await a dump or restore while reporting estimated progress for it."""
        if not self.progress_callback:
            return await operation

        total = len(ctx.databases) or 1
        estimator = PredictiveProgressEstimator(
            database.size_bytes or self.settings.progress.default_database_size,
            throughput,
            self.settings.progress.connection_overhead,
        )

        def report(percent: float) -> None:
            self._emit(
                ctx, phase,
                f"{phase} {database.name}",
                database=database.name,
                item_progress=percent,
                fraction=(index + percent / 100) / total,
            )

        ticker = asyncio.create_task(
            track_predictive_progress(estimator, report, self.settings.progress.update_interval)
        )
        try:
            result = await operation
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)

        report(estimator.complete())
        return result

    @staticmethod
    def _connection_info(endpoint: InstanceEndpoint, config: OperationConfig) -> Dict[str, Any]:
        return {
            "user": endpoint.user,
            "password": endpoint.password,
            "ip": endpoint.ip,
            "ssl_mode": config.options.ssl_mode,
            "use_proxy": config.options.use_proxy,
            "retry_attempts": config.options.retry_attempts,
        }

    def _operation_options(self, ctx: _RunContext, endpoint: InstanceEndpoint) -> Dict[str, Any]:
        options = ctx.config.options
        return {
            "connection_info": self._connection_info(endpoint, ctx.config),
            "schema_only": options.schema_only,
            "data_only": options.data_only,
            "jobs": options.jobs,
        }

    def _warn(self, ctx: _RunContext, message: str) -> None:
        ctx.state.add_warning(message)
        ctx.log.warning(message)

    # -- phases -------------------------------------------------------------

    async def _validate(self, ctx: _RunContext) -> None:
        result = ctx.config.validate()
        if not result.valid:
            raise ConfigValidationError(
                f"Invalid configuration: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        for warning in result.warnings:
            self._warn(ctx, warning)

    async def _discover(self, ctx: _RunContext) -> None:
        config = ctx.config
        source = config.source
        phase = MigrationPhase.DISCOVERY.value

        available = await self.connection_manager.list_databases(
            source.project,
            source.instance,
            is_source=True,
            connection_info=self._connection_info(source, config),
            owner=ctx.owner,
        )
        by_name = {db.name: db for db in available if db.name not in EXCLUDED_DATABASES}

        if config.options.include_all or not source.databases:
            selected = list(by_name.values())
        else:
            missing = [name for name in source.databases if name not in by_name]
            if missing:
                raise DatabaseNotFoundError(
                    f"Databases not found on {source.label}: {', '.join(missing)}",
                    missing=missing,
                    phase=phase,
                )
            selected = [by_name[name] for name in source.databases]

        if not selected:
            raise DiscoveryEmptyError(f"No databases to migrate on {source.label}", phase=phase)

        ctx.databases = selected
        ctx.details = {
            db.name: DatabaseDetail(
                name=db.name,
                target_name=config.target_database_name(db.name),
                original_size=db.size_bytes,
                size_formatted=db.size_formatted,
                merged=db.name in config.options.merged_databases,
            )
            for db in selected
        }
        total_size = sum(db.size_bytes for db in selected)
        ctx.state.update_metrics({"total_size": total_size})
        ctx.log.info(
            f"Discovered {len(selected)} database(s) ({format_bytes(total_size)}): "
            f"{', '.join(db.name for db in selected)}",
            category=LogCategory.DATABASE,
            phase=phase,
        )

    async def _preflight(self, ctx: _RunContext) -> None:
        config = ctx.config
        phase = MigrationPhase.PREFLIGHT.value
        versions: Dict[str, Optional[str]] = {}

        for side, endpoint, is_source in (("source", config.source, True), ("target", config.target, False)):
            result = await self.connection_manager.test_connection(
                endpoint.project,
                endpoint.instance,
                "postgres",
                is_source=is_source,
                connection_info=self._connection_info(endpoint, config),
                owner=ctx.owner,
            )
            if not result.success:
                raise PreflightError(
                    f"Cannot connect to {side} {endpoint.label}: {result.error}",
                    phase=phase,
                    details={"side": side, "kind": result.error_kind},
                )
            versions[side] = result.version

        source_major = major_version(versions["source"])
        target_major = major_version(versions["target"])
        if source_major and target_major and source_major > target_major:
            message = (
                f"Source PostgreSQL {versions['source']} is newer than "
                f"target PostgreSQL {versions['target']}"
            )
            if not config.options.force_compatibility:
                raise CompatibilityError(message, phase=phase, details=versions)
            self._warn(ctx, f"{message}; continuing because force compatibility is enabled")

        estimate = build_estimate(
            ctx.state.metrics.get("total_size", 0),
            schema_only=config.options.schema_only,
            data_only=config.options.data_only,
        )
        ctx.state.update_metrics({
            "estimated_duration": estimate["estimated_duration_minutes"] * 60,
            "source_version": versions["source"],
            "target_version": versions["target"],
        })

    async def _export(self, ctx: _RunContext) -> None:
        config = ctx.config
        phase = MigrationPhase.EXPORT.value

        if config.options.dry_run:
            for detail in ctx.details.values():
                detail.status = DatabaseStatus.SIMULATED
            ctx.log.info(f"Dry run: skipping export of {len(ctx.details)} database(s)", phase=phase)
            return

        options = self._operation_options(ctx, config.source)
        for index, database in enumerate(ctx.databases):
            self._raise_if_cancelled(ctx, phase)
            export = await self._with_predictive_progress(
                ctx, phase, database, index,
                self.settings.progress.export_throughput,
                self.database_ops.export_database(
                    config.source.project, config.source.instance, database.name, options,
                ),
            )
            ctx.backup_files.append(export.backup_file)

            detail = ctx.details[database.name]
            detail.status = DatabaseStatus.EXPORTED
            detail.backup_file = export.backup_file
            detail.export_duration = export.duration
            ctx.log.log_database_operation("export", database.name, export.size, export.duration)

    async def _import(self, ctx: _RunContext) -> None:
        config = ctx.config
        target = config.target
        phase = MigrationPhase.IMPORT.value

        if config.options.dry_run:
            ctx.log.info(f"Dry run: skipping import of {len(ctx.details)} database(s)", phase=phase)
            return

        await self.connection_manager.connect(
            target.project,
            target.instance,
            "postgres",
            is_source=False,
            connection_info=self._connection_info(target, config),
            owner=ctx.owner,
        )

        base_options = self._operation_options(ctx, target)
        for index, database in enumerate(ctx.databases):
            self._raise_if_cancelled(ctx, phase)
            detail = ctx.details[database.name]
            options = {**base_options, "target_database": detail.target_name}

            # restores into one target instance run one at a time
            async with self.connection_manager.write_lock(target.project, target.instance):
                imported = await self._with_predictive_progress(
                    ctx, phase, database, index,
                    self.settings.progress.import_throughput,
                    self.database_ops.import_database(
                        target.project, target.instance, database.name, detail.backup_file, options,
                    ),
                )

            detail.status = DatabaseStatus.COMPLETED
            detail.import_duration = imported.duration
            ctx.processed_size += database.size_bytes
            ctx.state.update_metrics({"processed_size": ctx.processed_size})
            ctx.log.log_database_operation("import", detail.target_name, database.size_bytes, imported.duration)

    async def _post_validate(self, ctx: _RunContext) -> None:
        config = ctx.config
        target = config.target
        phase = MigrationPhase.POST_VALIDATION.value

        if config.options.dry_run:
            return

        failures = []
        for detail in ctx.details.values():
            self._raise_if_cancelled(ctx, phase)
            result = await self.connection_manager.test_connection(
                target.project,
                target.instance,
                detail.target_name,
                is_source=False,
                connection_info=self._connection_info(target, config),
                owner=ctx.owner,
            )
            if not result.success:
                detail.status = DatabaseStatus.FAILED
                failures.append(f"{detail.target_name} ({result.error})")

        if failures:
            raise PostValidationError(
                f"Migrated databases not reachable on {target.label}: {', '.join(failures)}",
                phase=phase,
            )

    async def _cleanup(self, ctx: _RunContext) -> None:
        """Release pooled connections and remove local backups. Never raises."""
        if ctx.cleaned_up:
            return
        ctx.cleaned_up = True

        phase = MigrationPhase.CLEANUP.value
        if not ctx.state.is_terminal:
            ctx.state.set_current_phase(phase)
        ctx.log.phase_start(phase)
        start = time.monotonic()

        try:
            await self.connection_manager.release(ctx.owner)
        except Exception as e:
            self._warn(ctx, f"Failed to release connections: {e}")

        keep_backups = ctx.config.options.keep_backups or self.settings.backup.keep_backups
        if ctx.backup_files and not keep_backups:
            try:
                await self.database_ops.remove_backups(ctx.backup_files)
            except Exception as e:
                self._warn(ctx, f"Failed to remove backup files: {e}")

        duration = time.monotonic() - start
        self._record_phase(phase, "completed", duration)
        ctx.log.phase_complete(phase, duration)

    def _build_result(self, ctx: _RunContext) -> MigrationResult:
        duration = ctx.state.get_duration()
        if duration > 0 and ctx.processed_size:
            ctx.state.update_metrics({"throughput": ctx.processed_size / duration})

        details = list(ctx.details.values())
        return MigrationResult(
            success=True,
            migration_id=ctx.state.id,
            duration=duration,
            metrics=dict(ctx.state.metrics),
            processed_databases=len(details),
            database_details=details,
            migrated_databases=[
                detail.target_name for detail in details
                if detail.status in (DatabaseStatus.COMPLETED, DatabaseStatus.SIMULATED)
            ],
            dry_run=ctx.config.options.dry_run,
            warnings=[warning.message for warning in ctx.state.warnings],
        )
