"""
Batch coordination of many migration tasks.

The coordinator turns a MigrationMapping into OperationConfigs, validates
all of them up front, then runs them on a bounded pool of workers that
drain a FIFO queue. Each task gets its own engine; outcomes are sorted
into successful, failed and skipped and summarised in a BatchReport.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from cloudsql_migrator.core.error_handler import ErrorContext, ErrorHandler
from cloudsql_migrator.core.exceptions import ConfigValidationError, MigrationEngineError
from cloudsql_migrator.models.config import DEFAULT_TOOL_NAME, OperationConfig
from cloudsql_migrator.models.execution_state import ExecutionState
from cloudsql_migrator.models.mapping import MigrationMapping
from cloudsql_migrator.models.results import BatchReport, BatchSummary, TaskOutcome, TaskStatus
from cloudsql_migrator.models.settings import BatchSettings
from cloudsql_migrator.orchestrator.engine import ModernMigrationEngine
from cloudsql_migrator.strategies.patterns import (
    ConflictResolution,
    MigrationPattern,
    MigrationPatternResolver,
)
from cloudsql_migrator.utils.helpers import format_duration, generate_execution_id

logger = logging.getLogger(__name__)

SKIPPED_AFTER_FAILURE = "Skipped due to previous failure"
SKIPPED_AFTER_CANCEL = "Skipped because the batch was cancelled"

BatchProgressCallback = Callable[[str, int, int, str], None]


class BatchPhase(str, Enum):
    """Coordinator phases reported to the progress callback."""
    INITIALIZATION = "Initialization"
    VALIDATION = "Validation"
    EXECUTION = "Execution"
    RETRY = "Retry"
    CONSOLIDATION = "Consolidation"
    REPORTING = "Reporting"
    COMPLETE = "Complete"


BATCH_PHASES = [
    BatchPhase.INITIALIZATION.value,
    BatchPhase.VALIDATION.value,
    BatchPhase.EXECUTION.value,
    BatchPhase.CONSOLIDATION.value,
    BatchPhase.REPORTING.value,
]


@dataclass
class BatchOperation:
    """One task of a batch with its generated id."""
    id: str
    index: int
    config: OperationConfig

    @property
    def source(self) -> str:
        return f"{self.config.source.project}:{self.config.source.instance}"

    @property
    def target(self) -> str:
        return f"{self.config.target.project}:{self.config.target.instance}"


class BatchMigrationCoordinator:
    """
    Runs the tasks of a migration mapping with bounded parallelism.
    """

    def __init__(
        self,
        engine_factory: Callable[[], ModernMigrationEngine],
        max_parallel: Optional[int] = None,
        stop_on_error: Optional[bool] = None,
        retry_failed: Optional[bool] = None,
        error_handler: Optional[ErrorHandler] = None,
        settings: Optional[BatchSettings] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            engine_factory: Creates a fresh engine for each task
            max_parallel: Maximum number of tasks running at once
            stop_on_error: Skip not-yet-started tasks after the first failure
            retry_failed: Run failed tasks once more after the main pass
            error_handler: Categorises task failures for the report
            settings: Defaults for the three options above
        """
        settings = settings or BatchSettings()
        self.engine_factory = engine_factory
        self.max_parallel = max(1, max_parallel if max_parallel is not None else settings.max_parallel)
        self.stop_on_error = settings.stop_on_error if stop_on_error is None else stop_on_error
        self.retry_failed = settings.retry_failed if retry_failed is None else retry_failed
        self.error_handler = error_handler or ErrorHandler(logger)

        self.state: Optional[ExecutionState] = None
        self._active: Dict[str, Dict[str, Any]] = {}
        self._pending: List[str] = []
        self._completed: List[str] = []
        self._failed: List[str] = []
        self._stopped = False
        self._cancelled = False

    def _reset(self) -> None:
        self._active = {}
        self._pending = []
        self._completed = []
        self._failed = []
        self._stopped = False
        self._cancelled = False

    async def execute_batch(
        self,
        plan: Union[MigrationMapping, Sequence[OperationConfig]],
        progress_callback: Optional[BatchProgressCallback] = None,
        tool_name: str = DEFAULT_TOOL_NAME,
    ) -> BatchReport:
        """
        Execute every task of a mapping or of an already expanded config list.

        Args:
            plan: A MigrationMapping, or OperationConfigs in execution order
            progress_callback: Called as ``(phase, current, total, status)``
            tool_name: Tool name stamped on generated configs

        Returns:
            BatchReport with successful, failed and skipped tasks

        Raises:
            ConfigValidationError: If the mapping or any generated config is invalid
        """
        start = time.monotonic()
        self._reset()
        state = ExecutionState(tool_name="batch-migration")
        self.state = state
        state.start(BATCH_PHASES)

        def notify(phase: BatchPhase, current: int, total: int, status: str) -> None:
            if not progress_callback:
                return
            try:
                progress_callback(phase.value, current, total, status)
            except Exception as e:
                logger.warning(f"Batch progress callback failed: {e}")

        try:
            state.set_current_phase(BatchPhase.INITIALIZATION.value)
            if isinstance(plan, MigrationMapping):
                configs = self._configs_from_mapping(plan, tool_name)
                strategy = plan.strategy.value
                mapping_type = plan.mapping_type
                merge = plan.conflict_resolution == ConflictResolution.MERGE
            else:
                configs = list(plan)
                strategy = None
                mapping_type = MigrationPatternResolver.detect_pattern(
                    len({f"{c.source.project}:{c.source.instance}" for c in configs}),
                    len({f"{c.target.project}:{c.target.instance}" for c in configs}),
                )
                merge = any(c.options.conflict_resolution == ConflictResolution.MERGE.value for c in configs)

            operations = self._create_operations(configs)
            total = len(operations)
            self._pending = [op.id for op in operations]
            logger.info(f"Batch migration started: {total} migration(s) planned")
            notify(BatchPhase.INITIALIZATION, 0, total, "Preparing batch migration")

            state.set_current_phase(BatchPhase.VALIDATION.value)
            notify(BatchPhase.VALIDATION, 0, total, "Validating all migrations")
            self._validate_operations(operations)

            state.set_current_phase(BatchPhase.EXECUTION.value)
            outcomes = await self._run_pool(operations, notify, BatchPhase.EXECUTION, self.stop_on_error)

            failed = [outcomes[op.id] for op in operations if outcomes[op.id].status == TaskStatus.FAILED]
            if self.retry_failed and failed and not self._cancelled:
                outcomes.update(await self._retry(operations, failed, notify))

            consolidation: Dict[str, Dict[str, List[str]]] = {}
            if mapping_type == MigrationPattern.MANY_TO_ONE and merge:
                state.set_current_phase(BatchPhase.CONSOLIDATION.value)
                successful_count = sum(1 for o in outcomes.values() if o.status == TaskStatus.SUCCESSFUL)
                notify(BatchPhase.CONSOLIDATION, successful_count, total, "Consolidating databases")
                consolidation = self._consolidate(operations, outcomes)

            state.set_current_phase(BatchPhase.REPORTING.value)
            report = self._generate_report(
                operations, outcomes, strategy, mapping_type, time.monotonic() - start, consolidation,
            )
            state.update_metrics({"total_size": report.summary.total_size_bytes})
            state.complete(report.summary.model_dump(mode="json"))
        except Exception as e:
            if not state.is_terminal:
                state.fail(e)
            raise

        summary = report.summary
        notify(
            BatchPhase.COMPLETE, total, total,
            f"Batch migration completed: {summary.successful}/{total} successful",
        )
        logger.info(
            f"Batch migration finished: {summary.successful} successful, "
            f"{summary.failed} failed, {summary.skipped} skipped in {summary.duration_formatted}"
        )
        return report

    def _configs_from_mapping(self, mapping: MigrationMapping, tool_name: str) -> List[OperationConfig]:
        validation = mapping.validate()
        if not validation.valid:
            raise ConfigValidationError(
                f"Invalid mapping: {', '.join(validation.errors)}",
                errors=validation.errors,
            )
        for warning in validation.warnings:
            logger.warning(f"Mapping warning: {warning}")
        return mapping.to_operation_configs(tool_name)

    @staticmethod
    def _create_operations(configs: Sequence[OperationConfig]) -> List[BatchOperation]:
        return [
            BatchOperation(
                id=f"migration_{index}_{config.source.instance}_to_{config.target.instance}",
                index=index,
                config=config,
            )
            for index, config in enumerate(configs)
        ]

    @staticmethod
    def _validate_operations(operations: Sequence[BatchOperation]) -> None:
        failures = []
        for op in operations:
            result = op.config.validate()
            if not result.valid:
                failures.append(f"{op.id}: {'; '.join(result.errors)}")

        if failures:
            raise ConfigValidationError(
                f"Validation failed for {len(failures)} migration(s):\n" + "\n".join(failures),
                errors=failures,
            )
        logger.info("All migrations validated successfully")

    async def _run_pool(
        self,
        operations: Sequence[BatchOperation],
        notify: Callable[[BatchPhase, int, int, str], None],
        phase: BatchPhase,
        stop_on_error: bool,
        attempt: int = 1,
    ) -> Dict[str, TaskOutcome]:
        """Run operations on ``max_parallel`` workers draining a FIFO queue."""
        queue: asyncio.Queue = asyncio.Queue()
        for op in operations:
            queue.put_nowait(op)

        outcomes: Dict[str, TaskOutcome] = {}
        total = len(operations)
        finished = 0

        async def worker() -> None:
            nonlocal finished
            while True:
                try:
                    op = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                if self._cancelled or self._stopped:
                    reason = SKIPPED_AFTER_CANCEL if self._cancelled else SKIPPED_AFTER_FAILURE
                    outcomes[op.id] = self._skipped(op, reason)
                    continue

                outcome = await self._execute_single(op, attempt)
                outcomes[op.id] = outcome
                finished += 1

                if outcome.status == TaskStatus.SUCCESSFUL:
                    notify(phase, finished, total, f"Completed {op.id}")
                else:
                    notify(phase, finished, total, f"Failed {op.id}: {outcome.error}")
                    if stop_on_error and not self._stopped:
                        self._stopped = True
                        logger.warning(f"Stopping batch execution due to failure in {op.id}")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.max_parallel, total))]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()

        skipped = sum(1 for o in outcomes.values() if o.status == TaskStatus.SKIPPED)
        if skipped:
            logger.warning(f"Batch execution stopped: {skipped} migration(s) skipped")
        return outcomes

    async def _execute_single(self, op: BatchOperation, attempt: int = 1) -> TaskOutcome:
        engine = self.engine_factory()
        start = time.monotonic()
        if op.id in self._pending:
            self._pending.remove(op.id)
        self._active[op.id] = {"engine": engine, "start": start}
        logger.info(f"Starting migration: {op.id}")

        try:
            result = await engine.migrate(op.config)
        except Exception as e:
            duration = time.monotonic() - start
            error_info = await self.error_handler.handle_error(
                e,
                ErrorContext(
                    operation=op.id,
                    phase=getattr(e, "phase", None),
                    execution_id=op.config.execution_id,
                ),
            )
            self._failed.append(op.id)
            message = e.message if isinstance(e, MigrationEngineError) else str(e)
            logger.error(f"Migration failed: {op.id}: {message}")
            return TaskOutcome(
                task_id=op.id,
                index=op.index,
                source=op.source,
                target=op.target,
                status=TaskStatus.FAILED,
                databases=op.config.source.databases,
                error=message or type(e).__name__,
                error_type=type(e).__name__,
                phase=getattr(e, "phase", None),
                category=error_info.category.value,
                duration=duration,
                attempts=attempt,
            )
        finally:
            self._active.pop(op.id, None)

        duration = time.monotonic() - start
        self._completed.append(op.id)
        logger.info(f"Migration completed: {op.id} ({format_duration(duration)})")
        return TaskOutcome(
            task_id=op.id,
            index=op.index,
            source=op.source,
            target=op.target,
            status=TaskStatus.SUCCESSFUL,
            databases=list(result.migrated_databases),
            result=result,
            duration=duration,
            attempts=attempt,
        )

    @staticmethod
    def _skipped(op: BatchOperation, reason: str) -> TaskOutcome:
        return TaskOutcome(
            task_id=op.id,
            index=op.index,
            source=op.source,
            target=op.target,
            status=TaskStatus.SKIPPED,
            databases=op.config.source.databases,
            reason=reason,
        )

    async def _retry(
        self,
        operations: Sequence[BatchOperation],
        failed: Sequence[TaskOutcome],
        notify: Callable[[BatchPhase, int, int, str], None],
    ) -> Dict[str, TaskOutcome]:
        """One more pass over failed tasks; outcomes that recover replace the failures."""
        failed_ids = {outcome.task_id for outcome in failed}
        retry_ops = [op for op in operations if op.id in failed_ids]
        logger.info(f"Retrying {len(retry_ops)} failed migration(s)")
        notify(BatchPhase.RETRY, 0, len(retry_ops), f"Retrying {len(retry_ops)} failed migration(s)")

        self._stopped = False
        retried = await self._run_pool(retry_ops, notify, BatchPhase.RETRY, stop_on_error=False, attempt=2)

        updates = {}
        for task_id, outcome in retried.items():
            if outcome.status == TaskStatus.SKIPPED:
                continue
            # drop the failure recorded by the first attempt
            self._failed.remove(task_id)
            updates[task_id] = outcome
        return updates

    @staticmethod
    def _consolidate(
        operations: Sequence[BatchOperation],
        outcomes: Dict[str, TaskOutcome],
    ) -> Dict[str, Dict[str, List[str]]]:
        """Find databases that several sources migrated into the same target."""
        by_target: Dict[str, Dict[str, List[str]]] = {}
        for op in operations:
            outcome = outcomes[op.id]
            if outcome.status != TaskStatus.SUCCESSFUL:
                continue
            databases = by_target.setdefault(op.target, {})
            for database in outcome.databases or []:
                databases.setdefault(database, []).append(op.config.source.instance)

        consolidated = {}
        for target, databases in by_target.items():
            merged = {name: sources for name, sources in databases.items() if len(sources) > 1}
            for name, sources in merged.items():
                logger.warning(
                    f'Database "{name}" on {target} was migrated from multiple sources: {", ".join(sources)}'
                )
            if merged:
                consolidated[target] = merged
        return consolidated

    def _generate_report(
        self,
        operations: Sequence[BatchOperation],
        outcomes: Dict[str, TaskOutcome],
        strategy: Optional[str],
        mapping_type: MigrationPattern,
        duration: float,
        consolidation: Dict[str, Dict[str, List[str]]],
    ) -> BatchReport:
        ordered = [outcomes[op.id] for op in operations]
        successful = [o for o in ordered if o.status == TaskStatus.SUCCESSFUL]
        failed = [o for o in ordered if o.status == TaskStatus.FAILED]
        skipped = [o for o in ordered if o.status == TaskStatus.SKIPPED]
        total = len(ordered)

        total_size = sum(int(o.result.metrics.get("total_size") or 0) for o in successful if o.result)

        performance: Dict[str, float] = {}
        if successful:
            durations = [o.duration for o in successful]
            performance = {
                "avg_duration": sum(durations) / len(durations),
                "min_duration": min(durations),
                "max_duration": max(durations),
                "total_duration": duration,
            }

        summary = BatchSummary(
            strategy=strategy,
            mapping_type=mapping_type.value,
            total_tasks=total,
            successful=len(successful),
            failed=len(failed),
            skipped=len(skipped),
            duration=duration,
            duration_formatted=format_duration(duration),
            success_rate=round(len(successful) / total * 100, 2) if total else 0.0,
            total_size_bytes=total_size,
            stopped=self._stopped,
            cancelled=self._cancelled,
        )

        metadata: Dict[str, Any] = {
            "executed_at": datetime.utcnow().isoformat(),
            "coordinator": type(self).__name__,
            "max_parallel": self.max_parallel,
            "stop_on_error": self.stop_on_error,
            "retry_failed": self.retry_failed,
        }
        if consolidation:
            metadata["consolidation"] = consolidation

        return BatchReport(
            batch_id=self.state.id if self.state else generate_execution_id("batch"),
            summary=summary,
            successful=successful,
            failed=failed,
            skipped=skipped,
            performance=performance,
            metadata=metadata,
        )

    async def cancel_batch(self) -> Dict[str, Any]:
        """Stop starting new tasks and ask running engines to cancel."""
        logger.warning("Cancelling batch migration")
        self._cancelled = True
        cancelled = 0
        for entry in list(self._active.values()):
            if entry["engine"].cancel():
                cancelled += 1
        return {
            "cancelled": True,
            "running_cancelled": cancelled,
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    def get_status(self) -> Dict[str, Any]:
        now = time.monotonic()
        return {
            "active": len(self._active),
            "completed": len(self._completed),
            "failed": len(self._failed),
            "pending": len(self._pending),
            "active_migrations": [
                {"id": task_id, "duration": now - entry["start"]}
                for task_id, entry in self._active.items()
            ],
        }
