"""
Execution state for a single migration task.

The state records status, phase progression, errors, warnings and
metrics of one engine run. It is mutated only by the engine that owns it.
Once a terminal status is reached, status and phase transitions raise
``ExecutionStateError``; errors, warnings and metrics may still be recorded.
"""

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from cloudsql_migrator.core.exceptions import ExecutionStateError
from cloudsql_migrator.models.config import OperationConfig
from cloudsql_migrator.utils.helpers import generate_execution_id


class ExecutionStatus(str, Enum):
    """Execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


class StateError(BaseModel):
    """An error recorded during execution."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    message: str
    phase: Optional[str] = None
    error_type: Optional[str] = None
    stack: Optional[str] = None


class StateWarning(BaseModel):
    """A warning recorded during execution."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    message: str
    phase: Optional[str] = None


def _default_metrics() -> Dict[str, Any]:
    return {
        "total_size": 0,
        "processed_size": 0,
        "estimated_duration": 0.0,
        "actual_duration": 0.0,
        "throughput": 0.0,
    }


class ExecutionState(BaseModel):
    """State of one migration task."""
    id: str = Field(default_factory=lambda: generate_execution_id("state"))
    tool_name: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    current_phase: Optional[str] = None
    completed_phases: List[str] = Field(default_factory=list)
    total_phases: List[str] = Field(default_factory=list)
    errors: List[StateError] = Field(default_factory=list)
    warnings: List[StateWarning] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=_default_metrics)
    result: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False
    config: Optional[OperationConfig] = None

    @classmethod
    def for_config(cls, config: OperationConfig) -> "ExecutionState":
        """Create a state that reuses the config's execution id."""
        return cls(
            id=config.metadata.execution_id,
            tool_name=config.metadata.tool_name,
            config=config,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ensure_not_terminal(self, action: str) -> None:
        if self.is_terminal:
            raise ExecutionStateError(
                f"Cannot {action}: execution {self.id} is already {self.status.value}",
                details={"status": self.status.value},
            )

    def _stop_clock(self) -> None:
        self.end_time = datetime.utcnow()
        self.metrics["actual_duration"] = self.get_duration()

    def _close_current_phase(self) -> None:
        if self.current_phase and self.current_phase not in self.completed_phases:
            self.completed_phases.append(self.current_phase)

    def start(self, phases: Optional[List[str]] = None) -> None:
        """Start execution with the given ordered phases."""
        if self.status != ExecutionStatus.PENDING:
            raise ExecutionStateError(
                f"Cannot start: execution {self.id} is {self.status.value}"
            )
        self.status = ExecutionStatus.RUNNING
        self.start_time = datetime.utcnow()
        self.end_time = None
        self.total_phases = list(phases or [])
        self.completed_phases = []
        self.current_phase = None
        self.errors = []
        self.warnings = []

    def set_current_phase(self, phase: str) -> None:
        """Enter a phase; the previous phase is marked completed once."""
        self._ensure_not_terminal(f"enter phase {phase}")
        if phase == self.current_phase:
            return
        self._close_current_phase()
        self.current_phase = phase

    def update_metrics(self, metrics: Dict[str, Any]) -> None:
        self.metrics = {**self.metrics, **metrics}

    def add_error(self, error: Union[Exception, str], phase: Optional[str] = None) -> None:
        if isinstance(error, Exception):
            message = getattr(error, "message", None) or str(error) or type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            error_type = type(error).__name__
        else:
            message, stack, error_type = str(error), None, None

        self.errors.append(StateError(
            message=message,
            phase=phase or getattr(error, "phase", None) or self.current_phase,
            error_type=error_type,
            stack=stack,
        ))

    def add_warning(self, message: str, phase: Optional[str] = None) -> None:
        self.warnings.append(StateWarning(message=message, phase=phase or self.current_phase))

    def complete(self, result: Optional[Dict[str, Any]] = None) -> None:
        """Complete execution successfully."""
        self._ensure_not_terminal("complete")
        self.status = ExecutionStatus.COMPLETED
        self.result = result
        self._close_current_phase()
        self._stop_clock()

    def fail(self, error: Union[Exception, str]) -> None:
        """Fail execution, recording the error against the current phase."""
        self._ensure_not_terminal("fail")
        self.add_error(error)
        self.status = ExecutionStatus.FAILED
        self._stop_clock()

    def cancel(self) -> bool:
        """Mark the execution cancelled and stop the clock.

        Work already in flight is not interrupted; the engine observes
        ``cancel_requested`` at its next phase or database boundary.
        Returns False when the execution had already finished.
        """
        if self.is_terminal:
            return False
        self.cancel_requested = True
        self.status = ExecutionStatus.CANCELLED
        self._stop_clock()
        return True

    def get_progress(self) -> int:
        """Progress percentage based on completed phases."""
        if not self.total_phases:
            return 0
        return round(len(self.completed_phases) / len(self.total_phases) * 100)

    def get_duration(self) -> float:
        """Elapsed seconds, up to now for a running execution."""
        if not self.start_time:
            return 0.0
        end_time = self.end_time or datetime.utcnow()
        return (end_time - self.start_time).total_seconds()

    def get_status_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "status": self.status.value,
            "progress": self.get_progress(),
            "current_phase": self.current_phase,
            "duration": self.get_duration(),
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "has_result": self.result is not None,
        }

    def can_resume(self) -> bool:
        return self.status == ExecutionStatus.FAILED and len(self.errors) > 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionState":
        return cls.model_validate(data)
