"""
Logging for the CloudSQL migrator.

Everything logs under the ``cloudsql_migrator`` logger. ``setup_logging``
attaches a Rich console handler (or a plain / JSON stream handler) and an
optional rotating log file. ``MigrationLogger`` wraps the logger of one
execution so the engine can report phases, connection attempts and
dump/restore operations with structured fields attached.
"""

import json
import logging
import logging.handlers
import sys
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "cloudsql_migrator"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "log_entry", "taskName"}


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(str, Enum):
    """What part of a migration a log entry is about."""
    SYSTEM = "system"
    MIGRATION = "migration"
    CONNECTION = "connection"
    DATABASE = "database"
    BATCH = "batch"
    VALIDATION = "validation"
    PERFORMANCE = "performance"


@dataclass
class LogEntry:
    """One structured log line."""
    message: str = ""
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.SYSTEM
    execution_id: Optional[str] = None
    operation: Optional[str] = None
    phase: Optional[str] = None
    duration: Optional[float] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = {key: value for key, value in asdict(self).items() if value is not None}
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = getattr(record, 'log_entry', None)
        if not isinstance(entry, LogEntry):
            extra = {
                key: value for key, value in vars(record).items()
                if key not in _RECORD_ATTRIBUTES
            }
            entry = LogEntry(
                message=record.getMessage(),
                level=LogLevel(record.levelname),
                timestamp=datetime.fromtimestamp(record.created),
                metadata={
                    'logger': record.name,
                    'module': record.module,
                    'function': record.funcName,
                    'line': record.lineno,
                    **extra,
                },
            )
        return entry.to_json()


def _formatter(structured: bool) -> logging.Formatter:
    if structured:
        return StructuredFormatter()
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    log_rotation: bool = True,
    max_log_size: int = 50 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the ``cloudsql_migrator`` logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        level: Logging level name
        log_file: Also write to this file when given
        rich_console: Use Rich for console output (ignored for structured logging)
        structured_logging: Emit JSON lines on every handler
        log_rotation: Rotate the log file at ``max_log_size`` bytes
        max_log_size: Size at which the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if rich_console and not structured_logging:
        console: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
    else:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(structured_logging))
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        if log_rotation:
            file_handler: logging.Handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=max_log_size, backupCount=backup_count,
            )
        else:
            file_handler = logging.FileHandler(path)
        file_handler.setFormatter(_formatter(structured_logging))
        logger.addHandler(file_handler)

    return logger


def configure_logging(settings: Any) -> logging.Logger:
    """``setup_logging`` driven by a ``LoggingSettings`` model."""
    return setup_logging(**settings.model_dump())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class PerformanceMonitor:
    """Timings recorded during one execution, keyed by metric name."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._samples: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def record_metric(self, metric_name: str, value: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._samples.setdefault(metric_name, []).append(value)
        self.logger.debug(
            f"Metric {metric_name}={value:.3f}",
            extra={'metric_name': metric_name, 'metric_value': value, **(metadata or {})},
        )

    def summary(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            samples = {name: list(values) for name, values in self._samples.items()}
        return {
            name: {
                'count': len(values),
                'min': min(values),
                'max': max(values),
                'avg': sum(values) / len(values),
                'total': sum(values),
            }
            for name, values in samples.items() if values
        }


class MigrationLogger:
    """
    Logger bound to one execution id.

    In structured mode every call attaches a ``LogEntry`` that the
    StructuredFormatter emits as is; otherwise the metadata goes into
    the record's ``extra`` fields.
    """

    def __init__(self, execution_id: str, structured: bool = False):
        self.execution_id = execution_id
        self.structured = structured
        self.logger = get_logger(f"execution.{execution_id}")
        self.performance_monitor = PerformanceMonitor(self.logger)

    def _log(
        self,
        level: LogLevel,
        message: str,
        category: LogCategory = LogCategory.MIGRATION,
        operation: Optional[str] = None,
        phase: Optional[str] = None,
        duration: Optional[float] = None,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        metadata = metadata or {}
        if self.structured:
            extra: Dict[str, Any] = {'log_entry': LogEntry(
                message=message,
                level=level,
                category=category,
                execution_id=self.execution_id,
                operation=operation,
                phase=phase,
                duration=duration,
                error_code=error_code,
                metadata=metadata,
            )}
        else:
            extra = metadata
        self.logger.log(getattr(logging, level.value), message, extra=extra)

    def debug(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.DEBUG, message, category, **kwargs)

    def info(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.INFO, message, category, **kwargs)

    def warning(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.WARNING, message, category, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.ERROR, message, category, **kwargs)

    def phase_start(self, phase: str) -> None:
        self.info(f"Phase {phase} started", phase=phase, metadata={'phase_status': 'started'})

    def phase_complete(self, phase: str, duration: float) -> None:
        """Log the end of a phase and record its duration."""
        self.info(
            f"Phase {phase} completed in {duration:.2f}s",
            phase=phase,
            duration=duration,
            metadata={'phase_status': 'completed', 'duration': duration},
        )
        self.performance_monitor.record_metric(f"phase_duration_{phase}", duration, {'phase_name': phase})

    def phase_failed(self, phase: str, error: str, error_code: Optional[str] = None) -> None:
        self.error(
            f"Phase {phase} failed: {error}",
            phase=phase,
            error_code=error_code,
            metadata={'phase_status': 'failed', 'error_details': error},
        )

    def log_database_operation(
        self,
        operation: str,
        database: str,
        size_bytes: Optional[int] = None,
        duration: Optional[float] = None
    ) -> None:
        """Log a dump or restore of one database."""
        message = f"{operation.capitalize()} of {database} finished"
        if duration:
            message += f" in {duration:.2f}s"
        self.info(
            message,
            category=LogCategory.DATABASE,
            operation=operation,
            duration=duration,
            metadata={'database': database, 'size_bytes': size_bytes, 'duration': duration},
        )
        if duration:
            self.performance_monitor.record_metric(f"{operation}_duration", duration, {'database': database})

    def log_connection_attempt(self, key: str, attempt: int, max_attempts: int) -> None:
        self.debug(
            f"Connecting to {key} (attempt {attempt}/{max_attempts})",
            category=LogCategory.CONNECTION,
            operation="connect",
            metadata={'connection_key': key, 'attempt': attempt},
        )

    def log_connection_success(self, key: str, version: Optional[str] = None) -> None:
        suffix = f" (PostgreSQL {version})" if version else ""
        self.info(
            f"Connected to {key}{suffix}",
            category=LogCategory.CONNECTION,
            operation="connect",
            metadata={'connection_key': key, 'server_version': version},
        )

    def log_retry(self, key: str, attempt: int, error: Exception, delay: float) -> None:
        self.warning(
            f"Connection attempt {attempt} to {key} failed: {error}; retrying in {delay:.1f}s",
            category=LogCategory.CONNECTION,
            operation="connect",
            metadata={'connection_key': key, 'attempt': attempt, 'delay': delay},
        )

    def get_performance_summary(self) -> Dict[str, Dict[str, float]]:
        return self.performance_monitor.summary()
