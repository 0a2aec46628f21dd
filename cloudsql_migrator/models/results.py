"""
Result models for the CloudSQL migrator.

These models carry data out of the connection layer, the database
operations, the engine and the batch coordinator.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DatabaseInfo(BaseModel):
    """A database discovered on an instance."""
    name: str
    size_bytes: int = 0
    size_formatted: str = "0 B"


class ConnectionTestResult(BaseModel):
    """Outcome of a connectivity test."""
    success: bool
    version: Optional[str] = None
    database: Optional[str] = None
    user: Optional[str] = None
    server_info: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None


class ExportResult(BaseModel):
    """A database dump written to local disk."""
    database: str
    backup_file: str
    size: int = 0
    duration: float = 0.0


class ImportResult(BaseModel):
    """A dump restored into a target database."""
    database: str
    target_database: str
    duration: float = 0.0
    created_database: bool = False


class DatabaseStatus(str, Enum):
    """Progress of a single database through a migration."""
    PENDING = "pending"
    EXPORTED = "exported"
    COMPLETED = "completed"
    SIMULATED = "simulated"
    FAILED = "failed"


class DatabaseDetail(BaseModel):
    """Per-database record kept by the engine."""
    name: str
    target_name: str
    status: DatabaseStatus = DatabaseStatus.PENDING
    original_size: int = 0
    size_formatted: str = "0 B"
    backup_file: Optional[str] = None
    export_duration: Optional[float] = None
    import_duration: Optional[float] = None
    merged: bool = False


class MigrationResult(BaseModel):
    """Result of a successful engine run."""
    success: bool
    migration_id: str
    duration: float
    metrics: Dict[str, Any] = Field(default_factory=dict)
    processed_databases: int = 0
    database_details: List[DatabaseDetail] = Field(default_factory=list)
    migrated_databases: List[str] = Field(default_factory=list)
    dry_run: bool = False
    warnings: List[str] = Field(default_factory=list)


class TaskStatus(str, Enum):
    """Outcome classification of a batch task."""
    SUCCESSFUL = "successful"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskOutcome(BaseModel):
    """Outcome of one task within a batch."""
    task_id: str
    index: int
    source: str
    target: str
    status: TaskStatus
    databases: Optional[List[str]] = None
    result: Optional[MigrationResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    phase: Optional[str] = None
    category: Optional[str] = None
    reason: Optional[str] = None
    duration: float = 0.0
    attempts: int = 0


class BatchSummary(BaseModel):
    """Aggregate counts for a batch."""
    strategy: Optional[str] = None
    mapping_type: Optional[str] = None
    total_tasks: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float = 0.0
    duration_formatted: str = "0ms"
    success_rate: float = 0.0
    total_size_bytes: int = 0
    stopped: bool = False
    cancelled: bool = False


class BatchReport(BaseModel):
    """Final report of a batch run."""
    batch_id: str
    summary: BatchSummary
    successful: List[TaskOutcome] = Field(default_factory=list)
    failed: List[TaskOutcome] = Field(default_factory=list)
    skipped: List[TaskOutcome] = Field(default_factory=list)
    performance: Dict[str, float] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=datetime.utcnow)
