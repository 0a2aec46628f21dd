"""Connection pooling, dump/restore operations and the instance catalog."""

from .catalog import InstanceCatalog, annotate_versions, parse_engine_version
from .connection import (
    ConnectionManager,
    PoolEntry,
    classify_connection_error,
    major_version,
    parse_postgres_version,
)
from .operations import DatabaseOperations, PgDumpDatabaseOperations

__all__ = [
    "ConnectionManager",
    "DatabaseOperations",
    "InstanceCatalog",
    "PgDumpDatabaseOperations",
    "PoolEntry",
    "annotate_versions",
    "classify_connection_error",
    "major_version",
    "parse_engine_version",
    "parse_postgres_version",
]
