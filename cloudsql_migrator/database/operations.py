"""
Dump and restore of individual databases.

The engine talks to a ``DatabaseOperations`` implementation; the default
one shells out to ``pg_dump`` and ``pg_restore`` with the custom archive
format and reuses the connection manager for host, credential and SSL
resolution.
"""

import asyncio
import logging
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from psycopg2 import Error as PostgreSQLError
from psycopg2 import sql

from ..core.exceptions import DatabaseOperationError
from ..models.results import ExportResult, ImportResult
from ..models.settings import BackupSettings
from .connection import ConnectionManager, PoolEntry

logger = logging.getLogger(__name__)

# libpq environment variables for the SSL parameters
_SSL_ENV = {
    "sslmode": "PGSSLMODE",
    "sslrootcert": "PGSSLROOTCERT",
    "sslcert": "PGSSLCERT",
    "sslkey": "PGSSLKEY",
}


class DatabaseOperations(Protocol):
    """Per-database dump and restore used by the migration engine.

    ``options`` carries ``connection_info`` (user, password, ip, ssl_mode,
    use_proxy), ``schema_only``, ``data_only`` and, for imports, ``jobs``
    and ``target_database``.
    """

    async def export_database(
        self, project: str, instance: str, database: str, options: Mapping[str, Any]
    ) -> ExportResult:
        ...

    async def import_database(
        self, project: str, instance: str, database: str, backup_file: str, options: Mapping[str, Any]
    ) -> ImportResult:
        ...

    async def remove_backups(self, backup_files: Iterable[str]) -> int:
        ...


def _mode_flags(options: Mapping[str, Any]) -> List[str]:
    if options.get("schema_only"):
        return ["--schema-only"]
    if options.get("data_only"):
        return ["--data-only"]
    return []


class PgDumpDatabaseOperations:
    """``pg_dump`` / ``pg_restore`` based implementation."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        settings: Optional[BackupSettings] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.connection_manager = connection_manager
        self.settings = settings or BackupSettings()
        self._env = os.environ if env is None else env

    def _backup_path(self, project: str, instance: str, database: str) -> Path:
        backup_dir = Path(self.settings.temp_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S_%f")
        return backup_dir / f"{project}_{instance}_{database}_{timestamp}.dump"

    def _process_env(self, params: Mapping[str, Any]) -> Dict[str, str]:
        env = dict(self._env)
        env["PGPASSWORD"] = params["password"]
        for key, name in _SSL_ENV.items():
            if params.get(key):
                env[name] = str(params[key])
        return env

    @staticmethod
    def _connection_args(params: Mapping[str, Any]) -> List[str]:
        return [
            f"--host={params['host']}",
            f"--port={params['port']}",
            f"--username={params['user']}",
            "--no-password",
        ]

    @staticmethod
    def _require_tool(name: str, phase: str) -> str:
        path = shutil.which(name)
        if not path:
            raise DatabaseOperationError(
                f"{name} not found on PATH; install the PostgreSQL client tools",
                phase=phase,
            )
        return path

    async def _run(self, cmd: List[str], env: Dict[str, str]) -> str:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            error_msg = stderr.decode(errors="replace").strip() if stderr else "Unknown error"
            raise RuntimeError(error_msg or f"exit status {process.returncode}")
        return stderr.decode(errors="replace") if stderr else ""

    async def export_database(
        self, project: str, instance: str, database: str, options: Mapping[str, Any]
    ) -> ExportResult:
        """Dump a source database into a local custom-format archive.

        Raises:
            DatabaseOperationError: pg_dump is missing or failed; the
                partial archive is removed
        """
        pg_dump = self._require_tool("pg_dump", "Export")
        params = self.connection_manager.create_connection_params(
            project, instance, database, is_source=True,
            connection_info=options.get("connection_info"),
        )
        backup_file = self._backup_path(project, instance, database)

        cmd = [pg_dump, *self._connection_args(params),
               "--format=custom",
               f"--compress={self.settings.compression_level}",
               f"--file={backup_file}",
               *_mode_flags(options),
               database]

        logger.info(f"Exporting {database} from {project}:{instance}")
        start = time.monotonic()
        try:
            await self._run(cmd, self._process_env(params))
        except (RuntimeError, OSError) as e:
            backup_file.unlink(missing_ok=True)
            raise DatabaseOperationError(
                f"Export of {database} failed: {e}",
                phase="Export",
                details={"database": database, "instance": instance},
            ) from e

        size = backup_file.stat().st_size if backup_file.exists() else 0
        return ExportResult(
            database=database,
            backup_file=str(backup_file),
            size=size,
            duration=time.monotonic() - start,
        )

    @staticmethod
    def _create_database_sync(entry: PoolEntry, name: str) -> bool:
        conn = entry.pool.getconn()
        previous = conn.autocommit
        try:
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1 FROM pg_database WHERE datname = %s", (name,))
                if cursor.fetchone():
                    return False
                cursor.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))
                return True
        finally:
            conn.autocommit = previous
            entry.pool.putconn(conn)

    async def create_database_if_missing(
        self, project: str, instance: str, name: str, connection_info: Optional[Mapping[str, Any]] = None
    ) -> bool:
        """Create the target database unless it exists. Returns True when created."""
        entry = await self.connection_manager.connect(
            project, instance, "postgres", is_source=False, connection_info=connection_info,
        )
        try:
            created = await asyncio.to_thread(self._create_database_sync, entry, name)
        except PostgreSQLError as e:
            raise DatabaseOperationError(
                f"Could not create database {name} on {project}:{instance}: {e}",
                phase="Import",
            ) from e
        if created:
            logger.info(f"Created database {name} on {project}:{instance}")
        return created

    async def import_database(
        self, project: str, instance: str, database: str, backup_file: str, options: Mapping[str, Any]
    ) -> ImportResult:
        """Restore an archive into the target, creating the database first if needed."""
        pg_restore = self._require_tool("pg_restore", "Import")
        target_database = options.get("target_database") or database
        connection_info = options.get("connection_info")

        created = await self.create_database_if_missing(project, instance, target_database, connection_info)
        params = self.connection_manager.create_connection_params(
            project, instance, target_database, is_source=False, connection_info=connection_info,
        )

        cmd = [pg_restore, *self._connection_args(params),
               f"--dbname={target_database}",
               "--clean",
               "--if-exists"]
        jobs = int(options.get("jobs") or 1)
        if jobs > 1:
            cmd.append(f"--jobs={jobs}")
        cmd.extend(_mode_flags(options))
        cmd.append(str(backup_file))

        logger.info(f"Importing {database} into {project}:{instance}/{target_database}")
        start = time.monotonic()
        try:
            await self._run(cmd, self._process_env(params))
        except (RuntimeError, OSError) as e:
            raise DatabaseOperationError(
                f"Import of {database} into {target_database} failed: {e}",
                phase="Import",
                details={"database": database, "target_database": target_database},
            ) from e

        return ImportResult(
            database=database,
            target_database=target_database,
            duration=time.monotonic() - start,
            created_database=created,
        )

    async def remove_backups(self, backup_files: Iterable[str]) -> int:
        """Delete local archives; failures are logged and skipped."""
        removed = 0
        for backup_file in backup_files:
            try:
                Path(backup_file).unlink(missing_ok=True)
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove backup {backup_file}: {e}")
        return removed
