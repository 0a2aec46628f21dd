"""Pooled, retrying PostgreSQL connections to Cloud SQL instances using psycopg2."""

import asyncio
import atexit
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import psycopg2
from psycopg2 import Error as PostgreSQLError
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from ..core.error_handler import ErrorContext, RetryHandler, create_connection_retry_config
from ..core.exceptions import (
    ApiDisabledError,
    AuthenticationFailedError,
    ConnectionError,
    InstanceNotFoundError,
    InvalidProjectIdError,
    MigrationEngineError,
    PermissionDeniedError,
    UnreachableError,
)
from ..models.results import ConnectionTestResult, DatabaseInfo
from ..models.settings import DatabaseSettings, SSLMode
from ..security.credentials import CredentialResolver
from ..utils.helpers import format_bytes
from ..utils.logging import MigrationLogger

logger = logging.getLogger(__name__)

PROJECT_ID_PATTERN = re.compile(r"^(?:[a-z][a-z0-9.-]*:)?[a-z][a-z0-9-]{4,28}[a-z0-9]$")

SYSTEM_DATABASES = (
    "postgres",
    "template0",
    "template1",
    "cloudsqladmin",
    "cloudsqlimport",
    "cloudsqlexport",
    "information_schema",
    "pg_catalog",
    "pg_toast",
    "pg_temp",
    "cloudsql_fdw_test",
    "test",
)

LIST_DATABASES_SQL = """
    SELECT datname, pg_database_size(datname) AS size_bytes
    FROM pg_database
    WHERE datistemplate = false
    AND NOT (datname = ANY(%s))
    AND datname NOT LIKE 'pg\\_%%'
    AND datname NOT LIKE 'template%%'
    AND datname NOT LIKE 'cloudsql%%'
    ORDER BY datname
"""

SERVER_INFO_SQL = """
    SELECT
        version() AS full_version,
        current_setting('server_version') AS server_version,
        current_setting('server_version_num') AS server_version_num,
        inet_server_addr() AS server_ip,
        current_database() AS current_database,
        current_user AS current_user,
        pg_postmaster_start_time() AS server_start_time
"""

# (substring or SQLSTATE, exception type), checked in order
_ERROR_CLASSIFICATION = (
    (("28P01", "28000", "password authentication failed", "no password supplied"),
     AuthenticationFailedError),
    (("42501", "permission denied", "not authorized", "forbidden"),
     PermissionDeniedError),
    (("has not been used in project", "service_disabled", "api is disabled", "accessnotconfigured"),
     ApiDisabledError),
    (("3D000", "does not exist", "could not translate host name", "name or service not known",
      "nodename nor servname", "not found"),
     InstanceNotFoundError),
    (("invalid project", "invalid resource name"),
     InvalidProjectIdError),
)


def parse_postgres_version(full_version: Optional[str]) -> Optional[str]:
    """Extract ``14.9`` from ``PostgreSQL 14.9 on x86_64-pc-linux-gnu ...``."""
    if not full_version:
        return None
    match = re.search(r"PostgreSQL (\d+(?:\.\d+)?)", full_version)
    return match.group(1) if match else None


def major_version(version: Optional[str]) -> Optional[int]:
    if not version:
        return None
    match = re.match(r"(\d+)", str(version))
    return int(match.group(1)) if match else None


def classify_connection_error(
    error: BaseException,
    project: Optional[str] = None,
    instance: Optional[str] = None,
    attempts: int = 0,
) -> ConnectionError:
    """Map a driver or network error onto the connection error taxonomy."""
    if isinstance(error, ConnectionError):
        return error

    text = str(error)
    lowered = text.lower()
    pgcode = getattr(error, "pgcode", None) or ""

    error_type = UnreachableError
    for markers, candidate in _ERROR_CLASSIFICATION:
        if any(marker == pgcode or marker.lower() in lowered for marker in markers):
            error_type = candidate
            break

    return error_type(
        text.strip() or type(error).__name__,
        project=project,
        instance=instance,
        attempts=attempts,
        details={"pgcode": pgcode or None, "original_error": type(error).__name__},
    )


@dataclass
class PoolEntry:
    """A connection pool for one ``project:instance:database`` key."""
    key: str
    pool: Any
    params: Dict[str, Any]
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    version: Optional[str] = None
    retry_count: int = 0
    owners: Set[str] = field(default_factory=set)

    def touch(self) -> None:
        self.last_used = time.time()


class ConnectionManager:
    """Pool of connections to Cloud SQL instances.

    One pool is kept per ``project:instance:database`` key and shared by
    every task that connects with that key. Blocking psycopg2 calls run
    in worker threads; ``ThreadedConnectionPool`` is safe to use from
    several of them at once.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        credential_resolver: Optional[CredentialResolver] = None,
        pool_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        retry_handler: Optional[RetryHandler] = None,
        env: Optional[Mapping[str, str]] = None,
        register_atexit: bool = True,
    ):
        """Initialize the connection manager.

        Args:
            settings: Connection defaults (timeouts, retries, SSL, pool size)
            credential_resolver: Optional stored-credential lookup
            pool_factory: Builds a pool from psycopg2 connection parameters
            retry_handler: Retry implementation (backoff and sleeping)
            env: Environment mapping (defaults to ``os.environ``)
            register_atexit: Close remaining pools at interpreter exit
        """
        self.settings = settings or DatabaseSettings()
        self.credential_resolver = credential_resolver
        self.retry_handler = retry_handler or RetryHandler()
        self._pool_factory = pool_factory or self._default_pool_factory
        self._env = os.environ if env is None else env
        self._pools: Dict[str, PoolEntry] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self._loggers: Dict[str, MigrationLogger] = {}
        self._retiring: Set[asyncio.Task] = set()

        if register_atexit:
            atexit.register(self._close_all_sync)

    def _default_pool_factory(self, params: Dict[str, Any]) -> ThreadedConnectionPool:
        return ThreadedConnectionPool(minconn=1, maxconn=self.settings.pool_size, **params)

    @staticmethod
    def connection_key(project: str, instance: str, database: str = "postgres") -> str:
        return f"{project}:{instance}:{database}"

    @staticmethod
    def validate_project_id(project: Optional[str], instance: Optional[str] = None) -> None:
        if not project or not PROJECT_ID_PATTERN.match(project):
            raise InvalidProjectIdError(
                f"Invalid project id format: {project!r}",
                project=project,
                instance=instance,
            )

    @staticmethod
    def _instance_key(key: str) -> str:
        return key.rsplit(":", 1)[0]

    def write_lock(self, project: str, instance: str) -> asyncio.Lock:
        """Lock serializing restores into one instance.

        It is kept per instance rather than per pool entry, so recreating a
        stale pool does not hand out a second lock.
        """
        return self._write_locks.setdefault(f"{project}:{instance}", asyncio.Lock())

    def bind_logger(self, owner: str, log: MigrationLogger) -> None:
        """Report connection attempts made for ``owner`` through its execution logger."""
        self._loggers[owner] = log

    # -- connection parameters ----------------------------------------------

    def resolve_password(
        self,
        project: str,
        instance: str,
        is_source: Optional[bool],
        connection_info: Mapping[str, Any],
    ) -> Tuple[Optional[str], Optional[str]]:
        """Return (user, password) from the first source that provides a password."""
        user = connection_info.get("user")
        password = connection_info.get("password")

        if not password and self.credential_resolver:
            stored = self.credential_resolver.get_credentials(project, instance)
            if stored:
                password = stored.password
                user = user or stored.user

        if not password:
            if is_source is True:
                password = self._env.get("PGPASSWORD_SOURCE") or self._env.get("CLOUDSQL_SOURCE_PASSWORD")
            elif is_source is False:
                password = self._env.get("PGPASSWORD_TARGET") or self._env.get("CLOUDSQL_TARGET_PASSWORD")
            if not password:
                password = self._env.get("PGPASSWORD")

        return user, password

    def _resolve_host(self, project: str, instance: str, is_source: Optional[bool],
                      connection_info: Mapping[str, Any]) -> str:
        if connection_info.get("ip"):
            return connection_info["ip"]

        instance_ip = self._env.get(f"CLOUDSQL_IP_{instance.replace('-', '_').upper()}")
        if instance_ip:
            return instance_ip
        if is_source is True and self._env.get("CLOUDSQL_SOURCE_IP"):
            return self._env["CLOUDSQL_SOURCE_IP"]
        if is_source is False and self._env.get("CLOUDSQL_TARGET_IP"):
            return self._env["CLOUDSQL_TARGET_IP"]
        if self.settings.host:
            return self.settings.host
        return f"{instance}.c.{project}.internal"

    def _ssl_params(self, connection_info: Mapping[str, Any]) -> Dict[str, Any]:
        mode = SSLMode(connection_info.get("ssl_mode") or self.settings.ssl_mode)
        if mode == SSLMode.DISABLE:
            return {"sslmode": "disable"}
        if mode == SSLMode.STRICT:
            certs = (self.settings.ssl_root_cert, self.settings.ssl_cert, self.settings.ssl_key)
            if all(certs):
                return {
                    "sslmode": "verify-full",
                    "sslrootcert": self.settings.ssl_root_cert,
                    "sslcert": self.settings.ssl_cert,
                    "sslkey": self.settings.ssl_key,
                }
            logger.warning("SSL mode strict requested without certificates, falling back to require")
        return {"sslmode": "require"}

    def create_connection_params(
        self,
        project: str,
        instance: str,
        database: str = "postgres",
        is_source: Optional[bool] = None,
        connection_info: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Build psycopg2 connection parameters for an instance.

        Raises:
            AuthenticationFailedError: no password could be resolved
        """
        connection_info = connection_info or {}
        user, password = self.resolve_password(project, instance, is_source, connection_info)

        if not password:
            hint = {
                True: "set the source password or PGPASSWORD_SOURCE",
                False: "set the target password or PGPASSWORD_TARGET",
            }.get(is_source, "set PGPASSWORD")
            raise AuthenticationFailedError(
                f"No password available for {project}:{instance}; {hint}",
                project=project,
                instance=instance,
            )

        use_proxy = connection_info.get("use_proxy") or self.settings.use_proxy
        params: Dict[str, Any] = {
            "host": "localhost" if use_proxy else self._resolve_host(project, instance, is_source, connection_info),
            "port": connection_info.get("port") or self.settings.port,
            "dbname": database,
            "user": user or self._env.get("PGUSER") or self.settings.user,
            "password": password,
            "connect_timeout": self.settings.connection_timeout,
            "application_name": "cloudsql_migrator",
        }
        params.update({"sslmode": "disable"} if use_proxy else self._ssl_params(connection_info))
        return params

    # -- pool lifecycle -----------------------------------------------------

    def _open_pool(self, params: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
        """Create a pool and verify it with a version query. Runs in a thread."""
        pool = self._pool_factory(params)
        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT version()")
                    row = cursor.fetchone()
            finally:
                pool.putconn(conn)
        except Exception:
            pool.closeall()
            raise
        return pool, parse_postgres_version(row[0] if row else None)

    @staticmethod
    def _ping(entry: PoolEntry) -> None:
        conn = entry.pool.getconn()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
        finally:
            entry.pool.putconn(conn)

    async def _is_healthy(self, entry: PoolEntry) -> bool:
        if time.time() - entry.last_used < self.settings.pool_idle_timeout:
            return True
        try:
            await asyncio.to_thread(self._ping, entry)
            return True
        except (PostgreSQLError, OSError) as e:
            logger.warning(f"Pooled connection {entry.key} is stale: {e}")
            return False

    async def connect(
        self,
        project: str,
        instance: str,
        database: str = "postgres",
        is_source: Optional[bool] = None,
        connection_info: Optional[Mapping[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> PoolEntry:
        """Return a healthy pool for the key, creating it if needed.

        Raises:
            ConnectionError: a classified subtype once retries are exhausted
        """
        self.validate_project_id(project, instance)
        connection_info = connection_info or {}
        key = self.connection_key(project, instance, database)
        key_lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with key_lock:
            entry = self._pools.get(key)
            if entry is not None:
                if await self._is_healthy(entry):
                    entry.touch()
                    if owner:
                        entry.owners.add(owner)
                    return entry
                logger.warning(f"Existing connection for {key} is invalid, recreating")
                await self._retire_entry(key)

            entry = await self._connect_with_retry(key, project, instance, database,
                                                   is_source, connection_info, owner)
            if owner:
                entry.owners.add(owner)
            self._pools[key] = entry
            return entry

    async def _connect_with_retry(
        self,
        key: str,
        project: str,
        instance: str,
        database: str,
        is_source: Optional[bool],
        connection_info: Mapping[str, Any],
        owner: Optional[str] = None,
    ) -> PoolEntry:
        params = self.create_connection_params(project, instance, database, is_source, connection_info)
        log = self._loggers.get(owner) if owner else None
        max_attempts = int(connection_info.get("retry_attempts") or self.settings.retry_attempts)
        retry_config = create_connection_retry_config(
            max_attempts=max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        attempts = {"count": 0}

        async def attempt() -> Tuple[Any, Optional[str]]:
            attempts["count"] += 1
            if log:
                log.log_connection_attempt(key, attempts["count"], max_attempts)
            else:
                logger.debug(f"Connecting to {key} (attempt {attempts['count']}/{max_attempts})")
            try:
                return await asyncio.to_thread(self._open_pool, params)
            except (PostgreSQLError, OSError) as e:
                raise classify_connection_error(e, project, instance) from e

        def on_retry(attempt_number: int, error: Exception, delay: float) -> None:
            if log:
                log.log_retry(key, attempt_number, error, delay)
                return
            logger.warning(
                f"Connection attempt {attempt_number}/{max_attempts} to {key} failed: {error}; "
                f"retrying in {delay:.1f}s"
            )

        try:
            pool, version = await self.retry_handler.retry_with_backoff(
                attempt,
                retry_config=retry_config,
                context=ErrorContext(operation="connect", additional_data={"connection_key": key}),
                on_retry=on_retry,
            )
        except ConnectionError as e:
            e.attempts = attempts["count"]
            e.message = f"Failed to connect to {key} after {attempts['count']} attempt(s): {e.message}"
            e.args = (e.message,)
            raise

        if log:
            log.log_connection_success(key, version)
        else:
            logger.info(f"Connected to {key}" + (f" (PostgreSQL {version})" if version else ""))
        return PoolEntry(
            key=key,
            pool=pool,
            params=params,
            version=version,
            retry_count=attempts["count"] - 1,
        )

    @staticmethod
    async def _close_pool(entry: PoolEntry) -> None:
        try:
            await asyncio.to_thread(entry.pool.closeall)
            logger.debug(f"Connection closed: {entry.key}")
        except Exception as e:
            logger.warning(f"Error closing connection {entry.key}: {e}")

    async def _close_entry(self, key: str) -> bool:
        entry = self._pools.pop(key, None)
        if entry is None:
            return False
        await self._close_pool(entry)
        return True

    async def _retire_entry(self, key: str) -> None:
        """Drop a stale entry; while a restore holds the instance, close it afterwards."""
        write_lock = self._write_locks.get(self._instance_key(key))
        if write_lock is None or not write_lock.locked():
            await self._close_entry(key)
            return

        entry = self._pools.pop(key)

        async def close_when_idle() -> None:
            async with write_lock:
                await self._close_pool(entry)

        task = asyncio.create_task(close_when_idle())
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def close_connection(self, key: str) -> bool:
        """Close the pool for a key. Unknown or already closed keys are ignored."""
        return await self._close_entry(key)

    async def close_instance_connections(self, project: str, instance: str) -> int:
        prefix = f"{project}:{instance}:"
        keys = [key for key in self._pools if key.startswith(prefix)]
        for key in keys:
            await self._close_entry(key)
        return len(keys)

    async def close_all_connections(self) -> None:
        await asyncio.gather(*(self._close_entry(key) for key in list(self._pools)))

    async def release(self, owner: str) -> List[str]:
        """Drop an owner from every pool and close pools nobody holds any more."""
        self._loggers.pop(owner, None)
        closed = []
        for key, entry in list(self._pools.items()):
            if owner not in entry.owners:
                continue
            entry.owners.discard(owner)
            # a concurrent connect may adopt the entry before the key lock is free
            async with self._key_locks.setdefault(key, asyncio.Lock()):
                if entry.owners or self._pools.get(key) is not entry:
                    continue
                await self._close_entry(key)
                closed.append(key)
        return closed

    def _close_all_sync(self) -> None:
        for key, entry in list(self._pools.items()):
            try:
                entry.pool.closeall()
            except Exception as e:
                logger.debug(f"Error closing connection {key} at exit: {e}")
        self._pools.clear()

    # -- queries ------------------------------------------------------------

    @staticmethod
    def _fetch(entry: PoolEntry, sql: str, params: Optional[Tuple[Any, ...]] = None) -> List[Dict[str, Any]]:
        conn = entry.pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
        finally:
            entry.pool.putconn(conn)

    async def query(self, entry: PoolEntry, sql: str, params: Optional[Tuple[Any, ...]] = None) -> List[Dict[str, Any]]:
        entry.touch()
        return await asyncio.to_thread(self._fetch, entry, sql, params)

    async def list_databases(
        self,
        project: str,
        instance: str,
        is_source: Optional[bool] = None,
        connection_info: Optional[Mapping[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> List[DatabaseInfo]:
        """List user databases with their sizes, excluding system databases."""
        entry = await self.connect(project, instance, "postgres", is_source, connection_info, owner)
        rows = await self.query(entry, LIST_DATABASES_SQL, (list(SYSTEM_DATABASES),))
        databases = [
            DatabaseInfo(
                name=row["datname"],
                size_bytes=int(row["size_bytes"] or 0),
                size_formatted=format_bytes(int(row["size_bytes"] or 0)),
            )
            for row in rows
        ]
        logger.debug(f"Databases found on {project}:{instance}: {', '.join(db.name for db in databases)}")
        return databases

    async def test_connection(
        self,
        project: str,
        instance: str,
        database: str = "postgres",
        is_source: Optional[bool] = None,
        connection_info: Optional[Mapping[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> ConnectionTestResult:
        """Connect and read server details. Connection problems are reported, not raised."""
        try:
            entry = await self.connect(project, instance, database, is_source, connection_info, owner)
            rows = await self.query(entry, SERVER_INFO_SQL)
        except ConnectionError as e:
            return ConnectionTestResult(success=False, error=e.message, error_kind=e.kind, database=database)
        except (MigrationEngineError, PostgreSQLError, OSError) as e:
            return ConnectionTestResult(success=False, error=str(e), database=database)

        row = rows[0] if rows else {}
        version = row.get("server_version") or parse_postgres_version(row.get("full_version"))
        entry.version = version or entry.version
        logger.info(f"Instance {instance} version: {version}")
        return ConnectionTestResult(
            success=True,
            version=version or "unknown",
            database=row.get("current_database", database),
            user=row.get("current_user"),
            server_info={
                "ip": str(row["server_ip"]) if row.get("server_ip") else None,
                "start_time": str(row["server_start_time"]) if row.get("server_start_time") else None,
                "version_num": row.get("server_version_num"),
            },
        )

    async def get_server_version(
        self,
        project: str,
        instance: str,
        is_source: Optional[bool] = None,
        connection_info: Optional[Mapping[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> Optional[str]:
        entry = await self.connect(project, instance, "postgres", is_source, connection_info, owner)
        return entry.version

    def get_connection_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {}
        for key, entry in self._pools.items():
            stats[key] = {
                "created_at": entry.created_at,
                "last_used": entry.last_used,
                "version": entry.version,
                "retry_count": entry.retry_count,
                "owners": len(entry.owners),
                "max_connections": getattr(entry.pool, "maxconn", None),
                "in_use": len(getattr(entry.pool, "_used", {}) or {}),
            }
        return stats

    def __contains__(self, key: str) -> bool:
        return key in self._pools

    def __len__(self) -> int:
        return len(self._pools)
