"""
Engine settings for the CloudSQL migrator.

Settings are resolved from built-in defaults, an optional YAML or JSON
file, and environment variables, in increasing order of precedence.
"""

import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, Field

from cloudsql_migrator.utils.helpers import load_config_file, merge_dicts


class SSLMode(str, Enum):
    """SSL modes understood by the connection manager."""
    DISABLE = "disable"
    SIMPLE = "simple"
    STRICT = "strict"


class DatabaseSettings(BaseModel):
    """Connection defaults."""
    user: str = "postgres"
    port: int = 5432
    host: Optional[str] = None
    connection_timeout: int = Field(default=30, description="Seconds")
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, description="Seconds")
    retry_max_delay: float = Field(default=30.0, description="Seconds")
    pool_size: int = Field(default=10, ge=1)
    pool_idle_timeout: float = Field(default=300.0, ge=0, description="Seconds before a pool entry is health-checked")
    ssl_mode: SSLMode = SSLMode.SIMPLE
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None
    ssl_root_cert: Optional[str] = None
    use_proxy: bool = False


class BatchSettings(BaseModel):
    """Batch coordinator defaults."""
    max_parallel: int = Field(default=3, ge=1)
    stop_on_error: bool = True
    retry_failed: bool = False


class LoggingSettings(BaseModel):
    """Arguments passed to ``setup_logging``."""
    level: str = "INFO"
    log_file: Optional[str] = None
    rich_console: bool = True
    structured_logging: bool = False
    log_rotation: bool = True


class ProgressSettings(BaseModel):
    """Throughput assumptions for predictive progress."""
    export_throughput: float = Field(default=10 * 1024 * 1024, description="Bytes per second")
    import_throughput: float = Field(default=5 * 1024 * 1024, description="Bytes per second")
    connection_overhead: float = Field(default=2.0, description="Seconds")
    default_database_size: int = Field(default=50 * 1024 * 1024, description="Bytes assumed when unknown")
    update_interval: float = Field(default=1.0, description="Seconds between progress callbacks")


class BackupSettings(BaseModel):
    """Local dump file handling."""
    temp_dir: str = Field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "cloudsql-migrator"))
    keep_backups: bool = False
    compression_level: int = Field(default=9, ge=0, le=9)


class EngineSettings(BaseModel):
    """All engine settings."""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)


_TRUE_VALUES = {"1", "true", "yes", "on"}

# environment variable -> (section, key, converter)
ENV_OVERRIDES = {
    "PGUSER": ("database", "user", str),
    "PGPORT": ("database", "port", int),
    "PGHOST": ("database", "host", str),
    "CLOUDSQL_SSL_MODE": ("database", "ssl_mode", str),
    "USE_CLOUD_SQL_PROXY": ("database", "use_proxy", lambda v: v.lower() in _TRUE_VALUES),
    "CLOUDSQL_MIGRATOR_LOG_LEVEL": ("logging", "level", str.upper),
    "CLOUDSQL_MIGRATOR_LOG_FILE": ("logging", "log_file", str),
    "CLOUDSQL_MIGRATOR_MAX_PARALLEL": ("batch", "max_parallel", int),
    "CLOUDSQL_MIGRATOR_TEMP_DIR": ("backup", "temp_dir", str),
}


def _env_settings(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, (section, key, convert) in ENV_OVERRIDES.items():
        value = env.get(name)
        if value:
            overrides.setdefault(section, {})[key] = convert(value)
    return overrides


def load_settings(
    config_file: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> EngineSettings:
    """
    Resolve engine settings.

    Args:
        config_file: Optional YAML or JSON settings file
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated EngineSettings
    """
    data: Dict[str, Any] = {}
    if config_file:
        data = merge_dicts(data, load_config_file(config_file))
    data = merge_dicts(data, _env_settings(os.environ if env is None else env))
    return EngineSettings.model_validate(data)
