"""
Utilities module for the CloudSQL migrator.

This module contains helper functions and logging utilities
used throughout the package.
"""

from cloudsql_migrator.utils.helpers import (
    generate_execution_id,
    format_bytes,
    format_duration,
    load_config_file,
    merge_dicts,
    sanitize_dict,
)
from cloudsql_migrator.utils.logging import (
    setup_logging,
    configure_logging,
    get_logger,
    MigrationLogger,
)

__all__ = [
    # Helper functions
    "generate_execution_id",
    "format_bytes",
    "format_duration",
    "load_config_file",
    "merge_dicts",
    "sanitize_dict",
    # Logging utilities
    "setup_logging",
    "configure_logging",
    "get_logger",
    "MigrationLogger",
]
