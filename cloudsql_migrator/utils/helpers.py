"""
Small helpers shared across the migrator: execution ids, human readable
sizes and durations, settings files and secret masking.
"""

import copy
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

# substrings of keys whose values never reach logs or reports
SENSITIVE_KEYS = ('password', 'passwd', 'pwd', 'secret', 'token', 'credential')
MASK = "***MASKED***"

SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def generate_execution_id(prefix: str = "exec") -> str:
    """Execution id such as ``exec_20240101_120000_1a2b3c4d``."""
    return f"{prefix}_{datetime.utcnow():%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"


def format_bytes(bytes_count: Union[int, float, None]) -> str:
    """Database and archive sizes, e.g. ``10.0 MB``."""
    size = float(bytes_count or 0)
    if not size:
        return "0 B"
    for unit in SIZE_UNITS:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


def format_duration(seconds: Union[int, float, None]) -> str:
    """Phase and task durations: ``850ms``, ``1.5s``, ``2m 5s`` or ``1h 3m``."""
    if not seconds or seconds < 0:
        return "0ms"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if hours else f"{minutes}m {secs}s"


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a settings file.

    Args:
        file_path: ``.yaml``/``.yml`` or ``.json`` file

    Returns:
        The parsed mapping; an empty file yields ``{}``

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the extension is not a supported format
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    text = path.read_text(encoding='utf-8')
    if suffix in ('.yaml', '.yml'):
        return yaml.safe_load(text) or {}
    if suffix == '.json':
        return json.loads(text) if text.strip() else {}
    raise ValueError(f"Unsupported configuration file format: {path.suffix}")


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Layer ``override`` on top of ``base``; nested mappings merge, neither input is modified."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_dicts(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _is_sensitive(key: str, sensitive_keys: Sequence[str]) -> bool:
    lowered = key.lower()
    return any(name in lowered for name in sensitive_keys)


def sanitize_dict(data: Dict[str, Any], sensitive_keys: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Copy of ``data`` with credential values masked, recursing into
    nested mappings and lists. Empty values are left as they are so a
    missing password stays visible as missing.
    """
    keys = tuple(sensitive_keys) if sensitive_keys is not None else SENSITIVE_KEYS

    def mask(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return sanitize_dict(value, list(keys))
        if isinstance(value, list):
            return [mask(key, item) for item in value]
        if value and _is_sensitive(key, keys):
            return MASK
        return value

    return {key: mask(key, value) for key, value in data.items()}
