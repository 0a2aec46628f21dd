"""Cloud SQL instance catalog interface and version annotation."""

import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..models.mapping import InstanceRef

logger = logging.getLogger(__name__)


class InstanceCatalog(Protocol):
    """Read access to Cloud SQL instance metadata (for example the Admin API)."""

    async def list_all_instances(self, project: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    async def get_instance_details(self, name: str, project: Optional[str] = None) -> Optional[Dict[str, Any]]:
        ...

    async def get_instance_databases(self, name: str, project: Optional[str] = None) -> List[str]:
        ...


def parse_engine_version(database_version: Optional[str]) -> Optional[str]:
    """``POSTGRES_14`` -> ``14``; ``POSTGRES_9_6`` -> ``9.6``."""
    if not database_version:
        return None
    match = re.match(r"^POSTGRES_(\d+(?:_\d+)?)$", database_version.strip().upper())
    if not match:
        return None
    return match.group(1).replace("_", ".")


async def annotate_versions(instances: Sequence[InstanceRef], catalog: InstanceCatalog) -> List[InstanceRef]:
    """Fill in missing ``version`` fields from the catalog.

    Instances that already carry a version are returned unchanged; lookups
    that fail leave the version empty so the instance groups as ``unknown``.
    """
    annotated = []
    for ref in instances:
        if ref.version:
            annotated.append(ref)
            continue

        details = await catalog.get_instance_details(ref.instance, ref.project)
        version = parse_engine_version((details or {}).get("databaseVersion"))
        if version is None:
            logger.warning(f"Could not determine PostgreSQL version of {ref.key}")
            annotated.append(ref)
        else:
            annotated.append(ref.model_copy(update={"version": version}))
    return annotated
