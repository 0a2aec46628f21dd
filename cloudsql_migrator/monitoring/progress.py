"""
Predictive progress for dump and restore operations.

pg_dump and pg_restore do not report progress, so completion is estimated
from the database size and the expected throughput. Estimates never go
backwards and stay below 100% until the operation is known to be done.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PREDICTIVE_CEILING = 95.0
SLOWDOWN_THRESHOLD = 90.0
SLOWDOWN_FACTOR = 0.3

DEFAULT_DATABASE_SIZE = 50 * 1024 * 1024

# MB per minute
BASE_SPEEDS = {
    "schema_only": 500.0,
    "data_only": 50.0,
    "full": 40.0,
    "with_indexes": 25.0,
}
CROSS_REGION_FACTOR = 0.7
LARGE_DATABASE_FACTOR = 0.8
LARGE_DATABASE_MB = 10 * 1024


@dataclass
class ProgressEvent:
    """Progress notification emitted by the migration engine."""
    execution_id: str
    phase: str
    progress: int
    message: Optional[str] = None
    database: Optional[str] = None
    item_progress: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


class PredictiveProgressEstimator:
    """Estimate completion of one operation from size and throughput.

    Args:
        size_bytes: Size of the database; unknown sizes use 50 MB
        throughput: Expected bytes per second
        overhead: Fixed seconds added for connection setup
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        size_bytes: Optional[int],
        throughput: float,
        overhead: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.size_bytes = size_bytes or DEFAULT_DATABASE_SIZE
        self.estimated_duration = self.size_bytes / max(throughput, 1.0) + overhead
        self._clock = clock
        self._start: Optional[float] = None
        self._last = 0.0
        self._completed = False

    def start(self) -> None:
        self._start = self._clock()
        self._last = 0.0
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    def progress(self) -> float:
        """Current estimate in percent."""
        if self._completed:
            return 100.0
        if self._start is None:
            return 0.0

        elapsed = self._clock() - self._start
        raw = elapsed / self.estimated_duration * 100 if self.estimated_duration > 0 else PREDICTIVE_CEILING
        if raw >= SLOWDOWN_THRESHOLD:
            raw = SLOWDOWN_THRESHOLD + (raw - SLOWDOWN_THRESHOLD) * SLOWDOWN_FACTOR
        raw = min(max(raw, 0.0), PREDICTIVE_CEILING)

        self._last = max(self._last, raw)
        return self._last

    def remaining_seconds(self) -> Optional[float]:
        if self._completed or self._start is None:
            return None
        return max(self.estimated_duration - (self._clock() - self._start), 0.0)

    def complete(self) -> float:
        self._completed = True
        self._last = 100.0
        return self._last


async def track_predictive_progress(
    estimator: PredictiveProgressEstimator,
    report: Callable[[float], None],
    interval: float = 1.0,
) -> None:
    """Call ``report`` with the estimate every ``interval`` seconds until cancelled."""
    estimator.start()
    while True:
        report(estimator.progress())
        await asyncio.sleep(interval)


def estimate_migration_minutes(
    total_size_bytes: int,
    schema_only: bool = False,
    data_only: bool = False,
    include_indexes: bool = True,
    cross_region: bool = False,
) -> float:
    """Rough migration duration in minutes from Cloud SQL throughput heuristics."""
    if schema_only:
        speed = BASE_SPEEDS["schema_only"]
    elif data_only:
        speed = BASE_SPEEDS["data_only"]
    else:
        speed = BASE_SPEEDS["full"]

    if include_indexes:
        speed = min(speed, BASE_SPEEDS["with_indexes"])
    if cross_region:
        speed *= CROSS_REGION_FACTOR

    size_mb = (total_size_bytes or 0) / (1024 * 1024)
    if size_mb > LARGE_DATABASE_MB:
        speed *= LARGE_DATABASE_FACTOR

    minutes = math.ceil(size_mb / speed)
    # setup and teardown: 15%, at least 2 and at most 30 minutes
    overhead = min(max(2.0, minutes * 0.15), 30.0)
    return minutes + overhead


def estimate_factors(
    schema_only: bool = False,
    data_only: bool = False,
    include_indexes: bool = True,
    cross_region: bool = False,
) -> List[str]:
    factors = []
    if schema_only:
        factors.append("Schema-only migration (faster)")
    elif data_only:
        factors.append("Data-only migration")
    else:
        factors.append("Full migration (schema + data + indexes)")

    if cross_region:
        factors.append("Cross-region migration (network latency)")
    if not include_indexes:
        factors.append("Indexes excluded (faster)")

    factors.append("Estimates based on typical Cloud SQL performance")
    return factors


def build_estimate(total_size_bytes: int, **options: Any) -> Dict[str, Any]:
    """Estimate summary stored in execution metrics."""
    return {
        "total_size_bytes": total_size_bytes,
        "estimated_duration_minutes": estimate_migration_minutes(total_size_bytes, **options),
        "factors": estimate_factors(**options),
    }
