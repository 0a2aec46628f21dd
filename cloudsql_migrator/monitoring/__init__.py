"""Progress estimation for long-running dump and restore operations."""

from .progress import (
    PredictiveProgressEstimator,
    ProgressEvent,
    build_estimate,
    estimate_factors,
    estimate_migration_minutes,
    track_predictive_progress,
)

__all__ = [
    "PredictiveProgressEstimator",
    "ProgressEvent",
    "build_estimate",
    "estimate_factors",
    "estimate_migration_minutes",
    "track_predictive_progress",
]
