"""Migration patterns, strategies and conflict resolution policies."""

from cloudsql_migrator.strategies.patterns import (
    CompatibilityCheck,
    ConflictResolution,
    ConflictResolutionOption,
    MigrationPattern,
    MigrationPatternResolver,
    MigrationStrategy,
    StrategyOption,
)

__all__ = [
    "CompatibilityCheck",
    "ConflictResolution",
    "ConflictResolutionOption",
    "MigrationPattern",
    "MigrationPatternResolver",
    "MigrationStrategy",
    "StrategyOption",
]
