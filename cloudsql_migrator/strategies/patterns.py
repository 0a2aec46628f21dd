"""
Migration pattern and strategy resolution.

A pattern describes the topology of a migration (how many source
instances feed how many target instances). Each pattern supports a set of
strategies that describe how databases are routed, and each strategy
supports a set of policies for resolving database name conflicts on a
shared target.
"""

import logging
from enum import Enum
from typing import Dict, List, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MigrationPattern(str, Enum):
    """Topology of a migration."""
    ONE_TO_ONE = "1:1"
    MANY_TO_ONE = "N:1"
    ONE_TO_MANY = "1:N"
    MANY_TO_MANY = "N:N"
    MANY_TO_MANY_DIFFERENT = "N:M"


class MigrationStrategy(str, Enum):
    """How source databases are routed to targets."""
    SIMPLE = "simple"
    CONSOLIDATE = "consolidate"
    DISTRIBUTE = "distribute"
    REPLICATE = "replicate"
    SPLIT_BY_DATABASE = "split-by-database"
    VERSION_BASED = "version-based"
    ROUND_ROBIN = "round-robin"
    MANUAL_MAPPING = "manual-mapping"
    CUSTOM = "custom"
    CUSTOM_MAPPING = "custom-mapping"


class ConflictResolution(str, Enum):
    """Policy for database names that collide on a shared target."""
    FAIL = "fail"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    MERGE = "merge"
    RENAME_SCHEMA = "rename-schema"


class StrategyOption(BaseModel):
    """A selectable strategy with its display label."""
    label: str
    value: MigrationStrategy


class ConflictResolutionOption(BaseModel):
    """A selectable conflict policy with its display label."""
    label: str
    value: ConflictResolution


class CompatibilityCheck(BaseModel):
    """Result of checking a strategy against a pattern.

    ``valid`` is always ``True``: an unusual strategy/pattern pairing is
    allowed and only reported through ``compatible`` and ``warnings``.
    """
    valid: bool = True
    compatible: bool
    warnings: List[str] = Field(default_factory=list)


StrategyLike = Union[MigrationStrategy, str]
PatternLike = Union[MigrationPattern, str]


_AVAILABLE_STRATEGIES: Dict[MigrationPattern, List[StrategyOption]] = {
    MigrationPattern.ONE_TO_ONE: [
        StrategyOption(label="Simple (direct migration)", value=MigrationStrategy.SIMPLE),
    ],
    MigrationPattern.MANY_TO_ONE: [
        StrategyOption(label="Consolidate (merge all sources)", value=MigrationStrategy.CONSOLIDATE),
        StrategyOption(label="Manual mapping", value=MigrationStrategy.MANUAL_MAPPING),
    ],
    MigrationPattern.MANY_TO_MANY: [
        StrategyOption(label="Version-based (match engine versions)", value=MigrationStrategy.VERSION_BASED),
        StrategyOption(label="Manual mapping", value=MigrationStrategy.MANUAL_MAPPING),
        StrategyOption(label="Round-robin", value=MigrationStrategy.ROUND_ROBIN),
    ],
    MigrationPattern.ONE_TO_MANY: [
        StrategyOption(label="Distribute databases across targets", value=MigrationStrategy.DISTRIBUTE),
        StrategyOption(label="Replicate to every target", value=MigrationStrategy.REPLICATE),
        StrategyOption(label="Split by database name", value=MigrationStrategy.SPLIT_BY_DATABASE),
    ],
    MigrationPattern.MANY_TO_MANY_DIFFERENT: [
        StrategyOption(label="Manual mapping", value=MigrationStrategy.MANUAL_MAPPING),
        StrategyOption(label="Version-based (match engine versions)", value=MigrationStrategy.VERSION_BASED),
        StrategyOption(label="Round-robin", value=MigrationStrategy.ROUND_ROBIN),
    ],
}

_RECOMMENDED: Dict[MigrationPattern, MigrationStrategy] = {
    MigrationPattern.ONE_TO_ONE: MigrationStrategy.SIMPLE,
    MigrationPattern.MANY_TO_ONE: MigrationStrategy.CONSOLIDATE,
    MigrationPattern.MANY_TO_MANY: MigrationStrategy.VERSION_BASED,
    MigrationPattern.ONE_TO_MANY: MigrationStrategy.DISTRIBUTE,
    MigrationPattern.MANY_TO_MANY_DIFFERENT: MigrationStrategy.MANUAL_MAPPING,
}

_ALL_PATTERNS = list(MigrationPattern)

_COMPATIBILITY: Dict[MigrationStrategy, List[MigrationPattern]] = {
    MigrationStrategy.SIMPLE: [MigrationPattern.ONE_TO_ONE],
    MigrationStrategy.CONSOLIDATE: [
        MigrationPattern.MANY_TO_ONE,
        MigrationPattern.MANY_TO_MANY,
        MigrationPattern.MANY_TO_MANY_DIFFERENT,
    ],
    MigrationStrategy.DISTRIBUTE: [MigrationPattern.ONE_TO_MANY],
    MigrationStrategy.REPLICATE: [MigrationPattern.ONE_TO_MANY],
    MigrationStrategy.SPLIT_BY_DATABASE: [MigrationPattern.ONE_TO_MANY],
    MigrationStrategy.VERSION_BASED: [
        MigrationPattern.MANY_TO_MANY,
        MigrationPattern.MANY_TO_MANY_DIFFERENT,
    ],
    MigrationStrategy.ROUND_ROBIN: [
        MigrationPattern.MANY_TO_MANY,
        MigrationPattern.MANY_TO_MANY_DIFFERENT,
    ],
    MigrationStrategy.MANUAL_MAPPING: [
        MigrationPattern.MANY_TO_ONE,
        MigrationPattern.MANY_TO_MANY,
        MigrationPattern.ONE_TO_MANY,
        MigrationPattern.MANY_TO_MANY_DIFFERENT,
    ],
    MigrationStrategy.CUSTOM: _ALL_PATTERNS,
    MigrationStrategy.CUSTOM_MAPPING: _ALL_PATTERNS,
}

_STRATEGY_DESCRIPTIONS: Dict[MigrationStrategy, str] = {
    MigrationStrategy.SIMPLE: "Direct migration from one source to one target",
    MigrationStrategy.CONSOLIDATE: "Merge databases from all sources into a single target",
    MigrationStrategy.DISTRIBUTE: "Spread the source databases across the targets",
    MigrationStrategy.REPLICATE: "Copy the same databases to every target",
    MigrationStrategy.SPLIT_BY_DATABASE: "Route databases to targets by name pattern",
    MigrationStrategy.VERSION_BASED: "Pair sources and targets running the same engine version",
    MigrationStrategy.ROUND_ROBIN: "Assign sources to targets in rotation",
    MigrationStrategy.MANUAL_MAPPING: "Use explicitly listed source to target pairs",
    MigrationStrategy.CUSTOM: "Use explicitly listed source to target pairs",
    MigrationStrategy.CUSTOM_MAPPING: "Use explicit pairs from an instances file",
}

_BASE_CONFLICT_OPTIONS: List[ConflictResolutionOption] = [
    ConflictResolutionOption(label="Fail on conflict", value=ConflictResolution.FAIL),
    ConflictResolutionOption(label="Prefix with source instance name", value=ConflictResolution.PREFIX),
    ConflictResolutionOption(label="Add numeric suffix", value=ConflictResolution.SUFFIX),
]

_CONFLICT_DESCRIPTIONS: Dict[ConflictResolution, str] = {
    ConflictResolution.FAIL: "Abort when two sources contain a database with the same name",
    ConflictResolution.PREFIX: "Rename conflicting databases to <source-instance>_<database>",
    ConflictResolution.SUFFIX: "Keep the first database and rename later ones to <database>_<n>",
    ConflictResolution.MERGE: "Restore conflicting databases into the same target database",
    ConflictResolution.RENAME_SCHEMA: "Restore conflicting databases under renamed schemas",
}


class MigrationPatternResolver:
    """Resolve patterns, strategies and conflict policies for a migration."""

    @staticmethod
    def detect_pattern(source_count: int, target_count: int) -> MigrationPattern:
        """Classify a topology from its source and target instance counts.

        Counts below one are not a valid topology and fall back to 1:1.
        """
        if source_count < 1 or target_count < 1:
            logger.debug(
                f"Cannot classify {source_count}:{target_count}, falling back to 1:1"
            )
            return MigrationPattern.ONE_TO_ONE
        if source_count == 1 and target_count == 1:
            return MigrationPattern.ONE_TO_ONE
        if target_count == 1:
            return MigrationPattern.MANY_TO_ONE
        if source_count == 1:
            return MigrationPattern.ONE_TO_MANY
        if source_count == target_count:
            return MigrationPattern.MANY_TO_MANY
        return MigrationPattern.MANY_TO_MANY_DIFFERENT

    @staticmethod
    def _coerce_pattern(pattern: PatternLike) -> MigrationPattern:
        try:
            return MigrationPattern(pattern)
        except ValueError:
            return MigrationPattern.ONE_TO_ONE

    @classmethod
    def get_available_strategies(cls, pattern: PatternLike) -> List[StrategyOption]:
        """Ordered strategies for a pattern; the first one is the recommendation."""
        return list(_AVAILABLE_STRATEGIES[cls._coerce_pattern(pattern)])

    @classmethod
    def get_recommended_strategy(cls, pattern: PatternLike) -> MigrationStrategy:
        return _RECOMMENDED[cls._coerce_pattern(pattern)]

    @classmethod
    def validate_strategy_compatibility(
        cls,
        strategy: StrategyLike,
        pattern: PatternLike,
    ) -> CompatibilityCheck:
        """Check whether a strategy suits a pattern.

        Unknown strategies are reported as incompatible rather than raising.
        """
        pattern_value = cls._coerce_pattern(pattern)
        try:
            strategy_value = MigrationStrategy(strategy)
        except ValueError:
            return CompatibilityCheck(
                compatible=False,
                warnings=[f'Unknown strategy "{strategy}".'],
            )

        compatible = pattern_value in _COMPATIBILITY.get(strategy_value, [])
        warnings = []
        if not compatible:
            warnings.append(
                f'Strategy "{strategy_value.value}" is not optimal for pattern '
                f'"{pattern_value.value}". Consider using the recommended strategy.'
            )
        return CompatibilityCheck(compatible=compatible, warnings=warnings)

    @staticmethod
    def get_conflict_resolution_options(strategy: StrategyLike) -> List[ConflictResolutionOption]:
        """Conflict policies offered for a strategy.

        ``merge`` is only offered for consolidation, ``rename-schema`` only
        for explicit mappings.
        """
        options = list(_BASE_CONFLICT_OPTIONS)
        if strategy == MigrationStrategy.CONSOLIDATE:
            options.append(ConflictResolutionOption(
                label="Merge into the same database", value=ConflictResolution.MERGE
            ))
        if strategy in (MigrationStrategy.CUSTOM, MigrationStrategy.MANUAL_MAPPING):
            options.append(ConflictResolutionOption(
                label="Rename schemas", value=ConflictResolution.RENAME_SCHEMA
            ))
        return options

    @staticmethod
    def get_all_strategy_values() -> List[str]:
        return [strategy.value for strategy in MigrationStrategy]

    @staticmethod
    def get_all_conflict_resolution_values() -> List[str]:
        return [resolution.value for resolution in ConflictResolution]

    @staticmethod
    def get_strategy_description(strategy: StrategyLike) -> str:
        try:
            return _STRATEGY_DESCRIPTIONS[MigrationStrategy(strategy)]
        except ValueError:
            return "Unknown strategy"

    @staticmethod
    def get_conflict_resolution_description(resolution: Union[ConflictResolution, str]) -> str:
        try:
            return _CONFLICT_DESCRIPTIONS[ConflictResolution(resolution)]
        except ValueError:
            return "Unknown conflict resolution"
