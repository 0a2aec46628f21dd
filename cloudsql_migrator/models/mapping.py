"""
Migration mappings for batch topologies.

A ``MigrationMapping`` describes which source instances migrate into which
target instances and with which strategy. ``generate_execution_plan``
expands it into an ordered list of ``MigrationTask`` objects, one per
source to target transfer, which the batch coordinator turns into
``OperationConfig`` objects for the engine.
"""

import logging
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel, to_snake

from cloudsql_migrator.core.exceptions import ConfigValidationError, MappingConflictError
from cloudsql_migrator.models.config import (
    DEFAULT_TOOL_NAME,
    DEFAULT_USER,
    OperationConfig,
    OperationMetadata,
    OperationOptions,
    SourceConfig,
    TargetConfig,
    ValidationResult,
)
from cloudsql_migrator.strategies.patterns import (
    ConflictResolution,
    MigrationPattern,
    MigrationPatternResolver,
    MigrationStrategy,
)

logger = logging.getLogger(__name__)

EXPLICIT_STRATEGIES = (
    MigrationStrategy.MANUAL_MAPPING,
    MigrationStrategy.CUSTOM,
    MigrationStrategy.CUSTOM_MAPPING,
)


class _MappingModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


def _normalize_databases(data: Dict[str, Any]) -> Dict[str, Any]:
    databases = data.get('databases')
    if databases == 'all':
        data['databases'] = None
        data.setdefault('include_all', True)
    elif isinstance(databases, str):
        data['databases'] = [name.strip() for name in databases.split(',') if name.strip()]
    return data


class InstanceRef(_MappingModel):
    """A source or target instance as it appears in a mapping.

    A bare string is accepted as the instance name.
    """
    project: Optional[str] = None
    instance: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    ip: Optional[str] = None
    databases: Optional[List[str]] = None
    version: Optional[str] = None
    database_pattern: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def accept_instance_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {'instance': data}
        if isinstance(data, dict):
            return _normalize_databases(dict(data))
        return data

    @property
    def key(self) -> str:
        return f"{self.project or 'default'}:{self.instance}"


class MigrationPair(_MappingModel):
    """An explicit mapping of one or more sources onto a target."""
    sources: List[InstanceRef]
    target: InstanceRef
    databases: Optional[List[str]] = None
    include_all: bool = False
    conflict_resolution: Optional[ConflictResolution] = None

    @model_validator(mode='before')
    @classmethod
    def accept_single_source(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = _normalize_databases(dict(data))
            if 'sources' not in data and 'source' in data:
                data['sources'] = [data.pop('source')]
        return data


class VersionGroup(_MappingModel):
    """Sources sharing an engine version and the target they migrate to."""
    sources: List[InstanceRef] = Field(default_factory=list)
    target: InstanceRef


class MigrationTask(_MappingModel):
    """A single source to target transfer produced by a mapping."""
    source: InstanceRef
    target: InstanceRef
    databases: Optional[List[str]] = None
    include_all: bool = False
    conflict_resolution: Optional[ConflictResolution] = None
    prefix_with: Optional[str] = None
    version: Optional[str] = None
    database_renames: Dict[str, str] = Field(default_factory=dict)
    merged_databases: List[str] = Field(default_factory=list)

    @property
    def selects_all(self) -> bool:
        return self.databases is None or self.include_all


class ResolvedDatabase(BaseModel):
    """Outcome of resolving one database name across several sources."""
    name: str
    source: Optional[str] = None
    original_name: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    merged: bool = False


def _with_defaults(source: InstanceRef, target: InstanceRef) -> Tuple[InstanceRef, InstanceRef]:
    """Default users to postgres and let the target reuse the source password."""
    source = source.model_copy(update={'user': source.user or DEFAULT_USER})
    target = target.model_copy(update={
        'user': target.user or DEFAULT_USER,
        'password': target.password or source.password,
    })
    return source, target


def _make_task(source: InstanceRef, target: InstanceRef, **fields: Any) -> MigrationTask:
    source, target = _with_defaults(source, target)
    fields.setdefault('databases', source.databases)
    return MigrationTask(source=source, target=target, **fields)


class MigrationMapping(_MappingModel):
    """Sources, targets and the strategy connecting them."""
    strategy: MigrationStrategy = MigrationStrategy.SIMPLE
    sources: List[InstanceRef] = Field(default_factory=list)
    targets: List[InstanceRef] = Field(default_factory=list)
    migrations: List[MigrationPair] = Field(default_factory=list)
    version_mapping: Dict[str, VersionGroup] = Field(default_factory=dict)
    conflict_resolution: ConflictResolution = ConflictResolution.FAIL
    auto_detect_version: bool = True
    options: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode='before')
    @classmethod
    def accept_single_target(cls, data: Any) -> Any:
        if isinstance(data, dict) and 'target' in data:
            data = dict(data)
            target = data.pop('target')
            if target and not data.get('targets'):
                data['targets'] = [target]
        return data

    # -- topology -----------------------------------------------------------

    def _all_source_refs(self) -> List[InstanceRef]:
        refs = list(self.sources)
        for pair in self.migrations:
            refs.extend(pair.sources)
        for group in self.version_mapping.values():
            refs.extend(group.sources)
        return refs

    def _all_target_refs(self) -> List[InstanceRef]:
        refs = list(self.targets)
        refs.extend(pair.target for pair in self.migrations)
        refs.extend(group.target for group in self.version_mapping.values())
        return refs

    @property
    def total_sources(self) -> int:
        return len({ref.key for ref in self._all_source_refs()})

    @property
    def total_targets(self) -> int:
        return len({ref.key for ref in self._all_target_refs()})

    @property
    def mapping_type(self) -> MigrationPattern:
        return MigrationPatternResolver.detect_pattern(self.total_sources, self.total_targets)

    # -- expansion ----------------------------------------------------------

    def generate_execution_plan(self) -> List[MigrationTask]:
        """Expand the mapping into ordered migration tasks.

        Raises:
            MappingConflictError: database names collide under the fail policy
            ConfigValidationError: the strategy's inputs are incomplete
        """
        expanders = {
            MigrationStrategy.SIMPLE: self._expand_simple,
            MigrationStrategy.CONSOLIDATE: self._expand_consolidate,
            MigrationStrategy.DISTRIBUTE: self._expand_distribute,
            MigrationStrategy.REPLICATE: self._expand_replicate,
            MigrationStrategy.SPLIT_BY_DATABASE: self._expand_split_by_database,
            MigrationStrategy.VERSION_BASED: self._expand_version_based,
            MigrationStrategy.ROUND_ROBIN: self._expand_round_robin,
        }
        if self.strategy in EXPLICIT_STRATEGIES:
            return self._expand_explicit()
        return expanders[self.strategy]()

    def _expand_simple(self) -> List[MigrationTask]:
        if len(self.targets) == 1:
            return [
                _make_task(source, self.targets[0], conflict_resolution=self.conflict_resolution)
                for source in self.sources
            ]
        return [
            _make_task(source, target)
            for source, target in zip(self.sources, self.targets)
        ]

    def _expand_consolidate(self) -> List[MigrationTask]:
        if not self.targets:
            raise ConfigValidationError(
                "Consolidation requires a target instance",
                errors=["At least one target instance is required"],
            )
        target = self.targets[0]

        entries = [
            (source, database)
            for source in self.sources if source.databases
            for database in source.databases
        ]
        resolved = self.resolve_database_conflicts(entries)

        renames: Dict[str, Dict[str, str]] = {}
        merged: Dict[str, List[str]] = {}
        for item in resolved:
            if item.merged:
                for source_key in item.sources:
                    merged.setdefault(source_key, []).append(item.name)
            elif item.original_name and item.name != item.original_name:
                renames.setdefault(item.source, {})[item.original_name] = item.name

        tasks = []
        for source in self.sources:
            prefix_with = None
            if self.conflict_resolution == ConflictResolution.PREFIX and not source.databases:
                # names are unknown until discovery, so prefix everything
                prefix_with = source.instance
            tasks.append(_make_task(
                source,
                target,
                conflict_resolution=self.conflict_resolution,
                prefix_with=prefix_with,
                database_renames=renames.get(source.key, {}),
                merged_databases=merged.get(source.key, []),
            ))
        return tasks

    def _require_explicit_databases(self, source: InstanceRef) -> List[str]:
        if not source.databases:
            raise ConfigValidationError(
                f"Strategy {self.strategy.value} needs an explicit database list",
                errors=[
                    f"Source {source.key} must list its databases for the "
                    f"{self.strategy.value} strategy"
                ],
            )
        return source.databases

    def _expand_distribute(self) -> List[MigrationTask]:
        tasks = []
        for source in self.sources:
            databases = self._require_explicit_databases(source)
            buckets: List[List[str]] = [[] for _ in self.targets]
            for index, database in enumerate(databases):
                buckets[index % len(self.targets)].append(database)
            for target, bucket in zip(self.targets, buckets):
                if bucket:
                    tasks.append(_make_task(source, target, databases=bucket))
        return tasks

    def _expand_replicate(self) -> List[MigrationTask]:
        return [
            _make_task(source, target)
            for source in self.sources
            for target in self.targets
        ]

    def _expand_split_by_database(self) -> List[MigrationTask]:
        catch_all = next((t for t in self.targets if not t.database_pattern), None)
        tasks = []
        unmatched = []
        for source in self.sources:
            buckets: Dict[str, List[str]] = {}
            for database in self._require_explicit_databases(source):
                target = next(
                    (t for t in self.targets
                     if t.database_pattern and fnmatchcase(database, t.database_pattern)),
                    catch_all,
                )
                if target is None:
                    unmatched.append(f"{source.key}/{database}")
                    continue
                buckets.setdefault(target.key, []).append(database)
            for target in self.targets:
                if target.key in buckets:
                    tasks.append(_make_task(source, target, databases=buckets.pop(target.key)))

        if unmatched:
            raise ConfigValidationError(
                "Some databases match no target pattern",
                errors=[f"No target matches database {name}" for name in unmatched],
            )
        return tasks

    def _resolve_version_mapping(self) -> Dict[str, VersionGroup]:
        if self.version_mapping:
            return self.version_mapping

        errors = []
        groups: Dict[str, VersionGroup] = {}
        for version, sources in self.group_by_version(self.sources).items():
            target = next((t for t in self.targets if t.version == version), None)
            if version == 'unknown' or target is None:
                errors.extend(
                    f"No target instance with version {version} for source {source.key}"
                    for source in sources
                )
                continue
            groups[version] = VersionGroup(sources=sources, target=target)

        if errors:
            raise ConfigValidationError("Sources cannot be grouped by version", errors=errors)
        return groups

    def _expand_version_based(self) -> List[MigrationTask]:
        return [
            _make_task(source, group.target, version=version,
                       conflict_resolution=self.conflict_resolution)
            for version, group in self._resolve_version_mapping().items()
            for source in group.sources
        ]

    def _expand_round_robin(self) -> List[MigrationTask]:
        if not self.targets:
            return []
        return [
            _make_task(source, self.targets[index % len(self.targets)])
            for index, source in enumerate(self.sources)
        ]

    def _expand_explicit(self) -> List[MigrationTask]:
        tasks = []
        for pair in self.migrations:
            for source in pair.sources:
                tasks.append(_make_task(
                    source,
                    pair.target,
                    databases=None if pair.include_all else (pair.databases or source.databases),
                    include_all=pair.include_all,
                    conflict_resolution=pair.conflict_resolution or self.conflict_resolution,
                ))
        return tasks

    # -- conflicts and versions ---------------------------------------------

    def resolve_database_conflicts(
        self,
        entries: Iterable[Tuple[InstanceRef, str]],
    ) -> List[ResolvedDatabase]:
        """Resolve database names that several sources share.

        Args:
            entries: (source, database name) pairs

        Returns:
            One entry per resulting target database, in first-seen order
        """
        seen: Dict[str, List[InstanceRef]] = {}
        for source, database in entries:
            seen.setdefault(database, []).append(source)

        resolved: List[ResolvedDatabase] = []
        for database, sources in seen.items():
            if len(sources) == 1:
                resolved.append(ResolvedDatabase(name=database, source=sources[0].key))
                continue

            if self.conflict_resolution == ConflictResolution.PREFIX:
                resolved.extend(
                    ResolvedDatabase(
                        name=f"{source.instance}_{database}",
                        original_name=database,
                        source=source.key,
                    )
                    for source in sources
                )
            elif self.conflict_resolution == ConflictResolution.SUFFIX:
                resolved.extend(
                    ResolvedDatabase(
                        name=database if index == 0 else f"{database}_{index + 1}",
                        original_name=database,
                        source=source.key,
                    )
                    for index, source in enumerate(sources)
                )
            elif self.conflict_resolution == ConflictResolution.MERGE:
                resolved.append(ResolvedDatabase(
                    name=database,
                    sources=[source.key for source in sources],
                    merged=True,
                ))
            else:
                message = f"Database name conflict: {database} exists in multiple sources"
                raise MappingConflictError(
                    message,
                    errors=[message],
                    details={'database': database, 'sources': [s.key for s in sources]},
                )
        return resolved

    @staticmethod
    def group_by_version(instances: Sequence[InstanceRef]) -> Dict[str, List[InstanceRef]]:
        grouped: Dict[str, List[InstanceRef]] = {}
        for instance in instances:
            grouped.setdefault(instance.version or 'unknown', []).append(instance)
        return grouped

    def version_groups(self) -> Dict[str, int]:
        """Number of sources per engine version."""
        if self.version_mapping:
            return {version: len(group.sources) for version, group in self.version_mapping.items()}
        return {version: len(sources) for version, sources in self.group_by_version(self.sources).items()}

    # -- validation and reporting -------------------------------------------

    def validate(self) -> ValidationResult:
        """Check the mapping can be expanded; report advisory warnings."""
        errors: List[str] = []
        warnings: List[str] = []

        if self.strategy in EXPLICIT_STRATEGIES:
            if not self.migrations:
                errors.append("At least one migration mapping is required")
        elif self.strategy == MigrationStrategy.VERSION_BASED:
            if not self.version_mapping and not (self.sources and self.targets):
                errors.append("Version mapping or versioned sources and targets are required for version-based strategy")
        else:
            if not self.sources:
                errors.append("At least one source instance is required")
            if not self.targets:
                errors.append("At least one target instance is required")

        for source in self._all_source_refs():
            if not source.instance:
                errors.append("Source instance name is required")
        for target in self._all_target_refs():
            if not target.instance:
                errors.append("Target instance name is required")

        if self.strategy == MigrationStrategy.SIMPLE and len(self.targets) > 1 \
                and len(self.sources) != len(self.targets):
            warnings.append(
                f"Simple strategy pairs sources and targets by position; "
                f"{abs(len(self.sources) - len(self.targets))} instance(s) will be left unpaired"
            )

        if self.mapping_type == MigrationPattern.MANY_TO_ONE \
                and self.conflict_resolution == ConflictResolution.FAIL:
            warnings.append(
                'N:1 mapping with "fail" conflict resolution may cause issues with duplicate database names'
            )

        if self.strategy not in EXPLICIT_STRATEGIES and self.total_sources and self.total_targets:
            compatibility = MigrationPatternResolver.validate_strategy_compatibility(
                self.strategy, self.mapping_type
            )
            warnings.extend(compatibility.warnings)

        if not errors:
            try:
                tasks = self.generate_execution_plan()
            except ConfigValidationError as e:
                errors.extend(e.errors or [e.message])
            else:
                pairs = set()
                for task in tasks:
                    path = f"{task.source.key}->{task.target.key}"
                    if path in pairs:
                        warnings.append(f"Duplicate migration path: {path}")
                    pairs.add(path)

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def get_summary(self) -> Dict[str, Any]:
        tasks = self.generate_execution_plan()
        return {
            'strategy': self.strategy.value,
            'mapping_type': self.mapping_type.value,
            'total_sources': self.total_sources,
            'total_targets': self.total_targets,
            'total_migrations': len(tasks),
            'conflict_resolution': self.conflict_resolution.value,
            'tasks': [
                {
                    'from': task.source.key,
                    'to': task.target.key,
                    'databases': 'all' if task.databases is None else list(task.databases),
                }
                for task in tasks
            ],
        }

    def to_operation_configs(self, tool_name: str = DEFAULT_TOOL_NAME) -> List[OperationConfig]:
        """One OperationConfig per task, carrying the mapping's shared options."""
        shared = {
            to_snake(key): value for key, value in self.options.items()
            if to_snake(key) in OperationOptions.model_fields
        }

        configs = []
        for task in self.generate_execution_plan():
            options = {
                **shared,
                'include_all': task.selects_all,
                'conflict_resolution': task.conflict_resolution.value if task.conflict_resolution else None,
                'prefix_with': task.prefix_with,
                'database_renames': dict(task.database_renames),
                'version': task.version,
                'merged_databases': list(task.merged_databases),
            }
            configs.append(OperationConfig(
                source=SourceConfig(
                    project=task.source.project,
                    instance=task.source.instance,
                    user=task.source.user or DEFAULT_USER,
                    password=task.source.password,
                    ip=task.source.ip,
                    databases=None if task.databases is None else list(task.databases),
                ),
                target=TargetConfig(
                    project=task.target.project,
                    instance=task.target.instance,
                    user=task.target.user or DEFAULT_USER,
                    password=task.target.password,
                    ip=task.target.ip,
                ),
                options=OperationOptions(**options),
                metadata=OperationMetadata(
                    tool_name=tool_name,
                    mapping_strategy=self.strategy.value,
                    mapping_type=self.mapping_type.value,
                    source='batch-migration',
                ),
            ))
        return configs

    def clone(self, **changes: Any) -> "MigrationMapping":
        """Validated copy with some fields replaced."""
        return MigrationMapping.model_validate({**self.model_dump(), **changes})

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode='json')
        data['metadata'] = {
            'mapping_type': self.mapping_type.value,
            'total_sources': self.total_sources,
            'total_targets': self.total_targets,
            'created_at': data['created_at'],
        }
        return data

    # -- construction -------------------------------------------------------

    @classmethod
    def from_parser_output(cls, parser_output: Mapping[str, Any], **overrides: Any) -> "MigrationMapping":
        """Build a mapping from normalized instance-file output."""
        data = {to_snake(key): value for key, value in parser_output.items() if key != 'metadata'}
        data.update(overrides)
        return cls.model_validate(data)

    @classmethod
    def from_entries(
        cls,
        entries: Sequence[Mapping[str, Any]],
        conflict_resolution: ConflictResolution = ConflictResolution.FAIL,
        options: Optional[Dict[str, Any]] = None,
    ) -> "MigrationMapping":
        """Build a mapping from flat ``{source, target, version}`` entries.

        Entries become a version-based mapping when every entry has a version
        and each version maps to a single target; otherwise they are kept as
        explicit custom-mapping pairs.
        """
        parsed = [
            (InstanceRef.model_validate(entry['source']),
             InstanceRef.model_validate(entry['target']),
             entry.get('version'),
             _normalize_databases({'databases': entry.get('databases')})['databases'])
            for entry in entries
        ]

        by_version: Dict[str, Dict[str, Any]] = {}
        groupable = bool(parsed)
        for source, target, version, databases in parsed:
            if not version:
                groupable = False
                break
            version = str(version)
            group = by_version.setdefault(version, {'sources': [], 'target': target})
            if group['target'].key != target.key:
                groupable = False
                break
            group['sources'].append(source.model_copy(update={
                'version': source.version or version,
                'databases': source.databases if databases is None else list(databases),
            }))

        if groupable:
            return cls(
                strategy=MigrationStrategy.VERSION_BASED,
                version_mapping={
                    version: VersionGroup(**group) for version, group in by_version.items()
                },
                conflict_resolution=conflict_resolution,
                options=options or {},
            )

        logger.debug("Entries cannot be grouped by version, keeping explicit pairs")
        return cls(
            strategy=MigrationStrategy.CUSTOM_MAPPING,
            migrations=[
                MigrationPair(
                    sources=[source],
                    target=target,
                    databases=databases,
                    include_all=databases is None and not source.databases,
                )
                for source, target, _, databases in parsed
            ],
            conflict_resolution=conflict_resolution,
            options=options or {},
        )


class MigrationMappingBuilder:
    """Fluent, side-effect free builder for ``MigrationMapping``.

    When no strategy is chosen, the recommended strategy for the detected
    pattern is used.
    """

    def __init__(self):
        self._sources: List[Any] = []
        self._targets: List[Any] = []
        self._migrations: List[Any] = []
        self._version_mapping: Dict[str, Any] = {}
        self._strategy: Optional[MigrationStrategy] = None
        self._conflict_resolution = ConflictResolution.FAIL
        self._options: Dict[str, Any] = {}

    def add_source(self, source: Any = None, **fields: Any) -> "MigrationMappingBuilder":
        self._sources.append(source if source is not None else fields)
        return self

    def add_sources(self, sources: Iterable[Any]) -> "MigrationMappingBuilder":
        self._sources.extend(sources)
        return self

    def add_target(self, target: Any = None, **fields: Any) -> "MigrationMappingBuilder":
        self._targets.append(target if target is not None else fields)
        return self

    def add_targets(self, targets: Iterable[Any]) -> "MigrationMappingBuilder":
        self._targets.extend(targets)
        return self

    def add_migration(self, migration: Any = None, **fields: Any) -> "MigrationMappingBuilder":
        self._migrations.append(migration if migration is not None else fields)
        return self

    def with_version_mapping(self, version_mapping: Dict[str, Any]) -> "MigrationMappingBuilder":
        self._version_mapping = dict(version_mapping)
        return self

    def with_strategy(self, strategy: Any) -> "MigrationMappingBuilder":
        self._strategy = MigrationStrategy(strategy)
        return self

    def with_conflict_resolution(self, resolution: Any) -> "MigrationMappingBuilder":
        self._conflict_resolution = ConflictResolution(resolution)
        return self

    def with_options(self, **options: Any) -> "MigrationMappingBuilder":
        self._options.update(options)
        return self

    def build(self) -> MigrationMapping:
        """Build and validate the mapping.

        Raises:
            ConfigValidationError: the mapping is invalid
        """
        mapping = MigrationMapping(
            strategy=MigrationStrategy.SIMPLE,
            sources=self._sources,
            targets=self._targets,
            migrations=self._migrations,
            version_mapping=self._version_mapping,
            conflict_resolution=self._conflict_resolution,
            options=self._options,
        )
        strategy = self._strategy or MigrationPatternResolver.get_recommended_strategy(
            mapping.mapping_type
        )
        mapping = mapping.model_copy(update={'strategy': strategy})

        result = mapping.validate()
        if not result.valid:
            raise ConfigValidationError(
                f"Invalid migration mapping: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        for warning in result.warnings:
            logger.warning(warning)
        return mapping
