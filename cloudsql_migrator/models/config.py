"""
Operation configuration models for the CloudSQL migrator.

An ``OperationConfig`` describes one source to target migration task:
where to read from, where to write to, and how. Field names are
snake_case; the camelCase spellings produced by instance files and
interactive answers are accepted as aliases.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from cloudsql_migrator.utils.helpers import generate_execution_id

DEFAULT_TOOL_NAME = "gcp.cloudsql.migrate"
DEFAULT_USER = "postgres"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ValidationResult(BaseModel):
    """Outcome of validating a configuration or mapping."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class InstanceEndpoint(_ConfigModel):
    """A Cloud SQL instance and the credentials used to reach it."""
    project: Optional[str] = None
    instance: Optional[str] = None
    user: str = DEFAULT_USER
    password: Optional[str] = None
    ip: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.project}:{self.instance}"


class SourceConfig(InstanceEndpoint):
    """Source instance; ``databases=None`` selects every database."""
    databases: Optional[List[str]] = None

    @field_validator('databases', mode='before')
    @classmethod
    def split_database_list(cls, v):
        if v == "all":
            return None
        if isinstance(v, str):
            return [name.strip() for name in v.split(',') if name.strip()]
        return v


class TargetConfig(InstanceEndpoint):
    """Target instance."""
    pass


class OperationOptions(_ConfigModel):
    """Options controlling a single migration task."""
    include_all: bool = False
    retry_attempts: int = Field(default=3, ge=1)
    jobs: int = Field(default=1, ge=1)
    dry_run: bool = False
    verbose: bool = False
    force_compatibility: bool = False
    schema_only: bool = False
    data_only: bool = False
    max_parallel: int = Field(default=3, ge=1)
    stop_on_error: bool = True
    retry_failed: bool = False
    conflict_resolution: Optional[str] = None
    prefix_with: Optional[str] = None
    database_renames: Dict[str, str] = Field(default_factory=dict)
    merged_databases: List[str] = Field(default_factory=list)
    keep_backups: bool = False
    ssl_mode: Optional[str] = None
    use_proxy: bool = False
    version: Optional[str] = None

    @field_validator('retry_attempts', 'jobs', 'max_parallel', mode='before')
    @classmethod
    def default_for_empty(cls, v, info):
        if v is None or v == "":
            return cls.model_fields[info.field_name].default
        return v


class OperationMetadata(BaseModel):
    """Tool metadata; unknown keys are preserved."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra='allow',
    )

    tool_name: str = DEFAULT_TOOL_NAME
    version: str = "1.0.0"
    execution_id: str = Field(default_factory=generate_execution_id)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class OperationConfig(_ConfigModel):
    """Configuration of a single migration task."""
    source: SourceConfig = Field(default_factory=SourceConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)
    options: OperationOptions = Field(default_factory=OperationOptions)
    metadata: OperationMetadata = Field(default_factory=OperationMetadata)

    @property
    def tool_name(self) -> str:
        return self.metadata.tool_name

    @property
    def execution_id(self) -> str:
        return self.metadata.execution_id

    @property
    def is_read_only_tool(self) -> bool:
        """Listing and testing tools do not need a target."""
        return "list" in self.tool_name or "test" in self.tool_name

    def validate(self) -> ValidationResult:
        """Check required fields and option consistency."""
        errors: List[str] = []

        if not self.source.project:
            errors.append("Source project is required")
        if not self.source.instance:
            errors.append("Source instance is required")

        if not self.is_read_only_tool:
            if not self.target.project:
                errors.append("Target project is required")
            if not self.target.instance:
                errors.append("Target instance is required")

        if "migrate" in self.tool_name:
            if not self.options.include_all and not self.source.databases:
                errors.append("Either specify databases or use includeAll option")

        if self.options.schema_only and self.options.data_only:
            errors.append("Cannot specify both schemaOnly and dataOnly options")

        return ValidationResult(valid=not errors, errors=errors)

    def target_database_name(self, database: str) -> str:
        """Name a source database will have on the target."""
        if database in self.options.database_renames:
            return self.options.database_renames[database]
        if self.options.prefix_with:
            return f"{self.options.prefix_with}_{database}"
        return database

    def with_options(self, **changes: Any) -> "OperationConfig":
        """Copy of this config with some options replaced."""
        options = self.options.model_copy(update=changes)
        return self.model_copy(update={"options": options})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OperationConfig":
        return cls.model_validate(dict(data))

    @classmethod
    def from_cli_args(cls, args: Union[Mapping[str, Any], Any]) -> "OperationConfig":
        """Build a config from parsed command line arguments.

        Accepts a mapping or an ``argparse.Namespace``-like object using
        the snake_case argument names.
        """
        if not isinstance(args, Mapping):
            args = vars(args)

        def arg(name: str, default: Any = None) -> Any:
            value = args.get(name)
            return default if value is None else value

        return cls(
            source=SourceConfig(
                project=arg('source_project'),
                instance=arg('source_instance'),
                ip=arg('source_ip'),
                user=arg('source_user', DEFAULT_USER),
                password=arg('source_password'),
                databases=arg('databases'),
            ),
            target=TargetConfig(
                project=arg('target_project'),
                instance=arg('target_instance'),
                ip=arg('target_ip'),
                user=arg('target_user', DEFAULT_USER),
                password=arg('target_password'),
            ),
            options=OperationOptions(
                include_all=bool(arg('include_all', False)),
                retry_attempts=int(arg('retry_attempts', 3)),
                jobs=int(arg('jobs', 1)),
                dry_run=bool(arg('dry_run', False)),
                verbose=bool(arg('verbose', False)),
                force_compatibility=bool(arg('force_compatibility', False)),
                schema_only=bool(arg('schema_only', False)),
                data_only=bool(arg('data_only', False)),
                ssl_mode=arg('ssl_mode', 'simple'),
                use_proxy=bool(arg('use_proxy', False)),
            ),
            metadata=OperationMetadata(
                tool_name=arg('tool_name', DEFAULT_TOOL_NAME),
                source='classic-cli',
            ),
        )

    @classmethod
    def from_interactive_answers(cls, answers: Mapping[str, Any]) -> "OperationConfig":
        """Build a config from the answers collected by an interactive session."""
        return cls.model_validate({
            'source': answers.get('source') or {},
            'target': answers.get('target') or {},
            'options': answers.get('options') or {},
            'metadata': {
                'toolName': answers.get('toolName') or answers.get('tool_name') or DEFAULT_TOOL_NAME,
                'source': 'interactive-cli',
            },
        })
