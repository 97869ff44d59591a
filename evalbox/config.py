"""Configuration management for evalbox."""

import mimetypes
import re
from pathlib import Path
from typing import Any, Literal

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from evalbox.exceptions import ConfigurationError

# Paths
DEFAULT_CONFIG_PATH = Path("~/.evalbox/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"
DEFAULT_TASKS_FILENAME = "tasks.yaml"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> float | None:
    """Parse seconds or a duration string such as `50ms`, `2s` or `1m30s`."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART_RE.findall(text)
    if not parts or "".join(number + unit for number, unit in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class RetryPolicy(BaseModel):
    """Retry behavior on transient errors."""

    max_retry_attempts: int = Field(default=0, ge=0)
    initial_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float | None = Field(default=None, gt=0)
    jitter: float = Field(default=0.0, ge=0, le=1)


class RunConfig(BaseModel):
    """Settings for a single run configuration."""

    name: str
    model: str
    max_requests_per_minute: int = Field(default=0, ge=0)
    disabled: bool | None = None
    disable_structured_output: bool = False
    model_params: dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy | None = None


class ProviderConfig(BaseModel):
    """Settings for an AI provider."""

    name: Literal[
        "openai",
        "anthropic",
        "google",
        "deepseek",
        "mistralai",
        "xai",
        "alibaba",
        "moonshotai",
        "openrouter",
        "mock",
    ]
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0
    runs: list[RunConfig] = Field(default_factory=list)
    disabled: bool = False
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @model_validator(mode="after")
    def _unique_run_names(self) -> "ProviderConfig":
        names = [run.name for run in self.runs]
        if len(names) != len(set(names)):
            raise ValueError(f"run names must be unique for provider {self.name}")
        return self

    def resolved_runs(self) -> list[RunConfig]:
        """Return runs with retry policy and disabled flag inherited from the provider."""
        resolved: list[RunConfig] = []
        for run in self.runs:
            update: dict[str, Any] = {}
            if run.retry_policy is None:
                update["retry_policy"] = self.retry_policy.model_copy()
            if run.disabled is None:
                update["disabled"] = self.disabled
            resolved.append(run.model_copy(update=update))
        return resolved

    def enabled_runs(self) -> list[RunConfig]:
        """Return resolved runs that are not disabled."""
        return [run for run in self.resolved_runs() if not run.disabled]


class ToolConfig(BaseModel):
    """Static configuration for a containerized tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    description: str
    parameters: dict[str, Any]
    parameter_files: dict[str, str] = Field(default_factory=dict)
    auxiliary_dir: str = ""
    shared_dir: str = ""
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class ToolSelection(BaseModel):
    """Per-task tool enablement and limits."""

    name: str
    disabled: bool | None = None
    max_calls: int | None = Field(default=None, ge=0)
    timeout: float | None = None
    max_memory_mb: int | None = Field(default=None, gt=0)
    cpu_percent: int | None = Field(default=None, ge=1, le=100)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        return parse_duration(value)


class ToolSelector(BaseModel):
    """Set of tools enabled for tasks."""

    disabled: bool | None = None
    tools: list[ToolSelection] = Field(default_factory=list)

    def merged(self, override: "ToolSelector | None") -> "ToolSelector":
        """Combine with a task-level override; override fields win by tool name."""
        if override is None:
            return self.model_copy(deep=True)

        by_name = {selection.name: selection for selection in self.tools}
        order = [selection.name for selection in self.tools]
        for selection in override.tools:
            base = by_name.get(selection.name)
            if base is None:
                by_name[selection.name] = selection.model_copy()
                order.append(selection.name)
                continue
            by_name[selection.name] = base.model_copy(
                update=selection.model_dump(exclude_unset=True)
            )

        disabled = override.disabled if override.disabled is not None else self.disabled
        return ToolSelector(disabled=disabled, tools=[by_name[name] for name in order])

    def enabled_tools(self) -> dict[str, ToolSelection]:
        """Return enabled tool selections keyed by tool name."""
        default_disabled = bool(self.disabled)
        enabled: dict[str, ToolSelection] = {}
        for selection in self.tools:
            disabled = selection.disabled if selection.disabled is not None else default_disabled
            if not disabled:
                enabled[selection.name] = selection
        return enabled


class TaskFile(BaseModel):
    """File attached to a task."""

    name: str
    uri: str
    type: str = ""

    _content: bytes | None = PrivateAttr(default=None)

    @property
    def is_remote(self) -> bool:
        return self.uri.startswith(("http://", "https://"))

    def mime_type(self) -> str:
        """Return the declared MIME type or guess it from the file name."""
        if self.type:
            return self.type
        guessed, _ = mimetypes.guess_type(self.name)
        return guessed or "application/octet-stream"

    async def read(self) -> bytes:
        """Read file content from the local filesystem or over HTTP."""
        if self._content is not None:
            return self._content
        if self.is_remote:
            async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
                response = await client.get(self.uri)
                response.raise_for_status()
                self._content = response.content
        else:
            self._content = Path(self.uri).expanduser().read_bytes()
        return self._content


class JudgeSelector(BaseModel):
    """Selects the judge, and its run variant, that grades a task's answers."""

    enabled: bool | None = None
    name: str | None = None
    variant: str | None = None

    def merged(self, override: "JudgeSelector | None") -> "JudgeSelector":
        if override is None:
            return self.model_copy()
        return self.model_copy(update=override.model_dump(exclude_none=True))

    def is_enabled(self) -> bool:
        return bool(self.enabled)


class ValidationRules(BaseModel):
    """Rules applied when comparing answers."""

    case_sensitive: bool | None = None
    ignore_whitespace: bool | None = None
    trim_lines: bool | None = None
    judge: JudgeSelector | None = None

    def merged(self, override: "ValidationRules | None") -> "ValidationRules":
        if override is None:
            return self.model_copy(deep=True)
        update = override.model_dump(exclude_none=True, exclude={"judge"})
        base_judge = self.judge or JudgeSelector()
        update["judge"] = base_judge.merged(override.judge)
        return self.model_copy(update=update)

    def is_case_sensitive(self) -> bool:
        return bool(self.case_sensitive)

    def is_ignore_whitespace(self) -> bool:
        return bool(self.ignore_whitespace)

    def judge_selector(self) -> JudgeSelector:
        return self.judge or JudgeSelector()


class Task(BaseModel):
    """A single test case to be executed by AI models."""

    name: str
    prompt: str
    response_result_format: str | dict[str, Any]
    expected_result: Any
    system_prompt: str = ""
    disabled: bool | None = None
    files: list[TaskFile] = Field(default_factory=list)
    tool_selector: ToolSelector | None = None
    validation_rules: ValidationRules | None = None

    @model_validator(mode="after")
    def _unique_file_names(self) -> "Task":
        names = [item.name for item in self.files]
        if len(names) != len(set(names)):
            raise ValueError(f"file names must be unique in task {self.name}")
        return self

    def expected_values(self) -> list[Any]:
        """Return the accepted answers as a list."""
        if isinstance(self.expected_result, list):
            return list(self.expected_result)
        return [self.expected_result]

    def resolved(self, task_config: "TaskConfig") -> "Task":
        """Return a copy with the task-config defaults applied."""
        return task_config.resolve(self)

    def resolved_tool_selector(self) -> ToolSelector:
        return (self.tool_selector or ToolSelector()).model_copy(deep=True)

    def resolved_validation_rules(self) -> ValidationRules:
        return self.validation_rules or ValidationRules()

    async def file_data(self) -> dict[str, bytes]:
        """Return attached file contents keyed by file name."""
        return {item.name: await item.read() for item in self.files}


class TaskConfig(BaseModel):
    """Task definitions and global task settings."""

    tasks: list[Task] = Field(default_factory=list)
    disabled: bool = False
    tool_selector: ToolSelector = Field(default_factory=ToolSelector)
    validation_rules: ValidationRules = Field(default_factory=ValidationRules)

    def resolve(self, task: Task) -> Task:
        """Apply global defaults to a task."""
        return task.model_copy(
            update={
                "disabled": task.disabled if task.disabled is not None else self.disabled,
                "tool_selector": self.tool_selector.merged(task.tool_selector),
                "validation_rules": self.validation_rules.merged(task.validation_rules),
            }
        )

    def enabled_tasks(self) -> list[Task]:
        """Return resolved tasks that are not disabled."""
        resolved = [self.resolve(task) for task in self.tasks]
        return [task for task in resolved if not task.disabled]


class Tasks(BaseModel):
    """Top-level task file structure."""

    task_config: TaskConfig

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Tasks":
        """Load task definitions from YAML file."""
        tasks_path = Path(path).expanduser()
        if not tasks_path.exists():
            raise ConfigurationError(f"task file not found: {tasks_path}")
        with open(tasks_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"invalid task file {tasks_path}: {e}") from e


class JudgeConfig(BaseModel):
    """An LLM judge for semantic grading of open-ended answers."""

    name: str
    provider: ProviderConfig

    def resolved(self) -> "JudgeConfig":
        """Return a copy keeping only the enabled, resolved run variants."""
        provider = self.provider.model_copy(update={"runs": self.provider.enabled_runs()})
        return self.model_copy(update={"provider": provider})

    def find_run(self, variant: str) -> RunConfig | None:
        for run in self.provider.runs:
            if run.name == variant:
                return run
        return None


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"
    file: str = ""


class Config(BaseSettings):
    """Main configuration for evalbox."""

    log: LoggingConfig = Field(default_factory=LoggingConfig)
    output_dir: str = "./results"
    # strftime directives are expanded with the run start time; blank prints reports to stdout.
    output_basename: str = "results-%Y%m%dT%H%M%SZ"
    task_source: str = DEFAULT_TASKS_FILENAME
    providers: list[ProviderConfig] = Field(default_factory=list)
    judges: list[JudgeConfig] = Field(default_factory=list)
    tools: list[ToolConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="EVALBOX_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _unique_tool_names(self) -> "Config":
        names = [tool.name for tool in self.tools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate tool names: {', '.join(duplicates)}")
        return self

    @model_validator(mode="after")
    def _unique_judge_names(self) -> "Config":
        names = [judge.name for judge in self.judges]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate judge names: {', '.join(duplicates)}")
        return self

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"invalid configuration {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; environment variables fill keys the file leaves unset."""
        return cls.from_yaml(path)

    def providers_with_enabled_runs(self) -> list[ProviderConfig]:
        """Return enabled providers with only their enabled, resolved runs."""
        result: list[ProviderConfig] = []
        for provider in self.providers:
            runs = provider.enabled_runs()
            if runs:
                result.append(provider.model_copy(update={"runs": runs}))
        return result

    def judges_with_enabled_runs(self) -> list[JudgeConfig]:
        """Return judges with only their enabled, resolved run variants."""
        result: list[JudgeConfig] = []
        for judge in self.judges:
            resolved = judge.resolved()
            if resolved.provider.runs:
                result.append(resolved)
        return result

    def find_tool(self, name: str) -> ToolConfig | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def resolved_task_source(self, config_path: Path | str | None = None) -> Path:
        """Resolve the task file path relative to the config file location."""
        raw = Path(self.task_source).expanduser()
        if raw.is_absolute() or config_path is None:
            return raw
        return Path(config_path).expanduser().resolve().parent / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
