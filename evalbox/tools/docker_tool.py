"""Runtime view of a containerized tool."""

from dataclasses import dataclass, field
from typing import Any

from evalbox.config import ToolConfig, ToolSelection


def format_duration(seconds: float | None) -> str:
    """Render a duration as `50ms`, `2s`, `1m30s` or `<none>`."""
    if seconds is None:
        return "<none>"
    total_ms = round(seconds * 1000)
    if total_ms < 1000:
        return f"{total_ms}ms"
    hours, rem_ms = divmod(total_ms, 3_600_000)
    minutes, rem_ms = divmod(rem_ms, 60_000)
    secs = rem_ms / 1000
    secs_text = f"{secs:g}s" if secs else ""
    if hours:
        return f"{hours}h{minutes}m{secs_text or '0s'}"
    if minutes:
        return f"{minutes}m{secs_text or '0s'}"
    return secs_text


@dataclass(frozen=True)
class DockerTool:
    """Tool configuration plus the per-task execution policy."""

    name: str
    image: str
    description: str
    parameters: dict[str, Any]
    parameter_files: dict[str, str] = field(default_factory=dict)
    auxiliary_dir: str = ""
    shared_dir: str = ""
    command: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    max_calls: int | None = None
    timeout: float | None = None  # seconds
    max_memory_mb: int | None = None
    cpu_percent: int | None = None

    @classmethod
    def from_config(cls, cfg: ToolConfig, selection: ToolSelection | None = None) -> "DockerTool":
        selection = selection or ToolSelection(name=cfg.name)
        return cls(
            name=cfg.name,
            image=cfg.image,
            description=cfg.description,
            parameters=dict(cfg.parameters),
            parameter_files=dict(cfg.parameter_files),
            auxiliary_dir=cfg.auxiliary_dir,
            shared_dir=cfg.shared_dir,
            command=tuple(cfg.command),
            env=dict(cfg.env),
            max_calls=selection.max_calls,
            timeout=selection.timeout,
            max_memory_mb=selection.max_memory_mb,
            cpu_percent=selection.cpu_percent,
        )

    def describe_timeout(self) -> str:
        return format_duration(self.timeout)

    def environment(self) -> list[str]:
        """Return the environment as `KEY=value` entries."""
        return [f"{key}={value}" for key, value in self.env.items()]
