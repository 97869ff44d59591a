"""Tool registry and per-tool usage tracking.

Both objects are owned by a single executor and guarded by a lock so that
concurrent tool calls never corrupt the counters.
"""

import threading
from dataclasses import dataclass

from evalbox.tools.docker_tool import DockerTool


@dataclass
class ToolUsage:
    """Call count and cumulative execution time for one tool."""

    call_count: int = 0
    total_time_ns: int = 0


class ToolRegistry:
    """Maps tool names to registered tools."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: dict[str, DockerTool] = {}

    def register(self, tool: DockerTool) -> None:
        with self._lock:
            self._tools[tool.name] = tool

    def get(self, name: str) -> DockerTool | None:
        with self._lock:
            return self._tools.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)


class UsageTracker:
    """Accumulates tool usage keyed by tool name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usage: dict[str, ToolUsage] = {}

    def call_count(self, name: str) -> int:
        with self._lock:
            usage = self._usage.get(name)
            return usage.call_count if usage else 0

    def record(self, name: str, duration_ns: int) -> None:
        """Count one call and add its elapsed time."""
        with self._lock:
            usage = self._usage.setdefault(name, ToolUsage())
            usage.call_count += 1
            usage.total_time_ns += max(0, int(duration_ns))

    def snapshot(self) -> dict[str, ToolUsage]:
        """Return a copy that is safe to read while calls continue."""
        with self._lock:
            return {
                name: ToolUsage(call_count=usage.call_count, total_time_ns=usage.total_time_ns)
                for name, usage in self._usage.items()
            }
