"""Docker-sandboxed tools."""

from evalbox.tools.docker_executor import DockerToolExecutor, usage_stats
from evalbox.tools.docker_tool import DockerTool
from evalbox.tools.usage import ToolRegistry, ToolUsage, UsageTracker

__all__ = [
    "DockerTool",
    "DockerToolExecutor",
    "ToolRegistry",
    "ToolUsage",
    "UsageTracker",
    "usage_stats",
]
