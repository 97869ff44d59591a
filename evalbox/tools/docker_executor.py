"""Execute tools inside short-lived, network-isolated Docker containers."""

import asyncio
import json
import os
import posixpath
import shutil
import tempfile
import threading
import time
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import docker
import docker.errors
from docker.types import LogConfig, Mount

from evalbox.config import ToolConfig
from evalbox.exceptions import (
    InvalidToolArgumentsError,
    ToolExecutionFailedError,
    ToolInternalError,
    ToolMaxCallsExceededError,
    ToolNotAvailableError,
    ToolTimeoutError,
    UnsupportedToolTypeError,
)
from evalbox.logging import get_logger
from evalbox.tools.docker_tool import DockerTool
from evalbox.tools.usage import ToolRegistry, ToolUsage, UsageTracker

log = get_logger(__name__)

WORKSPACE_PREFIX = "evalbox-tool-"
SHARED_DIR_PREFIX = "evalbox-tool-shared-"

_JSON_TYPE_NAMES = {
    list: "array",
    str: "string",
    bool: "boolean",
    int: "number",
    float: "number",
    type(None): "null",
}


def _decode_arguments(args: str | bytes | Mapping[str, Any]) -> dict[str, Any]:
    """Decode tool arguments into a JSON object."""
    if isinstance(args, Mapping):
        return dict(args)
    value = json.loads(args)
    if not isinstance(value, dict):
        kind = _JSON_TYPE_NAMES.get(type(value), type(value).__name__)
        raise ValueError(f"expected a JSON object, got {kind}")
    return value


def _write_temp_file(directory: str, prefix: str, content: str | bytes) -> str:
    """Write content to a uniquely named file and return its path."""
    safe_prefix = Path(prefix).name or "file"
    fd, path = tempfile.mkstemp(prefix=f"{safe_prefix}-", dir=directory)
    payload = content.encode("utf-8") if isinstance(content, str) else content
    with os.fdopen(fd, "wb") as f:
        f.write(payload)
    return path


def _is_benign_removal_error(error: Exception) -> bool:
    if isinstance(error, docker.errors.NotFound):
        return True
    return isinstance(error, docker.errors.APIError) and error.status_code == 409


class DockerToolExecutor:
    """Runs registered tools, one disposable container per call.

    The executor owns its Docker client and a lazily created shared directory;
    both are released by `close()`. Tool calls may run concurrently against one
    executor.
    """

    def __init__(
        self,
        client: Any,
        registry: ToolRegistry | None = None,
        usage: UsageTracker | None = None,
        temp_root: str | Path | None = None,
    ):
        self._client = client
        self._registry = registry if registry is not None else ToolRegistry()
        self._usage = usage if usage is not None else UsageTracker()
        self._temp_root = str(temp_root) if temp_root else None
        self._shared_dir: str | None = None
        self._shared_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_env(cls, **kwargs: Any) -> "DockerToolExecutor":
        """Create an executor connected to the Docker daemon from the environment."""
        try:
            client = docker.from_env()
        except Exception as e:
            raise ToolInternalError(f"failed to create docker client: {e}") from e
        return cls(client, **kwargs)

    async def __aenter__(self) -> "DockerToolExecutor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def register_tool(self, tool: DockerTool) -> None:
        """Register a tool, replacing any tool with the same name."""
        self._registry.register(tool)
        log.debug("Registered tool", tool=tool.name, image=tool.image)

    async def validate_tool(self, cfg: ToolConfig) -> None:
        """Check that the tool image is present locally. Never pulls."""
        image = cfg.image.strip()
        if not image:
            raise ToolInternalError("tool image is not configured", tool_name=cfg.name)
        try:
            await asyncio.to_thread(self._client.images.get, image)
        except docker.errors.NotFound as e:
            raise ToolNotAvailableError(
                f'tool image "{image}" is not available locally; '
                f"pull it first with: docker pull {image}",
                tool_name=cfg.name,
            ) from e
        except Exception as e:
            raise ToolInternalError(
                f'failed to inspect tool image "{image}": {e}', tool_name=cfg.name
            ) from e

    def shared_directory(self) -> str:
        """Return the shared directory, creating it on first use."""
        with self._shared_lock:
            if self._shared_dir is None:
                self._shared_dir = tempfile.mkdtemp(prefix=SHARED_DIR_PREFIX, dir=self._temp_root)
                log.debug("Created shared tool directory", path=self._shared_dir)
            return self._shared_dir

    async def execute_tool(
        self,
        tool_name: str,
        args: str | bytes | Mapping[str, Any],
        data: Mapping[str, bytes] | None = None,
    ) -> str:
        """Run one tool call and return its stdout as raw JSON text.

        Args:
            tool_name: Name of a registered tool
            args: JSON object text (or an already decoded mapping)
            data: Auxiliary files, name to content, mounted under the tool's auxiliary dir

        Returns:
            Trimmed stdout of the tool container
        """
        tool = self._registry.get(tool_name)
        if tool is None:
            raise ToolNotAvailableError(f'tool "{tool_name}" is not registered', tool_name=tool_name)
        if not isinstance(tool, DockerTool):
            raise UnsupportedToolTypeError(type(tool).__name__, tool_name=tool_name)

        logger = log.bind(tool=tool_name)

        if tool.max_calls is not None and self._usage.call_count(tool_name) >= tool.max_calls:
            logger.warning("Tool call limit reached", max_calls=tool.max_calls)
            raise ToolMaxCallsExceededError(
                f'tool "{tool_name}" has exceeded its maximum call limit of {tool.max_calls} '
                "for this session. Do not call this tool again during the current conversation",
                tool_name=tool_name,
            )

        logger.info("Starting tool setup")
        try:
            params = _decode_arguments(args)
        except (ValueError, TypeError) as e:
            logger.error("Failed to parse tool arguments", raw_args=str(args), error=str(e))
            raise InvalidToolArgumentsError(
                "failed to parse input arguments as JSON object "
                f'(expected format: {{"argName": "value", ...}}): {e}',
                tool_name=tool_name,
            ) from e

        try:
            workspace = tempfile.TemporaryDirectory(prefix=WORKSPACE_PREFIX, dir=self._temp_root)
        except OSError as e:
            raise ToolInternalError(
                f"failed to create temporary workspace directory: {e}", tool_name=tool_name
            ) from e

        with workspace as workdir:
            logger.debug("Created temporary workspace", path=workdir)
            mounts = self._stage_parameter_files(tool, params, workdir, logger)
            mounts.extend(self._stage_auxiliary_files(tool, data or {}, workdir, logger))
            if tool.shared_dir:
                try:
                    shared = self.shared_directory()
                except OSError as e:
                    raise ToolInternalError(
                        f"failed to create shared directory: {e}", tool_name=tool_name
                    ) from e
                mounts.append(Mount(target=tool.shared_dir, source=shared, type="bind"))
                logger.debug("Mounted shared directory", source=shared, target=tool.shared_dir)

            return await self._run_tool(tool, mounts, logger)

    def _stage_parameter_files(
        self, tool: DockerTool, params: dict[str, Any], workdir: str, logger: Any
    ) -> list[Mount]:
        mounts: list[Mount] = []
        for arg_name, container_path in tool.parameter_files.items():
            if arg_name not in params:
                continue
            value = params[arg_name]
            if isinstance(value, str):
                content = value
            else:
                try:
                    content = json.dumps(value)
                except (TypeError, ValueError) as e:
                    raise InvalidToolArgumentsError(
                        f'failed to serialize argument "{arg_name}" to JSON '
                        f"(argument values must be JSON-serializable): {e}",
                        tool_name=tool.name,
                    ) from e
            try:
                source = _write_temp_file(workdir, arg_name, content)
            except OSError as e:
                raise ToolInternalError(
                    f'failed to write argument "{arg_name}" to temporary file: {e}',
                    tool_name=tool.name,
                ) from e
            mounts.append(Mount(target=container_path, source=source, type="bind"))
            logger.debug("Mounted parameter file", argument=arg_name, target=container_path)
        return mounts

    def _stage_auxiliary_files(
        self, tool: DockerTool, data: Mapping[str, bytes], workdir: str, logger: Any
    ) -> list[Mount]:
        if not tool.auxiliary_dir:
            return []
        mounts: list[Mount] = []
        aux_dir = tool.auxiliary_dir.replace("\\", "/")
        for file_name, content in data.items():
            try:
                source = _write_temp_file(workdir, file_name, content)
            except OSError as e:
                raise ToolInternalError(
                    f'failed to create temporary file for auxiliary data file "{file_name}": {e}',
                    tool_name=tool.name,
                ) from e
            target = posixpath.join(aux_dir, file_name)
            mounts.append(Mount(target=target, source=source, type="bind"))
            logger.debug("Mounted auxiliary file", file=file_name, target=target)
        return mounts

    def _container_options(self, tool: DockerTool, mounts: list[Mount], name: str) -> dict[str, Any]:
        options: dict[str, Any] = {
            "command": list(tool.command) or None,
            "environment": tool.environment(),
            "name": name,
            "tty": False,
            "stdin_open": False,
            "mounts": mounts,
            "auto_remove": False,
            "network_mode": "none",
            "restart_policy": {"Name": "no"},
            "log_config": LogConfig(type="json-file"),
        }
        if tool.max_memory_mb is not None:
            options["mem_limit"] = tool.max_memory_mb * 1024 * 1024
        if tool.cpu_percent is not None:
            options["nano_cpus"] = (os.cpu_count() or 1) * tool.cpu_percent * 10_000_000
        return options

    async def _run_tool(self, tool: DockerTool, mounts: list[Mount], logger: Any) -> str:
        name = f"{tool.name}-tool-{uuid.uuid4().hex}"
        options = self._container_options(tool, mounts, name)

        try:
            container = await asyncio.to_thread(self._client.containers.create, tool.image, **options)
        except Exception as e:
            raise ToolInternalError(
                f'failed to create tool container (image: "{tool.image}"): {e}',
                tool_name=tool.name,
            ) from e

        logger = logger.bind(container=name)
        logger.debug("Created tool container", container_id=getattr(container, "id", ""))

        try:
            exit_code = await self._wait_for_exit(tool, container, logger)
            if exit_code != 0:
                try:
                    output = await asyncio.to_thread(container.logs, stdout=True, stderr=True)
                except Exception as e:
                    logger.warning("Failed to retrieve tool container logs", error=str(e))
                    raise ToolExecutionFailedError(
                        f"tool container exited with code {exit_code}", tool_name=tool.name
                    ) from e
                text = output.decode("utf-8", errors="replace").strip()
                raise ToolExecutionFailedError(
                    f"tool container exited with code {exit_code}: {text}", tool_name=tool.name
                )

            logger.info("Tool container finished successfully")
            try:
                stdout = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
            except Exception as e:
                raise ToolInternalError(
                    f"failed to retrieve tool output from tool container: {e}",
                    tool_name=tool.name,
                ) from e

            result = stdout.decode("utf-8", errors="replace").strip()
            if not result:
                raise ToolExecutionFailedError("tool returned no output", tool_name=tool.name)
            logger.info("Tool call finished")
            return result
        finally:
            await self._remove_container(container, logger)

    async def _wait_for_exit(self, tool: DockerTool, container: Any, logger: Any) -> int:
        """Start the container and wait for it to stop, recording usage."""

        async def start_and_wait() -> dict[str, Any]:
            try:
                await asyncio.to_thread(container.start)
            except Exception as e:
                raise ToolInternalError(
                    f"failed to start tool container: {e}", tool_name=tool.name
                ) from e
            try:
                return await asyncio.to_thread(container.wait)
            except Exception as e:
                raise ToolInternalError(
                    f"failed to wait for tool container: {e}", tool_name=tool.name
                ) from e

        logger.info("Starting tool execution")
        started = time.perf_counter_ns()
        try:
            status = await asyncio.wait_for(start_and_wait(), timeout=tool.timeout)
        except TimeoutError as e:
            raise ToolTimeoutError(
                f"execution timed out after {tool.describe_timeout()}", tool_name=tool.name
            ) from e
        finally:
            elapsed = time.perf_counter_ns() - started
            self._usage.record(tool.name, elapsed)

        exit_code = int(status.get("StatusCode", -1))
        error = status.get("Error") or {}
        if error.get("Message"):
            raise ToolInternalError(
                f"failed to wait for tool container: {error['Message']}", tool_name=tool.name
            )
        logger.debug("Tool container exited", exit_code=exit_code, elapsed_ns=elapsed)
        return exit_code

    async def _remove_container(self, container: Any, logger: Any) -> None:
        try:
            await asyncio.to_thread(container.remove, force=True, v=True)
        except Exception as e:
            if not _is_benign_removal_error(e):
                logger.warning("Failed to remove tool container after execution", error=str(e))

    def get_usage_stats(self) -> dict[str, ToolUsage]:
        """Return a snapshot of per-tool usage."""
        return self._usage.snapshot()

    def close(self) -> None:
        """Remove the shared directory and close the Docker client."""
        if self._closed:
            return
        self._closed = True
        with self._shared_lock:
            shared, self._shared_dir = self._shared_dir, None
        if shared:
            shutil.rmtree(shared, ignore_errors=True)
            log.debug("Removed shared tool directory", path=shared)
        close = getattr(self._client, "close", None)
        if close is not None:
            close()

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)


def usage_stats(executor: DockerToolExecutor | None) -> dict[str, ToolUsage]:
    """Return usage for an executor, or an empty mapping when tools were never set up."""
    if executor is None:
        return {}
    return executor.get_usage_stats()
