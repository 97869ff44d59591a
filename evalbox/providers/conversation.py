"""Tool-calling conversation loop shared by tool-capable providers.

Each adapter wraps its own wire request in a `ConversationRequest`; the loop
only talks to that interface.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from evalbox.config import Task, ToolConfig
from evalbox.exceptions import ToolError, ToolNotFoundError, ToolSetupError
from evalbox.logging import get_logger
from evalbox.providers import Result, find_tool_by_name, format_tool_execution_error, timed
from evalbox.tools.docker_executor import DockerToolExecutor, usage_stats
from evalbox.tools.docker_tool import DockerTool

log = get_logger(__name__)

ExecutorFactory = Callable[[], DockerToolExecutor]


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: str  # raw JSON text as sent by the model


@dataclass
class ModelTurn:
    """One model response."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    stop_reason: str = ""
    raw_message: Any = None


class ConversationRequest(ABC):
    """Provider-specific request that the conversation loop can drive."""

    @abstractmethod
    async def complete(self) -> ModelTurn:
        """Send the current conversation to the model."""
        pass

    @abstractmethod
    def append_assistant_message(self, turn: ModelTurn) -> None:
        pass

    @abstractmethod
    def append_tool_result(self, call: ToolCall, content: str, is_error: bool) -> None:
        pass

    @abstractmethod
    def set_tool_choice(self, choice: str) -> None:
        pass

    @abstractmethod
    def add_tool_definition(self, cfg: ToolConfig) -> None:
        pass

    @abstractmethod
    def decode_final(self, turn: ModelTurn, result: Result) -> Result:
        """Decode the final response into the result."""
        pass


@asynccontextmanager
async def open_task_tools(
    task: Task,
    available_tools: Iterable[ToolConfig],
    executor_factory: ExecutorFactory | None = None,
    request: ConversationRequest | None = None,
) -> AsyncIterator[DockerToolExecutor | None]:
    """Prepare an executor with the tools enabled for the task.

    Yields None when the task enables no tools. The executor is closed on exit.
    """
    enabled = task.resolved_tool_selector().enabled_tools()
    if not enabled:
        yield None
        return

    factory = executor_factory or DockerToolExecutor.from_env
    try:
        executor = factory()
    except ToolError as e:
        raise ToolSetupError(str(e)) from e

    available = list(available_tools)
    try:
        for tool_name, selection in enabled.items():
            cfg = find_tool_by_name(available, tool_name)
            if cfg is None:
                raise ToolNotFoundError(tool_name)
            try:
                await executor.validate_tool(cfg)
            except ToolError as e:
                raise ToolSetupError(str(e)) from e
            executor.register_tool(DockerTool.from_config(cfg, selection))
            if request is not None:
                request.add_tool_definition(cfg)
        if request is not None:
            request.set_tool_choice("auto")
        log.debug("Tools ready", task=task.name, tools=list(enabled))
        yield executor
    finally:
        await executor.aclose()


async def _load_task_files(task: Task) -> dict[str, bytes]:
    try:
        return await task.file_data()
    except Exception as e:
        raise ToolSetupError(f"failed to read task files: {e}") from e


async def run_conversation(
    request: ConversationRequest,
    result: Result,
    task: Task,
    executor: DockerToolExecutor | None,
    available_tools: Iterable[ToolConfig] | None = None,
) -> Result:
    """Call the model until it answers without requesting tools.

    Tool failures the model can react to are sent back as tool messages;
    anything else propagates and ends the run.
    """
    if available_tools is None:
        known = set(executor.registry.names()) if executor is not None else set()
    else:
        known = {tool.name for tool in available_tools}
    data: dict[str, bytes] | None = None

    try:
        while True:
            turn = await timed(request.complete(), result)
            result.record_usage(turn.input_tokens, turn.output_tokens)

            if not turn.tool_calls:
                return request.decode_final(turn, result)

            request.append_assistant_message(turn)
            for call in turn.tool_calls:
                if executor is None or call.name not in known:
                    raise ToolNotFoundError(call.name)
                if data is None:
                    data = await _load_task_files(task)
                try:
                    content = await executor.execute_tool(call.name, call.arguments, data)
                    is_error = False
                except ToolError as e:
                    if not e.recoverable:
                        raise
                    log.warning("Tool call failed", tool=call.name, error=str(e))
                    content = format_tool_execution_error(e)
                    is_error = True
                request.append_tool_result(call, content, is_error)
    finally:
        # Failed runs still report the tool calls they made.
        result.record_tool_usage(usage_stats(executor))
