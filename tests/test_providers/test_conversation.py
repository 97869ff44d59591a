from pathlib import Path

import pytest

from evalbox.config import Task, TaskFile, ToolConfig, ToolSelection, ToolSelector
from evalbox.exceptions import (
    ToolInternalError,
    ToolNotAvailableError,
    ToolNotFoundError,
    ToolSetupError,
    ToolTimeoutError,
)
from evalbox.providers import Result, unmarshal_unstructured_response
from evalbox.providers.conversation import (
    ConversationRequest,
    ModelTurn,
    ToolCall,
    open_task_tools,
    run_conversation,
)
from evalbox.tools.usage import ToolRegistry, ToolUsage


class ScriptedRequest(ConversationRequest):
    def __init__(self, turns: list[ModelTurn]):
        self.turns = list(turns)
        self.history: list[tuple] = []
        self.tool_choice: str | None = None
        self.tool_definitions: list[str] = []

    async def complete(self) -> ModelTurn:
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    def append_assistant_message(self, turn: ModelTurn) -> None:
        self.history.append(("assistant", [call.name for call in turn.tool_calls]))

    def append_tool_result(self, call: ToolCall, content: str, is_error: bool) -> None:
        self.history.append(("tool", call.id, content, is_error))

    def set_tool_choice(self, choice: str) -> None:
        self.tool_choice = choice

    def add_tool_definition(self, cfg: ToolConfig) -> None:
        self.tool_definitions.append(cfg.name)

    def decode_final(self, turn: ModelTurn, result: Result) -> Result:
        return unmarshal_unstructured_response(turn.content, result)


class FakeExecutor:
    def __init__(self, outcomes: dict[str, list] | None = None, missing_images: set[str] | None = None):
        self.registry = ToolRegistry()
        self.outcomes = outcomes or {}
        self.missing_images = missing_images or set()
        self.calls: list[tuple[str, str, dict]] = []
        self.validated: list[str] = []
        self.closed = False

    def register_tool(self, tool) -> None:
        self.registry.register(tool)

    async def validate_tool(self, cfg: ToolConfig) -> None:
        self.validated.append(cfg.name)
        if cfg.image in self.missing_images:
            raise ToolNotAvailableError(f"pull it first with: docker pull {cfg.image}")

    async def execute_tool(self, tool_name: str, args: str, data=None) -> str:
        self.calls.append((tool_name, args, dict(data or {})))
        outcome = self.outcomes[tool_name].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get_usage_stats(self) -> dict[str, ToolUsage]:
        return {name: ToolUsage(call_count=sum(1 for c in self.calls if c[0] == name)) for name in self.registry.names()}

    async def aclose(self) -> None:
        self.closed = True


def _tool(name: str, image: str = "img") -> ToolConfig:
    return ToolConfig(name=name, image=image, description=f"{name} tool", parameters={"type": "object"})


def _task(*tool_names: str, files: list[TaskFile] | None = None) -> Task:
    selector = ToolSelector(tools=[ToolSelection(name=name) for name in tool_names])
    return Task(
        name="t",
        prompt="p",
        response_result_format="text",
        expected_result="x",
        tool_selector=selector,
        files=files or [],
    )


async def _registered(executor: FakeExecutor, task: Task, tools: list[ToolConfig]) -> FakeExecutor:
    async with open_task_tools(task, tools, lambda: executor) as opened:
        assert opened is executor
    return executor


@pytest.mark.asyncio
async def test_final_answer_without_tool_calls():
    request = ScriptedRequest([ModelTurn(content="42", input_tokens=10, output_tokens=3)])
    result = Result()

    await run_conversation(request, result, _task(), None)

    assert result.final_answer == "42"
    assert result.title == "Unstructured Response"
    assert result.usage.input_tokens == 10
    assert result.usage.output_tokens == 3
    assert result.tool_usage == {}
    assert result.duration >= 0


@pytest.mark.asyncio
async def test_tool_results_are_appended_in_model_order():
    executor = FakeExecutor({"a": ['{"a":1}'], "b": ['{"b":2}']})
    tools = [_tool("a"), _tool("b")]
    task = _task("a", "b")
    await _registered(executor, task, tools)
    request = ScriptedRequest(
        [
            ModelTurn(
                tool_calls=[ToolCall("1", "b", '{"x":1}'), ToolCall("2", "a", "{}")],
                input_tokens=5,
                output_tokens=1,
            ),
            ModelTurn(content="done", input_tokens=7, output_tokens=2),
        ]
    )
    result = Result()

    await run_conversation(request, result, task, executor, tools)

    assert request.history == [
        ("assistant", ["b", "a"]),
        ("tool", "1", '{"b":2}', False),
        ("tool", "2", '{"a":1}', False),
    ]
    assert [call[0] for call in executor.calls] == ["b", "a"]
    assert result.usage.input_tokens == 12
    assert result.tool_usage["a"].call_count == 1
    assert result.final_answer == "done"


@pytest.mark.asyncio
async def test_recoverable_tool_error_is_sent_to_model():
    timeout = ToolTimeoutError("execution timed out after 50ms", tool_name="a")
    executor = FakeExecutor({"a": [timeout]})
    tools = [_tool("a")]
    task = _task("a")
    await _registered(executor, task, tools)
    request = ScriptedRequest(
        [ModelTurn(tool_calls=[ToolCall("1", "a", "{}")]), ModelTurn(content="gave up")]
    )

    result = await run_conversation(request, Result(), task, executor, tools)

    assert request.history[1] == (
        "tool",
        "1",
        "Tool execution failed: tool execution timeout: execution timed out after 50ms",
        True,
    )
    assert result.final_answer == "gave up"


@pytest.mark.asyncio
async def test_internal_tool_error_aborts_run():
    executor = FakeExecutor({"a": [ToolInternalError("daemon gone")]})
    tools = [_tool("a")]
    task = _task("a")
    await _registered(executor, task, tools)
    request = ScriptedRequest([ModelTurn(tool_calls=[ToolCall("1", "a", "{}")])])

    with pytest.raises(ToolInternalError):
        await run_conversation(request, Result(), task, executor, tools)


@pytest.mark.asyncio
async def test_tool_usage_survives_failed_model_call():
    executor = FakeExecutor({"a": ['{"a":1}']})
    tools = [_tool("a")]
    task = _task("a")
    await _registered(executor, task, tools)
    request = ScriptedRequest(
        [ModelTurn(tool_calls=[ToolCall("1", "a", "{}")]), RuntimeError("connection reset")]
    )
    result = Result()

    with pytest.raises(RuntimeError):
        await run_conversation(request, result, task, executor, tools)

    assert result.tool_usage["a"].call_count == 1


@pytest.mark.asyncio
async def test_tool_usage_survives_internal_tool_error():
    executor = FakeExecutor({"a": ["{}", ToolInternalError("daemon gone")]})
    tools = [_tool("a")]
    task = _task("a")
    await _registered(executor, task, tools)
    request = ScriptedRequest(
        [ModelTurn(tool_calls=[ToolCall("1", "a", "{}"), ToolCall("2", "a", "{}")])]
    )
    result = Result()

    with pytest.raises(ToolInternalError):
        await run_conversation(request, result, task, executor, tools)

    assert result.tool_usage["a"].call_count == 2


@pytest.mark.asyncio
async def test_unknown_tool_name_is_a_hard_error():
    executor = FakeExecutor()
    request = ScriptedRequest([ModelTurn(tool_calls=[ToolCall("1", "ghost", "{}")])])

    with pytest.raises(ToolNotFoundError) as excinfo:
        await run_conversation(request, Result(), _task(), executor, [_tool("a")])

    assert excinfo.value.tool_name == "ghost"


@pytest.mark.asyncio
async def test_tool_calls_receive_task_files(tmp_path: Path):
    path = tmp_path / "data.csv"
    path.write_bytes(b"a,b\n1,2\n")
    executor = FakeExecutor({"a": ["{}"]})
    tools = [_tool("a")]
    task = _task("a", files=[TaskFile(name="data.csv", uri=str(path))])
    await _registered(executor, task, tools)
    request = ScriptedRequest([ModelTurn(tool_calls=[ToolCall("1", "a", "{}")]), ModelTurn(content="ok")])

    await run_conversation(request, Result(), task, executor, tools)

    assert executor.calls[0][2] == {"data.csv": b"a,b\n1,2\n"}


@pytest.mark.asyncio
async def test_open_task_tools_without_enabled_tools_yields_none():
    def factory():
        raise AssertionError("executor must not be created")

    async with open_task_tools(_task(), [_tool("a")], factory) as executor:
        assert executor is None


@pytest.mark.asyncio
async def test_open_task_tools_registers_and_declares_tools():
    executor = FakeExecutor()
    request = ScriptedRequest([])

    async with open_task_tools(_task("a"), [_tool("a"), _tool("b")], lambda: executor, request):
        assert executor.registry.names() == ["a"]
        assert executor.validated == ["a"]

    assert request.tool_definitions == ["a"]
    assert request.tool_choice == "auto"
    assert executor.closed


@pytest.mark.asyncio
async def test_open_task_tools_closes_executor_on_error():
    executor = FakeExecutor()

    with pytest.raises(RuntimeError):
        async with open_task_tools(_task("a"), [_tool("a")], lambda: executor):
            raise RuntimeError("boom")

    assert executor.closed


@pytest.mark.asyncio
async def test_open_task_tools_unknown_tool():
    executor = FakeExecutor()

    with pytest.raises(ToolNotFoundError):
        async with open_task_tools(_task("missing"), [_tool("a")], lambda: executor):
            pass

    assert executor.closed


@pytest.mark.asyncio
async def test_open_task_tools_missing_image_is_setup_error():
    executor = FakeExecutor(missing_images={"img"})

    with pytest.raises(ToolSetupError) as excinfo:
        async with open_task_tools(_task("a"), [_tool("a")], lambda: executor):
            pass

    assert "docker pull img" in str(excinfo.value)
    assert executor.closed
