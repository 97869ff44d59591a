"""Provider capability, normalized result model and shared response helpers."""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from evalbox.config import RunConfig, Task, TaskFile, ToolConfig
from evalbox.exceptions import UnmarshalResponseError
from evalbox.tools.usage import ToolUsage

T = TypeVar("T")

SUPPORTED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})

UNSTRUCTURED_TITLE = "Unstructured Response"
UNSTRUCTURED_EXPLANATION = "Response obtained with structured output disabled."


@dataclass
class Usage:
    """Token usage; None until a response reports it."""

    input_tokens: int | None = None
    output_tokens: int | None = None

    def add(self, input_tokens: int | None, output_tokens: int | None) -> None:
        if input_tokens is not None:
            self.input_tokens = (self.input_tokens or 0) + int(input_tokens)
        if output_tokens is not None:
            self.output_tokens = (self.output_tokens or 0) + int(output_tokens)


class Answer(BaseModel):
    """Structured answer requested from the model."""

    title: str
    explanation: str
    final_answer: Any


@dataclass
class Result:
    """Normalized response of a model for one task.

    Providers fill a caller-supplied instance in place, so whatever prompts and
    usage were gathered before a failure stay visible to the caller.
    """

    title: str = ""
    explanation: str = ""
    final_answer: Any = None
    duration: float = 0.0  # seconds, summed across conversation turns
    prompts: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    tool_usage: dict[str, ToolUsage] = field(default_factory=dict)

    def record_prompt(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return prompt

    def record_usage(self, input_tokens: int | None, output_tokens: int | None) -> None:
        self.usage.add(input_tokens, output_tokens)

    def record_tool_usage(self, stats: dict[str, ToolUsage]) -> None:
        self.tool_usage = dict(stats)

    def apply(self, answer: Answer) -> None:
        self.title = answer.title
        self.explanation = answer.explanation
        self.final_answer = answer.final_answer

    def explain(self) -> str:
        return f"{self.title}\n\n{self.explanation}"

    def reset(self) -> None:
        """Clear everything recorded by a previous attempt."""
        self.title = ""
        self.explanation = ""
        self.final_answer = None
        self.duration = 0.0
        self.prompts = []
        self.usage = Usage()
        self.tool_usage = {}

    def final_answer_text(self) -> str:
        if isinstance(self.final_answer, str):
            return self.final_answer
        return json.dumps(self.final_answer, sort_keys=True)


class Provider(ABC):
    """An AI service that can run tasks."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def run(self, run_config: RunConfig, task: Task, result: Result) -> Result:
        """Run the task, recording prompts and usage into `result` as they happen."""
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None


async def timed(awaitable: Awaitable[T], result: Result) -> T:
    """Await and add the elapsed time to the result, even on failure."""
    started = time.perf_counter()
    try:
        return await awaitable
    finally:
        result.duration += time.perf_counter() - started


def answer_json_schema(response_format: str | dict[str, Any]) -> dict[str, Any]:
    """Build the JSON schema of the structured answer."""
    if isinstance(response_format, dict):
        final_answer = dict(response_format)
    else:
        final_answer = {"type": "string"}
    final_answer.setdefault("description", "The final answer to the task's query.")
    return {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "A brief summary of the response."},
            "explanation": {
                "type": "string",
                "description": "A detailed explanation of the answer.",
            },
            "final_answer": final_answer,
        },
        "required": ["title", "explanation", "final_answer"],
        "additionalProperties": False,
    }


def default_response_format_instruction(task: Task) -> str:
    schema = json.dumps(answer_json_schema(task.response_result_format))
    return f"Structure the response according to this JSON schema: {schema}"


def default_answer_format_instruction(task: Task) -> str:
    if task.system_prompt:
        return task.system_prompt
    response_format = task.response_result_format
    if isinstance(response_format, dict):
        response_format = json.dumps(response_format)
    return f"Provide the final answer in exactly this format: {response_format}"


def default_task_file_name_instruction(file: TaskFile) -> str:
    return f"[file: {file.name}]"


def is_supported_image_type(mime_type: str) -> bool:
    return mime_type.lower() in SUPPORTED_IMAGE_TYPES


def format_tool_execution_error(error: BaseException) -> str:
    """Render a tool failure as conversation content for the model."""
    return f"Tool execution failed: {error}"


def find_tool_by_name(tools: Iterable[ToolConfig], name: str) -> ToolConfig | None:
    for tool in tools:
        if tool.name == name:
            return tool
    return None


def unmarshal_unstructured_response(content: str, result: Result) -> Result:
    """Record a plain-text response as the final answer."""
    result.title = UNSTRUCTURED_TITLE
    result.explanation = UNSTRUCTURED_EXPLANATION
    result.final_answer = content
    return result


def _iter_json_candidates(text: str) -> Iterable[str]:
    """Yield substrings that might hold the JSON answer."""
    stripped = text.strip()
    if stripped:
        yield stripped

    fence = "```"
    if fence in text:
        parts = text.split(fence)
        for idx in range(1, len(parts), 2):
            candidate = parts[idx].strip()
            if candidate.lower().startswith("json"):
                candidate = candidate[4:].strip()
            if candidate:
                yield candidate

    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        yield text[start : end + 1]


def decode_structured_response(content: str, result: Result, stop_reason: str = "") -> Result:
    """Decode a JSON answer into the result, repairing fenced or wrapped JSON."""
    last_error: Exception = ValueError("empty response")
    for candidate in _iter_json_candidates(content):
        try:
            answer = Answer.model_validate_json(candidate)
        except ValidationError as e:
            last_error = e
            continue
        result.apply(answer)
        return result
    raise UnmarshalResponseError(last_error, raw_message=content, stop_reason=stop_reason) from last_error
