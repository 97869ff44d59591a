"""Chat-completions adapter for OpenAI and OpenAI-compatible APIs."""

import base64
from collections.abc import Iterable
from typing import Any

import httpx

from evalbox.config import ProviderConfig, RunConfig, Task, ToolConfig
from evalbox.exceptions import (
    APIResponseError,
    CreatePromptRequestError,
    GenerateResponseError,
    InvalidModelParamsError,
    RetryableError,
)
from evalbox.logging import get_logger
from evalbox.providers import (
    Provider,
    Result,
    answer_json_schema,
    decode_structured_response,
    default_answer_format_instruction,
    default_response_format_instruction,
    default_task_file_name_instruction,
    is_supported_image_type,
    unmarshal_unstructured_response,
)
from evalbox.providers.conversation import (
    ConversationRequest,
    ExecutorFactory,
    ModelTurn,
    ToolCall,
    open_task_tools,
    run_conversation,
)

log = get_logger(__name__)

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "mistralai": "https://api.mistral.ai/v1",
    "xai": "https://api.x.ai/v1",
    "alibaba": "https://dashscope-intl.aliyuncs.com/compatible-mode/v1",
    "moonshotai": "https://api.moonshot.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Body keys owned by the adapter; model params may not override them.
_RESERVED_BODY_KEYS = frozenset({"model", "messages", "tools", "tool_choice", "response_format"})


def _generate_error(cause: Exception, retryable: bool = False) -> GenerateResponseError:
    """Wrap a model call failure, marking it retryable when transient."""
    if retryable:
        marker = RetryableError(cause)
        marker.__cause__ = cause
        cause = marker
    error = GenerateResponseError(cause)
    error.__cause__ = cause
    return error


class ChatCompletionRequest(ConversationRequest):
    """Conversation state for one chat-completions run."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        structured: bool = True,
    ):
        self.client = client
        self.url = url
        self.headers = headers
        self.body = body
        self.structured = structured

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self.body["messages"]

    async def complete(self) -> ModelTurn:
        try:
            response = await self.client.post(self.url, json=self.body, headers=self.headers)
        except httpx.TransportError as e:
            raise _generate_error(e, retryable=True)
        except httpx.HTTPError as e:
            raise _generate_error(e)

        log.debug("Chat completion response", status=response.status_code, url=self.url)
        if not response.is_success:
            api_error = APIResponseError(
                f"API error {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.content,
            )
            raise _generate_error(api_error, retryable=response.status_code in RETRYABLE_STATUS_CODES)

        try:
            data = response.json()
            choice = data["choices"][0]
            message = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise _generate_error(
                APIResponseError(f"malformed chat completion response: {e}", body=response.content)
            )

        tool_calls = [
            ToolCall(
                id=str(call.get("id", "")),
                name=call.get("function", {}).get("name", ""),
                arguments=call.get("function", {}).get("arguments") or "{}",
            )
            for call in message.get("tool_calls") or []
        ]
        usage = data.get("usage") or {}
        return ModelTurn(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            stop_reason=choice.get("finish_reason") or "",
            raw_message=message,
        )

    def append_assistant_message(self, turn: ModelTurn) -> None:
        if isinstance(turn.raw_message, dict):
            self.messages.append(turn.raw_message)
            return
        self.messages.append(
            {
                "role": "assistant",
                "content": turn.content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in turn.tool_calls
                ],
            }
        )

    def append_tool_result(self, call: ToolCall, content: str, is_error: bool) -> None:
        self.messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

    def set_tool_choice(self, choice: str) -> None:
        self.body["tool_choice"] = choice

    def add_tool_definition(self, cfg: ToolConfig) -> None:
        self.body.setdefault("tools", []).append(
            {
                "type": "function",
                "function": {
                    "name": cfg.name,
                    "description": cfg.description,
                    "parameters": cfg.parameters,
                },
            }
        )

    def decode_final(self, turn: ModelTurn, result: Result) -> Result:
        if not self.structured:
            return unmarshal_unstructured_response(turn.content, result)
        return decode_structured_response(turn.content, result, stop_reason=turn.stop_reason)


class OpenAICompatibleProvider(Provider):
    """Provider speaking the OpenAI chat-completions wire format."""

    def __init__(
        self,
        config: ProviderConfig,
        available_tools: Iterable[ToolConfig] = (),
        executor_factory: ExecutorFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.base_url = (config.base_url or DEFAULT_BASE_URLS.get(config.name, "")).rstrip("/")
        self.available_tools = list(available_tools)
        self.executor_factory = executor_factory
        self.client = httpx.AsyncClient(
            timeout=config.request_timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self.config.name

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def _prompt_message(self, task: Task, result: Result) -> dict[str, Any]:
        if not task.files:
            return {"role": "user", "content": result.record_prompt(task.prompt)}

        parts: list[dict[str, Any]] = []
        for file in task.files:
            mime_type = file.mime_type()
            if not is_supported_image_type(mime_type):
                raise CreatePromptRequestError(f"file type not supported: {mime_type}")
            try:
                content = await file.read()
            except (OSError, httpx.HTTPError) as e:
                raise CreatePromptRequestError(f"failed to read file {file.name}: {e}") from e
            encoded = base64.b64encode(content).decode("ascii")
            parts.append(
                {"type": "text", "text": result.record_prompt(default_task_file_name_instruction(file))}
            )
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": "auto"},
                }
            )
        # Prompt text goes after the files so it reads as the question about them.
        parts.append({"type": "text", "text": result.record_prompt(task.prompt)})
        return {"role": "user", "content": parts}

    async def build_request(self, run_config: RunConfig, task: Task, result: Result) -> ChatCompletionRequest:
        """Build the initial request, recording every prompt sent."""
        params = dict(run_config.model_params)
        text_response_format = bool(params.pop("text_response_format", False))
        reserved = sorted(_RESERVED_BODY_KEYS.intersection(params))
        if reserved:
            raise InvalidModelParamsError(run_config.name, f"reserved keys: {', '.join(reserved)}")

        body: dict[str, Any] = {"model": run_config.model, "messages": [], "n": 1}
        structured = not run_config.disable_structured_output
        if structured:
            if text_response_format:
                body["messages"].append(
                    {"role": "user", "content": result.record_prompt(default_response_format_instruction(task))}
                )
                body["response_format"] = {"type": "text"}
            else:
                body["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": "response",
                        "schema": answer_json_schema(task.response_result_format),
                        "strict": True,
                    },
                }
        body.update(params)

        body["messages"].append(await self._prompt_message(task, result))
        instruction = default_answer_format_instruction(task)
        if instruction:
            body["messages"].append({"role": "user", "content": result.record_prompt(instruction)})

        return ChatCompletionRequest(
            client=self.client,
            url=f"{self.base_url}/chat/completions",
            headers=self._headers(),
            body=body,
            structured=structured,
        )

    async def run(self, run_config: RunConfig, task: Task, result: Result) -> Result:
        request = await self.build_request(run_config, task, result)
        log.debug("Calling model", provider=self.name, model=run_config.model)
        async with open_task_tools(
            task, self.available_tools, self.executor_factory, request
        ) as executor:
            return await run_conversation(request, result, task, executor, self.available_tools)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

