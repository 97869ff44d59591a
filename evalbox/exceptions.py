"""Custom exceptions for evalbox."""

from typing import TypeVar

E = TypeVar("E", bound=BaseException)


class EvalBoxError(Exception):
    """Base exception for evalbox."""

    pass


class ConfigurationError(EvalBoxError):
    """Configuration-related errors."""

    pass


class ProviderError(EvalBoxError):
    """Provider-related errors."""

    pass


class UnknownProviderError(ProviderError):
    """Provider name not recognized."""

    def __init__(self, name: str):
        super().__init__(f"unknown provider name: {name}")
        self.name = name


class InvalidModelParamsError(ProviderError):
    """Model parameters are invalid for a run."""

    def __init__(self, run_name: str, reason: str = ""):
        detail = f"{run_name}: {reason}" if reason else run_name
        super().__init__(f"invalid model parameters for run: {detail}")
        self.run_name = run_name


class CreatePromptRequestError(ProviderError):
    """Prompt request could not be built."""

    def __init__(self, message: str):
        super().__init__(f"failed to create prompt request: {message}")


class GenerateResponseError(ProviderError):
    """Model call failed."""

    def __init__(self, cause: BaseException):
        super().__init__(f"failed to generate response: {cause}")
        self.cause = cause


class RetryableError(ProviderError):
    """Transient provider error that may be retried."""

    def __init__(self, cause: BaseException):
        super().__init__(f"retryable error: {cause}")
        self.cause = cause


class APIResponseError(ProviderError):
    """Provider API returned an error response."""

    def __init__(self, message: str, status_code: int | None = None, body: bytes | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UnmarshalResponseError(ProviderError):
    """Model response could not be decoded into a result."""

    def __init__(self, cause: BaseException, raw_message: str = "", stop_reason: str = ""):
        super().__init__(f"failed to unmarshal the response: {cause}")
        self.cause = cause
        self.raw_message = raw_message
        self.stop_reason = stop_reason

    def details(self) -> str:
        """Render the raw response and stop reason for diagnostics."""
        lines = [str(self)]
        if self.stop_reason:
            lines.append(f"Stop reason: {self.stop_reason}")
        if self.raw_message:
            lines.append(f"Raw response:\n{self.raw_message}")
        return "\n\n".join(lines)


class FeatureNotSupportedError(ProviderError):
    """Provider cannot handle a feature the task needs."""

    def __init__(self, message: str):
        super().__init__(f"feature not supported by provider: {message}")


class ToolSetupError(ProviderError):
    """Tools could not be prepared for a run."""

    def __init__(self, message: str):
        super().__init__(f"failed to setup tools: {message}")


class ToolNotFoundError(ProviderError):
    """Requested tool is not among the available tool configurations."""

    def __init__(self, tool_name: str):
        super().__init__(f"tool not found: {tool_name}")
        self.tool_name = tool_name


class JudgeNotFoundError(ConfigurationError):
    """No judge is configured under the selected name."""

    def __init__(self, name: str | None):
        super().__init__(f"judge not found: {name}")
        self.name = name


class JudgeVariantNotFoundError(ConfigurationError):
    """The selected judge has no enabled run variant with that name."""

    def __init__(self, name: str | None, variant: str | None):
        super().__init__(f"judge run variant not found: {variant} for judge {name}")
        self.name = name
        self.variant = variant


class ValidationError(EvalBoxError):
    """Answer could not be validated."""

    pass


class JudgeEvaluationError(ValidationError):
    """Judge model call failed."""

    def __init__(self, cause: BaseException):
        super().__init__(f"judge evaluation failed: {cause}")
        self.cause = cause


class ToolError(EvalBoxError):
    """Tool execution errors."""

    kind = "tool error"
    # Whether the conversation loop may report the error back to the model.
    recoverable = True

    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(f"{self.kind}: {message}")
        self.message = message
        self.tool_name = tool_name


class ToolNotAvailableError(ToolError):
    """Tool is not registered or its image is missing."""

    kind = "tool not available"


class InvalidToolArgumentsError(ToolError):
    """Tool arguments are malformed."""

    kind = "invalid tool arguments"


class ToolMaxCallsExceededError(ToolError):
    """Tool call budget is exhausted."""

    kind = "tool max calls exceeded"


class ToolTimeoutError(ToolError):
    """Tool exceeded its wall-clock budget."""

    kind = "tool execution timeout"


class ToolExecutionFailedError(ToolError):
    """Tool ran but failed."""

    kind = "tool execution failed"


class ToolInternalError(ToolError):
    """Container runtime or host-side failure."""

    kind = "tool internal error"
    recoverable = False


class UnsupportedToolTypeError(ToolInternalError):
    """Registered tool has an unsupported type."""

    kind = "unsupported tool type"


def find_cause(error: BaseException | None, error_type: type[E]) -> E | None:
    """Return the first error of the given type along the explicit `__cause__` chain."""
    seen: set[int] = set()
    current = error
    while current is not None and id(current) not in seen:
        if isinstance(current, error_type):
            return current
        seen.add(id(current))
        current = current.__cause__
    return None


def is_retryable(error: BaseException | None) -> bool:
    """Return whether the error is, or was explicitly raised from, a RetryableError."""
    return find_cause(error, RetryableError) is not None
