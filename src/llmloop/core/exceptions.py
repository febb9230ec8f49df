"""Exception hierarchy with error codes for llmloop.

The engine and transport never raise these across their public boundary;
they travel inside ``RequestResult.error`` and ``AiResult.UnknownError``.
The structured-output helper is the one caller-facing place that raises.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from llmloop.core.messages import ChatMessages

E_VALIDATION = "E_VALIDATION"
E_TIMEOUT = "E_TIMEOUT"
E_TOOL_UNKNOWN = "E_TOOL_UNKNOWN"
E_RATE_LIMIT = "E_RATE_LIMIT"
E_SERVICE = "E_SERVICE"
E_FORMAT = "E_FORMAT"
E_RETRY_EXHAUSTED = "E_RETRY_EXHAUSTED"

RATE_LIMIT_STATUS = 429
SERVICE_ERROR_STATUSES = frozenset({500, 502, 504})


@dataclass
class LlmLoopException(Exception):  # noqa: N818
    """Base exception for all llmloop errors.

    Carries an error code and metadata for structured logging.
    """

    message: str
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def __post_init__(self) -> None:
        super().__init__(self.message)


@dataclass
class ModelResponseError(LlmLoopException):
    """Transport failure talking to a model endpoint.

    ``status_code`` is None for failures that never produced an HTTP status
    (connection reset, timeout, stream cut short, undecodable body).
    """

    provider: str = ""
    status_code: int | None = None
    body: str | None = None

    def __post_init__(self) -> None:
        if not self.error_code:
            if self.status_code == RATE_LIMIT_STATUS:
                self.error_code = E_RATE_LIMIT
            elif self.status_code in SERVICE_ERROR_STATUSES:
                self.error_code = E_SERVICE
            else:
                self.error_code = E_TIMEOUT
        if self.provider:
            self.metadata["provider"] = self.provider
        if self.status_code is not None:
            self.metadata["status_code"] = self.status_code
        super().__post_init__()


@dataclass
class AiResponseFormatError(LlmLoopException):
    """Model output did not decode into the expected result shape."""

    response: "ChatMessages | None" = None

    def __post_init__(self) -> None:
        if not self.error_code:
            self.error_code = E_FORMAT
        super().__post_init__()


@dataclass
class UnknownAiResponseError(LlmLoopException):
    """An attempt failed for a reason other than formatting."""

    cause: BaseException | None = None

    def __post_init__(self) -> None:
        if self.cause is not None:
            self.metadata["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        super().__post_init__()


@dataclass
class AiRetryFailedError(LlmLoopException):
    """Every attempt in the retry budget failed.

    ``errors`` keeps the cause of each attempt in order.
    """

    errors: list[BaseException] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.error_code:
            self.error_code = E_RETRY_EXHAUSTED
        lines = [self.message] if self.message else []
        for i, err in enumerate(self.errors, 1):
            lines.append(f"  attempt {i}: {type(err).__name__}: {err}")
        self.message = "\n".join(lines)
        self.metadata["attempts"] = len(self.errors)
        super().__post_init__()

    @classmethod
    def of(cls, errors: list[BaseException]) -> "AiRetryFailedError":
        return cls(message=f"All {len(errors)} attempts failed", errors=list(errors))


@dataclass
class ToolExecutionError(LlmLoopException):
    """Error during tool execution."""

    tool_name: str = ""
    details: str | None = None

    def __post_init__(self) -> None:
        if self.tool_name:
            self.metadata["tool_name"] = self.tool_name
        if self.details:
            self.metadata["details"] = self.details
        super().__post_init__()


@dataclass
class ConfigurationError(LlmLoopException):
    """Error in system configuration."""

    key: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        if not self.error_code:
            self.error_code = E_VALIDATION
        if self.key:
            self.metadata["config_key"] = self.key
        if self.reason:
            self.metadata["reason"] = self.reason
        super().__post_init__()


def fold_errors(errors: list[BaseException]) -> BaseException | None:
    """A single failure is surfaced as-is, several become one aggregate."""
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return AiRetryFailedError.of(errors)


def status_code_of(error: BaseException | None) -> int | None:
    """HTTP status behind an error, looking through aggregates to the last attempt."""
    if isinstance(error, ModelResponseError):
        return error.status_code
    if isinstance(error, AiRetryFailedError) and error.errors:
        return status_code_of(error.errors[-1])
    if isinstance(error, UnknownAiResponseError):
        return status_code_of(error.cause)
    return None


def format_error_for_user(exception: LlmLoopException) -> str:
    """Format exception for user-friendly display.

    Args:
        exception: The llmloop exception to format

    Returns:
        Human-readable error message without internal details
    """
    if isinstance(exception, ToolExecutionError):
        if exception.tool_name:
            return f"Tool '{exception.tool_name}' failed: {exception.message}"
        return f"Tool execution failed: {exception.message}"

    if isinstance(exception, ModelResponseError):
        if exception.status_code == RATE_LIMIT_STATUS:
            return f"Rate limited by model endpoint: {exception.message}"
        if exception.provider:
            return f"Provider '{exception.provider}' error: {exception.message}"
        return f"Model response error: {exception.message}"

    if isinstance(exception, AiResponseFormatError):
        return f"Model reply was not in the expected format: {exception.message}"

    if isinstance(exception, AiRetryFailedError):
        return f"Gave up after {len(exception.errors)} attempts"

    if isinstance(exception, ConfigurationError):
        if exception.key:
            return f"Configuration error '{exception.key}': {exception.message}"
        return f"Configuration error: {exception.message}"

    return str(exception.message)


def format_error_for_log(exception: LlmLoopException) -> dict[str, Any]:
    """Format exception for structured logging.

    Args:
        exception: The llmloop exception to format

    Returns:
        Dictionary with structured error information for logs
    """
    log_data: dict[str, Any] = {
        "error_type": type(exception).__name__,
        "message": exception.message,
        "error_code": exception.error_code,
    }

    if exception.metadata:
        log_data["metadata"] = exception.metadata

    if isinstance(exception, ToolExecutionError):
        if exception.tool_name:
            log_data["tool_name"] = exception.tool_name
        if exception.details:
            log_data["details"] = exception.details

    elif isinstance(exception, ModelResponseError):
        if exception.provider:
            log_data["provider"] = exception.provider
        if exception.status_code is not None:
            log_data["status_code"] = exception.status_code

    elif isinstance(exception, AiRetryFailedError):
        log_data["causes"] = [f"{type(e).__name__}: {e}" for e in exception.errors]

    elif isinstance(exception, ConfigurationError):
        if exception.key:
            log_data["config_key"] = exception.key
        if exception.reason:
            log_data["reason"] = exception.reason

    return log_data
