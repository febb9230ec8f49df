"""Core modules for llmloop.

Messages, errors, configuration, logging, the engine loop and its plugins.
Import the engine and compaction from their own modules; this package only
re-exports leaf types so that importing any core module stays cheap.
"""

from .exceptions import (
    E_FORMAT,
    E_RATE_LIMIT,
    E_RETRY_EXHAUSTED,
    E_SERVICE,
    E_TIMEOUT,
    E_TOOL_UNKNOWN,
    E_VALIDATION,
    AiResponseFormatError,
    AiRetryFailedError,
    ConfigurationError,
    LlmLoopException,
    ModelResponseError,
    ToolExecutionError,
    UnknownAiResponseError,
    format_error_for_log,
    format_error_for_user,
)
from .messages import ChatMessage, ChatMessages, Content, TokenUsage
from .tool_protocol import ToolCall, ToolDataType

__all__ = [
    # Error codes
    "E_FORMAT",
    "E_RATE_LIMIT",
    "E_RETRY_EXHAUSTED",
    "E_SERVICE",
    "E_TIMEOUT",
    "E_TOOL_UNKNOWN",
    "E_VALIDATION",
    # Exception classes
    "LlmLoopException",
    "AiResponseFormatError",
    "AiRetryFailedError",
    "ConfigurationError",
    "ModelResponseError",
    "ToolExecutionError",
    "UnknownAiResponseError",
    # Messages
    "ChatMessage",
    "ChatMessages",
    "Content",
    "TokenUsage",
    "ToolCall",
    "ToolDataType",
    # Error formatting utilities
    "format_error_for_log",
    "format_error_for_user",
]
