"""
llmloop

An LLM request/response engine: streaming and plain chat-completion
transport, tool calling (native or through an in-band tag protocol), a
plugin pipeline around every round, and context compression.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from llmloop.core.config import EngineConfig, LlmModel, load_config
from llmloop.core.engine import LlmEngine, ModelSemaphores
from llmloop.core.exceptions import (
    AiResponseFormatError,
    AiRetryFailedError,
    ConfigurationError,
    LlmLoopException,
    ModelResponseError,
    ToolExecutionError,
    UnknownAiResponseError,
)
from llmloop.core.messages import ChatMessage, ChatMessages, Content, TokenUsage
from llmloop.core.plugins import (
    AfterLlmResponse,
    BeforeLlmLoop,
    BeforeLlmRequest,
    LoopContext,
    PromptPlugin,
)
from llmloop.core.results import (
    AiResult,
    Cancelled,
    ServiceError,
    Success,
    TooManyRequests,
    UnknownError,
)
from llmloop.core.structured import (
    RetryType,
    json_result_type,
    send_and_get_reply,
    send_and_get_result,
    yaml_result_type,
)
from llmloop.providers.openai_compatible import OpenAICompatibleTransport
from llmloop.tools.base import AiToolInfo, AiToolSet, ToolResult

__all__ = [
    "__version__",
    # Engine
    "LlmEngine",
    "ModelSemaphores",
    "EngineConfig",
    "LlmModel",
    "load_config",
    "OpenAICompatibleTransport",
    # Messages
    "ChatMessage",
    "ChatMessages",
    "Content",
    "TokenUsage",
    # Results
    "AiResult",
    "Success",
    "TooManyRequests",
    "ServiceError",
    "Cancelled",
    "UnknownError",
    # Plugins
    "AfterLlmResponse",
    "BeforeLlmLoop",
    "BeforeLlmRequest",
    "LoopContext",
    "PromptPlugin",
    # Tools
    "AiToolInfo",
    "AiToolSet",
    "ToolResult",
    # Structured output
    "RetryType",
    "json_result_type",
    "yaml_result_type",
    "send_and_get_result",
    "send_and_get_reply",
    # Exceptions
    "LlmLoopException",
    "ModelResponseError",
    "AiResponseFormatError",
    "AiRetryFailedError",
    "UnknownAiResponseError",
    "ToolExecutionError",
    "ConfigurationError",
]
