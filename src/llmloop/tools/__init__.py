"""Tool registry and invocation for llmloop."""

from llmloop.tools.base import AiToolInfo, AiToolSet, ToolProvider, ToolResult, ToolStatus
from llmloop.tools.invoker import ToolInvoker

__all__ = [
    "AiToolInfo",
    "AiToolSet",
    "ToolInvoker",
    "ToolProvider",
    "ToolResult",
    "ToolStatus",
]
