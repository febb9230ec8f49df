"""Model endpoint transports for llmloop.

Add a wire format by implementing ``Transport``.
"""

from llmloop.providers.base import RequestResult, Transport
from llmloop.providers.openai_compatible import OpenAICompatibleTransport, StreamAssembler
from llmloop.providers.tag_protocol import TagToolFormat, ToolCallTagParser

__all__ = [
    "OpenAICompatibleTransport",
    "RequestResult",
    "StreamAssembler",
    "TagToolFormat",
    "ToolCallTagParser",
    "Transport",
]
