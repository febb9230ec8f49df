"""Compressor interface and the plugin that applies it every round.

A compressor only decides and transforms; ``ContextCompressionPlugin`` is
what wires it into the engine. The plugin keeps the latest compressed
history as a marker message inside the response, so the next round starts
from the compressed list plus whatever was appended since, instead of
recompressing the full history.
"""

import uuid
from abc import ABC, abstractmethod

from llmloop.core.events import create_tool_call_event
from llmloop.core.messages import ChatMessage, ChatMessages, MarkingRole, TokenUsage
from llmloop.core.plugins import BeforeLlmRequest, BeforeRequestContext, LoopContext

MARKING_TYPE = "CONTEXT_COMPRESSION"
DISPLAY_NAME = "Context compression"


class ContextCompressor(ABC):
    """Bounds the length of a conversation."""

    @abstractmethod
    async def should_compress(self, messages: ChatMessages) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def compress(self, messages: ChatMessages) -> tuple[ChatMessages, TokenUsage]:
        """Return the shorter conversation and the tokens spent producing it."""
        raise NotImplementedError

    @abstractmethod
    def get_name(self) -> str:
        raise NotImplementedError

    def get_description(self) -> str:
        return f"Context compressor: {self.get_name()}"

    def as_plugin(self) -> "ContextCompressionPlugin":
        return ContextCompressionPlugin(self)


def find_marker(messages: ChatMessages) -> int:
    """Index of the most recent compression marker, or -1."""
    for i in range(len(messages) - 1, -1, -1):
        role = messages[i].role
        if isinstance(role, MarkingRole) and role.kind == MARKING_TYPE:
            return i
    return -1


def expand_markers(messages: ChatMessages) -> ChatMessages:
    """Replace everything up to the latest marker with the list it stores.

    Raises:
        ValueError: If the marker payload is not a serialized conversation
    """
    index = find_marker(messages)
    if index == -1:
        return messages
    compressed = ChatMessages.loads(messages[index].content.to_text())
    return compressed + messages[index + 1 :]


class ContextCompressionPlugin(BeforeLlmRequest):
    """Rewrites the request view with a compressor.

    When the compressor fires, a ``tool_call`` event announces it, the
    compressed list is appended to the response as a marker message, and
    the request view becomes the compressed list. Otherwise the request
    view is the expanded (uncompressed) history.
    """

    def __init__(self, compressor: ContextCompressor) -> None:
        self.compressor = compressor

    async def before_request(self, context: LoopContext, request: BeforeRequestContext) -> None:
        uncompressed = expand_markers(request.request_messages)
        if not await self.compressor.should_compress(uncompressed):
            request.request_messages = uncompressed
            return

        await context.emit(
            create_tool_call_event(
                call_id=f"{MARKING_TYPE}-{uuid.uuid4().hex}",
                tool_name=MARKING_TYPE,
                display_name=DISPLAY_NAME,
                arguments="",
                model_id=context.model.model,
            )
        )
        compressed, usage = await self.compressor.compress(uncompressed)
        context.add_token_usage(usage)
        context.response_messages.append(
            ChatMessage(MarkingRole(MARKING_TYPE), compressed.dumps())
        )
        request.request_messages = compressed
