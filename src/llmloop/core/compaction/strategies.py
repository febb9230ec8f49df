"""Compressors that need no model call.

JumpContextCompressor, TailContextCompressor and TokenBudgetCompressor.
"""

import math

from llmloop.core.compaction.base import ContextCompressor
from llmloop.core.messages import (
    AssistantRole,
    ChatMessage,
    ChatMessages,
    SystemRole,
    TokenUsage,
    ToolRole,
)
from llmloop.core.tokens import TokenCounter


class JumpContextCompressor(ContextCompressor):
    """Keeps one message in every ``k`` once the history exceeds ``max_size``.

    ``k`` is ``max(step, ceil(size / max_size))``, so the result never has
    more than ``max_size`` messages.
    """

    def __init__(self, step: int = 2, max_size: int = 20) -> None:
        if step < 1:
            raise ValueError("step must be positive")
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.step = step
        self.max_size = max_size

    def get_name(self) -> str:
        return "jump"

    def get_description(self) -> str:
        return f"Keep every {self.step}th message, at most {self.max_size}"

    async def should_compress(self, messages: ChatMessages) -> bool:
        return len(messages) > self.max_size

    async def compress(self, messages: ChatMessages) -> tuple[ChatMessages, TokenUsage]:
        return self.pick(messages), TokenUsage()

    def pick(self, messages: ChatMessages) -> ChatMessages:
        size = len(messages)
        if size <= self.max_size:
            return messages
        stride = max(self.step, math.ceil(size / self.max_size))
        return ChatMessages(messages[i] for i in range(0, size, stride))


class TailContextCompressor(ContextCompressor):
    """Keeps only the last ``max_size`` messages."""

    def __init__(self, max_size: int = 20) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size

    def get_name(self) -> str:
        return "tail"

    def get_description(self) -> str:
        return f"Keep the last {self.max_size} messages"

    async def should_compress(self, messages: ChatMessages) -> bool:
        return len(messages) > self.max_size

    async def compress(self, messages: ChatMessages) -> tuple[ChatMessages, TokenUsage]:
        if len(messages) <= self.max_size:
            return messages, TokenUsage()
        return messages[-self.max_size :], TokenUsage()


class TokenBudgetCompressor(ContextCompressor):
    """Drops the oldest messages until the history fits a token budget.

    Leading system messages and the last ``keep_tail`` messages are kept.
    An assistant message that requested tools is dropped together with the
    tool results that answer it, so no tool message is ever orphaned.
    """

    def __init__(
        self,
        max_tokens: int,
        keep_tail: int = 4,
        model: str = "gpt-4o",
        counter: TokenCounter | None = None,
    ) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if keep_tail < 0:
            raise ValueError("keep_tail must be non-negative")
        self.max_tokens = max_tokens
        self.keep_tail = keep_tail
        self.model = model
        self.counter = counter or TokenCounter()

    def get_name(self) -> str:
        return "token_budget"

    def get_description(self) -> str:
        return f"Drop oldest messages until under {self.max_tokens} tokens"

    async def should_compress(self, messages: ChatMessages) -> bool:
        return self.counter.count_messages(messages, self.model) > self.max_tokens

    async def compress(self, messages: ChatMessages) -> tuple[ChatMessages, TokenUsage]:
        head_end = 0
        while head_end < len(messages) and isinstance(messages[head_end].role, SystemRole):
            head_end += 1

        tail_start = max(head_end, len(messages) - self.keep_tail)
        # a kept tool result keeps the assistant message that requested it
        while tail_start > head_end and isinstance(messages[tail_start].role, ToolRole):
            tail_start -= 1

        head = list(messages[:head_end])
        tail = list(messages[tail_start:])
        units = self._group(list(messages[head_end:tail_start]))

        while units and self._count(head, units, tail) > self.max_tokens:
            units.pop(0)

        kept = [m for unit in units for m in unit]
        return ChatMessages(head + kept + tail), TokenUsage()

    def _count(
        self, head: list[ChatMessage], units: list[list[ChatMessage]], tail: list[ChatMessage]
    ) -> int:
        middle = [m for unit in units for m in unit]
        return self.counter.count_messages(ChatMessages(head + middle + tail), self.model)

    @staticmethod
    def _group(messages: list[ChatMessage]) -> list[list[ChatMessage]]:
        """Split into droppable units: a tool-calling assistant plus its tool results."""
        units: list[list[ChatMessage]] = []
        for msg in messages:
            if isinstance(msg.role, ToolRole) and units and _opens_tool_pair(units[-1][0]):
                units[-1].append(msg)
            else:
                units.append([msg])
        return units


def _opens_tool_pair(message: ChatMessage) -> bool:
    return isinstance(message.role, AssistantRole) and bool(message.tool_calls)
