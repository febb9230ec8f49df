"""Model-assisted context compression.

A secondary (usually smaller) model rewrites the older part of the
conversation into fewer turns. The rewrite comes back as a YAML list of
``{role, content, toolCall?}`` items and is decoded through the
structured-output helper with corrective retries.
"""

import json
import uuid
from typing import Any

import yaml
from pydantic import BaseModel, TypeAdapter, field_validator

from llmloop.core.compaction.base import ContextCompressor
from llmloop.core.compaction.strategies import JumpContextCompressor
from llmloop.core.config import LlmModel
from llmloop.core.engine import LlmEngine
from llmloop.core.exceptions import AiRetryFailedError
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import (
    ASSISTANT,
    SYSTEM,
    USER,
    AssistantRole,
    ChatMessage,
    ChatMessages,
    Content,
    SystemRole,
    TokenUsage,
    ToolRole,
    UserRole,
)
from llmloop.core.structured import RetryType, send_and_get_result
from llmloop.core.tool_protocol import ToolCall

PREVIOUS_BEGIN = "===== previous conversation begins =====\n"
PREVIOUS_END = "===== previous conversation ends =====\n"

PROMPT_HEAD = """\
# Task
You compress chat transcripts between a user and an AI assistant. Keep the key
information, drop what is redundant, and say as much as possible in as few words
as possible.

Each input message has this shape:
```json
{
    "role": "user|assistant|tool",
    "content": "message text (for tool: the tool result)",
    "toolCall": {"name": "tool name", "arguments": "tool arguments"}
}
```
- role is user, assistant or tool (a tool result)
- content is the message text
- toolCall is present only on assistant messages that called a tool

Output the compressed messages in the same shape.

# Rules
- Tool results may be kept, summarized or shortened. Long search results can be
  replaced by a summary.
- Consecutive tool calls whose results can be combined may become one call.
- Useless tool calls (nothing found, tool errors) may be removed.
- Tool names matter: you may drop a call, but a call you keep must keep its name.
- Image URLs in user messages MUST be kept verbatim. Images from several user
  messages may be gathered into one message.
- A tool message must come right after an assistant message with toolCall, and an
  assistant message with toolCall must be followed right away by a tool message.
- A user message is followed by an assistant message.
- An assistant message is followed by a user message or a tool message.
- A tool message is followed by an assistant message.
- Never break these rules, e.g. two assistant messages in a row, two tool
  messages in a row, or a tool message not followed by an assistant message.

# Example
## Input
```json
[
    {"role": "user", "content": "Please make me a slide deck"},
    {"role": "assistant", "content": "Sure, what topic?"},
    {"role": "user", "content": "An introduction to AI"},
    {"role": "assistant", "content": "One moment, I will research it",
     "toolCall": {"name": "web_search", "arguments": "{\\"key\\":\\"AI introduction\\",\\"count\\":5}"}},
    {"role": "tool", "content": "result 1: ...\\nresult 2: ...\\nresult 3: ..."},
    {"role": "assistant", "content": "Let me read the first result",
     "toolCall": {"name": "web_extract", "arguments": "{\\"url\\":\\"url of result 1\\"}"}},
    {"role": "tool", "content": "extracted text: ..."},
    {"role": "assistant", "content": "Building the deck now",
     "toolCall": {"name": "create_slides", "arguments": "..."}},
    {"role": "tool", "content": "Deck created and shown to the user"},
    {"role": "assistant", "content": "The deck is ready. Tell me if you want changes."}
]
```
## Output
```yaml
- role: user
  content: Please make me a slide deck introducing AI
- role: assistant
  content: I will gather material first
  toolCall:
    name: web_search
    arguments: |
      {"key": "AI introduction", "count": 5}
- role: tool
  content: A summary of both the web_search and web_extract results goes here
- role: assistant
  content: Building the deck now
  toolCall:
    name: create_slides
    arguments: |
      {"content": "..."}
- role: tool
  content: Deck created and shown to the user
- role: assistant
  content: The deck is ready. Tell me if you want changes.
```
In short, replace the long transcript with a short one that carries the same
main information. Merge turns, merge tool calls and summarize long tool results.
Compress the transcript below to at most {target} characters.
Your reply must be a valid YAML list in the format above. Prefer YAML block
strings to avoid escaping.

## Input
```json
"""

PROMPT_TAIL = """
```
Now compress these {count} messages as described, in exactly the same format, without
losing key information.
**Important**: output only the YAML list with nothing else, and make sure it is valid
YAML (check quotes, colons and indentation).
"""


class CompressedToolCall(BaseModel):
    name: str
    arguments: str = ""

    @field_validator("arguments", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:  # noqa: ANN401
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return value


class CompressedTurn(BaseModel):
    role: str
    content: str | list[dict[str, Any]] = ""
    toolCall: CompressedToolCall | None = None  # noqa: N815


_TURNS = TypeAdapter(list[CompressedTurn])


def to_turns(messages: ChatMessages) -> list[dict[str, Any]]:
    """Prompt form of a conversation; only the first tool call of a message is kept."""
    turns = []
    for msg in messages:
        if not isinstance(msg.role, (UserRole, AssistantRole, ToolRole)):
            continue
        turn: dict[str, Any] = {"role": msg.role.wire_name, "content": msg.content.to_wire()}
        if msg.tool_calls:
            call = msg.tool_calls[0]
            turn["toolCall"] = {"name": call.name, "arguments": call.arguments}
        turns.append(turn)
    return turns


def from_turns(turns: list[CompressedTurn]) -> ChatMessages:
    """Rebuild messages from decoded turns, giving each kept tool call a fresh id.

    Raises:
        ValueError: If a tool turn is not paired with a tool-calling assistant turn
    """
    out: list[ChatMessage] = []
    pending: ToolCall | None = None
    for turn in turns:
        if turn.role != "tool" and pending is not None:
            raise ValueError("an assistant message with toolCall must be followed by a tool message")
        content = Content.from_wire(turn.content)
        if turn.role == "user":
            out.append(ChatMessage(USER, content))
        elif turn.role == "assistant":
            calls: tuple[ToolCall, ...] = ()
            if turn.toolCall is not None:
                pending = ToolCall(uuid.uuid4().hex, turn.toolCall.name, turn.toolCall.arguments)
                calls = (pending,)
            out.append(ChatMessage(ASSISTANT, content, tool_calls=calls))
        elif turn.role == "tool":
            if pending is None:
                raise ValueError("a tool message must follow an assistant message with toolCall")
            out.append(ChatMessage(ToolRole(pending.id, pending.name), content))
            pending = None
        elif turn.role not in ("system", "marking", "showing_data"):
            raise ValueError(f"unknown role: {turn.role}")
    if pending is not None:
        raise ValueError("an assistant message with toolCall must be followed by a tool message")
    return ChatMessages(out)


class _CompressionResultType:
    """Decodes the YAML turns; the last allowed attempt accepts raw prose instead."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        self.calls = 0

    def get_value(self, text: str) -> ChatMessages:
        self.calls += 1
        if self.calls < self.attempts:
            return self._decode(text)
        try:
            return self._decode(text)
        except Exception:  # noqa: BLE001
            return ChatMessages.of(
                SYSTEM,
                f"{PREVIOUS_BEGIN}{text}\n{PREVIOUS_END}Now continue the conversation with the user.",
            )

    @staticmethod
    def _decode(text: str) -> ChatMessages:
        return from_turns(_TURNS.validate_python(yaml.safe_load(text)))


class AiContextCompressor(ContextCompressor):
    """Summarizes older turns with a secondary model.

    Leading system messages and the last ``keep_tail`` messages are left
    untouched. Compression triggers once the text in between exceeds
    ``compress_length`` characters.
    """

    def __init__(
        self,
        engine: LlmEngine,
        model: LlmModel,
        compress_length: int = 10240,
        keep_tail: int = 5,
        compressing_rate: float = 2 / 3,
        logger: LlmLoopLogger | None = None,
    ) -> None:
        """Initialize compressor.

        Args:
            engine: Engine used for the summarizing request
            model: The (smaller) model that does the summarizing
            compress_length: Character threshold for the compressible prefix
            keep_tail: Number of trailing messages never compressed
            compressing_rate: Target length relative to the input, 0 to 1
            logger: Optional logger (defaults to the engine's)
        """
        if keep_tail < 0:
            raise ValueError("keep_tail must be non-negative")
        if not 0 < compressing_rate <= 1:
            raise ValueError(f"compressing_rate must be in (0, 1], got {compressing_rate}")
        self.engine = engine
        self.model = model
        self.compress_length = compress_length
        self.keep_tail = keep_tail
        self.compressing_rate = compressing_rate
        self.logger = logger or engine.logger

    def get_name(self) -> str:
        return "ai_summary"

    def get_description(self) -> str:
        return f"Summarize older turns with {self.model.model}"

    def split_index(self, messages: ChatMessages) -> int:
        """End of the compressible prefix.

        Moved back so that the kept tail never starts with a tool result and
        the prefix never ends with an assistant message.
        """
        if len(messages) <= self.keep_tail:
            return 0
        split = len(messages) - self.keep_tail
        while split > 0 and (
            isinstance(messages[split - 1].role, AssistantRole)
            or (split < len(messages) and isinstance(messages[split].role, ToolRole))
        ):
            split -= 1
        return split

    @staticmethod
    def _head_end(messages: ChatMessages) -> int:
        end = 0
        while end < len(messages) and isinstance(messages[end].role, SystemRole):
            end += 1
        return end

    async def should_compress(self, messages: ChatMessages) -> bool:
        prefix = messages[self._head_end(messages) : self.split_index(messages)]
        size = sum(
            len(m.content.to_text()) + sum(len(c.name) + len(c.arguments) + 20 for c in m.tool_calls)
            for m in prefix
        )
        return size > self.compress_length

    def make_prompt(self, messages: ChatMessages) -> str:
        target = max(2, int(sum(len(m.content.to_text()) for m in messages) * self.compressing_rate))
        body = json.dumps(to_turns(messages), ensure_ascii=False, indent=2)
        return (
            PROMPT_HEAD.replace("{target}", str(target))
            + body
            + PROMPT_TAIL.replace("{count}", str(len(messages)))
        )

    async def compress(self, messages: ChatMessages) -> tuple[ChatMessages, TokenUsage]:
        head_end = self._head_end(messages)
        split = self.split_index(messages)
        if split <= head_end:
            return messages, TokenUsage()

        head = messages[:head_end]
        to_compress = messages[head_end:split]
        tail = messages[split:]
        with self.logger.operation("compression", model=self.model.model, messages=len(to_compress)):
            try:
                compressed, usage = await send_and_get_result(
                    self.engine,
                    self.model,
                    self.make_prompt(to_compress),
                    _CompressionResultType(self.engine.config.retry),
                    RetryType.ADD_MESSAGE,
                )
            except AiRetryFailedError as e:
                self.logger.warn(
                    "Context compression failed, falling back to jump compression", error=str(e)
                )
                fallback = JumpContextCompressor(
                    step=2, max_size=max(1, int(len(to_compress) * self.compressing_rate))
                )
                compressed = fallback.pick(to_compress)
                usage = TokenUsage.from_dict(e.metadata.get("usage"))

        result = head + compressed + tail
        self.logger.info(
            "Context compressed",
            model=self.model.model,
            before=len(messages),
            after=len(result),
            total_tokens=usage.total_tokens,
        )
        return result, usage
