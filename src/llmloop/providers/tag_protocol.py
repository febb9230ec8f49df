"""In-band tool-call tags for models without native function calling.

A call is written straight into the content stream::

    <|tool_call|>
    <|tool_name|>search<|tool_name|>
    <|tool_args|>{"q": "x"}<|tool_args|>
    <|tool_call|>

``ToolCallTagParser`` recovers text and calls from a stream that may be cut
at any byte, including in the middle of a marker. ``TagToolFormat`` produces
the system prompt that teaches the model the format and rewrites history so
earlier calls and results are shown in the same format.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum

from llmloop.core.messages import (
    AssistantRole,
    ChatMessage,
    ChatMessages,
    Content,
    ToolRole,
    USER,
)
from llmloop.core.tool_protocol import ToolCall
from llmloop.tools.base import AiToolInfo

TOOL_CALL_TAG = "<|tool_call|>"
TOOL_NAME_TAG = "<|tool_name|>"
TOOL_ARGS_TAG = "<|tool_args|>"
TOOL_RESULT_TAG = "<|tool_call_result|>"
TOOL_RESPONSE_TAG = "<|tool_response|>"

TOOL_NAME_RE = re.compile(r"<\|tool_name\|>(.*?)<\|tool_name\|>", re.DOTALL)
TOOL_ARGS_RE = re.compile(r"<\|tool_args\|>(.*?)<\|tool_args\|>", re.DOTALL)


@dataclass(frozen=True)
class ParsedToolCall:
    name: str
    arguments: str


ParserOutput = list[str | ParsedToolCall]


class ParserState(Enum):
    SCANNING = "scanning"
    IN_TOOL_CALL = "in_tool_call"


def _held_prefix_len(buffer: str, marker: str) -> int:
    """Length of the longest buffer suffix that is a strict prefix of ``marker``."""
    for size in range(min(len(marker) - 1, len(buffer)), 0, -1):
        if buffer.endswith(marker[:size]):
            return size
    return 0


def _parse_body(body: str) -> tuple[str | None, str | None]:
    name = TOOL_NAME_RE.search(body)
    args = TOOL_ARGS_RE.search(body)
    return (
        name.group(1).strip() if name else None,
        args.group(1).strip() if args else None,
    )


class ToolCallTagParser:
    """Incremental text/tool-call splitter.

    In ``SCANNING`` text is released as soon as it cannot be the start of an
    opening marker. In ``IN_TOOL_CALL`` everything is held until the closing
    marker arrives. Output is independent of how the input was chunked.
    """

    def __init__(self) -> None:
        self.state = ParserState.SCANNING
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> ParserOutput:
        self._buffer += chunk
        out: ParserOutput = []
        while True:
            idx = self._buffer.find(TOOL_CALL_TAG)
            if self.state is ParserState.SCANNING:
                if idx < 0:
                    held = _held_prefix_len(self._buffer, TOOL_CALL_TAG)
                    flush = self._buffer[: len(self._buffer) - held]
                    if flush:
                        out.append(flush)
                    self._buffer = self._buffer[len(flush) :]
                    return out
                if idx > 0:
                    out.append(self._buffer[:idx])
                self._buffer = self._buffer[idx + len(TOOL_CALL_TAG) :]
                self.state = ParserState.IN_TOOL_CALL
            else:
                if idx < 0:
                    return out
                name, args = _parse_body(self._buffer[:idx])
                out.append(ParsedToolCall(name or "", args or ""))
                self._buffer = self._buffer[idx + len(TOOL_CALL_TAG) :]
                self.state = ParserState.SCANNING

    def finish(self) -> ParserOutput:
        """Flush whatever is left once the stream has ended.

        An unterminated call still counts when both its name and arguments
        were complete; otherwise it is returned as text.
        """
        out: ParserOutput = []
        if self.state is ParserState.IN_TOOL_CALL:
            name, args = _parse_body(self._buffer)
            if name is not None and args is not None:
                out.append(ParsedToolCall(name, args))
            else:
                out.append(TOOL_CALL_TAG + self._buffer)
        elif self._buffer:
            out.append(self._buffer)
        self._buffer = ""
        self.state = ParserState.SCANNING
        return out


def render_tool_call(call: ToolCall) -> str:
    return (
        f"{TOOL_CALL_TAG}\n{TOOL_NAME_TAG}{call.name}{TOOL_NAME_TAG}\n"
        f"{TOOL_ARGS_TAG}\n{call.arguments}\n{TOOL_ARGS_TAG}\n{TOOL_CALL_TAG}"
    )


class TagToolFormat:
    """Prompt and history rendering for the tag protocol."""

    def to_prompt(self, tools: list[AiToolInfo]) -> str:
        if not tools:
            return ""

        tool_descriptions = []
        for idx, tool in enumerate(tools, 1):
            tool_descriptions.append(f"{idx}. **{tool.name}**")
            tool_descriptions.append(f"   Description: {tool.description}")
            tool_descriptions.append("   Parameters:")
            tool_descriptions.append(f"   {json.dumps(tool.parameters, indent=6, ensure_ascii=False)}\n")

        tool_list = "\n".join(tool_descriptions)
        example = render_tool_call(ToolCall("", "tool_name", '{"arg": "value"}'))

        return (
            "# Available Tools\n\n"
            "You have access to these tools. To call a tool, write this block in your reply, "
            "with the arguments as a JSON object matching the tool's parameters:\n\n"
            f"{example}\n\n"
            "You may call several tools by writing several blocks. Stop writing after your "
            f"calls; each result comes back wrapped in {TOOL_RESULT_TAG} and {TOOL_RESPONSE_TAG}.\n\n"
            "## Available Tools:\n\n"
            f"{tool_list}"
        )

    def escape_message(self, message: ChatMessage) -> ChatMessage:
        """Rewrite one history message so it carries no native tool fields."""
        if isinstance(message.role, ToolRole):
            header = (
                f"{TOOL_RESULT_TAG}\n{TOOL_NAME_TAG}\n{message.role.name}{TOOL_NAME_TAG}\n"
                f"{TOOL_RESPONSE_TAG}\n"
            )
            footer = f"\n{TOOL_RESPONSE_TAG}\n{TOOL_RESULT_TAG}"
            return ChatMessage(USER, Content(header) + message.content + footer)
        if isinstance(message.role, AssistantRole) and message.tool_calls:
            content = message.content
            for call in message.tool_calls:
                content = content + render_tool_call(call)
            return ChatMessage(message.role, content, message.reasoning_content)
        return message

    def escape_messages(self, messages: ChatMessages) -> ChatMessages:
        # no optimize(): consecutive escaped results stay separate user turns
        return ChatMessages(self.escape_message(m) for m in messages)
