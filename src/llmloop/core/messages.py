"""Conversation value types.

Roles, content nodes, chat messages, message sequences and token usage. Every
type here is immutable: operations return new values and never modify the
receiver, so a caller's history can be handed to the engine safely.
"""

import json
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Union, overload

from llmloop.core.tool_protocol import ToolCall, ToolDataType


@dataclass(frozen=True)
class UserRole:
    wire_name = "user"
    is_internal = False


@dataclass(frozen=True)
class SystemRole:
    wire_name = "system"
    is_internal = False


@dataclass(frozen=True)
class AssistantRole:
    wire_name = "assistant"
    is_internal = False


@dataclass(frozen=True)
class ToolRole:
    """Answer to the tool call with the given id."""

    id: str
    name: str

    wire_name = "tool"
    is_internal = False


@dataclass(frozen=True)
class ShowingDataRole:
    """Tool output meant for the user, never sent to the model."""

    kind: ToolDataType

    wire_name = "showing_data"
    is_internal = True


@dataclass(frozen=True)
class MarkingRole:
    """Bookkeeping marker (e.g. a compression checkpoint), never sent to the model."""

    kind: str
    payload: str = ""

    wire_name = "marking"
    is_internal = True


Role = Union[UserRole, SystemRole, AssistantRole, ToolRole, ShowingDataRole, MarkingRole]

USER = UserRole()
SYSTEM = SystemRole()
ASSISTANT = AssistantRole()

_SIMPLE_ROLES: dict[str, Role] = {"user": USER, "system": SYSTEM, "assistant": ASSISTANT}


def role_to_dict(role: Role) -> str | dict[str, Any]:
    """Encode a role for storage: a plain string for payload-free roles."""
    if isinstance(role, ToolRole):
        return {"role": "tool", "id": role.id, "name": role.name}
    if isinstance(role, ShowingDataRole):
        return {"role": "showing_data", "kind": role.kind.value}
    if isinstance(role, MarkingRole):
        return {"role": "marking", "kind": role.kind, "payload": role.payload}
    return role.wire_name


def role_from_dict(data: str | dict[str, Any]) -> Role:
    if isinstance(data, str):
        if data in _SIMPLE_ROLES:
            return _SIMPLE_ROLES[data]
        # older histories stored compression markers as a bare role name
        if data == "CONTEXT_COMPRESSION":
            return MarkingRole(kind=data)
        raise ValueError(f"Invalid role: {data}")

    tag = data.get("role")
    if tag in _SIMPLE_ROLES:
        return _SIMPLE_ROLES[tag]
    if tag == "tool":
        return ToolRole(id=data.get("id", ""), name=data.get("name", ""))
    if tag == "showing_data":
        return ShowingDataRole(kind=ToolDataType(data["kind"]))
    if tag == "marking":
        return MarkingRole(kind=data["kind"], payload=data.get("payload", ""))
    raise ValueError(f"Invalid role: {data}")


@dataclass(frozen=True)
class TextNode:
    text: str


@dataclass(frozen=True)
class ImageNode:
    url: str


@dataclass(frozen=True)
class FileNode:
    filename: str
    url: str


ContentNode = Union[TextNode, ImageNode, FileNode]


def _normalize(nodes: Iterable[ContentNode]) -> tuple[ContentNode, ...]:
    out: list[ContentNode] = []
    for node in nodes:
        if isinstance(node, TextNode):
            if not node.text:
                continue
            if out and isinstance(out[-1], TextNode):
                out[-1] = TextNode(out[-1].text + node.text)
                continue
        out.append(node)
    return tuple(out)


class Content:
    """Ordered content nodes with adjacent text always merged."""

    __slots__ = ("_nodes",)

    def __init__(self, value: "str | ContentNode | Iterable[ContentNode] | None" = None) -> None:
        if value is None:
            nodes: Iterable[ContentNode] = ()
        elif isinstance(value, str):
            nodes = (TextNode(value),)
        elif isinstance(value, (TextNode, ImageNode, FileNode)):
            nodes = (value,)
        else:
            nodes = value
        self._nodes = _normalize(nodes)

    @property
    def nodes(self) -> tuple[ContentNode, ...]:
        return self._nodes

    def optimize(self) -> "Content":
        # construction already normalizes; kept for symmetry with ChatMessages
        return Content(self._nodes)

    def to_text(self) -> str:
        """Flatten to text; images and files render as their URL."""
        parts: list[str] = []
        for node in self._nodes:
            if isinstance(node, TextNode):
                parts.append(node.text)
            elif isinstance(node, ImageNode):
                parts.append(node.url)
            else:
                parts.append(f"{node.filename}: {node.url}")
        return "".join(parts)

    def is_empty(self) -> bool:
        """True when there are no nodes, or only blank text."""
        return all(isinstance(n, TextNode) and not n.text.strip() for n in self._nodes)

    def is_text(self) -> bool:
        return all(isinstance(n, TextNode) for n in self._nodes)

    def to_wire(self) -> str | list[dict[str, Any]]:
        """Chat-completion ``content`` value: a string when all text."""
        if self.is_text():
            return self.to_text()
        parts: list[dict[str, Any]] = []
        for node in self._nodes:
            if isinstance(node, TextNode):
                parts.append({"type": "text", "text": node.text})
            elif isinstance(node, ImageNode):
                parts.append({"type": "image_url", "image_url": {"url": node.url}})
            else:
                parts.append({"type": "file", "file": {"filename": node.filename, "file_data": node.url}})
        return parts

    @classmethod
    def from_wire(cls, data: str | list[dict[str, Any]] | None) -> "Content":
        if data is None:
            return cls()
        if isinstance(data, str):
            return cls(data)
        nodes: list[ContentNode] = []
        for part in data:
            kind = part.get("type")
            if kind == "text":
                nodes.append(TextNode(part.get("text", "")))
            elif kind == "image_url":
                nodes.append(ImageNode(part["image_url"]["url"]))
            elif kind == "file":
                nodes.append(FileNode(part["file"].get("filename", ""), part["file"].get("file_data", "")))
            else:
                raise ValueError(f"Unknown content part type: {kind}")
        return cls(nodes)

    def __add__(self, other: "Content | ContentNode | str") -> "Content":
        if isinstance(other, Content):
            return Content(self._nodes + other._nodes)
        if isinstance(other, str):
            return Content(self._nodes + (TextNode(other),))
        if isinstance(other, (TextNode, ImageNode, FileNode)):
            return Content(self._nodes + (other,))
        return NotImplemented

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Content):
            return self._nodes == other._nodes
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._nodes)

    def __bool__(self) -> bool:
        return bool(self._nodes)

    def __repr__(self) -> str:
        return f"Content({list(self._nodes)!r})"


def _as_content(value: "Content | str | None") -> Content:
    if isinstance(value, Content):
        return value
    return Content(value)


@dataclass(frozen=True)
class ChatMessage:
    """A single message in a conversation."""

    role: Role
    content: Content = field(default_factory=Content)
    reasoning_content: Content = field(default_factory=Content)
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self) -> None:
        """Normalize field types and validate message constraints."""
        object.__setattr__(self, "content", _as_content(self.content))
        object.__setattr__(self, "reasoning_content", _as_content(self.reasoning_content))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

        if self.tool_calls and not isinstance(self.role, AssistantRole):
            raise ValueError("Only assistant messages may have tool_calls")

    def can_merge(self, other: "ChatMessage") -> bool:
        """Whether two messages coalesce into one (same assistant or tool role)."""
        return self.role == other.role and isinstance(self.role, (AssistantRole, ToolRole))

    def is_blank(self) -> bool:
        return self.content.is_empty() and self.reasoning_content.is_empty() and not self.tool_calls

    def __add__(self, other: "ChatMessage") -> "ChatMessage":
        if not isinstance(other, ChatMessage):
            return NotImplemented
        if not self.can_merge(other):
            raise ValueError(f"Cannot merge {self.role!r} with {other.role!r}")
        return ChatMessage(
            role=self.role,
            content=self.content + other.content,
            reasoning_content=self.reasoning_content + other.reasoning_content,
            tool_calls=self.tool_calls + other.tool_calls,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": role_to_dict(self.role),
            "content": self.content.to_wire(),
        }
        if self.reasoning_content:
            data["reasoning_content"] = self.reasoning_content.to_wire()
        if self.tool_calls:
            data["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        raw_role = data["role"]
        if raw_role == "tool" and "tool_call_id" in data:
            role: Role = ToolRole(id=data["tool_call_id"], name=data.get("name", ""))
        else:
            role = role_from_dict(raw_role)
        return cls(
            role=role,
            content=Content.from_wire(data.get("content")),
            reasoning_content=Content.from_wire(data.get("reasoning_content")),
            tool_calls=tuple(ToolCall.from_wire(tc) for tc in data.get("tool_calls") or ()),
        )


class ChatMessages(Sequence[ChatMessage]):
    """Immutable ordered conversation."""

    __slots__ = ("_items",)

    def __init__(self, messages: Iterable[ChatMessage] = ()) -> None:
        self._items: tuple[ChatMessage, ...] = tuple(messages)

    @classmethod
    def of(cls, role: Role, content: "Content | str", reasoning_content: "Content | str" = "") -> "ChatMessages":
        return cls([ChatMessage(role, _as_content(content), _as_content(reasoning_content))])

    @overload
    def __getitem__(self, index: int) -> ChatMessage: ...

    @overload
    def __getitem__(self, index: slice) -> "ChatMessages": ...

    def __getitem__(self, index: int | slice) -> "ChatMessage | ChatMessages":
        if isinstance(index, slice):
            return ChatMessages(self._items[index])
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ChatMessages):
            return self._items == other._items
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"ChatMessages({list(self._items)!r})"

    def __add__(self, other: "ChatMessage | Iterable[ChatMessage]") -> "ChatMessages":
        if isinstance(other, ChatMessage):
            return ChatMessages(self._items + (other,)).optimize()
        return ChatMessages(self._items + tuple(other)).optimize()

    def optimize(self) -> "ChatMessages":
        """Merge every run of combinable adjacent messages into one."""
        out: list[ChatMessage] = []
        for msg in self._items:
            if out and out[-1].can_merge(msg):
                out[-1] = out[-1] + msg
            else:
                out.append(msg)
        return ChatMessages(out)

    def is_blank(self) -> bool:
        return all(m.is_blank() for m in self._items)

    def serialize(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._items]

    @classmethod
    def deserialize(cls, data: list[dict[str, Any]]) -> "ChatMessages":
        """Rebuild from ``serialize()`` output.

        Raises:
            ValueError: If an entry is malformed
        """
        try:
            return cls(ChatMessage.from_dict(item) for item in data)
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid message data: {e}") from e

    def dumps(self) -> str:
        return json.dumps(self.serialize(), ensure_ascii=False)

    @classmethod
    def loads(cls, text: str) -> "ChatMessages":
        return cls.deserialize(json.loads(text))


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenUsage":
        if not data:
            return cls()
        return cls(
            prompt_tokens=data.get("prompt_tokens") or 0,
            completion_tokens=data.get("completion_tokens") or 0,
            total_tokens=data.get("total_tokens") or 0,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
