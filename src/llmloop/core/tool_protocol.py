"""Tool protocol core types and helpers."""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ToolDataType(str, Enum):
    """Display kind of a piece of data a tool wants shown to the user."""

    MARKDOWN = "markdown"
    URL = "url"
    TEXT = "text"
    HTML = "html"
    FILE = "file"
    PAGE = "page"
    IMAGE = "image"
    MATH = "math"
    QUIZ = "quiz"
    VIDEO = "video"


@dataclass(frozen=True)
class ToolCall:
    """A tool call request from the LLM.

    ``arguments`` is the raw argument text exactly as the model produced it;
    decoding happens in the tool that receives it.
    """

    id: str
    name: str
    arguments: str

    def to_wire(self) -> dict[str, Any]:
        """Render in chat-completion ``tool_calls[]`` shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        return cls(
            id=data.get("id") or "",
            name=function.get("name") or data.get("name") or "",
            arguments=function.get("arguments") or data.get("arguments") or "",
        )


@dataclass(frozen=True)
class ToolData:
    """Payload resolved for a ShowingData reference."""

    kind: ToolDataType
    value: Any


def validate_tool_schema(parameters: dict[str, Any]) -> bool:
    """Validate a tool's parameter JSON Schema.

    Args:
        parameters: JSON Schema describing the tool arguments

    Returns:
        True if valid, False otherwise
    """
    try:
        if not isinstance(parameters.get("type"), str):
            return False

        if parameters["type"] == "object":
            if not isinstance(parameters.get("properties", {}), dict):
                return False
            if "required" in parameters and not isinstance(parameters["required"], list):
                return False

        for prop_def in parameters.get("properties", {}).values():
            if not isinstance(prop_def, dict):
                return False
            # pydantic emits anyOf/$ref/allOf for optional and nested fields
            if not ({"type", "anyOf", "allOf", "oneOf", "$ref", "enum"} & prop_def.keys()):
                return False

        return True

    except (KeyError, TypeError, AttributeError):
        return False
