"""Tool definitions and the tool set registry.

A tool is an ``AiToolInfo``: a name, a JSON Schema for its arguments and an
async ``invoke(parsed_args, emit)``. Tools are not registered directly;
an ``AiToolSet`` holds *getters* that produce the tools available for a given
caller context and model, so availability can depend on both.
"""

import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from llmloop.core.config import LlmModel
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import Content
from llmloop.core.tool_protocol import ToolData, ToolDataType, validate_tool_schema

T = TypeVar("T")
D = TypeVar("D")

Emit = Callable[[Content], Awaitable[None]]

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class ToolResult:
    """What a tool hands back to the model, plus anything to show the user."""

    content: Content
    showing_content: list[tuple[str, ToolDataType]] = field(default_factory=list)

    @classmethod
    def text(
        cls, text: str, showing: str | None = None, kind: ToolDataType = ToolDataType.MARKDOWN
    ) -> "ToolResult":
        return cls(Content(text), [(showing, kind)] if showing is not None else [])


Invoker = Callable[[Any, Emit], Awaitable[ToolResult]]


@dataclass
class AiToolInfo:
    """A callable tool with its argument schema.

    When ``args_model`` is a pydantic model, the schema is generated from it
    and ``parse`` validates raw arguments into an instance. Otherwise
    ``parse`` returns the decoded JSON object.
    """

    name: str
    description: str
    invoke: Invoker
    display_name: str | None = None
    parameters: dict[str, Any] | None = None
    args_model: type[BaseModel] | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name must not be empty")
        if self.parameters is None:
            self.parameters = (
                self.args_model.model_json_schema() if self.args_model else dict(EMPTY_PARAMETERS)
            )
        if not validate_tool_schema(self.parameters):
            raise ValueError(f"Invalid parameter schema for tool {self.name}")

    def parse(self, raw: str) -> Any:  # noqa: ANN401
        """Decode raw argument text.

        Raises:
            ValueError: If the text is not valid arguments for this tool
        """
        raw = raw.strip() or "{}"
        if self.args_model is not None:
            try:
                return self.args_model.model_validate_json(raw)
            except ValidationError as e:
                raise ValueError(str(e)) from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Arguments are not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Arguments must be a JSON object, got {type(data).__name__}")
        return data

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolStatus(Generic[T, D]):
    """Everything a registered tool function receives."""

    context: T
    model: LlmModel | None
    parm: D
    emit: Emit

    async def send_message(self, msg: Content | str) -> None:
        await self.emit(msg if isinstance(msg, Content) else Content(msg))


ToolGetter = Callable[[T, LlmModel | None], Awaitable[list[AiToolInfo]] | list[AiToolInfo]]
ToolDataGetter = Callable[[T, str], Awaitable[ToolData | None] | ToolData | None]
Condition = Callable[[T, LlmModel | None], Awaitable[bool] | bool]


async def _resolve(value: Any) -> Any:  # noqa: ANN401
    if inspect.isawaitable(value):
        return await value
    return value


class ToolProvider(Protocol[T]):
    """A bundle of tools registered together."""

    name: str

    def register_tools(self, tool_set: "AiToolSet[T]") -> None: ...


class AiToolSet(Generic[T]):
    """Registry of tool getters and display-data getters for context type ``T``."""

    def __init__(self, *providers: ToolProvider[T], logger: LlmLoopLogger | None = None) -> None:
        self.logger = logger or LlmLoopLogger()
        self._tool_getters: list[ToolGetter[T]] = []
        self._data_getters: dict[ToolDataType, ToolDataGetter[T]] = {}
        for provider in providers:
            self.add_provider(provider)

    def add_provider(self, provider: ToolProvider[T]) -> None:
        provider.register_tools(self)
        self.logger.debug("Tool provider registered", provider=provider.name)

    def register_tool_getter(self, getter: ToolGetter[T]) -> None:
        self._tool_getters.append(getter)

    def register_data_getter(self, kind: ToolDataType, getter: ToolDataGetter[T]) -> None:
        self._data_getters[kind] = getter

    def register_tool(
        self,
        name: str,
        description: str,
        args_model: type[BaseModel] | None = None,
        display_name: str | None = None,
        condition: Condition[T] | None = None,
    ) -> Callable[[Callable[[ToolStatus[T, Any]], Awaitable[ToolResult]]], Callable[..., Any]]:
        """Decorator registering an async ``fn(status) -> ToolResult`` as a tool.

        Example:
            @tools.register_tool("echo", "Echo the input back", args_model=EchoArgs)
            async def echo(status):
                return ToolResult.text(status.parm.text)
        """

        def decorator(
            fn: Callable[[ToolStatus[T, Any]], Awaitable[ToolResult]],
        ) -> Callable[[ToolStatus[T, Any]], Awaitable[ToolResult]]:
            async def getter(context: T, model: LlmModel | None) -> list[AiToolInfo]:
                if condition is not None and not await _resolve(condition(context, model)):
                    return []

                async def invoke(parm: Any, emit: Emit) -> ToolResult:  # noqa: ANN401
                    return await fn(ToolStatus(context, model, parm, emit))

                return [
                    AiToolInfo(
                        name=name,
                        description=description,
                        invoke=invoke,
                        display_name=display_name,
                        args_model=args_model,
                    )
                ]

            self.register_tool_getter(getter)
            self.logger.debug("Tool registered", tool_name=name)
            return fn

        return decorator

    async def get_tools(self, context: T, model: LlmModel | None) -> list[AiToolInfo]:
        """Tools available for this context and model, in registration order."""
        tools: list[AiToolInfo] = []
        for getter in self._tool_getters:
            tools.extend(await _resolve(getter(context, model)))
        return tools

    async def get_data(self, context: T, kind: ToolDataType, path: str) -> ToolData | None:
        """Resolve a ShowingData reference through the getter for its kind."""
        getter = self._data_getters.get(kind)
        self.logger.debug("Tool data requested", kind=kind.value, path=path, found=getter is not None)
        if getter is None:
            return None
        return await _resolve(getter(context, path))
