"""Hooks that wrap every round of the engine loop.

Three hook kinds, each an ABC with one async method:

- ``BeforeLlmLoop.before_loop(context)`` runs once per call.
- ``BeforeLlmRequest.before_request(context, request)`` runs every round
  and may replace ``request.request_messages`` without touching history.
- ``AfterLlmResponse.after_response(context, result)`` runs every round
  and may rewrite the assembled ``RequestResult`` before it is consumed.

Hooks run in registration order. A single plugin object may implement
several kinds. Each kind also has an ``of(fn)`` factory that wraps a plain
function (sync or async).
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from llmloop.core.config import LlmModel
from llmloop.core.events import EventSink, StreamEvent, discard
from llmloop.core.messages import (
    ASSISTANT,
    ChatMessage,
    ChatMessages,
    Content,
    Role,
    SYSTEM,
    TokenUsage,
    USER,
)
from llmloop.providers.base import RequestResult
from llmloop.tools.base import AiToolInfo


@dataclass
class LoopContext:
    """Mutable state of one engine call, shared by every hook.

    ``messages`` is the caller's history and is never modified in place;
    hooks may rebind it. ``response_messages`` collects what this call
    produced.
    """

    model: LlmModel
    messages: ChatMessages
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: list[str] | None = None
    tools: list[AiToolInfo] = field(default_factory=list)
    response_messages: list[ChatMessage] = field(default_factory=list)
    on_receive: EventSink = discard
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def all_messages(self) -> ChatMessages:
        return self.messages + self.response_messages

    def add_token_usage(self, usage: TokenUsage) -> None:
        self.usage = self.usage + usage

    async def emit(self, event: StreamEvent) -> None:
        await self.on_receive(event)


@dataclass
class BeforeRequestContext:
    request_messages: ChatMessages


async def _call(fn: Callable[..., Any], *args: Any) -> None:  # noqa: ANN401
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


class LlmLoopPlugin(ABC):  # noqa: B024
    """Marker base for every hook kind."""


class BeforeLlmLoop(LlmLoopPlugin):
    @abstractmethod
    async def before_loop(self, context: LoopContext) -> None:
        raise NotImplementedError

    @staticmethod
    def of(fn: Callable[[LoopContext], Awaitable[None] | None]) -> "BeforeLlmLoop":
        return _FnBeforeLoop(fn)


class BeforeLlmRequest(LlmLoopPlugin):
    @abstractmethod
    async def before_request(self, context: LoopContext, request: BeforeRequestContext) -> None:
        raise NotImplementedError

    @staticmethod
    def of(
        fn: Callable[[LoopContext, BeforeRequestContext], Awaitable[None] | None],
    ) -> "BeforeLlmRequest":
        return _FnBeforeRequest(fn)


class AfterLlmResponse(LlmLoopPlugin):
    @abstractmethod
    async def after_response(self, context: LoopContext, result: RequestResult) -> None:
        raise NotImplementedError

    @staticmethod
    def of(fn: Callable[[LoopContext, RequestResult], Awaitable[None] | None]) -> "AfterLlmResponse":
        return _FnAfterResponse(fn)


class _FnBeforeLoop(BeforeLlmLoop):
    def __init__(self, fn: Callable[[LoopContext], Awaitable[None] | None]) -> None:
        self.fn = fn

    async def before_loop(self, context: LoopContext) -> None:
        await _call(self.fn, context)


class _FnBeforeRequest(BeforeLlmRequest):
    def __init__(self, fn: Callable[[LoopContext, BeforeRequestContext], Awaitable[None] | None]) -> None:
        self.fn = fn

    async def before_request(self, context: LoopContext, request: BeforeRequestContext) -> None:
        await _call(self.fn, context, request)


class _FnAfterResponse(AfterLlmResponse):
    def __init__(self, fn: Callable[[LoopContext, RequestResult], Awaitable[None] | None]) -> None:
        self.fn = fn

    async def after_response(self, context: LoopContext, result: RequestResult) -> None:
        await _call(self.fn, context, result)


async def run_before_loop(plugins: Iterable[LlmLoopPlugin], context: LoopContext) -> None:
    for plugin in plugins:
        if isinstance(plugin, BeforeLlmLoop):
            await plugin.before_loop(context)


async def run_before_request(
    plugins: Iterable[LlmLoopPlugin], context: LoopContext, request: BeforeRequestContext
) -> None:
    for plugin in plugins:
        if isinstance(plugin, BeforeLlmRequest):
            await plugin.before_request(context, request)


async def run_after_response(
    plugins: Iterable[LlmLoopPlugin], context: LoopContext, result: RequestResult
) -> None:
    for plugin in plugins:
        if isinstance(plugin, AfterLlmResponse):
            await plugin.after_response(context, result)


class PromptBuilder:
    """Collects the messages a ``PromptPlugin`` prepends."""

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []

    def add_message(self, role: Role, content: Content | str) -> None:
        self._messages.append(ChatMessage(role, content))

    def add_messages(self, messages: Iterable[ChatMessage]) -> None:
        self._messages.extend(messages)

    def add_system_message(self, content: Content | str) -> None:
        self.add_message(SYSTEM, content)

    def add_user_message(self, content: Content | str) -> None:
        self.add_message(USER, content)

    def add_assistant_message(self, content: Content | str) -> None:
        self.add_message(ASSISTANT, content)

    def result(self) -> ChatMessages:
        return ChatMessages(self._messages)


class PromptPlugin(BeforeLlmRequest):
    """Prepends freshly built messages to the request view every round.

    The prompt is rebuilt per round and never lands in history.

    Example:
        PromptPlugin(lambda p: p.add_system_message("Answer briefly."))
    """

    def __init__(self, build: Callable[[PromptBuilder], Awaitable[None] | None]) -> None:
        self.build = build

    async def before_request(self, context: LoopContext, request: BeforeRequestContext) -> None:
        builder = PromptBuilder()
        await _call(self.build, builder)
        request.request_messages = builder.result() + request.request_messages
