"""Transport for OpenAI-compatible chat-completion endpoints.

Uses the ``openai`` SDK for auth, routing and HTTP status handling with SDK
retries disabled; the engine owns the retry budget. Streaming responses are
read line by line from the raw SSE body so a single undecodable event is
skipped instead of failing the whole response.
"""

import json
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI

from llmloop.core.config import LlmModel
from llmloop.core.events import EventSink, create_message_event
from llmloop.core.exceptions import ModelResponseError
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import (
    ASSISTANT,
    AssistantRole,
    ChatMessage,
    ChatMessages,
    SYSTEM,
    TokenUsage,
    ToolRole,
)
from llmloop.core.tool_protocol import ToolCall
from llmloop.providers.base import RequestResult, Transport
from llmloop.providers.tag_protocol import ParsedToolCall, TagToolFormat, ToolCallTagParser
from llmloop.tools.base import AiToolInfo

if TYPE_CHECKING:
    from llmloop.core.plugins import LoopContext

STREAM_DONE = "[DONE]"

# Body fields the SDK accepts as keyword arguments; the rest go through extra_body
SDK_PARAMS = frozenset(
    {
        "model",
        "messages",
        "stream",
        "max_tokens",
        "temperature",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "stop",
        "tools",
        "tool_choice",
        "response_format",
        "seed",
        "stream_options",
    }
)

# AsyncOpenAI refuses to construct without a key; every request overrides it
_UNSET_KEY = "unset"


def to_request_messages(messages: ChatMessages, model: LlmModel) -> list[dict[str, Any]]:
    """Render the request view in wire shape.

    Internal roles are dropped. Models without native tool calls see tool
    traffic rewritten into the tag protocol.
    """
    fmt = TagToolFormat()
    escape = not model.supports_tool_calls
    wire: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role.is_internal:
            continue
        if escape:
            msg = fmt.escape_message(msg)

        entry: dict[str, Any] = {
            "role": msg.role.wire_name,
            "content": msg.content.to_wire() if model.imageable else msg.content.to_text(),
        }
        if isinstance(msg.role, AssistantRole) and not msg.reasoning_content.is_empty():
            entry["reasoning_content"] = msg.reasoning_content.to_text()
        if isinstance(msg.role, ToolRole):
            entry["tool_call_id"] = msg.role.id
        if msg.tool_calls:
            entry["tool_calls"] = [tc.to_wire() for tc in msg.tool_calls]

        wire.append(entry)

    return wire


def build_request_body(
    model: LlmModel,
    request_messages: ChatMessages,
    stream: bool,
    *,
    tools: list[AiToolInfo] | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
    top_p: float | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: list[str] | None = None,
) -> dict[str, Any]:
    """Assemble the complete request body, custom parameters merged last.

    Models without native tool calls get the tag-protocol prompt in front of
    the request view instead of a ``tools`` field; their replies are split
    into text and calls whether or not the request streams.
    """
    tools = tools or []
    if tools and not model.supports_tool_calls:
        prompt = TagToolFormat().to_prompt(tools)
        request_messages = ChatMessages([ChatMessage(SYSTEM, prompt), *request_messages])

    body: dict[str, Any] = {
        "model": model.model,
        "messages": to_request_messages(request_messages, model),
        "stream": stream,
    }

    optional = {
        "max_tokens": max_tokens,
        "thinking_budget": model.thinking_budget,
        "temperature": temperature,
        "top_p": top_p,
        "frequency_penalty": frequency_penalty,
        "presence_penalty": presence_penalty,
        "stop": stop,
    }
    body.update({k: v for k, v in optional.items() if v is not None})

    if tools and model.supports_tool_calls:
        body["tools"] = [t.to_wire() for t in tools]

    body.update(model.custom_request_params)
    return body


def _split_body(body: dict[str, Any]) -> dict[str, Any]:
    kwargs = {k: v for k, v in body.items() if k in SDK_PARAMS}
    extra = {k: v for k, v in body.items() if k not in SDK_PARAMS}
    if extra:
        kwargs["extra_body"] = extra
    return kwargs


def _reasoning_of(payload: dict[str, Any]) -> str:
    return payload.get("reasoning_content") or payload.get("reasoning") or ""


def _check_text(payload: dict[str, Any]) -> None:
    for key in ("content", "reasoning_content", "reasoning"):
        value = payload.get(key)
        if value is not None and not isinstance(value, str):
            raise TypeError(f"{key} must be a string, got {type(value).__name__}")


def _decode_completion(
    data: dict[str, Any], model: LlmModel
) -> tuple[dict[str, tuple[str, str]], ChatMessage]:
    """Decode a non-streamed completion body into its calls and assistant message.

    Models without native tool calls have their tagged calls split out of
    the content the same way a streamed reply is.
    """
    choices = data["choices"]
    messages = [c.get("message") or {} for c in choices]
    for m in messages:
        _check_text(m)
    content = "".join(m.get("content") or "" for m in messages)
    reasoning = "".join(_reasoning_of(m) for m in messages)

    calls: dict[str, tuple[str, str]] = {}
    for m in messages:
        for tc in m.get("tool_calls") or []:
            call = ToolCall.from_wire(tc)
            # calls without an id cannot be answered
            if call.id:
                calls[call.id] = (call.name, call.arguments)

    if not model.supports_tool_calls:
        parser = ToolCallTagParser()
        text: list[str] = []
        loop_id = uuid.uuid4().hex
        for item in [*parser.feed(content), *parser.finish()]:
            if isinstance(item, ParsedToolCall):
                calls[f"call-{loop_id}-{len(calls)}"] = (item.name, item.arguments)
            else:
                text.append(item)
        content = "".join(text)

    message = ChatMessage(
        ASSISTANT,
        content,
        reasoning,
        tuple(ToolCall(i, n, a) for i, (n, a) in calls.items()),
    )
    return calls, message


class StreamAssembler:
    """Folds streamed chat-completion chunks into one assistant message.

    Native tool-call fragments are keyed by ``index``; a fragment without
    one is attributed to the last index seen. That is only correct while the
    provider never interleaves two index-less calls.
    """

    def __init__(self, model: LlmModel, on_receive: EventSink, logger: LlmLoopLogger) -> None:
        self.model = model
        self.on_receive = on_receive
        self.logger = logger
        self.loop_id = uuid.uuid4().hex
        self.message = ChatMessage(ASSISTANT)
        self.usage = TokenUsage()
        self.finished = False
        self._native: dict[int, list[str]] = {}
        self._tagged: list[ParsedToolCall] = []
        self._last_index: int | None = None
        self._parser = None if model.supports_tool_calls else ToolCallTagParser()

    async def _put_content(self, text: str) -> None:
        await self.on_receive(create_message_event(text, "", self.model.model))
        self.message = self.message + ChatMessage(ASSISTANT, text)

    async def _put_reasoning(self, text: str) -> None:
        await self.on_receive(create_message_event("", text, self.model.model))
        self.message = self.message + ChatMessage(ASSISTANT, reasoning_content=text)

    async def _put_parsed(self, items: list[str | ParsedToolCall]) -> None:
        for item in items:
            if isinstance(item, ParsedToolCall):
                self._tagged.append(item)
            else:
                await self._put_content(item)

    def _put_tool_fragment(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if index is None:
            index = self._last_index
        if index is None:
            self.logger.warn(
                "Tool call fragment without index, dropping",
                call_id=fragment.get("id"),
                pending=len(self._native),
            )
            return

        entry = self._native.setdefault(index, ["", "", ""])
        if fragment.get("id") and not entry[0]:
            entry[0] = fragment["id"]
        function = fragment.get("function") or {}
        entry[1] += function.get("name") or ""
        entry[2] += function.get("arguments") or ""
        self._last_index = index

    async def feed(self, chunk: dict[str, Any]) -> None:
        usage = TokenUsage.from_dict(chunk.get("usage"))
        if usage.total_tokens > self.usage.total_tokens:
            self.usage = usage

        for choice in chunk.get("choices") or []:
            if choice.get("finish_reason"):
                self.finished = True
            delta = choice.get("delta") or {}

            for fragment in delta.get("tool_calls") or []:
                self._put_tool_fragment(fragment)

            _check_text(delta)

            if reasoning := _reasoning_of(delta):
                await self._put_reasoning(reasoning)

            if content := delta.get("content"):
                if self._parser is None:
                    await self._put_content(content)
                else:
                    await self._put_parsed(self._parser.feed(content))

    async def finish(self) -> dict[str, tuple[str, str]]:
        """Flush the tag parser and attach every collected call to the message."""
        if self._parser is not None:
            await self._put_parsed(self._parser.finish())

        collected = [tuple(self._native[i]) for i in sorted(self._native)]
        collected += [("", call.name, call.arguments) for call in self._tagged]

        calls: dict[str, tuple[str, str]] = {}
        for n, (call_id, name, args) in enumerate(collected):
            calls[call_id or f"call-{self.loop_id}-{n}"] = (name, args)

        if calls:
            self.message = self.message + ChatMessage(
                ASSISTANT, tool_calls=tuple(ToolCall(i, n, a) for i, (n, a) in calls.items())
            )
        return calls


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event."""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if field_name == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


class OpenAICompatibleTransport(Transport):
    """Chat-completion transport over the ``openai`` SDK."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: LlmLoopLogger | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            client: Preconfigured SDK client (its key and base URL are overridden per call)
            http_client: Shared httpx client for connection pooling
            logger: Structured logger
        """
        self.logger = logger or LlmLoopLogger()
        self.client = client or AsyncOpenAI(
            api_key=_UNSET_KEY,
            max_retries=0,
            http_client=http_client,
        )

    def build_body(
        self, context: "LoopContext", request_messages: ChatMessages, stream: bool
    ) -> dict[str, Any]:
        return build_request_body(
            context.model,
            request_messages,
            stream,
            tools=context.tools,
            max_tokens=context.max_tokens,
            temperature=context.temperature,
            top_p=context.top_p,
            frequency_penalty=context.frequency_penalty,
            presence_penalty=context.presence_penalty,
            stop=context.stop,
        )

    async def send_request(
        self,
        model: LlmModel,
        key: str,
        body: dict[str, Any],
        stream: bool,
        on_receive: EventSink,
    ) -> RequestResult:
        client = self.client.with_options(api_key=key, base_url=model.base_url, max_retries=0)
        kwargs = _split_body({**body, "stream": stream})
        self.logger.debug(
            "Sending chat completion",
            model=model.model,
            base_url=model.base_url,
            stream=stream,
            messages=len(body.get("messages", [])),
        )
        if stream:
            return await self._send_stream(client, model, kwargs, on_receive)
        return await self._send_plain(client, model, kwargs)

    def _to_error(self, e: Exception, model: LlmModel) -> ModelResponseError:
        if isinstance(e, APIStatusError):
            body = e.response.text
            self.logger.warn(
                "Model endpoint returned error status",
                model=model.model,
                status_code=e.status_code,
                body=body[:2000],
            )
            return ModelResponseError(
                message=f"Model endpoint returned HTTP {e.status_code}: {body}",
                provider=model.base_url,
                status_code=e.status_code,
                body=body,
            )
        self.logger.warn("Model request failed", model=model.model, error=f"{type(e).__name__}: {e}")
        return ModelResponseError(
            message=f"Model request failed: {type(e).__name__}: {e}",
            provider=model.base_url,
        )

    async def _send_plain(
        self, client: AsyncOpenAI, model: LlmModel, kwargs: dict[str, Any]
    ) -> RequestResult:
        try:
            raw = await client.chat.completions.with_raw_response.create(**kwargs)
            data = raw.http_response.json()
        except (APIError, httpx.HTTPError, ValueError) as e:
            return RequestResult(error=self._to_error(e, model))

        try:
            calls, message = _decode_completion(data, model)
            usage = TokenUsage.from_dict(data.get("usage"))
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            self.logger.warn("Malformed completion body", model=model.model, error=f"{type(e).__name__}: {e}")
            return RequestResult(
                error=ModelResponseError(
                    message=f"Malformed completion body: {type(e).__name__}: {e}",
                    provider=model.base_url,
                )
            )
        return RequestResult(calls, message, usage, None)

    async def _send_stream(
        self,
        client: AsyncOpenAI,
        model: LlmModel,
        kwargs: dict[str, Any],
        on_receive: EventSink,
    ) -> RequestResult:
        assembler = StreamAssembler(model, on_receive, self.logger)
        done = False
        error: Exception | None = None

        try:
            async with client.chat.completions.with_streaming_response.create(**kwargs) as response:
                async for data in iter_sse_data(response.iter_lines()):
                    if data.strip() == STREAM_DONE:
                        done = True
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        chunk = None
                    if not isinstance(chunk, dict):
                        self.logger.warn("Unparsable stream event", model=model.model, data=data[:500])
                        continue
                    try:
                        await assembler.feed(chunk)
                    except (KeyError, TypeError, AttributeError, ValueError) as e:
                        self.logger.warn(
                            "Malformed stream chunk", model=model.model, error=f"{type(e).__name__}: {e}"
                        )
                        error = ModelResponseError(
                            message=f"Malformed stream chunk: {type(e).__name__}: {e}",
                            provider=model.base_url,
                        )
                        break
        except (APIError, httpx.HTTPError) as e:
            error = self._to_error(e, model)

        calls = await assembler.finish()

        if error is None and not done and not assembler.finished:
            self.logger.warn("Response stream ended before completion", model=model.model)
            error = ModelResponseError(
                message="Response stream ended before completion, possibly a dropped connection",
                provider=model.base_url,
            )

        return RequestResult(calls, assembler.message, assembler.usage, error)

    async def aclose(self) -> None:
        await self.client.close()
