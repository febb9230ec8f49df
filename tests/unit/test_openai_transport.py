"""Tests for the OpenAI-compatible transport and stream assembly."""

import json

import httpx
import pytest

from llmloop.core.config import LlmModel
from llmloop.core.events import EventBus
from llmloop.core.exceptions import ModelResponseError
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import (
    ASSISTANT,
    SYSTEM,
    USER,
    ChatMessage,
    ChatMessages,
    Content,
    ImageNode,
    MarkingRole,
    TextNode,
    TokenUsage,
    ToolRole,
)
from llmloop.core.tool_protocol import ToolCall
from llmloop.providers.openai_compatible import (
    OpenAICompatibleTransport,
    StreamAssembler,
    build_request_body,
    iter_sse_data,
    to_request_messages,
)
from llmloop.tools.base import AiToolInfo, ToolResult

BASE_URL = "http://llm.test/v1"


def make_model(**kwargs):
    return LlmModel(model="test-model", base_url=BASE_URL, keys=["sk-test"], **kwargs)


def sse(*events):
    """Encode JSON events (or raw strings) as an SSE body."""
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def delta_chunk(content=None, reasoning=None, tool_calls=None, finish_reason=None, usage=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    chunk = {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def make_transport(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleTransport(http_client=http_client, logger=LlmLoopLogger(level="ERROR"))


def echo_tool():
    async def invoke(parm, emit):
        return ToolResult.text("ok")

    return AiToolInfo(
        name="echo",
        description="Echo the input",
        invoke=invoke,
        parameters={"type": "object", "properties": {"x": {"type": "integer"}}},
    )


async def collect(sink_events):
    return [e for e in sink_events.history if e.type == "message"]


class TestRequestBody:
    """Tests for request serialization."""

    def test_basic_body(self):
        """Test required fields and omitted unset tunables."""
        body = build_request_body(make_model(), ChatMessages.of(USER, "hi"), stream=False)
        assert body == {
            "model": "test-model",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": False,
        }

    def test_tunables_and_custom_params(self):
        """Test tunables are included and custom params merge last."""
        model = make_model(custom_request_params={"temperature": 0.1, "top_k": 5}, thinking_budget=64)
        body = build_request_body(
            model, ChatMessages.of(USER, "hi"), stream=True, temperature=0.9, max_tokens=10, stop=["\n"]
        )
        assert body["temperature"] == 0.1
        assert body["top_k"] == 5
        assert body["max_tokens"] == 10
        assert body["stop"] == ["\n"]
        assert body["thinking_budget"] == 64

    def test_native_tools(self):
        """Test native tool schemas go into tools[]."""
        body = build_request_body(make_model(), ChatMessages.of(USER, "hi"), False, tools=[echo_tool()])
        assert body["tools"][0]["function"]["name"] == "echo"
        assert body["messages"][0]["role"] == "user"

    def test_tagged_tools_use_prompt(self):
        """Test models without native calls get a system prompt instead of tools[]."""
        model = make_model(supports_tool_calls=False)
        body = build_request_body(model, ChatMessages.of(USER, "hi"), False, tools=[echo_tool()])
        assert "tools" not in body
        assert body["messages"][0]["role"] == "system"
        assert "<|tool_call|>" in body["messages"][0]["content"]

    def test_internal_roles_dropped(self):
        """Test marking messages never reach the wire."""
        messages = ChatMessages([ChatMessage(MarkingRole("x"), "[]"), ChatMessage(USER, "hi")])
        assert to_request_messages(messages, make_model()) == [{"role": "user", "content": "hi"}]

    def test_tool_fields(self):
        """Test tool call ids and reasoning are serialized."""
        messages = ChatMessages(
            [
                ChatMessage(ASSISTANT, "", "think", (ToolCall("c1", "echo", "{}"),)),
                ChatMessage(ToolRole("c1", "echo"), "done"),
            ]
        )
        wire = to_request_messages(messages, make_model())
        assert wire[0]["reasoning_content"] == "think"
        assert wire[0]["tool_calls"][0]["id"] == "c1"
        assert wire[1] == {"role": "tool", "content": "done", "tool_call_id": "c1"}

    def test_escaped_history_for_tagged_models(self):
        """Test tool history is rewritten into tags for non-native models."""
        messages = ChatMessages(
            [
                ChatMessage(ASSISTANT, "", tool_calls=(ToolCall("c1", "echo", "{}"),)),
                ChatMessage(ToolRole("c1", "echo"), "done"),
            ]
        )
        wire = to_request_messages(messages, make_model(supports_tool_calls=False))
        assert "tool_calls" not in wire[0]
        assert "<|tool_name|>echo" in wire[0]["content"]
        assert wire[1]["role"] == "user"

    def test_images_only_for_imageable_models(self):
        """Test image parts are flattened to text unless the model takes images."""
        messages = ChatMessages([ChatMessage(USER, Content([TextNode("see "), ImageNode("http://img")]))])
        assert to_request_messages(messages, make_model())[0]["content"] == "see http://img"
        parts = to_request_messages(messages, make_model(imageable=True))[0]["content"]
        assert parts[1] == {"type": "image_url", "image_url": {"url": "http://img"}}

    def test_system_passthrough(self):
        """Test system messages keep their role."""
        wire = to_request_messages(ChatMessages.of(SYSTEM, "rules"), make_model())
        assert wire == [{"role": "system", "content": "rules"}]


class TestSseParsing:
    """Tests for iter_sse_data."""

    @pytest.mark.asyncio
    async def test_events_and_comments(self):
        """Test data lines are grouped by blank lines and comments skipped."""

        async def lines():
            for line in [": keep-alive", "data: one", "", "event: x", "data: a", "data: b", "", "data:[DONE]"]:
                yield line

        assert [d async for d in iter_sse_data(lines())] == ["one", "a\nb", "[DONE]"]


class TestStreamAssembler:
    """Tests for StreamAssembler."""

    @pytest.fixture
    def bus(self):
        return EventBus()

    @pytest.mark.asyncio
    async def test_content_and_reasoning(self, bus):
        """Test reasoning and content in the same delta are both kept."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(content="Hi", reasoning="hmm"))
        await assembler.feed(delta_chunk(content=" there", finish_reason="stop"))
        calls = await assembler.finish()

        assert calls == {}
        assert assembler.message.content.to_text() == "Hi there"
        assert assembler.message.reasoning_content.to_text() == "hmm"
        assert assembler.finished
        assert len(await collect(bus)) == 3

    @pytest.mark.asyncio
    async def test_usage_takes_highest_total(self, bus):
        """Test cumulative usage keeps the largest total seen."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(content="a", usage={"prompt_tokens": 5, "total_tokens": 6}))
        await assembler.feed(delta_chunk(content="b", usage={"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8}))
        await assembler.feed(delta_chunk(usage={"total_tokens": 7}))
        assert assembler.usage == TokenUsage(5, 3, 8)

    @pytest.mark.asyncio
    async def test_native_fragments_concatenate(self, bus):
        """Test indexed fragments join in arrival order."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "echo", "arguments": '{"x"'}}]))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 0, "function": {"arguments": ":1}"}}]))
        calls = await assembler.finish()

        assert calls == {"c1": ("echo", '{"x":1}')}
        assert assembler.message.tool_calls == (ToolCall("c1", "echo", '{"x":1}'),)

    @pytest.mark.asyncio
    async def test_missing_index_uses_last_seen(self, bus):
        """Test a fragment without index continues the last call, including index 0."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "echo", "arguments": "{"}}]))
        await assembler.feed(delta_chunk(tool_calls=[{"function": {"arguments": "}"}}]))
        assert await assembler.finish() == {"c1": ("echo", "{}")}

    @pytest.mark.asyncio
    async def test_interleaved_without_index_is_misattributed(self, bus):
        """Test interleaved index-less fragments attach to the last index seen.

        Providers that interleave two calls without indices are not
        supported; this documents what happens.
        """
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 0, "id": "a", "function": {"name": "x", "arguments": "{"}}]))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 1, "id": "b", "function": {"name": "y", "arguments": "{"}}]))
        await assembler.feed(delta_chunk(tool_calls=[{"function": {"arguments": '"for_a":1}'}}]))
        await assembler.feed(delta_chunk(tool_calls=[{"function": {"arguments": "}"}}]))
        calls = await assembler.finish()

        assert calls["a"] == ("x", "{")
        assert calls["b"] == ("y", '{"for_a":1}}')

    @pytest.mark.asyncio
    async def test_fragment_before_any_index_dropped(self, bus):
        """Test an index-less fragment with nothing to attach to is dropped."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(tool_calls=[{"function": {"name": "x", "arguments": "{}"}}]))
        assert await assembler.finish() == {}

    @pytest.mark.asyncio
    async def test_missing_ids_are_synthesized(self, bus):
        """Test calls without provider ids get call-<loop>-<n> ids."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(tool_calls=[{"index": 0, "function": {"name": "x", "arguments": "{}"}}]))
        calls = await assembler.finish()
        assert list(calls) == [f"call-{assembler.loop_id}-0"]

    @pytest.mark.asyncio
    async def test_tagged_calls_from_content(self, bus):
        """Test tag-protocol calls are extracted and kept out of the text."""
        assembler = StreamAssembler(make_model(supports_tool_calls=False), bus, LlmLoopLogger(level="ERROR"))
        payload = 'ok <|tool_call|><|tool_name|>echo<|tool_name|><|tool_args|>{"x":1}<|tool_args|><|tool_call|>'
        for piece in (payload[:10], payload[10:33], payload[33:]):
            await assembler.feed(delta_chunk(content=piece))
        calls = await assembler.finish()

        assert list(calls.values()) == [("echo", '{"x":1}')]
        assert assembler.message.content.to_text() == "ok "
        assert all("<|" not in e.data["content"] for e in await collect(bus))

    @pytest.mark.asyncio
    async def test_tags_ignored_for_native_models(self, bus):
        """Test native models get tag text verbatim."""
        assembler = StreamAssembler(make_model(), bus, LlmLoopLogger(level="ERROR"))
        await assembler.feed(delta_chunk(content="<|tool_call|>x<|tool_call|>"))
        assert await assembler.finish() == {}
        assert assembler.message.content.to_text() == "<|tool_call|>x<|tool_call|>"


class TestTransport:
    """Tests for OpenAICompatibleTransport over a mocked HTTP layer."""

    @pytest.mark.asyncio
    async def test_plain_request(self):
        """Test a non-streaming reply becomes one assistant message."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
                },
            )

        transport = make_transport(handler)
        model = make_model()
        body = build_request_body(model, ChatMessages.of(USER, "hi"), stream=False)
        result = await transport.send_request(model, "sk-abc", body, False, EventBus())

        assert result.error is None
        assert result.message.content.to_text() == "Hello"
        assert result.usage == TokenUsage(3, 1, 4)
        assert seen["url"] == f"{BASE_URL}/chat/completions"
        assert seen["auth"] == "Bearer sk-abc"
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_plain_tool_calls(self):
        """Test native tool calls land in both the map and the message."""

        def handler(request):
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "index": 0,
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": "{}"}}
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                },
            )

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), False), False, EventBus()
        )
        assert result.tool_calls == {"c1": ("echo", "{}")}
        assert result.message.tool_calls == (ToolCall("c1", "echo", "{}"),)

    @pytest.mark.asyncio
    async def test_extra_params_reach_the_wire(self):
        """Test non-SDK body fields are still sent."""
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"index": 0, "message": {"content": "x"}}]})

        model = make_model(custom_request_params={"top_k": 3})
        body = build_request_body(model, ChatMessages.of(USER, "hi"), False)
        await make_transport(handler).send_request(model, "k", body, False, EventBus())
        assert seen["body"]["top_k"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 504, 400])
    async def test_error_status(self, status):
        """Test HTTP errors are returned with status and body, not raised."""

        def handler(request):
            return httpx.Response(status, json={"error": {"message": "nope"}})

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), False), False, EventBus()
        )
        assert isinstance(result.error, ModelResponseError)
        assert result.error.status_code == status
        assert "nope" in result.error.body
        assert result.message.is_blank()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test network failures are captured."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), False), False, EventBus()
        )
        assert isinstance(result.error, ModelResponseError)
        assert result.error.status_code is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"choices": None},
            {"choices": ["not a choice"]},
            {"choices": [{"message": {"content": [{"type": "text", "text": "x"}]}}]},
            {"usage": {"total_tokens": 1}},
            ["choices"],
        ],
    )
    async def test_malformed_body(self, payload):
        """Test a 200 reply with an unusable body is returned as an error, not raised."""

        def handler(request):
            return httpx.Response(200, json=payload)

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), False), False, EventBus()
        )
        assert isinstance(result.error, ModelResponseError)
        assert "Malformed completion body" in str(result.error)
        assert result.message.is_blank()
        assert result.tool_calls == {}

    @pytest.mark.asyncio
    async def test_plain_tagged_calls(self):
        """Test tagged calls are split out of a non-streamed reply."""
        content = 'Sure.<|tool_call|><|tool_name|>echo<|tool_name|><|tool_args|>{"x":1}<|tool_args|><|tool_call|>'

        def handler(request):
            return httpx.Response(200, json={"choices": [{"index": 0, "message": {"content": content}}]})

        model = make_model(supports_tool_calls=False)
        body = build_request_body(model, ChatMessages.of(USER, "hi"), False, tools=[echo_tool()])
        result = await make_transport(handler).send_request(model, "k", body, False, EventBus())

        assert result.error is None
        assert list(result.tool_calls.values()) == [("echo", '{"x":1}')]
        assert result.message.content.to_text() == "Sure."
        assert [c.name for c in result.message.tool_calls] == ["echo"]

    @pytest.mark.asyncio
    async def test_streaming_request(self):
        """Test SSE deltas assemble into one message and events."""

        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=sse(
                    delta_chunk(reasoning="think"),
                    delta_chunk(content="Hel"),
                    "not json",
                    delta_chunk(content="lo", finish_reason="stop", usage={"total_tokens": 9}),
                    "[DONE]",
                ),
            )

        bus = EventBus()
        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), True), True, bus
        )

        assert result.error is None
        assert result.message.content.to_text() == "Hello"
        assert result.message.reasoning_content.to_text() == "think"
        assert result.usage.total_tokens == 9
        assert [e.data["content"] for e in bus.history] == ["", "Hel", "lo"]

    @pytest.mark.asyncio
    async def test_streaming_scenario_b(self):
        """Test a tag-protocol call split over three SSE events."""
        payload = '<|tool_call|><|tool_name|>echo<|tool_name|><|tool_args|>{"x":1}<|tool_args|><|tool_call|>'

        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=sse(
                    delta_chunk(content=payload[:5]),
                    delta_chunk(content=payload[5:51]),
                    delta_chunk(content=payload[51:], finish_reason="stop"),
                    "[DONE]",
                ),
            )

        model = make_model(supports_tool_calls=False)
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), True), True, EventBus()
        )
        assert list(result.tool_calls.values()) == [("echo", '{"x":1}')]

    @pytest.mark.asyncio
    async def test_stream_cut_short(self):
        """Test a stream without [DONE] or finish_reason reports an error and keeps partial text."""

        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=sse(delta_chunk(content="partial")),
            )

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), True), True, EventBus()
        )
        assert isinstance(result.error, ModelResponseError)
        assert "before completion" in str(result.error)
        assert result.message.content.to_text() == "partial"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad_chunk",
        [
            {"choices": ["not a choice"]},
            {"choices": [{"delta": {"content": ["x"]}}]},
            {"choices": [{"delta": {"tool_calls": ["x"]}}]},
        ],
    )
    async def test_malformed_stream_chunk(self, bad_chunk):
        """Test a structurally broken chunk ends the stream with an error and keeps earlier text."""

        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=sse(delta_chunk(content="kept"), bad_chunk, delta_chunk(content="lost", finish_reason="stop")),
            )

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), True), True, EventBus()
        )
        assert isinstance(result.error, ModelResponseError)
        assert "Malformed stream chunk" in str(result.error)
        assert result.message.content.to_text() == "kept"

    @pytest.mark.asyncio
    async def test_stream_error_status(self):
        """Test a non-2xx streaming response surfaces status and body."""

        def handler(request):
            return httpx.Response(503, text="overloaded")

        model = make_model()
        result = await make_transport(handler).send_request(
            model, "k", build_request_body(model, ChatMessages.of(USER, "hi"), True), True, EventBus()
        )
        assert result.error.status_code == 503
        assert result.error.body == "overloaded"
