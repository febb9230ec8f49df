"""Tests for the model-assisted context compressor."""

import pytest

from llmloop.core.compaction.summarizer import (
    PREVIOUS_BEGIN,
    AiContextCompressor,
    CompressedToolCall,
    CompressedTurn,
    _CompressionResultType,
    from_turns,
    to_turns,
)
from llmloop.core.config import EngineConfig, LlmModel
from llmloop.core.engine import LlmEngine
from llmloop.core.exceptions import ModelResponseError
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import (
    ASSISTANT,
    SYSTEM,
    USER,
    AssistantRole,
    ChatMessage,
    ChatMessages,
    TokenUsage,
    ToolRole,
)
from llmloop.core.tool_protocol import ToolCall
from llmloop.providers.base import RequestResult, Transport

SUMMARY_YAML = """```yaml
- role: user
  content: q1 in short
- role: assistant
  content: the short answer
- role: user
  content: q2
```"""


class FakeTransport(Transport):
    def __init__(self, *results):
        self.results = list(results)
        self.requests = []

    def build_body(self, context, request_messages, stream):
        return {"messages": request_messages}

    async def send_request(self, model, key, body, stream, on_receive):
        self.requests.append(body["messages"])
        return self.results.pop(0)


def reply(text, usage=None):
    return RequestResult(message=ChatMessage(ASSISTANT, text), usage=usage or TokenUsage())


@pytest.fixture
def model():
    return LlmModel(model="small", base_url="http://llm.test/v1", keys=["k"])


@pytest.fixture
def history():
    return ChatMessages(
        [
            ChatMessage(SYSTEM, "sys"),
            ChatMessage(USER, "q1"),
            ChatMessage(ASSISTANT, "a very long answer " * 5),
            ChatMessage(USER, "q2"),
            ChatMessage(ASSISTANT, "a2"),
        ]
    )


def make_compressor(transport, model, retry=2, **kwargs):
    engine = LlmEngine(
        config=EngineConfig(retry=retry), transport=transport, logger=LlmLoopLogger(level="ERROR")
    )
    kwargs.setdefault("compress_length", 10)
    kwargs.setdefault("keep_tail", 1)
    return AiContextCompressor(engine, model, **kwargs)


class TestTurns:
    """Tests for the prompt and reply forms of a conversation."""

    def test_to_turns(self):
        """Test internal roles are skipped and the first tool call is kept."""
        messages = ChatMessages(
            [
                ChatMessage(SYSTEM, "s"),
                ChatMessage(ASSISTANT, "a", tool_calls=(ToolCall("c1", "search", '{"q": 1}'),)),
                ChatMessage(ToolRole("c1", "search"), "r"),
            ]
        )
        assert to_turns(messages) == [
            {"role": "assistant", "content": "a", "toolCall": {"name": "search", "arguments": '{"q": 1}'}},
            {"role": "tool", "content": "r"},
        ]

    def test_from_turns_pairs_calls(self):
        """Test a tool turn answers the preceding call with a fresh shared id."""
        turns = [
            CompressedTurn(role="user", content="u"),
            CompressedTurn(role="assistant", content="a", toolCall=CompressedToolCall(name="t", arguments={"x": 1})),
            CompressedTurn(role="tool", content="r"),
            CompressedTurn(role="system", content="ignored"),
        ]
        messages = from_turns(turns)

        assert len(messages) == 3
        [call] = messages[1].tool_calls
        assert call.name == "t"
        assert call.arguments == '{"x": 1}'
        assert messages[2].role == ToolRole(call.id, "t")

    @pytest.mark.parametrize(
        "turns",
        [
            [CompressedTurn(role="tool", content="orphan")],
            [
                CompressedTurn(role="assistant", toolCall=CompressedToolCall(name="t")),
                CompressedTurn(role="user", content="u"),
            ],
            [CompressedTurn(role="assistant", toolCall=CompressedToolCall(name="t"))],
            [CompressedTurn(role="narrator", content="?")],
        ],
    )
    def test_from_turns_rejects(self, turns):
        """Test broken pairing and unknown roles raise ValueError."""
        with pytest.raises(ValueError):
            from_turns(turns)

    def test_result_type_falls_back_on_last_attempt(self):
        """Test only the final attempt accepts prose as a summary."""
        result_type = _CompressionResultType(attempts=2)
        with pytest.raises(ValueError):
            result_type.get_value("plain prose")

        [message] = result_type.get_value("plain prose")
        assert message.role == SYSTEM
        assert message.content.to_text().startswith(PREVIOUS_BEGIN)
        assert "plain prose" in message.content.to_text()


class TestAiContextCompressor:
    """Tests for AiContextCompressor."""

    def test_split_index(self, model):
        """Test the split never leaves an assistant message last in the prefix or a tool result first in the tail."""
        messages = ChatMessages(
            [
                ChatMessage(USER, "u"),
                ChatMessage(ASSISTANT, "a", tool_calls=(ToolCall("c1", "t", "{}"),)),
                ChatMessage(ToolRole("c1", "t"), "r"),
                ChatMessage(USER, "u2"),
            ]
        )
        assert make_compressor(FakeTransport(), model, keep_tail=1).split_index(messages) == 3
        assert make_compressor(FakeTransport(), model, keep_tail=2).split_index(messages) == 1
        assert make_compressor(FakeTransport(), model, keep_tail=4).split_index(messages) == 0

    @pytest.mark.asyncio
    async def test_should_compress(self, model, history):
        """Test the trigger measures only the compressible middle."""
        assert await make_compressor(FakeTransport(), model).should_compress(history)
        assert not await make_compressor(FakeTransport(), model, compress_length=10_000).should_compress(history)
        assert not await make_compressor(FakeTransport(), model, keep_tail=5).should_compress(history)

    def test_prompt(self, model, history):
        """Test the prompt embeds the transcript, the target and the count."""
        compressor = make_compressor(FakeTransport(), model)
        prompt = compressor.make_prompt(history[1:4])
        assert "a very long answer" in prompt
        assert "these 3 messages" in prompt
        assert "{target}" not in prompt

    @pytest.mark.asyncio
    async def test_compress(self, model, history):
        """Test the middle is replaced by the decoded summary, head and tail kept."""
        transport = FakeTransport(reply(SUMMARY_YAML, TokenUsage(50, 10, 60)))
        result, usage = await make_compressor(transport, model).compress(history)

        assert [m.content.to_text() for m in result] == ["sys", "q1 in short", "the short answer", "q2", "a2"]
        assert usage == TokenUsage(50, 10, 60)
        [prompt] = transport.requests[0]
        assert "a very long answer" in prompt.content.to_text()

    @pytest.mark.asyncio
    async def test_corrective_retry_then_prose(self, model, history):
        """Test a bad reply gets a correction and the final attempt accepts prose."""
        transport = FakeTransport(reply("not: [valid"), reply("just prose"))
        result, _ = await make_compressor(transport, model, retry=2).compress(history)

        assert len(transport.requests[1]) == 3
        assert result[0] == ChatMessage(SYSTEM, "sys")
        assert result[1].role == SYSTEM
        assert "just prose" in result[1].content.to_text()
        assert result[-1] == ChatMessage(ASSISTANT, "a2")

    @pytest.mark.asyncio
    async def test_falls_back_to_jump(self, model, history):
        """Test a failing summarizer model degrades to jump compression."""
        failed = RequestResult(error=ModelResponseError(message="bad request", status_code=400))
        transport = FakeTransport(*([failed] * 4))
        result, usage = await make_compressor(transport, model, retry=2, compressing_rate=0.5).compress(history)

        assert [m.content.to_text() for m in result] == ["sys", "q1", "a2"]
        assert usage == TokenUsage()

    @pytest.mark.asyncio
    async def test_nothing_to_compress(self, model, history):
        """Test a history shorter than the tail is returned unchanged."""
        transport = FakeTransport()
        result, _ = await make_compressor(transport, model, keep_tail=10).compress(history)
        assert result == history
        assert transport.requests == []

    @pytest.mark.parametrize("kwargs", [{"keep_tail": -1}, {"compressing_rate": 0}, {"compressing_rate": 1.5}])
    def test_invalid_arguments(self, model, kwargs):
        """Test invalid parameters are rejected."""
        with pytest.raises(ValueError):
            make_compressor(FakeTransport(), model, **kwargs)

    def test_result_is_assistant_free_prefix(self, model, history):
        """Test the chosen prefix ends on a user turn."""
        compressor = make_compressor(FakeTransport(), model)
        split = compressor.split_index(history)
        assert not isinstance(history[split - 1].role, AssistantRole)
