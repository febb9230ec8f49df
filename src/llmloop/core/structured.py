"""Typed results on top of ``LlmEngine``.

``send_and_get_result`` asks for a reply, decodes it with a ``ResultType``
and retries on failure. Transport failures and timeouts are always retried
by resending. A reply that does not decode is handled per ``RetryType``:
resend unchanged, or append the bad reply plus a correction request.
Once the attempt budget (``EngineConfig.retry``) is spent it raises
``AiRetryFailedError`` listing every attempt's cause. Cancellation of the
calling task always propagates.
"""

import asyncio
import json
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

import yaml
from pydantic import TypeAdapter

from llmloop.core.config import LlmModel
from llmloop.core.engine import LlmEngine
from llmloop.core.exceptions import (
    AiResponseFormatError,
    AiRetryFailedError,
    LlmLoopException,
    UnknownAiResponseError,
)
from llmloop.core.messages import ChatMessage, ChatMessages, TokenUsage, USER
from llmloop.core.plugins import LlmLoopPlugin
from llmloop.core.results import (
    AiResult,
    Cancelled,
    ServiceError,
    Success,
    TooManyRequests,
    UnknownError,
)
from llmloop.tools.base import AiToolInfo

R = TypeVar("R")
R_co = TypeVar("R_co", covariant=True)

CORRECTION_PROMPT = (
    "The format of your reply is invalid: {error}\n\n"
    "Output the result again, fixing the error. Output only the object, without any "
    "extra text or explanation."
)


class ResultType(Protocol[R_co]):
    def get_value(self, text: str) -> R_co: ...


class JsonResultType(Generic[R]):
    def __init__(self, tp: Any) -> None:  # noqa: ANN401
        self._adapter: TypeAdapter[R] = TypeAdapter(tp)

    def get_value(self, text: str) -> R:
        return self._adapter.validate_json(text)


class YamlResultType(Generic[R]):
    def __init__(self, tp: Any) -> None:  # noqa: ANN401
        self._adapter: TypeAdapter[R] = TypeAdapter(tp)

    def get_value(self, text: str) -> R:
        return self._adapter.validate_python(yaml.safe_load(text))


class WrappedResultType(Generic[R]):
    """Scalar result sent as ``{"result": <value>}``."""

    def __init__(self, tp: Any) -> None:  # noqa: ANN401
        self._adapter: TypeAdapter[R] = TypeAdapter(tp)

    def get_value(self, text: str) -> R:
        data = json.loads(text)
        if not isinstance(data, dict) or "result" not in data:
            raise ValueError('expected an object with a "result" field')
        return self._adapter.validate_python(data["result"])


def json_result_type(tp: Any) -> ResultType[Any]:  # noqa: ANN401
    if tp in (str, bool, int, float):
        return WrappedResultType(tp)
    return JsonResultType(tp)


def yaml_result_type(tp: Any) -> ResultType[Any]:  # noqa: ANN401
    return YamlResultType(tp)


class RetryType(Enum):
    RESEND = "resend"
    ADD_MESSAGE = "add_message"


def strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```") and text.endswith("```") and "\n" in text:
        return text.split("\n", 1)[1].rsplit("```", 1)[0].strip()
    return text


def _failure_of(result: AiResult, timed_out: bool, timeout_s: float) -> BaseException | None:
    if isinstance(result, Success):
        return None
    if isinstance(result, Cancelled):
        if timed_out:
            return TimeoutError(f"Request timed out after {timeout_s}s")
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise asyncio.CancelledError()
        return RuntimeError("Request was cancelled but the calling task is still active")
    if isinstance(result, TooManyRequests):
        return RuntimeError("Model endpoint rate limit exceeded")
    if isinstance(result, ServiceError):
        return RuntimeError("Model endpoint answered a service error")
    if isinstance(result, UnknownError) and result.error is not None:
        return result.error
    return RuntimeError(f"Unexpected result: {type(result).__name__}")


async def _request_reply(
    engine: LlmEngine,
    model: LlmModel,
    messages: ChatMessages,
    errors: list[LlmLoopException],
    kwargs: dict[str, Any],
) -> tuple[ChatMessage | None, TokenUsage]:
    """One time-boxed attempt; returns the single reply or records why there is none."""
    timeout_s = engine.config.timeout_s
    try:
        async with asyncio.timeout(timeout_s) as deadline:
            result = await engine.send(model, messages, stream=False, **kwargs)
    except TimeoutError as e:
        errors.append(UnknownAiResponseError(f"Request timed out after {timeout_s}s", cause=e))
        engine.logger.warn("Structured request timed out", model=model.model, timeout_s=timeout_s)
        return None, TokenUsage()

    failure = _failure_of(result, deadline.expired(), timeout_s)
    if failure is not None:
        errors.append(UnknownAiResponseError(f"{type(failure).__name__}: {failure}", cause=failure))
        engine.logger.info("Structured request failed", model=model.model, error=str(failure))
        return None, result.usage

    if len(result.messages) != 1:
        errors.append(
            AiResponseFormatError(
                f"Model returned {len(result.messages)} messages instead of one",
                response=result.messages,
            )
        )
        return None, result.usage

    return result.messages[0], result.usage


def _as_messages(messages: str | Iterable[ChatMessage]) -> ChatMessages:
    if isinstance(messages, str):
        return ChatMessages.of(USER, messages)
    return ChatMessages(messages)


def _exhausted(errors: list[LlmLoopException], usage: TokenUsage) -> AiRetryFailedError:
    error = AiRetryFailedError.of(list(errors))
    error.metadata["usage"] = usage.to_dict()
    return error


async def send_and_get_result(
    engine: LlmEngine,
    model: LlmModel,
    messages: str | Iterable[ChatMessage],
    result_type: ResultType[R],
    retry_type: RetryType = RetryType.RESEND,
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: list[str] | None = None,
    tools: Sequence[AiToolInfo] = (),
    plugins: Sequence[LlmLoopPlugin] = (),
) -> tuple[R, TokenUsage]:
    """Request a reply and decode it.

    Args:
        engine: Engine whose config supplies the attempt budget and timeout
        model: Target model
        messages: Conversation, or a single user prompt
        result_type: Decoder for the reply text (code fences are stripped first)
        retry_type: What to do when the reply does not decode

    Returns:
        (decoded value, token usage over all attempts)

    Raises:
        AiRetryFailedError: Every attempt failed; ``errors`` holds each cause
        asyncio.CancelledError: The calling task was cancelled
    """
    kwargs = {
        "temperature": temperature,
        "top_p": top_p,
        "frequency_penalty": frequency_penalty,
        "presence_penalty": presence_penalty,
        "stop": stop,
        "tools": tools,
        "plugins": plugins,
    }
    conversation = _as_messages(messages)
    usage = TokenUsage()
    errors: list[LlmLoopException] = []

    for _ in range(engine.config.retry):
        reply, used = await _request_reply(engine, model, conversation, errors, kwargs)
        usage = usage + used
        if reply is None:
            continue

        try:
            return result_type.get_value(strip_code_fence(reply.content.to_text())), usage
        except Exception as e:
            errors.append(
                AiResponseFormatError(f"Reply did not decode: {e}", response=ChatMessages([reply]))
            )
            engine.logger.info("Structured reply rejected", model=model.model, error=str(e))
            if retry_type is RetryType.ADD_MESSAGE:
                conversation = conversation + [reply, ChatMessage(USER, CORRECTION_PROMPT.format(error=e))]

    raise _exhausted(errors, usage)


async def send_and_get_reply(
    engine: LlmEngine,
    model: LlmModel,
    messages: str | Iterable[ChatMessage],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: list[str] | None = None,
    tools: Sequence[AiToolInfo] = (),
    plugins: Sequence[LlmLoopPlugin] = (),
) -> tuple[str, TokenUsage]:
    """Like ``send_and_get_result`` but returns the trimmed reply text."""
    kwargs = {
        "temperature": temperature,
        "top_p": top_p,
        "frequency_penalty": frequency_penalty,
        "presence_penalty": presence_penalty,
        "stop": stop,
        "tools": tools,
        "plugins": plugins,
    }
    conversation = _as_messages(messages)
    usage = TokenUsage()
    errors: list[LlmLoopException] = []

    for _ in range(engine.config.retry):
        reply, used = await _request_reply(engine, model, conversation, errors, kwargs)
        usage = usage + used
        if reply is not None:
            return reply.content.to_text().strip(), usage

    raise _exhausted(errors, usage)
