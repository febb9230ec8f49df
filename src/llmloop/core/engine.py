"""The request/tool-call loop.

``LlmEngine.send`` drives rounds of "request, run requested tools, request
again" until the model stops asking for tools, and always returns an
``AiResult``; it never raises to its caller.
"""

import asyncio
import random
from collections.abc import Iterable, Sequence

from llmloop.core.config import EngineConfig, LlmModel
from llmloop.core.events import EventSink, discard
from llmloop.core.exceptions import (
    RATE_LIMIT_STATUS,
    SERVICE_ERROR_STATUSES,
    LlmLoopException,
    ModelResponseError,
    UnknownAiResponseError,
    fold_errors,
    format_error_for_log,
    status_code_of,
)
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import ChatMessage, ChatMessages
from llmloop.core.plugins import (
    BeforeRequestContext,
    LlmLoopPlugin,
    LoopContext,
    run_after_response,
    run_before_loop,
    run_before_request,
)
from llmloop.core.results import (
    AiResult,
    Cancelled,
    ServiceError,
    Success,
    TooManyRequests,
    UnknownError,
)
from llmloop.providers.base import RequestResult, Transport
from llmloop.providers.openai_compatible import OpenAICompatibleTransport
from llmloop.tools.base import AiToolInfo
from llmloop.tools.invoker import ToolInvoker


class ModelSemaphores:
    """One admission semaphore per model endpoint, sized by its max concurrency."""

    def __init__(self) -> None:
        self._semaphores: dict[tuple[str, str], asyncio.Semaphore] = {}

    def get(self, model: LlmModel) -> asyncio.Semaphore:
        key = (model.base_url, model.model)
        semaphore = self._semaphores.get(key)
        if semaphore is None:
            semaphore = asyncio.Semaphore(model.max_concurrency)
            self._semaphores[key] = semaphore
        return semaphore


class LlmEngine:
    """Owns the transport, the per-model semaphores and the tool invoker.

    Create one per process (or per test) and share it between callers; the
    semaphores only limit concurrency among calls made through the same
    engine.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        transport: Transport | None = None,
        logger: LlmLoopLogger | None = None,
        semaphores: ModelSemaphores | None = None,
        max_rounds: int | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            config: Retry budget, backoff and timeouts
            transport: Wire transport (default: OpenAI-compatible)
            logger: Structured logger shared with the default transport and invoker
            semaphores: Admission control, shareable between engines
            max_rounds: Optional cap on request rounds per call
        """
        self.config = config or EngineConfig()
        self.logger = logger or LlmLoopLogger()
        self._owns_transport = transport is None
        self.transport = transport or OpenAICompatibleTransport(logger=self.logger)
        self.semaphores = semaphores or ModelSemaphores()
        self.invoker = ToolInvoker(self.logger)
        self.max_rounds = max_rounds

    async def __aenter__(self) -> "LlmEngine":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the transport if this engine created it; a passed-in transport stays open."""
        if self._owns_transport:
            await self.transport.aclose()

    async def send(
        self,
        model: LlmModel,
        messages: Iterable[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        frequency_penalty: float | None = None,
        presence_penalty: float | None = None,
        stop: list[str] | None = None,
        tools: Sequence[AiToolInfo] = (),
        plugins: Sequence[LlmLoopPlugin] = (),
        stream: bool | None = None,
        on_receive: EventSink = discard,
    ) -> AiResult:
        """Run the loop to completion.

        Returns:
            ``Success`` or one of the failure variants, always carrying the
            messages and usage produced so far. Only new messages are
            returned; merging them into stored history is the caller's job.
        """
        stream = self.config.default_stream if stream is None else stream
        context = LoopContext(
            model=model,
            messages=ChatMessages(messages),
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            frequency_penalty=frequency_penalty,
            presence_penalty=presence_penalty,
            stop=stop,
            tools=list(tools),
            on_receive=on_receive,
        )

        try:
            async with self.semaphores.get(model):
                await self._loop(context, plugins, stream)
        except asyncio.CancelledError:
            self.logger.info("Engine call cancelled", model=model.model)
            return Cancelled(ChatMessages(context.response_messages), context.usage)
        except Exception as e:
            return self._to_result(e, context)

        return Success(ChatMessages(context.response_messages), context.usage)

    def _to_result(self, error: Exception, context: LoopContext) -> AiResult:
        partial = ChatMessages(context.response_messages)
        log_data = (
            format_error_for_log(error)
            if isinstance(error, LlmLoopException)
            else {"error_type": type(error).__name__, "message": str(error)}
        )
        self.logger.error("Engine call failed", model=context.model.model, **log_data)

        status = status_code_of(error)
        if status == RATE_LIMIT_STATUS:
            return TooManyRequests(partial, context.usage)
        if status in SERVICE_ERROR_STATUSES:
            return ServiceError(partial, context.usage)
        return UnknownError(partial, context.usage, error)

    async def _loop(
        self, context: LoopContext, plugins: Sequence[LlmLoopPlugin], stream: bool
    ) -> None:
        await run_before_loop(plugins, context)

        round_no = 0
        while True:
            round_no += 1
            if self.max_rounds is not None and round_no > self.max_rounds:
                raise ModelResponseError(
                    message=f"Stopped after {self.max_rounds} rounds with tool calls still pending",
                    provider=context.model.base_url,
                )

            request = BeforeRequestContext(context.all_messages)
            await run_before_request(plugins, context, request)

            body = self.transport.build_body(context, request.request_messages, stream)
            with self.logger.operation(
                "request",
                model=context.model.model,
                round=round_no,
                request_messages=len(request.request_messages),
            ):
                result = await self._request_with_retry(context.model, body, stream, context.on_receive)

            await run_after_response(plugins, context, result)

            if not result.message.is_blank():
                context.response_messages.append(result.message)
            context.add_token_usage(result.usage)

            if result.error is not None:
                raise result.error

            if not result.tool_calls:
                self.logger.debug("Loop finished", model=context.model.model, rounds=round_no)
                return

            tool_messages = await self.invoker.run(
                result.tool_calls, context.tools, context.on_receive, context.model.model
            )
            context.response_messages.extend(tool_messages)

    async def _request_with_retry(
        self, model: LlmModel, body: dict, stream: bool, on_receive: EventSink
    ) -> RequestResult:
        """Up to ``config.retry`` attempts; the first non-blank message wins.

        Cancellation is never caught here, so a cancel delivered during any
        attempt or backoff ends the loop instead of triggering a retry.
        """
        errors: list[BaseException] = []
        for attempt in range(1, self.config.retry + 1):
            key = random.choice(model.keys)
            result = await self.transport.send_request(model, key, body, stream, on_receive)

            if result.error is None and result.message.is_blank():
                result.error = UnknownAiResponseError("Model returned an empty response")

            if result.error is not None:
                errors.append(result.error)
                self.logger.warn(
                    "Request attempt failed",
                    model=model.model,
                    attempt=attempt,
                    retry=self.config.retry,
                    error=str(result.error),
                )

            if not result.message.is_blank():
                # a partial message keeps only this attempt's own failure
                return result

            if attempt < self.config.retry and self.config.retry_backoff_s > 0:
                await asyncio.sleep(self.config.retry_backoff_s * 2 ** (attempt - 1))

        return RequestResult(error=fold_errors(errors))
