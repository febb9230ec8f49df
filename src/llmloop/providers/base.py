"""Transport interface consumed by the engine.

To add a transport for a different wire format:
1. Subclass ``Transport``
2. Implement ``build_body`` for the wire format
3. Implement ``send_request`` so that it never raises, except for
   ``asyncio.CancelledError``
4. Report failures through ``RequestResult.error`` as ``ModelResponseError``
   with the HTTP status when there is one
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from llmloop.core.config import LlmModel
from llmloop.core.events import EventSink
from llmloop.core.messages import ASSISTANT, ChatMessage, ChatMessages, TokenUsage

if TYPE_CHECKING:
    from llmloop.core.plugins import LoopContext


@dataclass
class RequestResult:
    """One assembled response.

    Mutable on purpose: ``AfterLlmResponse`` hooks may rewrite any field
    before the engine consumes it.

    Attributes:
        tool_calls: call id -> (tool name, raw arguments)
        message: The assembled assistant message
        usage: Token usage reported by the endpoint
        error: Transport failure, if any; partial output is kept alongside
    """

    tool_calls: dict[str, tuple[str, str]] = field(default_factory=dict)
    message: ChatMessage = field(default_factory=lambda: ChatMessage(ASSISTANT))
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: BaseException | None = None


class Transport(ABC):
    """Sends one request and assembles one assistant message."""

    @abstractmethod
    def build_body(
        self, context: "LoopContext", request_messages: ChatMessages, stream: bool
    ) -> dict[str, Any]:
        """Serialize the request view, tool schemas and tunables for this wire format."""
        raise NotImplementedError

    @abstractmethod
    async def send_request(
        self,
        model: LlmModel,
        key: str,
        body: dict[str, Any],
        stream: bool,
        on_receive: EventSink,
    ) -> RequestResult:
        """Issue a single HTTP call.

        Args:
            model: Target model (endpoint, capabilities)
            key: Bearer key for this attempt
            body: Complete request body, already serialized to wire shape
            stream: Use the server-sent-event path
            on_receive: Sink for content slices as they arrive

        Returns:
            RequestResult; failures are reported in ``error``
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release pooled connections."""
