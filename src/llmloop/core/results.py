"""Outcome of one engine invocation.

Every variant carries the messages and usage produced before the terminal
condition, so partial progress is never lost.
"""

from dataclasses import dataclass, field

from llmloop.core.messages import ChatMessages, TokenUsage


@dataclass(frozen=True)
class AiResult:
    messages: ChatMessages = field(default_factory=ChatMessages)
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def is_success(self) -> bool:
        return isinstance(self, Success)


@dataclass(frozen=True)
class Success(AiResult):
    pass


@dataclass(frozen=True)
class TooManyRequests(AiResult):
    """Endpoint answered HTTP 429."""


@dataclass(frozen=True)
class ServiceError(AiResult):
    """Endpoint answered HTTP 500, 502 or 504."""


@dataclass(frozen=True)
class Cancelled(AiResult):
    pass


@dataclass(frozen=True)
class UnknownError(AiResult):
    error: BaseException | None = None
