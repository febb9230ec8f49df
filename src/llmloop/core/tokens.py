"""Token estimation with tiktoken."""

import tiktoken

from llmloop.core.messages import ChatMessage, ChatMessages

FALLBACK_ENCODING = "cl100k_base"


class TokenCounter:
    """Counts tokens using tiktoken, caching one encoding per model."""

    def __init__(self) -> None:
        self._encoding_cache: dict[str, tiktoken.Encoding] = {}

    def _get_encoding(self, model: str) -> tiktoken.Encoding:
        if model not in self._encoding_cache:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                # Non-OpenAI model names are common behind compatible endpoints
                encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
            self._encoding_cache[model] = encoding
        return self._encoding_cache[model]

    def count_text(self, text: str, model: str) -> int:
        """Count tokens in text string.

        Args:
            text: Text to count tokens for
            model: Model name for encoding selection

        Returns:
            Number of tokens in the text
        """
        if not text:
            return 0

        encoding = self._get_encoding(model)
        return len(encoding.encode(text, disallowed_special=()))

    def count_message(self, message: ChatMessage, model: str) -> int:
        """Tokens for one message including formatting overhead.

        Internal roles are never sent and count as zero.
        """
        if message.role.is_internal:
            return 0

        # 3 tokens per message for role/content framing
        total = 3 + self.count_text(message.role.wire_name, model)
        total += self.count_text(message.content.to_text(), model)
        total += self.count_text(message.reasoning_content.to_text(), model)

        for call in message.tool_calls:
            total += self.count_text(call.name, model)
            total += self.count_text(call.arguments, model)
            total += 5

        return total

    def count_messages(self, messages: ChatMessages, model: str) -> int:
        """Count tokens in a conversation.

        Args:
            messages: Messages to count
            model: Model name for encoding selection

        Returns:
            Total tokens including conversation-level overhead
        """
        if not messages:
            return 0
        return sum(self.count_message(m, model) for m in messages) + 3
