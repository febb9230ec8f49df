"""Context compression strategies.

Compressors bound the length of a conversation before each request. Apply
one to the engine with ``compressor.as_plugin()``.
"""

from typing import Any

from llmloop.core.compaction.base import (
    MARKING_TYPE,
    ContextCompressionPlugin,
    ContextCompressor,
    expand_markers,
)
from llmloop.core.compaction.strategies import (
    JumpContextCompressor,
    TailContextCompressor,
    TokenBudgetCompressor,
)
from llmloop.core.compaction.summarizer import AiContextCompressor

_COMPRESSOR_REGISTRY: dict[str, type[ContextCompressor]] = {}

_BUILT_IN_COMPRESSORS: dict[str, type[ContextCompressor]] = {
    "jump": JumpContextCompressor,
    "tail": TailContextCompressor,
    "token_budget": TokenBudgetCompressor,
    "ai_summary": AiContextCompressor,
}


def register_compressor(name: str, compressor_class: type[ContextCompressor]) -> None:
    """Register a compressor class under a name.

    Raises:
        ValueError: If the name is empty or taken, or the class is not a ContextCompressor
    """
    if not name:
        raise ValueError("Compressor name cannot be empty")

    if not isinstance(compressor_class, type) or not issubclass(compressor_class, ContextCompressor):
        raise ValueError(
            f"Compressor class must inherit from ContextCompressor, got {compressor_class}"
        )

    if name in _BUILT_IN_COMPRESSORS or name in _COMPRESSOR_REGISTRY:
        raise ValueError(f"Compressor '{name}' is already registered")

    _COMPRESSOR_REGISTRY[name] = compressor_class


def get_compressor(name: str, **kwargs: Any) -> ContextCompressor:
    """Instantiate a compressor by name.

    Args:
        name: Compressor name
        **kwargs: Passed to the compressor constructor

    Raises:
        ValueError: If the name is unknown
    """
    if not name:
        raise ValueError("Compressor name cannot be empty")

    compressor_class = _BUILT_IN_COMPRESSORS.get(name) or _COMPRESSOR_REGISTRY.get(name)
    if compressor_class is None:
        raise ValueError(f"Unknown compressor: {name}. Available: {list_compressors()}")
    return compressor_class(**kwargs)


def list_compressors() -> list[str]:
    return list(_BUILT_IN_COMPRESSORS) + list(_COMPRESSOR_REGISTRY)


def clear_registry() -> None:
    """Forget user-registered compressors (built-ins stay)."""
    _COMPRESSOR_REGISTRY.clear()


__all__ = [
    "MARKING_TYPE",
    "AiContextCompressor",
    "ContextCompressionPlugin",
    "ContextCompressor",
    "JumpContextCompressor",
    "TailContextCompressor",
    "TokenBudgetCompressor",
    "clear_registry",
    "expand_markers",
    "get_compressor",
    "list_compressors",
    "register_compressor",
]
