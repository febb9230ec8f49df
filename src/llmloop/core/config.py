"""Configuration for the engine and its models.

Loading precedence:
1. Environment variables (highest)
2. JSON config file
3. Defaults (lowest)

A ``.env`` file is read first so its values count as environment variables.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from llmloop.core.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("llmloop.json")


@dataclass
class LlmModel:
    """One chat model reachable through an OpenAI-compatible endpoint.

    Attributes:
        model: Model identifier sent in the request body
        base_url: API root, e.g. "https://api.openai.com/v1"
        keys: Bearer keys; one is picked at random per attempt
        max_concurrency: In-flight request cap for this model
        supports_tool_calls: False switches to the in-band tag protocol
        imageable: Whether image content may be sent
        thinking_budget: Optional reasoning budget forwarded verbatim
        custom_request_params: Extra body fields merged into every request
    """

    model: str
    base_url: str
    keys: list[str]
    max_concurrency: int = 50
    supports_tool_calls: bool = True
    imageable: bool = False
    thinking_budget: int | None = None
    custom_request_params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.model:
            raise ConfigurationError("model must not be empty", key="model")
        if not self.base_url:
            raise ConfigurationError(f"base_url must not be empty for {self.model}", key="base_url")
        if not self.keys or not all(isinstance(k, str) and k for k in self.keys):
            raise ConfigurationError(f"keys must be a non-empty list for {self.model}", key="keys")
        if self.max_concurrency < 1:
            raise ConfigurationError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}", key="max_concurrency"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LlmModel":
        """Create a model entry, resolving ``"$NAME"`` keys from the environment."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        if isinstance(filtered.get("keys"), str):
            filtered["keys"] = [filtered["keys"]]
        if "keys" in filtered:
            filtered["keys"] = [_resolve_env_ref(k) for k in filtered["keys"]]
        try:
            return cls(**filtered)
        except TypeError as e:
            raise ConfigurationError(f"Invalid model entry: {e}") from e


@dataclass
class EngineConfig:
    """Engine-wide settings.

    ``retry`` is the total number of attempts, shared by the transport retry
    loop and the structured-output helper. ``timeout_s`` bounds one attempt of
    the structured-output helper.
    """

    timeout_s: float = 120.0
    retry: int = 3
    retry_backoff_s: float = 0.0
    default_stream: bool = True
    models: dict[str, LlmModel] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be > 0, got {self.timeout_s}", key="timeout_s")
        if self.retry < 1:
            raise ConfigurationError(f"retry must be >= 1, got {self.retry}", key="retry")
        if self.retry_backoff_s < 0:
            raise ConfigurationError(
                f"retry_backoff_s must be >= 0, got {self.retry_backoff_s}", key="retry_backoff_s"
            )

    def model(self, name: str) -> LlmModel:
        try:
            return self.models[name]
        except KeyError as e:
            raise ConfigurationError(f"Unknown model: {name}", key="models") from e

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Create config from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        models = filtered.pop("models", None)
        if models is None:
            models = {}
        if not isinstance(models, dict):
            raise ConfigurationError("models must be an object keyed by name", key="models")
        filtered["models"] = {
            name: m if isinstance(m, LlmModel) else LlmModel.from_dict(m) for name, m in models.items()
        }
        return cls(**filtered)


def _resolve_env_ref(value: str) -> str:
    if isinstance(value, str) and value.startswith("$"):
        name = value[1:]
        resolved = os.getenv(name)
        if not resolved:
            raise ConfigurationError(f"Environment variable {name} is not set", key="keys")
        return resolved
    return value


def load_file_config(path: Path) -> dict[str, Any]:
    """Read a JSON config file.

    Returns:
        Parsed object, or an empty dict if the file does not exist

    Raises:
        ConfigurationError: If the file is not a JSON object
    """
    if not path.exists():
        return {}

    try:
        with path.open() as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must contain a JSON object")
    return data


def load_env_overrides() -> dict[str, Any]:
    """Load configuration overrides from environment variables.

    Supported environment variables:
    - LLMLOOP_TIMEOUT: per-attempt timeout in seconds
    - LLMLOOP_RETRY: attempt budget
    - LLMLOOP_RETRY_BACKOFF: backoff base in seconds

    Returns:
        Dictionary of configuration overrides
    """
    overrides: dict[str, Any] = {}

    if timeout_str := os.getenv("LLMLOOP_TIMEOUT"):
        try:
            overrides["timeout_s"] = float(timeout_str)
        except ValueError as e:
            raise ConfigurationError(f"Invalid LLMLOOP_TIMEOUT: {timeout_str}") from e

    if retry_str := os.getenv("LLMLOOP_RETRY"):
        try:
            overrides["retry"] = int(retry_str)
        except ValueError as e:
            raise ConfigurationError(f"Invalid LLMLOOP_RETRY: {retry_str}") from e

    if backoff_str := os.getenv("LLMLOOP_RETRY_BACKOFF"):
        try:
            overrides["retry_backoff_s"] = float(backoff_str)
        except ValueError as e:
            raise ConfigurationError(f"Invalid LLMLOOP_RETRY_BACKOFF: {backoff_str}") from e

    return overrides


def load_config(path: Path | None = None, env_file: Path | None = None) -> EngineConfig:
    """Load and merge all configuration sources.

    Args:
        path: JSON config file (default: ./llmloop.json, optional)
        env_file: .env file to load before reading the environment

    Returns:
        Merged configuration

    Raises:
        ConfigurationError: If any config source is invalid
    """
    load_dotenv(dotenv_path=env_file, override=False)

    merged = load_file_config(path or DEFAULT_CONFIG_PATH)
    merged.update(load_env_overrides())

    return EngineConfig.from_dict(merged)
