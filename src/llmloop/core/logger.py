"""Structured JSON logging.

One JSON object per line on stderr, optionally mirrored to a rotating file.
Loggers are constructed explicitly and handed to the engine, the transport,
the tool set and the compressors.
"""

import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOGGER_NAME = "llmloop"


class LlmLoopLogger:
    """Structured JSON logger with rotation and timing utilities.

    File output is opt-in: pass ``log_dir`` or set ``LLMLOOP_LOG_DIR``.
    """

    log_dir: Path | None
    log_file: Path | None

    def __init__(
        self,
        log_dir: str | None = None,
        max_bytes: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 5,
        level: str | None = None,
        name: str = LOGGER_NAME,
    ) -> None:
        """Initialize logger.

        Args:
            log_dir: Directory for log files (falls back to LLMLOOP_LOG_DIR, else no file)
            max_bytes: Maximum size before rotation (default 10MB)
            backup_count: Number of backup files to keep (default 5)
            level: Log level (DEBUG/INFO/WARN/ERROR), reads LLMLOOP_LOG_LEVEL if not provided
            name: stdlib logger name
        """
        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        for handler in self._logger.handlers[:]:
            handler.close()
            self._logger.removeHandler(handler)

        log_dir = log_dir or os.environ.get("LLMLOOP_LOG_DIR")
        if log_dir:
            self.log_dir = Path(log_dir).expanduser()
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = self.log_dir / "llmloop.log"

            file_handler = RotatingFileHandler(
                self.log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(JSONFormatter())
            self._logger.addHandler(file_handler)
        else:
            self.log_dir = None
            self.log_file = None

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(JSONFormatter())
        self._logger.addHandler(console_handler)

        self.set_level(level or os.environ.get("LLMLOOP_LOG_LEVEL", "WARNING"))

        self._timers: dict[str, float] = {}

    def set_level(self, level: str) -> None:
        """Set logging level.

        Args:
            level: One of DEBUG, INFO, WARN/WARNING, ERROR
        """
        level_upper = level.upper()
        if level_upper == "WARN":
            level_upper = "WARNING"

        numeric_level = getattr(logging, level_upper, logging.INFO)
        self._logger.setLevel(numeric_level)

    def debug(self, msg: str, **kv: Any) -> None:
        self._logger.debug(msg, extra={"kv": kv})

    def info(self, msg: str, **kv: Any) -> None:
        self._logger.info(msg, extra={"kv": kv})

    def warn(self, msg: str, **kv: Any) -> None:
        self._logger.warning(msg, extra={"kv": kv})

    def error(self, msg: str, **kv: Any) -> None:
        self._logger.error(msg, extra={"kv": kv})

    @contextmanager
    def operation(self, operation_name: str, **kv: Any) -> Iterator[None]:
        """Log ``<name>_start`` and ``<name>_end`` around a block, with duration.

        Example:
            with logger.operation("compression", strategy="jump"):
                ...
        """
        start_time = time.time()
        self.info(f"{operation_name}_start", **kv)

        try:
            yield
        finally:
            duration_ms = (time.time() - start_time) * 1000
            self.info(f"{operation_name}_end", duration_ms=duration_ms, **kv)

    def start_timer(self, label: str) -> None:
        self._timers[label] = time.time()

    def end_timer(self, label: str, **kv: Any) -> float:
        """End a named timer and log the duration.

        Returns:
            Duration in milliseconds

        Raises:
            KeyError: If timer was not started
        """
        if label not in self._timers:
            raise KeyError(f"Timer '{label}' not started")

        start_time = self._timers.pop(label)
        duration_ms = (time.time() - start_time) * 1000

        self.debug(f"timer_{label}", duration_ms=duration_ms, **kv)

        return duration_ms


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        dt = datetime.fromtimestamp(record.created, tz=UTC)
        timestamp = dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

        log_data = {
            "timestamp": timestamp,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        if hasattr(record, "kv") and record.kv:
            log_data.update(record.kv)

        return json.dumps(log_data, default=str, ensure_ascii=False)
