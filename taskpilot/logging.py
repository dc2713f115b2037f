"""Structured logging for TaskPilot.

Modules log through ``get_logger(__name__)`` with key-value events.
Configured API keys, and anything shaped like a credential in a URL or
header, are masked before a line is rendered.
"""

import logging
import re
import sys
from pathlib import Path
from typing import Any, Callable, Iterable, TextIO

import structlog

from taskpilot.config import Config, get_config

MASK = "***"

_SECRET_PATTERNS = (
    re.compile(r"([?&]key=)[^&\s\"']+", re.IGNORECASE),
    re.compile(r"(bearer\s+)[\w.\-]+", re.IGNORECASE),
    re.compile(r"(x-api-key['\"]?\s*[:=]\s*['\"]?)[^\s\"',}]+", re.IGNORECASE),
)

_line_sink: Callable[[str], None] | None = None


class _LineWriter:
    """Buffers structlog output and hands complete lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._sink(self._pending)
            self._pending = ""


class SecretMasker:
    """structlog processor replacing credentials in string values with ``***``."""

    def __init__(self, secrets: Iterable[str] = ()):
        # Longest first so a key never leaves a masked prefix of another behind.
        self.secrets = sorted({s for s in secrets if s and len(s) >= 4}, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        for pattern in _SECRET_PATTERNS:
            text = pattern.sub(rf"\g<1>{MASK}", text)
        return text

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in event_dict.items():
            if isinstance(value, str):
                event_dict[key] = self.mask(value)
        return event_dict


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Send rendered lines to ``sink`` instead of a stream (applies on next configure)."""
    global _line_sink
    _line_sink = sink


def _output(config: Config) -> TextIO | _LineWriter:
    if _line_sink is not None:
        return _LineWriter(_line_sink)
    if config.logging.file:
        path = Path(config.logging.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("a", encoding="utf-8")
    return sys.stderr


def configure_logging(level: str | None = None, config: Config | None = None) -> None:
    """Configure structlog from ``config.logging``; ``level`` overrides the configured level."""
    config = config or get_config()
    log_level = getattr(logging, (level or config.logging.level).upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        SecretMasker(config.model.api_keys),
    ]
    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=config.logging.file == ""))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_output(config)),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()
