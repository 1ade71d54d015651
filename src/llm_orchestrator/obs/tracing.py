"""Logging setup, timing, secret redaction and token estimation."""

from __future__ import annotations

import logging
import re
import time

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)

_SECRET_PATTERNS = (
    (re.compile(r"sk-[A-Za-z0-9_-]{16,}"), "[REDACTED]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._-]{16,}"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)(x-api-key|x-goog-api-key|api[_-]?key)(\s*[=:]\s*)\S+"), r"\1\2[REDACTED]"),
    (re.compile(r"([?&]key=)[A-Za-z0-9_-]+"), r"\1[REDACTED]"),
)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the package logger."""
    logger = logging.getLogger("llm_orchestrator")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    if not any(getattr(handler, "_llm_orchestrator", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._llm_orchestrator = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def redact_for_log(text: str) -> str:
    """Mask API keys, bearer tokens and key assignments in free text."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class Timer:
    """Simple context timer used around provider calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def word_tokens(text: str) -> list[str]:
    """Lower-cased word tokens, punctuation dropped."""
    return _WORD_PATTERN.findall(text.lower())
