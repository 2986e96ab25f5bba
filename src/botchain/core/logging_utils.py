"""Structured logging helpers.

Components log through :func:`log_event`, which renders one JSON object per
record so dispatch traces can be grepped by event name and update id.
"""

from __future__ import annotations

import json
import logging
import os
import re
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import LogConfig

MAX_LOG_VALUE_CHARS = 500
_REDACTED = "<redacted>"
_SECRET_KEY_RE = re.compile(r"(token|secret|password|api_key)", re.IGNORECASE)
_BOT_TOKEN_RE = re.compile(r"\b\d{6,}:[A-Za-z0-9_-]{20,}\b")


def sanitize_log_value(value: Any) -> Any:
    """Make a value safe to embed in a log line."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {
            str(key): (
                _REDACTED
                if _SECRET_KEY_RE.search(str(key))
                else sanitize_log_value(item)
            )
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_log_value(item) for item in value]
    text = _BOT_TOKEN_RE.sub(_REDACTED, str(value))
    if len(text) > MAX_LOG_VALUE_CHARS:
        text = text[:MAX_LOG_VALUE_CHARS] + "..."
    return text


def _format_exc(exc: BaseException) -> str:
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: BaseException | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log record named ``event``."""

    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        if _SECRET_KEY_RE.search(key):
            payload[key] = _REDACTED
        else:
            payload[key] = sanitize_log_value(value)
    if exc is not None:
        payload["error"] = sanitize_log_value(_format_exc(exc))
    safe_log(logger, level, json.dumps(payload, default=str, sort_keys=False))


def safe_log(logger: logging.Logger, level: int, message: str, *args: Any) -> None:
    """Log without letting a broken handler propagate into dispatch code."""

    try:
        logger.log(level, message, *args)
    except Exception:  # pragma: no cover - logging must never break callers
        logging.getLogger(__name__).debug("log emission failed", exc_info=True)


def setup_rotating_logger(name: str, config: "LogConfig") -> logging.Logger:
    """Return ``name`` logger writing to a rotating file described by ``config``."""

    logger = logging.getLogger(name)
    logger.setLevel(config.level)
    target = os.path.abspath(config.path)
    for handler in logger.handlers:
        if (
            isinstance(handler, RotatingFileHandler)
            and getattr(handler, "baseFilename", None) == target
        ):
            return logger
    config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        config.path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logger.addHandler(handler)
    return logger


def close_rotating_logger(name: str, config: "LogConfig") -> None:
    """Detach and close the handler :func:`setup_rotating_logger` added."""

    logger = logging.getLogger(name)
    target = os.path.abspath(config.path)
    for handler in list(logger.handlers):
        if (
            isinstance(handler, RotatingFileHandler)
            and getattr(handler, "baseFilename", None) == target
        ):
            logger.removeHandler(handler)
            handler.close()
