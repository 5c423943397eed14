from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Correlation ID shared by every log entry emitted during one session operation
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID of the running session operation."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current operation context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_SECRET_KEYS = ("password", "secret", "token", "authorization", "email", "api_key")


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and PII from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Keep the first/last 2 chars so tokens stay distinguishable
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def build_processors(json_output: bool) -> List[Any]:
    """Processor chain ending in a JSON renderer or a console renderer."""
    renderer: List[Any] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer()]
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        *renderer,
    ]


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Apply the structlog setup; arguments left as None come from LOG_* env vars.

    LOG_DEV_MODE forces console output regardless of LOG_JSON.
    """
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False)
    numeric_level = logging.getLevelName(level)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    structlog.configure(
        processors=build_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def token_preview(token: Optional[str]) -> Optional[str]:
    """Short, non-reversible hint of a token for debug logging."""
    if not token:
        return None
    return token[:10] + "..."
