"""
TrustPulse log setup: one JSON object per line on stdout.

Every record carries event_type, level, logger and an ISO timestamp. Pipeline
events add target_id and a truncated submitter_id. Submitters are anonymous,
so _truncate_submitter shortens any submitter_id a caller forgot to pass
through short_id(). LOG_FORMAT=console switches to the structlog dev renderer
for local runs; LOG_LEVEL filters before rendering.

This module imports nothing from backend_trustpulse so every package can use it.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)

# JSON output for production (LOG_FORMAT=json); human-readable for local
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()

# Submitter ids are anonymous but still truncated in logs
SUBMITTER_ID_LOG_LEN = 16


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Ensure timestamp is always present (ISO 8601)."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _truncate_submitter(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    value = event_dict.get("submitter_id")
    if isinstance(value, str) and len(value) > SUBMITTER_ID_LOG_LEN + 3:
        event_dict["submitter_id"] = short_id(value)
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Rename structlog 'event' to event_type for consistency; keep message if present."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def configure_structlog() -> None:
    """Install the processor chain; called once at import unless the host already configured structlog."""
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
        _truncate_submitter,
    ]
    if LOG_FORMAT == "json":
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )
    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL_VALUE),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def short_id(value: str | None, length: int = SUBMITTER_ID_LOG_LEN) -> str:
    """Truncate an identifier for log output."""
    if not value:
        return "?"
    return value[:length] + "..." if len(value) > length else value


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

    Log with event_type (first arg) and optional target_id, submitter_id, etc.:
        logger = get_logger(__name__)
        logger.info("submission_accepted", target_id="deck::mod", weighted_value=10)
    Output (JSON): {"event_type": "submission_accepted", "target_id": "deck::mod", "weighted_value": 10, "timestamp": "...", "level": "info", "logger": "module.name"}
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_submitter(submitter_id: str) -> structlog.BoundLogger:
    """Return a logger with a truncated submitter_id bound to all subsequent log calls."""
    return get_logger("backend_trustpulse").bind(submitter_id=short_id(submitter_id))
