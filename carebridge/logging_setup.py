"""
Structured logging configuration.

Every module logs through ``structlog.get_logger(__name__)``.  Call
``configure_logging()`` once at process start to route those loggers
through the standard library with timestamps, levels and PHI redaction.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from carebridge.audit import redact_text

_SKIP_KEYS = {"level", "logger", "timestamp"}


def phi_redaction_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Mask e-mail addresses and phone numbers in every string value."""
    for key, value in event_dict.items():
        if key not in _SKIP_KEYS and isinstance(value, str):
            event_dict[key] = redact_text(value)
    return event_dict


def configure_logging(level: int | str = logging.INFO, json_output: bool = True) -> None:
    """Configure structlog over stdlib logging.

    Args:
        level: Minimum stdlib log level.
        json_output: Render JSON lines; otherwise a console renderer is used.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            phi_redaction_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
