# src/dashboard_session/logging.py

import logging
from typing import Any, Dict

import structlog
from structlog.typing import FilteringBoundLogger

from .config import settings

_SENSITIVE_KEYS = ("token", "secret", "authorization", "code_verifier", "password")


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask token material that slips into a log call."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.startswith("has_"):
            continue
        if any(sensitive in lower_key for sensitive in _SENSITIVE_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 8:
                event_dict[key] = value[:4] + "***"
            elif value is not None:
                event_dict[key] = "***"
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog for the session client.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, render JSON lines; otherwise console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(log_level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)


def get_logger(name: str) -> FilteringBoundLogger:
    return structlog.get_logger(name)
