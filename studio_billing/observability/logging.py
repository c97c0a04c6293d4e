"""
Logging for the billing and generation services.

Every entry is a structlog event dict rendered as one JSON line (or as
coloured console output locally). Provider credentials never reach the
output and user prompts are shortened before they are written.
"""

import logging
import sys
from collections.abc import Mapping
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from studio_billing.config import settings

REDACTED = "[redacted]"
PROMPT_PREVIEW_CHARS = 120

# Key fragments whose values are never written out
_SECRET_MARKERS = ("authorization", "api_key", "apikey", "token", "secret", "password")

# Chatty client libraries; their per-request lines duplicate provider.* events
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def scrub_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Redact credential-like values and cut prompts down to a preview."""
    for key, value in list(event_dict.items()):
        if _is_secret(key):
            event_dict[key] = REDACTED
        elif isinstance(value, Mapping):
            event_dict[key] = {k: REDACTED if _is_secret(str(k)) else v for k, v in value.items()}
        elif key == "prompt" and isinstance(value, str) and len(value) > PROMPT_PREVIEW_CHARS:
            event_dict[key] = value[:PROMPT_PREVIEW_CHARS] + "..."
    return event_dict


def add_service_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def build_processors(log_format: str) -> list[Processor]:
    """Processor chain ending in the renderer for log_format ("json" or "console")."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_fields,
        scrub_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """
    Route stdlib logging to stdout and configure structlog on top of it.

    A task failure looks like:

        {"event": "task_failed_and_refunded", "level": "info",
         "logger": "studio_billing.services.tasks", "service": "studio-billing-api",
         "task_id": "...", "provider_job_id": "...", "refunded": 30, ...}
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind fields (task_id, provider_job_id, ...) to every event logged inside
    the block, including events from services it calls.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
