"""Structured logging for the escrow service (structlog over stdlib logging).

Development gets colored console lines, everything else gets one JSON object
per line. Each entry carries the request_id bound by the API middleware and
the service and env fields added here, so a release can be followed from the
request through receipt verification to the payout.

Payment details pass through the log pipeline, so secrets are redacted and
payout destinations are masked before rendering.

Usage:
    from milestone_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True, env="production")
    logger = get_logger(__name__)
    logger.info("release.requested", transaction_id="abc-123", amount="3000.00")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

SERVICE_NAME = "milestone-escrow"

_SECRET_KEYS = frozenset({"api_key", "stripe_secret_key", "authorization", "secret"})
_MASKED_KEYS = frozenset({"destination", "account_id", "provider_account_id"})

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "stripe")


def redact_payment_fields(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Drop secrets and keep only the last four characters of payout accounts."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    for key in _MASKED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = f"***{value[-4:]}"
    return event_dict


def _processors(env: str) -> list[structlog.types.Processor]:
    def add_service(
        _logger: Any, _method: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("env", env)
        return event_dict

    return [
        structlog.contextvars.merge_contextvars,
        add_service,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_payment_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    env: str = "development",
) -> None:
    """Route structlog and stdlib logging through one handler on stdout.

    Args:
        log_level: Root level name; unknown names fall back to INFO.
        json_logs: Render JSON lines instead of the colored console format.
        env: Deployment environment, added to every entry.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*_processors(env), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_processors(env),
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; pass __name__ from the calling module."""
    return structlog.get_logger(name)
