"""Structured logging setup shared by the API process and the admin CLI."""

from __future__ import annotations

import logging

import structlog

from caixinha_governance.config import GovernanceSettings, settings as default_settings


def configure_logging(config: GovernanceSettings | None = None) -> None:
    """Configure structured logging."""
    config = config or default_settings
    level = logging.getLevelName(config.log_level.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
