"""
structlog on top of stdlib logging.

Log lines go to stderr; stdout is reserved for the operator-facing progress
and summary printed by the CLI. Connection details are logged through
ConnectionProfile.log_fields(), never with the password.
"""
from __future__ import annotations

import logging
import logging.config

import structlog

SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]

LOG_FORMATTERS = {
    "console": "selfhost_migrate.logging.StructlogConsoleFormatter",
    "json": "selfhost_migrate.logging.StructlogJSONFormatter",
}


def configure_structlog() -> None:
    """Route structlog events through the stdlib handlers set up by setup_logging()."""
    structlog.configure(
        processors=SHARED_PROCESSORS + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class StructlogJSONFormatter(structlog.stdlib.ProcessorFormatter):
    """One JSON object per line, for runs driven by automation."""

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=SHARED_PROCESSORS,
            **kwargs,
        )


class StructlogConsoleFormatter(structlog.stdlib.ProcessorFormatter):
    """Coloured key=value lines for an operator at a terminal."""

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            processor=structlog.dev.ConsoleRenderer(colors=True),
            foreign_pre_chain=SHARED_PROCESSORS,
            **kwargs,
        )


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Install a single stderr handler using the `log_format` renderer."""
    level = log_level.upper()
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            name: {"()": path} for name, path in LOG_FORMATTERS.items()
        },
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": log_format if log_format in LOG_FORMATTERS else "console",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "": {"handlers": ["stderr"], "level": level},
            "selfhost_migrate": {"handlers": ["stderr"], "level": level, "propagate": False},
        },
    })
