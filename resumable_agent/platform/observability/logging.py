"""Structured logging configuration using structlog.

This module provides structured logging with JSON output for services and
colored console output for local development. Run identifiers are bound
explicitly on loggers (``logger.bind(run_id=...)``); nothing is propagated
through ambient context.

Checkpoint tokens are bearer credentials for a run, so any token or secret
that reaches a log event is masked before rendering.
"""

import logging
import sys

import structlog

# Event keys whose values are never rendered in full
MASKED_KEYS = frozenset({"token", "checkpoint_token", "final_token", "token_secret", "api_key", "secret"})
_VISIBLE_PREFIX = 8


def mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Processor that shortens tokens and secrets to a recognizable prefix."""
    for key in MASKED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, bytes):
            event_dict[key] = f"<{len(value)} bytes>"
        elif isinstance(value, str) and value:
            event_dict[key] = f"{value[:_VISIBLE_PREFIX]}...({len(value)} chars)"
    return event_dict


def configure_logging(log_level: str, json_output: bool = True) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Logging level (INFO, DEBUG, etc.)
        json_output: True for JSON output, False for console

    Example:
        settings = Settings()
        configure_logging(settings.logging.level, settings.logging.json_output)
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        mask_secrets,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # LiteLLM logs every request at INFO
    for name in ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        A bound structlog logger
    """
    return structlog.get_logger(name)
