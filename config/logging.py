"""Logging configuration: stdlib root logger plus structlog processors."""

import logging
import sys

import structlog


def _log_level(environment: str, debug: bool) -> str:
    if debug:
        return "DEBUG"
    level_map = {
        "production": "INFO",
        "staging": "INFO",
        "development": "DEBUG",
        "test": "WARNING",
    }
    return level_map.get(environment.lower(), "INFO")


def configure_logging(environment: str = "development", debug: bool = False) -> None:
    """Configure all logging for the application."""
    level = _log_level(environment, debug)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if environment.lower() in ("production", "staging"):
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def mask_phone(phone: str) -> str:
    """Keep only the last four digits of a phone number for log output."""
    digits = "".join(c for c in phone or "" if c.isdigit())
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]
