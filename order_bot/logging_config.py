"""
Logging configuration for the order bot.

Usage:
    from order_bot.logging_config import setup_logging
    setup_logging()  # once, when the worker or webhook process starts

Environment variables:
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL (default: INFO)

Payment and webhook handling is the operator's audit trail, so those
loggers never go quieter than INFO even when the rest of the app runs at
WARNING.
"""
import logging
import os
import sys

VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

AUDIT_LOGGERS = (
    "order_bot.services.payment",
    "order_bot.services.reconciliation",
)

NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "redis",
    "httpx",
    "httpcore",
    "openai",
)


def setup_logging(level: str = None) -> None:
    """
    Configure logging for the order bot.

    Args:
        level: Level name. Falls back to LOG_LEVEL, then INFO; unknown
               names also fall back to INFO.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if level not in VALID_LEVELS:
        level = "INFO"
    numeric_level = getattr(logging, level)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    logging.getLogger("order_bot").setLevel(numeric_level)
    for name in AUDIT_LOGGERS:
        logging.getLogger(name).setLevel(min(numeric_level, logging.INFO))

    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured at %s level", level)
