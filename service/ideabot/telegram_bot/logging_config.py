"""
Logging configuration for the bot and its services.

Everything under the "ideabot" logger hierarchy (ideabot.services.ledger,
ideabot.api.submit, ...) goes through the handler installed here.
"""

import logging
import sys

LOGGER_NAME = "ideabot"


def setup_logging(level: int = logging.DEBUG) -> logging.Logger:
    """Setup logging with proper format and handlers."""

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    formatter = logging.Formatter(
        '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False

    # httpx logs every request URL at INFO, and those URLs carry the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


# Global logger instance
bot_logger = setup_logging()
