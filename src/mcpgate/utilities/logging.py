"""Logging utilities for mcpgate."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the mcpgate namespace.

    Args:
        name: the name of the logger, which will be prefixed with 'mcpgate.'

    Returns:
        a configured logger instance
    """
    if name.startswith("mcpgate."):
        return logging.getLogger(name)
    return logging.getLogger(f"mcpgate.{name}")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | int = "INFO",
    logger: logging.Logger | None = None,
    enable_rich_tracebacks: bool = True,
) -> None:
    """
    Configure logging for mcpgate.

    Args:
        logger: the logger to configure
        level: the log level to use
    """
    if logger is None:
        logger = logging.getLogger("mcpgate")

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=enable_rich_tracebacks,
    )
    formatter = logging.Formatter("%(message)s")
    handler.setFormatter(formatter)

    logger.setLevel(level)

    # Remove any existing handlers to avoid duplicates on reconfiguration
    for hdlr in logger.handlers[:]:
        logger.removeHandler(hdlr)

    logger.addHandler(handler)


def redact(value: str | None, keep: int = 8) -> str:
    """Shorten a secret for log output."""
    if not value:
        return "<empty>"
    return f"{value[:keep]}..."
