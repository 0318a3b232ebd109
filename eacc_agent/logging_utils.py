"""Console and JSON-lines logging for the agent."""

from __future__ import annotations

import json
import logging
import os
from logging import Logger
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "eacc_agent"

# ``extra=`` keys copied into JSON records when present.
CONTEXT_FIELDS = ("job_id", "phase", "tx_hash", "locator", "event")


def configure_logging(
    log_file: Optional[str] = None,
    *,
    level: Union[int, str] = logging.INFO,
    console: Optional[Console] = None,
) -> Logger:
    """Configure the package logger.

    Args:
        log_file: Optional path to a JSON lines file receiving every record.
        level: Logging level name or number.
        console: Rich console to render to; stderr by default.

    Returns:
        The configured ``eacc_agent`` logger.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    handler = RichHandler(console=console or Console(stderr=True), show_time=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.addHandler(handler)
    logger.propagate = False

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(StructuredJsonFormatter())
        logger.addHandler(file_handler)

    logger.debug("Logging initialised", extra={"event": "logging_configured"})
    return logger


class StructuredJsonFormatter(logging.Formatter):
    """Formatter that emits one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                base[key] = getattr(record, key)
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, default=str)


def abbreviate(value: Union[str, bytes], keep: int = 6) -> str:
    """Shorten key material and hashes for log output."""

    text = "0x" + value.hex() if isinstance(value, (bytes, bytearray)) else str(value)
    if len(text) <= 2 * keep + 3:
        return text
    return f"{text[:keep + 2]}...{text[-keep:]}"


__all__ = ["CONTEXT_FIELDS", "StructuredJsonFormatter", "abbreviate", "configure_logging"]
