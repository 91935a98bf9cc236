"""Logging setup for the Creatio MCP connector.

Two formatters share one set of context fields: the MCP session handle, the
tool being executed, request timing and status. ``JSONFormatter`` emits them
as keys for log aggregation; ``PrettyFormatter`` appends them as ``key=value``
pairs for local runs.

Callers attach context with ``extra``::

    logger.info("[MCP_TOOL] done", extra={"session_id": sid, "tool": name, "duration_ms": 12.5})
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from src.core.errors import mask_sensitive_data


CONTEXT_KEYS = ("session_id", "request_id", "tool", "duration_ms", "status_code")

# Libraries whose INFO output is per-request noise here
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "mcp")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields present on ``record``, in ``CONTEXT_KEYS`` order."""
    return {key: getattr(record, key) for key in CONTEXT_KEYS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; the message is masked for Creatio secrets."""

    def __init__(self, *, include_path: bool = False, service_name: str | None = None):
        super().__init__()
        self.include_path = include_path
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_sensitive_data(record.getMessage()),
        }
        if self.service_name:
            log_data["service"] = self.service_name
        if self.include_path:
            log_data["path"] = f"{record.pathname}:{record.lineno}"
        log_data.update(record_context(record))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class PrettyFormatter(logging.Formatter):
    """Colored single-line output with context fields appended."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.color and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        output = f"{timestamp} | {level} | {record.name[:24]:24} | {mask_sensitive_data(record.getMessage())}"

        context = record_context(record)
        if context:
            output += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            output += f"\n{self.formatException(record.exc_info)}"
        return output


def setup_logging(
    *,
    level: str = "INFO",
    json_format: bool = False,
    include_path: bool = False,
    service_name: str = "creatio-connect",
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Minimum log level name
        json_format: JSON lines (True) or colored text (False)
        include_path: Add source path to JSON lines
        service_name: ``service`` key of JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(include_path=include_path, service_name=service_name))
    else:
        handler.setFormatter(PrettyFormatter(color=sys.stdout.isatty()))
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def safe_preview(value: Any, max_len: int = 120) -> str:
    """Truncated string form of ``value`` for log lines and error text."""
    if value is None:
        return ""
    text = str(value)
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
