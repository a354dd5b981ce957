"""Logging configuration for the rate limiter service.

WHAT WE LOG
------------
An admission-control layer sits in front of every request, so its logs
answer two questions during an incident:

  1. "Who is being throttled, and by which algorithm?"
     Denials are logged at WARNING by the HTTP layer with the client
     identifier and the algorithm name attached as structured fields.

  2. "Is the limiter failing closed because the store is down?"
     Store errors are logged by the limiter itself.  A burst of these
     means every request is being denied, and the store is the first
     thing to check.

Per-decision detail (window keys, bucket levels, token counts) is
logged at DEBUG only.  At INFO it would produce one line per request.

REQUEST IDS
------------
RequestContextMiddleware stores the current request ID in
``request_id_var``.  The handler installed by setup_logging() carries a
filter that copies it onto every record, whichever logger emitted it.
A filter on the root *logger* would not do: logger filters only see
records created on that logger, not ones propagated from children.

TWO FORMATTERS
---------------
  _ContainerFormatter: one line per record for local dev, with the
    request ID up front and identifier/algorithm as key=value pairs.

  _JsonFormatter: JSON Lines for production pipelines.  Context fields
    become top-level keys, so a query like

      level == "WARNING" AND algorithm == "token-bucket"

    works without parsing messages.  Enabled with LOG_JSON=true.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar

NO_REQUEST = "-"

request_id_var: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST)

# Attached through ``extra=`` by the middleware and the limiter.
REQUEST_FIELDS = ("request_id", "method", "path", "status_code", "duration_ms")
RATE_LIMIT_FIELDS = ("identifier", "algorithm")


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()  # type: ignore[attr-defined]
        return True


def _context(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, object]:
    found: dict[str, object] = {}
    for key in fields:
        value = getattr(record, key, None)
        if value is None or (key == "request_id" and value == NO_REQUEST):
            continue
        found[key] = value
    return found


class _ContainerFormatter(logging.Formatter):
    """Single-line text for container stdout.

    2024-05-01T12:00:00.123 WARNING  ratelimiter.middleware.rate_limit [3f2a...]  Rate limit exceeded for 10.0.0.1  identifier=10.0.0.1 algorithm=fixed-window  [rate_limit.py:84]

    The source location is appended from WARNING up.
    """

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        stamp = f"{self.formatTime(record, self.datefmt)}.{int(record.msecs):03d}"
        head = f"{stamp} {record.levelname:<8} {record.name}"

        request_id = _context(record, ("request_id",)).get("request_id")
        if request_id is not None:
            head += f" [{request_id}]"

        line = f"{head}  {record.getMessage()}"

        pairs = _context(record, RATE_LIMIT_FIELDS)
        if pairs:
            line += "  " + " ".join(f"{k}={v}" for k, v in pairs.items())

        if record.levelno >= logging.WARNING:
            line += f"  [{record.filename}:{record.lineno}]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; absent context fields are omitted."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record, REQUEST_FIELDS + RATE_LIMIT_FIELDS))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Route every logger to one stdout handler.

    Args:
        level_name: debug/info/warning/error; unknown names mean INFO.
        json_format: emit JSON Lines instead of container text (LOG_JSON).
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(_RequestIdFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # uvicorn's own access log duplicates RequestContextMiddleware's line
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "redis", "httpx"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
