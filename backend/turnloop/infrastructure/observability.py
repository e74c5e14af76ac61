"""Structured Logging — JSON log lines carrying run context for production.

Invariants:
    - Every line has timestamp, level, logger and message
    - Any `extra={...}` key passed at the call site (conversation_id, tool_call_id,
      error_code, tokens_before, ...) is emitted as a top-level field
    - setup_logging() is idempotent: calling it twice does not duplicate output

Design Decisions:
    - JSONFormatter on the standard logging module; "text" format for local runs
    - SDK and HTTP client loggers capped at WARNING: per-request chatter would
      drown the run logs
"""

import json
import logging
from datetime import datetime, timezone

_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__,
) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "sqlalchemy.engine")

_handler: logging.Handler | None = None


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and value is not None:
                line[key] = value
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    global _handler
    if _handler is not None:
        logging.root.removeHandler(_handler)

    _handler = logging.StreamHandler()
    if fmt == "json":
        _handler.setFormatter(JSONFormatter())
    else:
        _handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        ))
    logging.root.addHandler(_handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
