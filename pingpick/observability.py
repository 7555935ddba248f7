"""Structured logging: JSON formatter and one-shot setup.

Invariants:
    - Every line carries timestamp, level, logger name and message
    - Extra fields (ping_id, provider_id, error_code, attempt) surface when set
    - setup_logging replaces its own handler on repeat calls, never stacks
"""

import json
import logging
from datetime import UTC, datetime

_EXTRA_FIELDS = (
    "ping_id",
    "provider_id",
    "recipient_id",
    "error_code",
    "attempt",
    "path",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)


_handler: logging.Handler | None = None


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    global _handler

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root = logging.getLogger()
    # the app factory runs once per test
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = handler
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
