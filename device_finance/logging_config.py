"""
Structured Logging Configuration Module

One JSON object per line for everything logged under the ``device_finance``
logger tree. Ledger, lock and batch code attach ``user_id`` (the actor),
``action`` and ``resource`` ("loan:<id>", "device:<id>", ...) through
``extra=``; batch jobs add a ``correlation_id`` shared by every line of a run.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "device_finance"

STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a LogRecord as a JSON line, dropping unset structured fields"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  fmt: str = "json") -> logging.Logger:
    """
    Install a single stream handler on ``logger_name``.

    Calling it again replaces the handler rather than adding a second one,
    so the job entry point can be invoked repeatedly in one process.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Logger to configure, the package root by default
        fmt: "json" for structured lines, anything else for plain text
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Logger under the package root; bare names get the root prefix"""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """Log ``message`` at ``level`` with whichever structured fields are given"""
    given = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    fields = {k: v for k, v in given.items() if v}
    logger.log(getattr(logging, level.upper()), message, extra=fields)
