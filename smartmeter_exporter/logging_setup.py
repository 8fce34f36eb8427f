"""Logging setup for the exporter."""
import json
import logging
import sys
from typing import Any, Dict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that are chatty at DEBUG but not useful unless tracing
_NOISY_LOGGERS = ("uvicorn.access", "asyncio")


def verbosity_to_level(verbosity: int) -> int:
    """Map a 0-3 verbosity to a logging level."""
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(verbosity: int = 1, log_format: str = "text") -> None:
    """
    Configure root logging for the process.

    Args:
        verbosity: 0 (warnings only) to 3 (debug with serial wire trace).
        log_format: "text" or "json".
    """
    level = verbosity_to_level(verbosity)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=level, handlers=[handler], force=True)

    if verbosity < 3:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.INFO))


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)
