"""
Structured logging configuration.

JSON lines in production, readable text in development. Call sites attach
structured context with `log_fields(...)`:

    logger.info("Milestone reached", extra=log_fields(customer_id=cid, tier="growth"))
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import Settings, settings as default_settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries whose INFO chatter drowns out engine logs
QUIET_LOGGERS = ("redis", "urllib3")


def log_fields(**fields: Any) -> Dict[str, Dict[str, Any]]:
    """Wrap structured context for the `extra=` argument of a log call."""
    return {"extra_fields": fields}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any `extra_fields` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "extra_fields", None) or {})

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Plain text; structured fields are appended as key=value pairs."""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logging(config: Optional[Settings] = None, stream=None) -> logging.Logger:
    """
    Install a single handler on the root logger.

    Uses JSON when LOG_FORMAT is "json" or ENVIRONMENT is "production".
    Safe to call more than once; earlier handlers are replaced.
    """
    config = config or default_settings
    log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)

    if config.LOG_FORMAT == "json" or config.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
