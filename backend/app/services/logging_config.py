"""Structured logging configuration for the pricing engine."""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

# Attributes every LogRecord carries; anything else arrived via ``extra=``.
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter for production."""
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_entry:
                log_entry[key] = value
        return json.dumps(log_entry, default=str)


def parse_logger_levels(spec: Optional[str]) -> Dict[str, int]:
    """
    Parse per-logger overrides such as
    ``"roofing-pricing.formula=DEBUG,sqlalchemy.engine=INFO"``.
    Unknown level names are ignored.
    """
    levels: Dict[str, int] = {}
    for part in (spec or "").split(","):
        name, _, level = part.partition("=")
        value = getattr(logging, level.strip().upper(), None)
        if name.strip() and isinstance(value, int):
            levels[name.strip()] = value
    return levels


def setup_logging(level: str = "INFO", json_output: bool = True, logger_levels: Optional[str] = None):
    """Configure application logging; ``logger_levels`` comes from LOG_LEVELS."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
        ))

    root.handlers = [handler]

    # Suppress noisy loggers
    for name in ["uvicorn.access", "sqlalchemy.engine", "aiosqlite"]:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name, value in parse_logger_levels(logger_levels).items():
        logging.getLogger(name).setLevel(value)
