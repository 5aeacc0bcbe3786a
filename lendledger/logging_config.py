"""Structured logging for the ledger package and its workers."""

import json
import logging
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("entry_number", "account_code", "loan_id", "job")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying any ledger context passed via ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", logger_name: str = "lendledger") -> logging.Logger:
    """Attach a single JSON handler to the package logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    return logger
