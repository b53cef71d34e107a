"""
Logging Configuration Module

Centralized logging setup for the deposit settlement service.
Services log with extra={...} fields (intent_id, asset, amounts); both
formatters below render those fields instead of dropping them.
"""

import json
import logging
import sys

# Attributes every LogRecord carries; anything else came from extra={...}
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line for log aggregation"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends extra fields as key=value"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += " | " + " ".join(f"{key}={value}" for key, value in extras.items())
        return line


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure application-wide logging

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format for production log aggregation

    Example:
        setup_logging(level="DEBUG", json_format=False)
    """
    logger = logging.getLogger("luna_deposits")
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = TextFormatter(
            '[%(asctime)s] %(levelname)s [%(module)s:%(funcName)s:%(lineno)d] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False


def get_logger(name: str = "luna_deposits") -> logging.Logger:
    """
    Get configured logger instance

    Module loggers (logging.getLogger(__name__)) inside the package are
    children of "luna_deposits" and share its handlers.

    Example:
        logger = get_logger()
        logger.info("Deposit created", extra={"intent_id": intent.id})
    """
    return logging.getLogger(name)
