"""
Structured Logging Setup

Consistent logging configuration across the controller.
Uses JSON format for structured logs in production, plain text for dev.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json

LOGGER_PREFIX = "relayctl"

# Attributes present on every LogRecord; anything else came in via ``extra``
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a component.

    Args:
        service_name: Component name (e.g., "bus.arbiter", "reconciler")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def configure_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Re-apply level and format to every logger already created.

    Module-level loggers are created at import time from environment
    defaults; main() calls this once the config file has been read.
    """
    os.environ["RELAYCTL_LOG_LEVEL"] = log_level
    os.environ["RELAYCTL_LOG_FORMAT"] = "json" if json_format else "text"

    manager = logging.Logger.manager
    for name in list(manager.loggerDict):
        if name.startswith(f"{LOGGER_PREFIX}."):
            setup_logging(name[len(LOGGER_PREFIX) + 1:], log_level, json_format)


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the component

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("RELAYCTL_LOG_LEVEL", "INFO")
    json_format = os.environ.get("RELAYCTL_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LogContext(slave_id=1, relay=3):
            logger.info("Reconciling relay")
    """

    def __init__(self, **context: Any):
        self.context = context
        self._original_factory = None

    def __enter__(self):
        self._original_factory = logging.getLogRecordFactory()
        original = self._original_factory
        context = self.context

        def record_factory(*args, **kwargs):
            record = original(*args, **kwargs)
            for key, value in context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self._original_factory)
        return False


def log_relay_read(
    logger: logging.LoggerAdapter,
    slave_id: int,
    relay: int,
    state: bool | None,
    success: bool = True,
) -> None:
    """Log a coil read"""
    if success:
        logger.debug(
            f"Read slave {slave_id} relay {relay} = {'ON' if state else 'OFF'}",
            extra={"slave_id": slave_id, "relay": relay, "state": state},
        )
    else:
        logger.warning(
            f"Failed to read slave {slave_id} relay {relay}",
            extra={"slave_id": slave_id, "relay": relay},
        )


def log_relay_write(
    logger: logging.LoggerAdapter,
    slave_id: int,
    relay: int,
    state: bool,
    source: str = "manual",
    success: bool = True,
) -> None:
    """Log a coil write; ``source`` is manual, schedule or shutdown"""
    extra = {"slave_id": slave_id, "relay": relay, "state": state, "source": source}
    if success:
        logger.info(
            f"Write slave {slave_id} relay {relay} = {'ON' if state else 'OFF'} ({source})",
            extra=extra,
        )
    else:
        logger.error(
            f"Failed to write slave {slave_id} relay {relay} = {'ON' if state else 'OFF'} ({source})",
            extra=extra,
        )
