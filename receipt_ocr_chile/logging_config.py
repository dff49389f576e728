#!/usr/bin/env python3
"""
Receipt OCR Logging Configuration
=================================

Structured logging for the OCR core:
- JSON output for production log aggregators
- Coloured console output for local development
- Per-thread analysis context (cache key, source) merged into every record
- Timing helpers for recognizer calls and downloads
"""

import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


# ==========================================================================
# FORMATTERS
# ==========================================================================

class JSONFormatter(logging.Formatter):
    """Format logs as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S")

        msg = f"{color}{timestamp} [{record.levelname:8}]{self.RESET} {record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += f"\n{self.formatException(record.exc_info)}"

        return msg


# ==========================================================================
# ANALYSIS CONTEXT
# ==========================================================================

class AnalysisContext:
    """Thread-local context for the receipt currently being analyzed."""

    _local = threading.local()

    @classmethod
    def set(cls, **kwargs):
        if not hasattr(cls._local, "context"):
            cls._local.context = {}
        cls._local.context.update(kwargs)

    @classmethod
    def get(cls, key: str, default=None):
        if not hasattr(cls._local, "context"):
            return default
        return cls._local.context.get(key, default)

    @classmethod
    def clear(cls):
        cls._local.context = {}

    @classmethod
    def as_dict(cls) -> Dict[str, Any]:
        if not hasattr(cls._local, "context"):
            return {}
        return cls._local.context.copy()


class ContextLogger(logging.LoggerAdapter):
    """Logger that automatically includes the analysis context."""

    def process(self, msg, kwargs):
        extra = dict(AnalysisContext.as_dict())
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("Receipt parsed", extra={"confidence": 0.87})
    """
    return ContextLogger(logging.getLogger(name), {})


# ==========================================================================
# TIMING
# ==========================================================================

def log_timing(operation: str = None):
    """
    Decorator to log function execution time.

    Usage:
        @log_timing("analyze_receipt")
        def analyze(image_data):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            op_name = operation or func.__name__
            with log_timing_context(op_name, get_logger(func.__module__)):
                return func(*args, **kwargs)

        return wrapper
    return decorator


@contextmanager
def log_timing_context(operation: str, logger: Optional[logging.LoggerAdapter] = None):
    """
    Context manager for timing code blocks.

    Usage:
        with log_timing_context("vision_call"):
            result = recognizer.analyze_receipt(image)
    """
    if logger is None:
        logger = get_logger(__name__)

    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.error(
            f"{operation} failed: {e}",
            extra={"operation": operation, "duration_ms": round(duration_ms, 2), "status": "error"},
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        f"{operation} completed",
        extra={"operation": operation, "duration_ms": round(duration_ms, 2), "status": "success"},
    )


# ==========================================================================
# SETUP
# ==========================================================================

def setup_logging(
    level: str = "INFO",
    json_output: bool = None,
    log_file: Optional[str] = None,
):
    """
    Configure logging for the application.

    Args:
        level: Logging level
        json_output: Force JSON output (auto-detected for production)
        log_file: Optional log file path (always JSON)
    """
    if json_output is None:
        json_output = os.environ.get("ENVIRONMENT", "development") == "production"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)

    get_logger(__name__).info(f"Logging configured: level={level}, json={json_output}")

    return root_logger


__all__ = [
    "setup_logging",
    "get_logger",
    "log_timing",
    "log_timing_context",
    "AnalysisContext",
    "ContextLogger",
    "JSONFormatter",
    "ConsoleFormatter",
]
