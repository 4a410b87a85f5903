"""
Structured logging configuration for TrustShield.

JSON logs in production (one object per line, ready for log aggregation),
human-readable lines in development. Also hosts a small in-process metrics
collector used by the sweeps and the API.
"""

import logging
import sys
import json
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from functools import wraps
from pathlib import Path
from contextvars import ContextVar

from trustshield.config import settings


# Set per request by the API middleware
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

# Third-party loggers that are too chatty below WARNING
QUIET_LOGGERS = ("sqlalchemy.engine", "apscheduler", "httpx")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with request id and keyword context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "environment": settings.environment,
        }
        if record.funcName:
            entry["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        context = getattr(record, "extra_data", None)
        if context:
            entry["data"] = context

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class StructuredLogger:
    """
    Logger taking keyword context instead of format args.

    Usage:
        logger = StructuredLogger("trustshield.reviews")
        logger.info("Review concealed", transaction_id=tx_id, reviewer_id=uid)
        logger.error("Reveal failed", error=str(e), exc_info=True)
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **context):
        # stacklevel=3 points funcName/lineno at the caller of info()/error()
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={"extra_data": context},
            stacklevel=3,
        )

    def debug(self, message: str, **context):
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context):
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context):
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context):
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def critical(self, message: str, **context):
        self._log(logging.CRITICAL, message, **context)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
):
    """
    Configure the root logger.

    Args:
        level: Log level name
        json_format: JSON lines (prod) or plain text (dev)
        log_file: Optional file path, always written as JSON
    """
    numeric_level = logging.getLevelName(level.upper())
    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_format else logging.Formatter(DEV_FORMAT))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ============== METRICS ==============


def _summarize(values: List[float]) -> Dict[str, Any]:
    ordered = sorted(values)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p50": ordered[n // 2],
        # Too noisy to report with fewer samples
        "p95": ordered[int(n * 0.95)] if n >= 20 else None,
    }


class MetricsCollector:
    """
    In-process counters, gauges and timings. Notification threads and the
    sweep scheduler write concurrently with requests, so updates take a lock.

    Usage:
        metrics.increment("reviews.revealed")
        metrics.timing("risk.analyze", 0.012)
        metrics.gauge("reviews.pending", 17)
    """

    def __init__(self, max_samples: int = 1000):
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._timings: Dict[str, list] = {}
        self._max_samples = max_samples
        self._start_time = time.time()
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def timing(self, name: str, value: float):
        with self._lock:
            samples = self._timings.setdefault(name, [])
            samples.append(value)
            if len(samples) > self._max_samples:
                del samples[: len(samples) - self._max_samples]

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timings = {name: list(values) for name, values in self._timings.items()}

        return {
            "uptime_seconds": time.time() - self._start_time,
            "counters": counters,
            "gauges": gauges,
            "timings": {name: _summarize(values) for name, values in timings.items() if values},
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


# Global metrics instance
metrics = MetricsCollector()


# ============== DECORATORS ==============


def log_execution_time(logger_name: str = "trustshield"):
    """Log duration of a synchronous call and record it as a timing."""
    logger = StructuredLogger(logger_name)

    def decorator(func):
        name = func.__name__

        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
                logger.error(f"{name} failed", function=name, duration_ms=elapsed_ms, error=str(e), exc_info=True)
                raise
            elapsed = time.perf_counter() - start
            logger.debug(f"{name} completed", function=name, duration_ms=round(elapsed * 1000, 2))
            metrics.timing(f"function.{name}", elapsed)
            return result

        return wrapper

    return decorator


def track_operation(operation: str):
    """
    Count calls, errors and risk levels of an operation.

    Results exposing a ``risk_level`` attribute are bucketed by level.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            metrics.increment(f"{operation}.total")
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                metrics.increment(f"{operation}.errors")
                raise
            metrics.timing(f"{operation}.latency", time.perf_counter() - start)
            risk_level = getattr(result, "risk_level", None)
            if risk_level is not None:
                metrics.increment(f"{operation}.risk.{str(getattr(risk_level, 'value', risk_level)).lower()}")
            return result

        return wrapper

    return decorator


def init_logging():
    """Initialize logging based on environment settings."""
    is_prod = settings.is_production
    log_file = None
    if is_prod:
        Path("logs").mkdir(exist_ok=True)
        log_file = "logs/trustshield.log"
    setup_logging(level="INFO" if is_prod else "DEBUG", json_format=is_prod, log_file=log_file)
