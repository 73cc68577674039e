r"""
Logging configuration for the termirc engine.

Provides a configurable root logging setup using the colorlog library plus
structured error logging with per-category aggregation.
"""

import atexit
import logging
import os
import sys
import threading
import time
from collections import defaultdict
from typing import Any

import colorlog

from .logs.logger import logger as engine_logger


class ErrorAggregator:
    """Counts error occurrences per category.

    The engine may run on its own thread while a consumer logs from another,
    so access is serialized with a lock.
    """

    def __init__(self, keep: int = 200):
        self.errors: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.lock = threading.Lock()
        self.start_time = time.time()
        self.keep = keep

    def record_error(
        self, error_type: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Record an error occurrence with context."""
        with self.lock:
            entries = self.errors[error_type]
            entries.append(
                {"timestamp": time.time(), "message": message, "context": context or {}}
            )
            if len(entries) > self.keep:
                del entries[: len(entries) - self.keep]

    def get_error_summary(self) -> dict[str, Any]:
        """Get a summary of error patterns."""
        with self.lock:
            now = time.time()
            runtime_hours = (now - self.start_time) / 3600
            summary = {}
            for error_type, occurrences in self.errors.items():
                summary[error_type] = {
                    "total_count": len(occurrences),
                    "recent_count": sum(
                        1 for e in occurrences if now - e["timestamp"] < 3600
                    ),
                    "rate_per_hour": len(occurrences) / max(runtime_hours, 1),
                    "last_occurrence": occurrences[-1] if occurrences else None,
                }
            return summary

    def should_alert(self, error_type: str, threshold_rate: float = 60.0) -> bool:
        """Check if an error category is occurring faster than the threshold."""
        stats = self.get_error_summary().get(error_type)
        if stats is None:
            return False
        return stats["rate_per_hour"] > threshold_rate

    def reset(self) -> None:
        with self.lock:
            self.errors.clear()
            self.start_time = time.time()

    def log_summary_report(self) -> None:
        """Log a summary report of error patterns."""
        summary = self.get_error_summary()
        if not summary:
            logging.info("No errors recorded in current session")
            return
        logging.warning("🚨 ERROR SUMMARY REPORT")
        for error_type, stats in summary.items():
            logging.warning(
                f"  {error_type}: {stats['total_count']} total, "
                f"{stats['recent_count']} in last hour, "
                f"{stats['rate_per_hour']:.1f}/hour"
            )


# Global error aggregator instance
error_aggregator = ErrorAggregator()


def log_structured_error(
    error_type: str,
    message: str,
    exception: BaseException | None = None,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> None:
    """Log an error with structured context and record it in the aggregator.

    Args:
        error_type: Category of the error (e.g. 'transport', 'protocol', 'registration')
        message: Descriptive error message
        exception: The exception that occurred (optional)
        context: Additional context data for debugging
        level: Logging level (default: ERROR)
    """
    structured_message = f"[{error_type.upper()}] {message}"
    if exception is not None:
        structured_message += f" | Exception: {type(exception).__name__}: {exception}"
    if context:
        context_str = " | ".join(f"{k}={v}" for k, v in context.items())
        structured_message += f" | Context: {context_str}"

    logging.getLogger("termirc.errors").log(level, structured_message)
    error_aggregator.record_error(error_type, message, context)

    if error_aggregator.should_alert(error_type):
        logging.getLogger("termirc.errors").critical(
            f"🚨 HIGH ERROR RATE ALERT: {error_type} occurring at "
            f"{error_aggregator.get_error_summary()[error_type]['rate_per_hour']:.1f}/hour"
        )


class LoggerConfigurator:
    """Configures root logging with colorlog.

    Uses the DEBUG environment variable ('true', '1' or 'yes') to select the
    DEBUG level, INFO otherwise.
    """

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}

    def build_formatter(self) -> colorlog.ColoredFormatter:
        return colorlog.ColoredFormatter(
            "%(asctime)s %(log_color)s%(levelname)-8s%(reset)s %(message_log_color)s%(message)s",
            datefmt="%H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "magenta",
            },
            secondary_log_colors={
                "message": {
                    "ERROR": "red",
                    "CRITICAL": "magenta",
                }
            },
            reset=True,
        )

    def configure(self, stream=None) -> None:
        debug_env = os.environ.get("DEBUG", "").lower()
        log_level = logging.DEBUG if debug_env in ("true", "1", "yes") else logging.INFO
        log_level = self.config.get("level", log_level)

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(self.build_formatter())

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.addHandler(handler)
        root_logger.setLevel(log_level)

        # Route the engine logger through the colored root handler.
        engine_logger.use_root_handlers()
        engine_logger.set_level(log_level)

        if self.config.get("summary_on_exit", True):
            atexit.register(self._log_final_error_summary)

    def _log_final_error_summary(self) -> None:
        logging.info("📊 Final error summary before shutdown:")
        error_aggregator.log_summary_report()
