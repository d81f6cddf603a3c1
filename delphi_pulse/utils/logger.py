"""Structured logging for the indexer, accounting jobs and read side."""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

LOGS_DIR = Path(os.environ.get("DELPHI_PULSE_LOG_DIR", str(Path(__file__).parent.parent.parent / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOGS_DIR / "delphi_pulse.log"

CONSOLE_LEVEL = os.environ.get("DELPHI_PULSE_LOG_LEVEL", "INFO").upper()

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _attach_handlers(logger: logging.Logger) -> None:
    """Attach console and file handlers once per named logger."""
    if logger.handlers:
        return

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(CONSOLE_LEVEL)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))

    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)


class PerformanceLogger(logging.LoggerAdapter):
    """
    Adapter over a named logger that also keeps per-run counters and timings.

    The usual debug/info/warning/error/exception calls go straight to the
    wrapped logger; metrics are logged and cleared by :meth:`log_summary`.
    """

    def __init__(self, name: str) -> None:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        _attach_handlers(logger)
        super().__init__(logger, {})

        self.metrics: dict[str, float] = {}

    def record_metric(self, name: str, value: float) -> None:
        """
        Record a metric for the current run.

        Args:
            name: Metric name (e.g., "blocks_per_second", "traders_updated")
            value: Metric value
        """
        self.metrics[name] = value
        self.debug(f"Metric {name}: {value:.2f}")

    def increment(self, name: str, amount: float = 1) -> None:
        """Add to a counter metric."""
        self.metrics[name] = self.metrics.get(name, 0) + amount

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Record the wall-clock duration of the enclosed block as ``<name>_seconds``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_metric(f"{name}_seconds", time.perf_counter() - started)

    def log_progress(self, current: int, total: int, item_name: str = "items") -> None:
        """Log block-range progress as a percentage."""
        percentage = (current / total * 100) if total > 0 else 100.0
        self.info(f"Progress: {current}/{total} {item_name} ({percentage:.1f}%)")

    def log_summary(self) -> None:
        """Log and reset the metrics collected so far."""
        if not self.metrics:
            return

        self.info("=== Run Summary ===")
        for name, value in sorted(self.metrics.items()):
            self.info(f"{name}: {value:.2f}")
        self.info("===================")
        self.metrics = {}


def get_logger(name: str) -> PerformanceLogger:
    """
    Get or create a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        PerformanceLogger instance
    """
    return PerformanceLogger(name)
