"""
Logging utilities for the feature engine.

All modules log through children of the ``mlfeatures`` logger, so an
application configures output once with setup_logger() and every
registry, detector and matcher message follows.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


ROOT_LOGGER_NAME = "mlfeatures"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger below the package root logger.

    Args:
        name: Module name (typically __name__); None returns the root

    Returns:
        Logger instance
    """
    if not name or name == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def setup_logger(
    name: Optional[str] = None,
    level: str = "INFO",
    log_dir: Optional[Union[str, Path]] = None,
    console_output: bool = True,
    file_output: bool = False
) -> logging.Logger:
    """
    Configure handlers for a logger.

    Args:
        name: Logger name (None configures the package root)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files
        console_output: Whether to output to console
        file_output: Whether to output to a timestamped file in log_dir

    Returns:
        Configured logger
    """
    logger = get_logger(name)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers = []  # Clear existing handlers

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if file_output:
        log_dir = Path(log_dir or "logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_file = log_dir / f"{logger.name}_{timestamp}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


class ProgressTracker:
    """
    Track progress of long-running operations.

    Provides timing estimates and progress reporting.
    """

    def __init__(self, total: int, logger: Optional[logging.Logger] = None):
        """
        Initialize progress tracker.

        Args:
            total: Total number of items to process
            logger: Optional logger for output
        """
        self.total = total
        self.current = 0
        self.start_time = datetime.now()
        self.logger = logger

    def update(self, n: int = 1) -> None:
        """
        Update progress by n items.

        Args:
            n: Number of items completed
        """
        self.current += n

        if self.logger and self.current % max(1, self.total // 20) == 0:
            elapsed = (datetime.now() - self.start_time).total_seconds()
            rate = self.current / elapsed if elapsed > 0 else 0
            eta = (self.total - self.current) / rate if rate > 0 else 0

            self.logger.info(
                f"Progress: {self.current}/{self.total} "
                f"({100*self.current/max(1, self.total):.1f}%) "
                f"ETA: {eta:.1f}s"
            )

    def finish(self) -> float:
        """
        Mark operation as complete.

        Returns:
            Total elapsed time in seconds
        """
        elapsed = (datetime.now() - self.start_time).total_seconds()
        if self.logger:
            self.logger.info(f"Completed {self.total} items in {elapsed:.2f}s")
        return elapsed
