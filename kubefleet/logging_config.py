"""Logging setup shared by the CLI and every pipeline module.

Pipeline steps log their progress at INFO and per-host detail at DEBUG.
Fan-out workers run in threads named after their step, so the file log
records which step and host produced each line.
"""

import logging
import sys
from pathlib import Path

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Transport and API client libraries log every request at INFO
NOISY_LOGGERS = ("urllib3", "kubernetes", "ansible_runner", "paramiko")


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure the root logger for one kubefleet invocation.

    Args:
        level: Root logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file receiving the full DEBUG log of the run
        verbose: Log everything to stderr too
    """
    if verbose:
        level = "DEBUG"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    # stderr only shows problems unless verbose; rich output covers progress
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create log file handler for {log_file}: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (call with ``__name__``)."""
    return logging.getLogger(name)
