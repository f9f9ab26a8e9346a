"""Logging utilities for intentflow."""
import json
import logging
import sys
import time
from typing import Optional
from pathlib import Path

from intentflow.utils.config import config


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Colorize a copy; file handlers share the original record
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record):
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "name": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logger(
    name: str,
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    structured: Optional[bool] = None
) -> logging.Logger:
    """
    Get the `intentflow.<name>` logger, configuring it on first use.

    Level, log file and structured output default to the global config
    (INTENTFLOW_LOG_LEVEL, INTENTFLOW_LOG_FILE, INTENTFLOW_STRUCTURED_LOGS).
    """
    logger = logging.getLogger(f"intentflow.{name}")

    # Already configured
    if logger.handlers:
        return logger

    level = level or config.log_level
    log_file = log_file or config.log_file
    structured = config.structured_logs if structured is None else structured

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    if structured:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter(
            '%(asctime)s | %(name)-34s | %(levelname)-8s | %(message)s', datefmt='%H:%M:%S'
        ))
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            StructuredFormatter() if structured
            else logging.Formatter('%(asctime)s | %(name)s | %(levelname)s | %(message)s')
        )
        logger.addHandler(file_handler)

    return logger


class StepLogger:
    """Logs the start and end of one spec step with its wall time."""

    def __init__(self, logger: logging.Logger, step_name: str, step_num: int = 0, total: int = 0):
        self.logger = logger
        self.step_name = step_name
        self.label = f"[Step {step_num}/{total}]" if total else f"[Step {step_num}]"
        self._started = 0.0

    def __enter__(self):
        self._started = time.monotonic()
        self.logger.info(f"{self.label} {self.step_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._started
        if exc_type:
            self.logger.error(f"{self.label} {self.step_name} aborted after {elapsed:.2f}s: {exc_val}")
        else:
            self.logger.debug(f"{self.label} {self.step_name} done in {elapsed:.2f}s")
        return False
