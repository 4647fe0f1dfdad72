"""
Logging configuration module.

- Console: readable text
- File: one CSV row per record, daily rotation, 30 days kept

Engine, queue and task code attach job context through `extra`; the CSV
columns below pick those keys up, blank when absent.
"""

import csv
import io
import logging
import os
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Columns read from the LogRecord's `extra` after the fixed ones
CONTEXT_FIELDS = ['migration_id', 'job_id', 'lane', 'duration_ms', 'error']
CSV_FIELDS = ['timestamp', 'level', 'module', 'message', *CONTEXT_FIELDS]

NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "celery.redirected")


class CsvFormatter(logging.Formatter):
    """
    Usage:
        logger.info("Cloning", extra={'migration_id': 'abc', 'lane': 'migration'})
    """

    def format(self, record):
        output = io.StringIO()
        row = [
            self.formatTime(record, self.datefmt),
            record.levelname,
            record.name,
            record.getMessage(),
        ]
        row.extend(getattr(record, name, '') for name in CONTEXT_FIELDS)
        csv.writer(output, quoting=csv.QUOTE_MINIMAL).writerow(row)
        return output.getvalue().strip()


class CsvRotatingFileHandler(TimedRotatingFileHandler):
    """Writes the CSV header whenever a fresh file is opened."""

    def _open(self):
        needs_header = not os.path.exists(self.baseFilename) or os.path.getsize(self.baseFilename) == 0
        stream = super()._open()
        if needs_header:
            stream.write(','.join(CSV_FIELDS) + '\n')
            stream.flush()
        return stream


def setup_logging(level: int = logging.INFO, log_dir: Path | None = None) -> None:
    """
    Configure the root logger for the API process and Celery workers.

    Idempotent: a second call finds the CSV handler and returns.
    """
    root_logger = logging.getLogger()
    if any(isinstance(h, CsvRotatingFileHandler) for h in root_logger.handlers):
        return

    if log_dir is None:
        from svnmigrate.core.config import get_settings
        log_dir = get_settings().log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    # e.g. svn_migration_2025_12_19.csv
    csv_handler = CsvRotatingFileHandler(
        filename=log_dir / f"svn_migration_{datetime.now():%Y_%m_%d}.csv",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
    )
    csv_handler.setFormatter(CsvFormatter(datefmt=DATE_FORMAT))
    root_logger.addHandler(csv_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
