"""Peixaria ERP: point-of-sale and bookkeeping ledger backed by an Excel workbook.

Importing the package configures the shared ``log`` used by every layer.
``PEIXARIA_ERP_LOG_DIR`` moves the rotating log file and
``PEIXARIA_ERP_LOG_LEVEL`` changes the threshold (``INFO`` by default).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("PEIXARIA_ERP_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "peixaria_erp.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _ledger_file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    """Return a rotating handler for ``LOG_FILE``, or ``None`` if it cannot be opened."""

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: ledger log file unavailable at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(os.environ.get("PEIXARIA_ERP_LOG_LEVEL", "INFO").upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    file_handler = _ledger_file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    # CLI results go to stdout; diagnostics stay on stderr.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


log = _configure_logging()
