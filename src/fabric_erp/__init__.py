"""Fabric inventory ledger and order engine.

Importing the package sets up the shared ``fabric_erp`` logger. Records go
to a rotating file and to stderr. The log directory defaults to ``.logs``
beside the source tree and can be moved with ``FABRIC_ERP_LOG_DIR``, which
matters once the package is installed into site-packages.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "FABRIC_ERP_LOG_DIR"


def resolve_log_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the log directory, honouring ``FABRIC_ERP_LOG_DIR`` when set."""

    environ = os.environ if environ is None else environ
    override = environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return PROJECT_ROOT / ".logs"


LOG_DIR = resolve_log_dir()
LOG_FILE = LOG_DIR / "fabric_erp.log"


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Logger initialized for the 'fabric_erp' package.")
