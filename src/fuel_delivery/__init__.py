"""Fuel delivery completion toolkit.

Importing the package sets up the shared ``fuel_delivery`` logger. Set
``FUEL_DELIVERY_LOG_DIR`` to move the rotating log file and
``FUEL_DELIVERY_LOG_LEVEL`` (e.g. ``DEBUG``) to change verbosity.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("FUEL_DELIVERY_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "fuel_delivery.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach the rotating file handler and stderr handler once.

    Calling again only adjusts the level.
    """

    logger = logging.getLogger(__name__)
    if level is None:
        level = os.environ.get("FUEL_DELIVERY_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: file logging disabled, cannot open '{LOG_FILE}': {exc}", file=sys.stderr)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.debug("Logging to %s at level %s", LOG_FILE, logging.getLevelName(logger.level))
    return logger


log = configure_logging()
