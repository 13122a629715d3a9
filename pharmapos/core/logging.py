# pharmapos/core/logging.py
from __future__ import annotations

import logging
import sys

from pharmapos.core.config import settings

_CONFIGURED = False


def setup_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """
    Attach console (and optional file) handlers to the ``pharmapos`` logger.
    Safe to call more than once.
    """
    global _CONFIGURED

    logger = logging.getLogger("pharmapos")
    if _CONFIGURED:
        return logger

    lvl = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logger.setLevel(lvl)

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(lvl)
    ch.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
                          datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(ch)

    # File handler
    path = log_file if log_file is not None else settings.LOG_FILE
    if path:
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(lvl)
        fh.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
        logger.addHandler(fh)

    _CONFIGURED = True
    return logger
