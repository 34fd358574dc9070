from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Optional, Union

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logger(name: str = "audiocache", logfile: Optional[str] = None, level: int = logging.INFO) -> Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(ch)
        if logfile:
            fh = logging.FileHandler(logfile, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter(FILE_FORMAT))
            logger.addHandler(fh)
    return logger


def open_job_log(name: str, path: Union[str, Path]) -> Logger:
    """Return a non-propagating logger that writes only to ``path``.

    Used for the per-job system log; pair every call with close_job_log.
    """
    logger = logging.getLogger(f"audiocache.job.{name}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    close_job_log(logger)
    fh = logging.FileHandler(str(path), mode="w", encoding="utf-8")
    fh.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(fh)
    return logger


def close_job_log(logger: Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
