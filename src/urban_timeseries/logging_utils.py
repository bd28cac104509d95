from __future__ import annotations
import logging
import os
from logging.handlers import RotatingFileHandler


def setup_logger(logs_dir: str = "./logs", name: str = "urban_timeseries", level: int = logging.INFO) -> logging.Logger:
    """Console handler at ``level``; the rotating log file always keeps DEBUG, so every per-year rule is on disk."""
    os.makedirs(logs_dir, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    if not logger.handlers:
        fh = RotatingFileHandler(os.path.join(logs_dir, f"{name}.log"), maxBytes=2_000_000, backupCount=3)
        fh.setLevel(logging.DEBUG)
        # tiles may run on worker threads
        fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"))
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(fh)
        logger.addHandler(ch)
    for h in logger.handlers:
        if not isinstance(h, RotatingFileHandler):
            h.setLevel(level)
    return logger
