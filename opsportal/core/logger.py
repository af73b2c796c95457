from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Union


def setup_logging(log_dir: str = "logs", *, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """
    Configure the `opsportal` logger: `opsportal.log` (rotated) plus console.

    `level` may be a name from the config file ("INFO", "debug"); unknown names
    fall back to INFO. Calling this again only updates the level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger("opsportal")
    logger.setLevel(level)
    logger.propagate = False
    if logger.handlers:
        return logger

    fh = RotatingFileHandler(os.path.join(log_dir, "opsportal.log"), maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    logger.addHandler(fh)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console)
    return logger
