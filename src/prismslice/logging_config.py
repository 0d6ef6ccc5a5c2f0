"""
Module: prismslice.logging_config
---------------------------------
Sets up the package logger. The library itself only creates module
loggers; applications call `setup_logging` once to see their output.

Functions
---------
- `setup_logging`:
    Configures the "prismslice" logger with console and optional file output
"""

import logging
import sys
from typing import Optional


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Description
    -----------
    Configures the logger of the `prismslice` namespace. Calling it again
    replaces the handlers instead of adding duplicates.

    Parameters
    ----------
    - `level` (int):
        Logging level, e.g. logging.DEBUG for per-worker messages
    - `log_file` (Optional[str]):
        Optional path to also write the log to
    """
    logger = logging.getLogger("prismslice")
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.info("Logging initialized.")
