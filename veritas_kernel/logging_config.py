"""Shared logging configuration for the Veritas kernel.

Call ``configure_logging()`` once at an entry point (the API factory does).
The function is idempotent: if the root logger already has handlers, it only
adjusts the level.
"""

import logging
from typing import Union


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure the root logger with a single console handler."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if not root.handlers:
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(fmt))
        root.addHandler(console)

    root.setLevel(level)
