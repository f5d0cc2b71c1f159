"""Shared logging configuration for the SDL tooling.

Call ``configure_logging()`` once at any CLI entry point to ensure logs are emitted.
The function is idempotent: if the root logger already has handlers, it does nothing.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_FILE = "logs/sdl.log"


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = DEFAULT_LOG_FILE) -> None:
    """Configure root logger with a stderr handler and an optional file handler.

    Library modules only create loggers; handlers are installed here so that
    embedding applications keep control of their own logging setup.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            fh = logging.FileHandler(log_file, mode="a")
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            root.warning(f"File logging disabled ({log_file}): {e}")

    root.setLevel(level)
