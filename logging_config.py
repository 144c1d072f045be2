"""Logging setup shared by the tray app and the voice pipeline."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from config import get_config_dir

LOG_FILENAME = "kitchen_voice.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_log_file() -> Path:
    return get_config_dir() / LOG_FILENAME


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    """Install console and file handlers on the root logger.

    The file always receives DEBUG records; the console follows ``verbose``.
    Calling this twice does not duplicate handlers.
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    has_console_handler = any(
        type(h) is logging.StreamHandler for h in root_logger.handlers
    )
    if not has_console_handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    has_file_handler = any(isinstance(h, logging.FileHandler) for h in root_logger.handlers)
    if not has_file_handler:
        path = log_file or get_log_file()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        except OSError as exc:
            root_logger.warning("Could not set up file logging at %s: %s", path, exc)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    # websockets logs every frame at DEBUG.
    logging.getLogger("websockets").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.INFO if verbose else logging.WARNING)

    return logging.getLogger("kitchen_voice")
