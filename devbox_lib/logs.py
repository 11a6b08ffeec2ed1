from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT_LOGGER_NAME = "devbox"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach stderr (and optional file) handlers to the ``devbox`` logger once."""

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    resolved = level if level is not None else os.getenv("DEVBOX_LOG_LEVEL", "INFO")
    if isinstance(resolved, str):
        resolved = getattr(logging, resolved.strip().upper(), logging.INFO)
    logger.setLevel(resolved)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    log_file = os.getenv("DEVBOX_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            logger.warning("Falling back to stderr logging because %s could not be opened: %s", path, exc)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger
