"""Logging setup: LOG_LEVEL for the root logger; LOG_FILE adds a rotating file handler."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from insight_relay.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging() -> None:
    settings = get_settings()
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    if settings.LOG_FILE:
        path = os.path.abspath(settings.LOG_FILE)
        if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == path for h in root.handlers):
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            handler = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(handler)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
