"""Logging setup for the bot process."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .settings import LogSettings

ROOT_LOGGER = "hyperwa"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _is_ours(handler: logging.Handler) -> bool:
    return getattr(handler, "_hyperwa", False)


def setup_logging(settings: LogSettings) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    level = logging.getLevelName(settings.level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    for h in [h for h in logger.handlers if _is_ours(h)]:
        logger.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if settings.json else logging.Formatter(TEXT_FORMAT))
    handler._hyperwa = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger
