"""Logging configuration for genbatch."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

_HANDLER_ATTR = "_genbatch_handler"


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for better parsing."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def setup_logging(
    level: str | int = logging.INFO,
    json_format: bool = False,
    name: str = "genbatch",
) -> logging.Logger:
    """Attach a single stream handler to the ``genbatch`` logger.

    Calling this again swaps in a fresh handler bound to the current stderr
    instead of stacking handlers.
    """
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for old in [h for h in logger.handlers if getattr(h, _HANDLER_ATTR, False)]:
        logger.removeHandler(old)
    handler = logging.StreamHandler()
    setattr(handler, _HANDLER_ATTR, True)
    logger.addHandler(handler)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    return logger
