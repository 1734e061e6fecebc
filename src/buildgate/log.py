# log.py
from __future__ import annotations

import json
import logging
import os
from typing import Any

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once; LOG_LEVEL wins when no level is given."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=_FORMAT)


def log_event(logger: logging.Logger, message: str, **fields: Any) -> None:
    payload = {"event": message, **fields}
    logger.info(json.dumps(payload, sort_keys=True, default=str))
