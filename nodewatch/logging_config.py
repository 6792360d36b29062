from __future__ import annotations

import json
import logging
from typing import Any, Dict

from .config import Settings


def setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # frame-level chatter from the transport is only useful when debugging
    for name in ("websockets", "web3"):
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)


def log_json(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    payload: Dict[str, Any] = {"msg": msg}
    payload.update(kwargs)
    logger.log(level, json.dumps(payload, separators=(",", ":"), default=str))


def log_event(settings: Settings, logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """Emit a lifecycle line as JSON or as plain ``key=value`` text depending on settings."""
    if settings.log_json:
        log_json(logger, level, msg, **kwargs)
        return
    if kwargs:
        msg = msg + " " + " ".join(f"{k}={v}" for k, v in kwargs.items())
    logger.log(level, msg)
