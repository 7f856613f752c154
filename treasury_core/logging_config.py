"""
Logging for the treasury engine.

Every module logs under the ``treasury`` logger tree. Records carry optional
ledger context (acting user, action, resource such as ``wallet_entry:<ref>``)
that the JSON formatter lifts into top-level keys, so a settlement or
approval can be followed across workers by grepping one reference.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields appear only when set"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "treasury",
                  log_format: str = "json") -> logging.Logger:
    """
    Point the engine's logger tree at a single stream handler.

    Calling it again replaces the handler rather than adding a second one.
    The tree does not propagate to the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: top of the logger tree, ``treasury`` unless testing
        log_format: ``json`` for JSONFormatter, ``text`` for TEXT_FORMAT lines
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "treasury") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, exc_info: bool = False):
    """
    Log a ledger action with its context attached to the record.

    ``resource`` names what was touched (``budget:<id>``,
    ``wallet_entry:<reference>``); ``extra`` holds anything else worth
    searching on, such as amounts or provider latency. Pass ``exc_info=True``
    from an ``except`` block to attach the traceback.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (),
        sys.exc_info() if exc_info else None
    )

    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
