"""Structured logging for pipeline stage events."""
import json
import logging
import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, TextIO


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, 'value'):
        return value.value
    return str(value)


def _stage_handler(logger: logging.Logger, level: int, stream: Optional[TextIO]) -> logging.Handler:
    # One handler per named logger, however often the CLI asks for it
    handler = getattr(logger, '_stage_event_handler', None)
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(handler)
        logger._stage_event_handler = handler
    elif stream is not None:
        handler.setStream(stream)
    handler.setLevel(level)
    return handler


class StageEventLogger:
    """
    Emits one JSON object per stage event, carrying the bound context.

    Example line for a finished merge:
    {
        "time": "2025-01-13T14:00:00.000000Z",
        "level": "INFO",
        "event": "stage_completed",
        "stage": "merge",
        "price_day": "2025-01-13",
        "entities_updated": 104233
    }
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        self.logger = logger
        self.context = dict(context or {})

    def bind(self, **fields: Any) -> 'StageEventLogger':
        """Return a logger that adds ``fields`` to every event it emits."""
        return StageEventLogger(self.logger, {**self.context, **fields})

    def event(self, level: int, name: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        entry: Dict[str, Any] = {
            'time': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': logging.getLevelName(level),
            'event': name,
        }
        entry.update(self.context)
        entry.update(fields)
        self.logger.log(level, json.dumps(entry, default=_json_default))

    def info(self, name: str, **fields: Any) -> None:
        self.event(logging.INFO, name, **fields)

    def error(self, name: str, **fields: Any) -> None:
        self.event(logging.ERROR, name, **fields)


def get_logger(name: str, level: int = logging.INFO, stream: Optional[TextIO] = None) -> StageEventLogger:
    """
    Get a stage event logger writing JSON lines.

    Args:
        name: Logger name
        level: Log level
        stream: Output stream (default: stdout)

    Returns:
        StageEventLogger with no bound context
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    _stage_handler(logger, level, stream)
    return StageEventLogger(logger)
