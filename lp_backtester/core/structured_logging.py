"""JSON log events for backtest runs and price sources.

Each record is one JSON object: ``{"event": <name>, **fields}``. Non-finite
floats (a flat series can yield them in ratios) are written as ``null`` so
every line stays valid JSON.

``bind_events`` returns a small helper that stamps the same context, such as
the pair and strategy of one run, onto every event it emits.
"""
from __future__ import annotations

import json
import logging
import math
from enum import Enum
from typing import Any, Dict, Mapping


def _clean(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(v) for v in value]
    return value


def _serialize(payload: Mapping[str, Any]) -> str:
    return json.dumps(_clean(dict(payload)), ensure_ascii=False, default=str, separators=(",", ":"))


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    logger.log(level, _serialize({"event": event, **fields}))


def log_debug(logger: logging.Logger, event: str, **fields: Any) -> None:
    log_event(logger, logging.DEBUG, event, **fields)


def log_info(logger: logging.Logger, event: str, **fields: Any) -> None:
    log_event(logger, logging.INFO, event, **fields)


def log_warning(logger: logging.Logger, event: str, **fields: Any) -> None:
    log_event(logger, logging.WARNING, event, **fields)


def log_error(logger: logging.Logger, event: str, **fields: Any) -> None:
    log_event(logger, logging.ERROR, event, **fields)


class BoundEvents:
    """Event emitter with fixed context fields; per-call fields win on clashes."""

    def __init__(self, logger: logging.Logger, context: Dict[str, Any]):
        self.logger = logger
        self.context = context

    def bind(self, **fields: Any) -> "BoundEvents":
        return BoundEvents(self.logger, {**self.context, **fields})

    def emit(self, level: int, event: str, **fields: Any) -> None:
        log_event(self.logger, level, event, **{**self.context, **fields})

    def info(self, event: str, **fields: Any) -> None:
        self.emit(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self.emit(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self.emit(logging.ERROR, event, **fields)


def bind_events(logger: logging.Logger, **context: Any) -> BoundEvents:
    return BoundEvents(logger, dict(context))
