"""
Structured JSON logging for the procurement engine.

Every record is one JSON line carrying the envelope (ts, level, logger,
message), whatever request fields are bound in ``LogContext`` (the order,
payment, actor and causation being worked on), the ``extra=`` payload, and
for exceptions the structured attributes of ``ProcurementError``.

Loggers live under the ``procurement`` namespace; ``configure_logging``
installs a single handler there and stops propagation to the root logger.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Mapping
from uuid import UUID

LOGGER_NAMESPACE = "procurement"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "order_id",
    "payment_id",
    "actor_id",
    "causation_id",
)

_context: ContextVar[Mapping[str, str]] = ContextVar("procurement_log_context", default={})


def _merged(fields: Mapping[str, Any]) -> dict[str, str]:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    merged = dict(_context.get())
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    return merged


class LogContext:
    """
    Request-scoped fields stamped onto every record.

    Backed by one ContextVar, so each thread and each asyncio task sees its
    own copy. ``None`` values never overwrite a bound field.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        _context.set(_merged(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[type["LogContext"]]:
        """Bind fields for the duration of a block, then restore the prior map."""
        token = _context.set(_merged(fields))
        try:
            yield LogContext
        finally:
            _context.reset(token)


_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return repr(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if name.startswith("_") or name == "code":
            continue
        fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.x")`` -> ``procurement.services.x``."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


_state_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the JSON handler on the namespace logger. Later calls are no-ops."""
    global _installed_handler
    with _state_lock:
        if _installed_handler is not None:
            return
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())

        logger = logging.getLogger(LOGGER_NAMESPACE)
        logger.setLevel(level)
        logger.propagate = False
        logger.addHandler(handler)
        _installed_handler = handler


def reset_logging() -> None:
    """Remove the installed handler so the next configure_logging applies. Tests only."""
    global _installed_handler
    with _state_lock:
        logger = logging.getLogger(LOGGER_NAMESPACE)
        if _installed_handler is not None:
            logger.removeHandler(_installed_handler)
        logger.setLevel(logging.WARNING)
        _installed_handler = None
