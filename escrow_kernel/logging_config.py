"""
Structured JSON logging for the escrow kernel.

Every record under the ``escrow_kernel`` logger is written as one JSON
object.  Fields bound with ``LogContext.bind`` (the request correlation id,
the acting user, the order, milestone or dispute being worked on, the
auto-approval batch) are merged into each record emitted inside the block,
followed by whatever the call site passed as ``extra``.
"""

__all__ = [
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
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO
from uuid import UUID

ROOT_LOGGER_NAME = "escrow_kernel"

_EMPTY: Mapping[str, str] = MappingProxyType({})


class LogContext:
    """Scoped log fields carried by ``contextvars`` across threads and tasks."""

    FIELDS = frozenset({
        "correlation_id",
        "actor_id",
        "order_id",
        "milestone_id",
        "dispute_id",
        "batch_id",
    })

    _bound: ContextVar[Mapping[str, str]] = ContextVar(
        "escrow_log_context", default=_EMPTY,
    )

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(cls._bound.get())

    @classmethod
    def clear(cls) -> None:
        cls._bound.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """
        Add fields for the duration of a ``with`` block.

        ``None`` values are skipped, so callers can pass optional ids
        unconditionally.  Outer bindings are restored on exit.
        """
        unknown = fields.keys() - cls.FIELDS
        if unknown:
            raise KeyError(f"Unknown log context field(s): {sorted(unknown)}")
        merged = dict(cls._bound.get())
        merged.update((k, str(v)) for k, v in fields.items() if v is not None)
        token = cls._bound.set(MappingProxyType(merged))
        try:
            yield
        finally:
            cls._bound.reset(token)


# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Kernel errors keep their identifiers as public attributes
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON line per record: core keys, bound context, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRS:
                entry.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(_exception_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_to_json)


def get_logger(name: str) -> logging.Logger:
    """Return ``escrow_kernel.<name>``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


_setup_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``escrow_kernel`` logger.

    Only the first call has an effect until ``reset_logging`` runs, so the
    app factory and the engine helpers can both call it safely.
    """
    global _installed_handler
    with _setup_lock:
        if _installed_handler is not None:
            return
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(handler)
        _installed_handler = handler


def reset_logging() -> None:
    """Detach the handler installed by ``configure_logging``. Test helper."""
    global _installed_handler
    with _setup_lock:
        root = logging.getLogger(ROOT_LOGGER_NAME)
        if _installed_handler is not None:
            root.removeHandler(_installed_handler)
            _installed_handler = None
        root.setLevel(logging.WARNING)
