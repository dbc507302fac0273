from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from chunkswap.errors import ChunkswapError

_ROOT_LOGGER_NAME = "chunkswap"
_THIRD_PARTY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

# Rendered as "<chunkserver_id>@<host>:<device>" ahead of the other fields.
_SUBJECT_KEYS = ("chunkserver_id", "host", "device")

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("chunkswap_log_context", default={})


def _subject(fields: Dict[str, Any]) -> str:
    chunkserver_id, host, device = (fields.pop(key, None) for key in _SUBJECT_KEYS)
    target = ":".join(str(value) for value in (host, device) if value)
    if chunkserver_id and target:
        return f"{chunkserver_id}@{target}"
    return str(chunkserver_id or target)


class _ChunkswapFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        fields: Dict[str, Any] = dict(getattr(record, "fields", {}))
        event = getattr(record, "event", "")
        if event == "operation.step":
            event = f">> {fields.pop('step', 'step')}"

        parts: List[str] = [stamp, f"{record.levelname:<8}", str(getattr(record, "category", record.name))]
        op_id = fields.pop("op_id", None)
        if op_id:
            parts.append(f"op={op_id}")
        if event:
            parts.append(f"{symbol} {event}")
        subject = _subject(fields)
        if subject:
            parts.append(subject)
        message = record.getMessage()
        if message:
            parts.append(message)
        parts.extend(f"{key}={value}" for key, value in fields.items() if value not in (None, ""))

        formatted = " | ".join(parts)
        if record.exc_info:
            return f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


class Operation:
    """A named unit of work whose start, steps and outcome share one ``op_id``.

    Every record logged while the operation is open, from any logger, carries the
    id, so remote commands issued by a replacement can be traced back to it.
    """

    def __init__(self, logger: "BoundLogger", name: str, message: str, fields: Dict[str, Any]) -> None:
        self.logger = logger
        self.name = name
        self.message = message
        self.fields = fields
        self.op_id = uuid4().hex[:8]
        self._start = 0.0
        self._token: Any = None

    def _begin(self) -> None:
        context = dict(_LOG_CONTEXT.get())
        context.setdefault("op_id", self.op_id)
        self._token = _LOG_CONTEXT.set(context)
        self._start = perf_counter()
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)

    def _finish(self, exc_type: Optional[type[BaseException]], exc: Optional[BaseException]) -> None:
        duration_ms = round((perf_counter() - self._start) * 1000, 1)
        try:
            if exc_type is None:
                self.logger.info("operation.complete", "Completed", operation=self.name, duration_ms=duration_ms)
            elif isinstance(exc, ChunkswapError):
                self.logger.warning(
                    "operation.error",
                    exc.detail,
                    operation=self.name,
                    duration_ms=duration_ms,
                    kind=exc.kind,
                    code=exc.code,
                )
            else:
                self.logger.exception(
                    "operation.error",
                    "Failed",
                    operation=self.name,
                    duration_ms=duration_ms,
                    error_type=exc_type.__name__,
                )
        finally:
            _LOG_CONTEXT.reset(self._token)

    def __enter__(self) -> "Operation":
        self._begin()
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self._finish(exc_type, exc)

    async def __aenter__(self) -> "Operation":
        self._begin()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self._finish(exc_type, exc)

    def step(self, name: str, message: str, **fields: Any) -> None:
        self.logger.log(logging.INFO, "operation.step", message, operation=self.name, step=name, **fields)

    def step_debug(self, name: str, message: str, **fields: Any) -> None:
        self.logger.log(logging.DEBUG, "operation.step", message, operation=self.name, step=name, **fields)

    def step_warning(self, name: str, message: str, **fields: Any) -> None:
        self.logger.log(logging.WARNING, "operation.step", message, operation=self.name, step=name, **fields)


class BoundLogger:
    def __init__(self, category: str) -> None:
        self._category = category

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        current = dict(_LOG_CONTEXT.get())
        current.update(fields)
        token = _LOG_CONTEXT.set(current)
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name=name, message=message, fields=fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, exc_info=True, **fields)

    def log(self, severity: int, event: str, message: str, *, exc_info: Any = None, **fields: Any) -> None:
        logger = logging.getLogger(_ROOT_LOGGER_NAME)
        if not logger.isEnabledFor(severity):
            return
        merged = dict(_LOG_CONTEXT.get())
        merged.update(fields)
        logger.log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": merged,
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str]) -> None:
    """Route chunkswap and uvicorn records to stderr and, if set, ``log_file``."""
    formatter = _ChunkswapFormatter()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    for name in (_ROOT_LOGGER_NAME, *_THIRD_PARTY_LOGGERS):
        logger = logging.getLogger(name)
        if name == _ROOT_LOGGER_NAME:
            logger.setLevel(log_level)
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
