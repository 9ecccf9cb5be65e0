"""
Structured Logging

One JSON object per line. Every line carries the correlation id of the
request that caused it, and a webhook keeps that id across its retries:
asyncio retries inherit the context, Celery retries get it as a task
argument.

Fields bound with ``bind_log_context`` (payment_id, attempt) are added to
every line logged inside the block:

    with bind_log_context(payment_id=event.payment_id, attempt=attempt):
        logger.warning("Webhook processing failed")
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator, Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
log_context_var: ContextVar[Optional[dict[str, Any]]] = ContextVar("log_context", default=None)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        context = log_context_var.get()
        if context:
            entry["context"] = dict(context)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept ``extra_data=``"""

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra: Optional[dict[str, Any]] = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: Optional[dict[str, Any]] = None,
    ) -> None:
        if extra_data:
            extra = dict(extra or {}, extra_data=extra_data)
        # one more frame: this override sits between the level method and the caller
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class CorrelationIdFilter(logging.Filter):
    """Exposes correlation id and bound context to the plain-text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        context = log_context_var.get() or {}
        record.log_context = " ".join(f"{k}={v}" for k, v in context.items())
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the root logger.

    JSON lines in production; a readable single-line format for development.
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] %(log_context)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)

    # driver and broker chatter
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the id for the current context; a fresh one when none is given"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[None]:
    """Add ``fields`` to every line logged inside the block"""
    current = log_context_var.get() or {}
    token = log_context_var.set({**current, **fields})
    try:
        yield
    finally:
        log_context_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """Log start, failure or completion of a coroutine with its duration"""
    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name},
            )
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"Failed {operation_name}: {type(e).__name__}",
                    extra_data={
                        "operation": operation_name,
                        "duration_seconds": round(time.perf_counter() - started, 4),
                        "error": str(e),
                    },
                )
                raise
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                },
            )
            return result

        return wrapper
    return decorator
