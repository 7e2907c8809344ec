from __future__ import annotations

import logging
import sys
import uuid
import contextvars
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional


# ---- Trace id (one per request; background loads inherit it) ----
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="-")


def new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def get_trace_id() -> str:
    """Get the current context's trace id (or '-' if none)."""
    return _trace_id_var.get()


@contextmanager
def trace_scope(tid: Optional[str] = None) -> Iterator[str]:
    """
    Bind a trace id for the duration of the block and restore the previous one
    on exit. Tasks created inside the block copy the context, so a client load
    started by a request keeps logging under that request's id after the
    response has gone out.
    """
    tid = tid or new_trace_id()
    token = _trace_id_var.set(tid)
    try:
        yield tid
    finally:
        _trace_id_var.reset(token)


# ---- Key=Value formatter ----
# Field names whose values are credentials. Matched on the last "_" segment.
SECRET_FIELDS = frozenset({"access", "refresh", "token", "secret", "code", "password", "authorization"})
REDACTED = "***"


def _is_secret(key: str) -> bool:
    return key.lower().rsplit("_", 1)[-1] in SECRET_FIELDS


def _render(value: Any) -> str:
    val = str(value)
    if " " in val or "=" in val or '"' in val:
        val = '"' + val.replace('"', '\\"') + '"'
    return val


class KeyValueFormatter(logging.Formatter):
    """
    Emits single-line key=value pairs for easy grepping. Fields that look like
    credentials are masked.
    Example:
      level=INFO logger=atlhub.clienthub.manager trace_id=q9c1b msg=client.cached provider=jiracloud ttl_s=2700
    """

    def format(self, record: logging.LogRecord) -> str:
        kv: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "trace_id": getattr(record, "trace_id", get_trace_id()),
            "msg": record.getMessage(),
        }

        extra_kv = getattr(record, "kv", None)
        if isinstance(extra_kv, dict):
            for k, v in extra_kv.items():
                kv[k] = REDACTED if v is not None and _is_secret(k) else v

        line = " ".join(f"{k}={_render(v)}" for k, v in kv.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---- Logger factory & helper ----
def get_logger(name: str = "atlhub", debug: bool = False) -> logging.Logger:
    """
    The package logger. Module loggers (`logging.getLogger(__name__)` under
    `atlhub.`) propagate to it and share its handler.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(KeyValueFormatter())
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    return logger


def log_kv(logger: logging.Logger, level: int, msg: str, **kv: Any) -> None:
    """
    Log a message with structured key=value fields and the bound trace_id.
    Usage:
        log_kv(LOG, logging.INFO, "client.cache_miss", provider="jiracloud")
    """
    logger.log(level, msg, extra={"kv": kv, "trace_id": get_trace_id()})
