"""
Process-wide runtime helpers.

log_event() writes one JSON object per line, stamped with the request id and
caller identity of the request being served. Blocking SQLAlchemy calls go
through run_blocking(), which runs them on a shared pool and carries those
context variables into the worker thread.
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Optional, TypeVar

_LOGGER = logging.getLogger("runtime")

T = TypeVar("T")

_UNSET = "-"
_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default=_UNSET)
_CLIENT_ID: ContextVar[str] = ContextVar("client_id", default=_UNSET)

_POOL: Optional[ThreadPoolExecutor] = None
_POOL_LOCK = threading.Lock()
_POOL_WORKERS = max(2, int(os.getenv("APP_FOREGROUND_MAX_WORKERS", "8")))


def get_request_id() -> str:
    return _REQUEST_ID.get()


def get_client_id() -> str:
    return _CLIENT_ID.get()


def set_request_id(value: Optional[str]) -> str:
    """Adopt an inbound x-request-id (truncated) or mint one."""
    rid = (value or "").strip()[:128] or uuid.uuid4().hex
    _REQUEST_ID.set(rid)
    return rid


def set_client_id(value: Optional[str]) -> str:
    cid = (value or "").strip()[:64] or "anonymous"
    _CLIENT_ID.set(cid)
    return cid


def clear_context() -> None:
    for var in (_REQUEST_ID, _CLIENT_ID):
        var.set(_UNSET)


def log_event(logger: logging.Logger, level: int, event: str, /, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, "request_id": _REQUEST_ID.get(), "client_id": _CLIENT_ID.get()}
    payload.update(fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def get_foreground_executor() -> ThreadPoolExecutor:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            _POOL = ThreadPoolExecutor(max_workers=_POOL_WORKERS, thread_name_prefix="askmandi-db")
        return _POOL


async def run_blocking(fn: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    ctx = copy_context()
    return await loop.run_in_executor(get_foreground_executor(), functools.partial(ctx.run, fn, *args))


def shutdown_shared_executor(wait: bool = False) -> None:
    global _POOL
    with _POOL_LOCK:
        pool, _POOL = _POOL, None
    if pool is not None:
        pool.shutdown(wait=wait, cancel_futures=True)
        _LOGGER.info("shared_executor_shutdown")
