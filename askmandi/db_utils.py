"""
Database Utilities - pooled engine, read-only per-request connection, row capping
"""
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from askmandi.services.runtime import log_event, run_blocking

logger = logging.getLogger("db_utils")


_ENGINE_CACHE: Dict[str, Engine] = {}
_ENGINE_CACHE_LOCK = threading.RLock()


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    url: str

    # Timeout settings (in seconds)
    connect_timeout: int = 10

    # Pool settings
    pool_size: int = 5
    max_overflow: int = 10


class QueryExecutionError(Exception):
    """Raised when query execution fails"""
    pass


def _is_sqlite(url: str) -> bool:
    return url.lower().startswith("sqlite")


def create_engine_with_timeout(config: DatabaseConfig) -> Engine:
    """
    Create a SQLAlchemy engine for the price database, cached by URL.

    Postgres connections get a connect timeout; the per-statement timeout is
    applied on each request connection by SqlExecutor.
    """
    with _ENGINE_CACHE_LOCK:
        cached = _ENGINE_CACHE.get(config.url)
        if cached is not None:
            return cached

        kwargs: Dict[str, Any] = {"pool_pre_ping": True, "echo": False}
        if not _is_sqlite(config.url):
            kwargs.update(
                pool_size=config.pool_size,
                max_overflow=config.max_overflow,
                pool_recycle=300,  # remote DBs drop idle connections
                connect_args={"connect_timeout": int(config.connect_timeout)},
            )
        engine = create_engine(config.url, **kwargs)
        _ENGINE_CACHE[config.url] = engine
        log_event(logger, logging.INFO, "engine_created_and_cached", dialect=engine.dialect.name)
        return engine


def dispose_engines() -> None:
    with _ENGINE_CACHE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


class SqlExecutor:
    """
    One lazily opened connection per request.

    Postgres transactions are marked READ ONLY with a statement_timeout, so a
    statement that slipped past the sanitizer still cannot write. The
    connection is rolled back and closed by close(), which callers must reach
    on every exit path (see open_sql_executor).
    """

    def __init__(self, engine: Engine, *, timeout_seconds: int = 30, max_rows: int = 500):
        self._engine = engine
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.max_rows = max(1, int(max_rows))
        self._conn: Optional[Connection] = None
        self.closed = False
        self.query_count = 0

    def _connect(self) -> Connection:
        if self.closed:
            raise QueryExecutionError("executor already closed")
        if self._conn is None:
            conn = self._engine.connect()
            if conn.dialect.name == "postgresql":
                conn.execute(text("SET TRANSACTION READ ONLY"))
                conn.execute(text(f"SET LOCAL statement_timeout = {self.timeout_seconds * 1000}"))
            self._conn = conn
        return self._conn

    def _execute_sync(self, sql: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            result = conn.execute(text(sql))
            columns = list(result.keys())
            # fetchmany avoids materialising the full result set
            fetched = result.fetchmany(self.max_rows)
        except SQLAlchemyError as exc:
            raise QueryExecutionError(str(exc).splitlines()[0]) from exc
        return [{col: _jsonable(val) for col, val in zip(columns, row)} for row in fetched]

    async def execute(self, sql: str) -> List[Dict[str, Any]]:
        self.query_count += 1
        rows = await run_blocking(self._execute_sync, sql)
        log_event(logger, logging.INFO, "sql_executed", rows=len(rows), sql_chars=len(sql))
        return rows

    def _close_sync(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.rollback()
        finally:
            conn.close()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await run_blocking(self._close_sync)


@asynccontextmanager
async def open_sql_executor(engine: Engine, *, timeout_seconds: int = 30, max_rows: int = 500) -> AsyncIterator[SqlExecutor]:
    executor = SqlExecutor(engine, timeout_seconds=timeout_seconds, max_rows=max_rows)
    try:
        yield executor
    finally:
        await executor.close()
