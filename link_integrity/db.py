from __future__ import annotations

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from .sql import SQLQuery

if TYPE_CHECKING:
    from .config import IntegrityConfig


METADATA_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS base (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    deleted_time TIMESTAMP,
    created_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS table_meta (
    id TEXT PRIMARY KEY,
    base_id TEXT NOT NULL,
    name TEXT NOT NULL,
    db_table_name TEXT NOT NULL,
    deleted_time TIMESTAMP,
    created_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_table_meta_base ON table_meta(base_id);

CREATE TABLE IF NOT EXISTS field (
    id TEXT PRIMARY KEY,
    table_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    db_field_name TEXT NOT NULL,
    options TEXT,
    is_multiple_cell_value BOOLEAN,
    is_lookup BOOLEAN,
    deleted_time TIMESTAMP,
    created_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_field_table ON field(table_id);
"""

# undefined_table / undefined_column
MISSING_RELATION_SQLSTATES = frozenset({"42P01", "42703"})
_SQLITE_MISSING_RELATION = ("no such table", "no such column")
_COMMAND_STATUS_COUNT = re.compile(r"(\d+)\s*$")


class Database(ABC):
    """Raw SQL executor shared by the metadata store and the checkers."""

    dialect: str

    @abstractmethod
    async def query_raw(self, query: SQLQuery) -> List[Dict[str, Any]]:
        """Run a SELECT and return its rows as dicts."""

    @abstractmethod
    async def execute_raw(self, query: SQLQuery) -> int:
        """Run a statement and return the number of affected rows."""

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Run several parameterless statements, e.g. schema DDL."""

    @abstractmethod
    def is_missing_relation_error(self, exc: BaseException) -> bool:
        """True when ``exc`` reports a table or column that does not exist."""

    @abstractmethod
    async def close(self) -> None: ...


def is_memory_path(db_path: str) -> bool:
    return db_path == ":memory:" or (db_path.startswith("file:") and "mode=memory" in db_path)


class _SqlitePool:
    """Bounded pool of autocommit aiosqlite connections.

    Check and repair statements each run on their own pooled connection, so
    every connection is opened in autocommit mode with the same pragmas.
    """

    def __init__(
        self,
        db_path: str,
        *,
        max_size: int = 10,
        timeout_s: float = 30.0,
        pragmas: Sequence[str] = (),
    ) -> None:
        self.db_path = db_path
        self.max_size = max_size
        self.timeout_s = timeout_s
        self.pragmas = tuple(pragmas)
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(max_size)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(max_size)
        self._closing = False

    @property
    def size(self) -> int:
        return self._created

    async def _open_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,
            timeout=self.timeout_s,
            uri=self.db_path.startswith("file:"),
        )
        try:
            conn.row_factory = aiosqlite.Row
            for pragma in self.pragmas:
                await conn.execute(pragma)
        except Exception:
            await conn.close()
            raise
        return conn

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise RuntimeError(f"SQLite pool for {self.db_path} is closed")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"Timed out after {self.timeout_s}s waiting for a connection to {self.db_path}") from exc

        # Any failure past this point hands the semaphore slot back.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            async with self._lock:
                should_open = self._created < self.max_size
                if should_open:
                    self._created += 1
            if not should_open:
                return await self._queue.get()
            try:
                conn = await self._open_connection()
            except Exception:
                async with self._lock:
                    self._created -= 1
                raise
            self._all.add(conn)
            logging.debug("Opened SQLite connection %d/%d to %s", self._created, self.max_size, self.db_path)
            return conn
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        # A repair statement that failed mid-way may leave a transaction open.
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Dropping SQLite connection to %s after a failed release", self.db_path, exc_info=True)
            await self._discard(conn)
        finally:
            self._semaphore.release()

    async def _discard(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.close()
        except Exception:
            logging.warning("Failed to close SQLite connection to %s", self.db_path, exc_info=True)
        self._all.discard(conn)
        if self._created > 0:
            self._created -= 1

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        # Wait for every borrowed connection to come back.
        for _ in range(self.max_size):
            await self._semaphore.acquire()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in list(self._all):
            await self._discard(conn)


def ensure_db_permissions(db_path: str) -> None:
    """Create the SQLite file (and its directory) readable by the owner only."""
    if is_memory_path(db_path):
        return
    if db_path.startswith("file:"):
        db_path = db_path[len("file:") :].split("?", 1)[0]
    db_path = os.path.abspath(db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    if not os.path.exists(db_path):
        try:
            os.close(os.open(db_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600))
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


class SqliteDatabase(Database):
    dialect = "sqlite"

    def __init__(self, db_path: str, *, pool_size: int = 10, timeout_s: float = 30.0) -> None:
        self.db_path = db_path
        ensure_db_permissions(db_path)
        if is_memory_path(db_path):
            # Each connection to an in-memory database sees its own empty database.
            pool_size = 1
        pragmas = [f"PRAGMA busy_timeout={int(timeout_s * 1000)};"]
        if not is_memory_path(db_path):
            pragmas.insert(0, "PRAGMA journal_mode=WAL;")
        self._pool = _SqlitePool(db_path, max_size=max(1, int(pool_size)), timeout_s=timeout_s, pragmas=pragmas)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._pool.acquire()
        try:
            yield conn
        finally:
            await self._pool.release(conn)

    async def query_raw(self, query: SQLQuery) -> List[Dict[str, Any]]:
        async with self.connection() as conn:
            rows = await conn.execute_fetchall(query.text, query.params)
        return [dict(row) for row in rows]

    async def execute_raw(self, query: SQLQuery) -> int:
        async with self.connection() as conn:
            cursor = await conn.execute(query.text, query.params)
            try:
                return max(int(cursor.rowcount), 0)
            finally:
                await cursor.close()

    async def execute_script(self, script: str) -> None:
        async with self.connection() as conn:
            await conn.executescript(script)

    def is_missing_relation_error(self, exc: BaseException) -> bool:
        return isinstance(exc, aiosqlite.OperationalError) and str(exc).lower().startswith(
            _SQLITE_MISSING_RELATION
        )

    async def close(self) -> None:
        await self._pool.close()


class PostgresDatabase(Database):
    dialect = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout_s: float = 60.0,
    ) -> None:
        if not dsn:
            raise ValueError("postgres_dsn is required for the postgres dialect.")
        self._dsn = dsn
        self._min_size = max(1, int(min_size))
        self._max_size = max(self._min_size, int(max_size))
        self._command_timeout = float(command_timeout_s)
        self._pool = None
        self._pool_lock = asyncio.Lock()

    async def connect(self) -> None:
        import asyncpg

        async with self._pool_lock:
            if self._pool is not None:
                return
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=self._command_timeout,
            )

    async def _acquire_pool(self):
        if self._pool is None:
            await self.connect()
        return self._pool

    async def query_raw(self, query: SQLQuery) -> List[Dict[str, Any]]:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query.text, *query.params)
        return [dict(row) for row in rows]

    async def execute_raw(self, query: SQLQuery) -> int:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(query.text, *query.params)
        match = _COMMAND_STATUS_COUNT.search(status or "")
        return int(match.group(1)) if match else 0

    async def execute_script(self, script: str) -> None:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            await conn.execute(script)

    def is_missing_relation_error(self, exc: BaseException) -> bool:
        return getattr(exc, "sqlstate", None) in MISSING_RELATION_SQLSTATES

    async def close(self) -> None:
        async with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()


def open_database(cfg: "IntegrityConfig") -> Database:
    dialect = str(cfg.dialect).lower()
    if dialect == "sqlite":
        return SqliteDatabase(cfg.db_path, pool_size=cfg.pool_max_size, timeout_s=float(cfg.command_timeout_s))
    if dialect == "postgres":
        return PostgresDatabase(
            cfg.postgres_dsn,
            min_size=cfg.pool_min_size,
            max_size=cfg.pool_max_size,
            command_timeout_s=float(cfg.command_timeout_s),
        )
    raise ValueError(f"Unsupported dialect: {cfg.dialect}")


async def init_metadata_schema(db: Database) -> None:
    await db.execute_script(METADATA_SCHEMA_SQL)


async def close_database(db: Optional[Database]) -> None:
    if db is None:
        return
    try:
        await db.close()
    except Exception:
        logging.warning("Failed to close database", exc_info=True)
