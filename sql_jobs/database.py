"""SQL database handles used by the queue.

A :class:`SQLDatabase` wraps one driver object (an asyncpg pool, an aiomysql
pool or an aiosqlite connection) behind the small asyncpg-flavoured surface
the queue needs: ``execute``/``fetch``/``fetchrow``/``fetchval`` plus a
``transaction()`` context manager yielding a handle pinned to one connection.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import unquote, urlparse

import aiomysql
import aiosqlite
import asyncpg

from sql_jobs.dialects import Dialect, MySQLDialect, PostgresDialect, SQLiteDialect

logger = logging.getLogger(__name__)


class SQLDatabase(ABC):
    """A database connection capable of running the jobs queries."""

    dialect: Dialect

    @abstractmethod
    async def execute(self, sql: str, *args: Any) -> int:
        """Run a statement and return the number of affected rows."""

    @abstractmethod
    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        """Run a query and return every row as a dict."""

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        rows = await self.fetch(sql, *args)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        row = await self.fetchrow(sql, *args)
        if row is None:
            return None
        return next(iter(row.values()))

    @abstractmethod
    def transaction(self) -> "AsyncIterator[SQLDatabase]":
        """Async context manager running its body in one transaction."""

    async def close(self) -> None:
        """Release the underlying driver resources."""


def _status_rowcount(status: str) -> int:
    """Extract the row count from an asyncpg status string like ``UPDATE 5``."""
    if not status:
        return 0
    last = status.split()[-1]
    return int(last) if last.isdigit() else 0


class PostgresDatabase(SQLDatabase):
    """PostgreSQL through an asyncpg pool or connection.

    A bare connection cannot run two statements at once, so coroutines sharing
    it are serialized by a lock; pools hand each statement its own connection.
    """

    def __init__(
        self,
        conn,
        dialect: Optional[PostgresDialect] = None,
        lock: Optional[asyncio.Lock] = None,
        in_transaction: bool = False,
    ):
        self._conn = conn
        self.dialect = dialect or PostgresDialect()
        self._lock = lock or asyncio.Lock()
        self._in_transaction = in_transaction

    @asynccontextmanager
    async def _guard(self):
        if self._in_transaction or isinstance(self._conn, asyncpg.Pool):
            yield
        else:
            async with self._lock:
                yield

    async def execute(self, sql: str, *args: Any) -> int:
        async with self._guard():
            status = await self._conn.execute(sql, *args)
        return _status_rowcount(status)

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        async with self._guard():
            rows = await self._conn.fetch(sql, *args)
        return [dict(row) for row in rows]

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        async with self._guard():
            row = await self._conn.fetchrow(sql, *args)
        return dict(row) if row is not None else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        async with self._guard():
            return await self._conn.fetchval(sql, *args)

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return
        if isinstance(self._conn, asyncpg.Pool):
            async with self._conn.acquire() as conn:
                async with conn.transaction():
                    yield PostgresDatabase(conn, self.dialect, in_transaction=True)
        else:
            async with self._lock:
                async with self._conn.transaction():
                    yield PostgresDatabase(self._conn, self.dialect, in_transaction=True)

    async def close(self) -> None:
        await self._conn.close()


class MySQLDatabase(SQLDatabase):
    """MySQL or MariaDB through an aiomysql pool or connection.

    Outside of ``transaction()`` every statement is committed immediately, so
    pools created without ``autocommit=True`` behave the same way. Coroutines
    sharing a bare connection are serialized by a lock.
    """

    def __init__(
        self,
        conn,
        dialect: Optional[MySQLDialect] = None,
        lock: Optional[asyncio.Lock] = None,
        in_transaction: bool = False,
    ):
        self._conn = conn
        self.dialect = dialect or MySQLDialect()
        self._lock = lock or asyncio.Lock()
        self._in_transaction = in_transaction

    @asynccontextmanager
    async def _connection(self):
        if isinstance(self._conn, aiomysql.Pool):
            async with self._conn.acquire() as conn:
                yield conn
        elif self._in_transaction:
            yield self._conn
        else:
            async with self._lock:
                yield self._conn

    async def execute(self, sql: str, *args: Any) -> int:
        async with self._connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql, args or None)
                rowcount = cur.rowcount
            if not self._in_transaction:
                await conn.commit()
        return rowcount

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cur:
                await cur.execute(sql, args or None)
                rows = await cur.fetchall()
            if not self._in_transaction:
                await conn.commit()
        return [dict(row) for row in rows]

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return
        async with self._connection() as conn:
            await conn.begin()
            try:
                yield MySQLDatabase(conn, self.dialect, in_transaction=True)
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def close(self) -> None:
        if isinstance(self._conn, aiomysql.Pool):
            self._conn.close()
            await self._conn.wait_closed()
        else:
            self._conn.close()


class SQLiteDatabase(SQLDatabase):
    """SQLite through a single aiosqlite connection.

    The connection is switched to autocommit mode; transactions are explicit
    ``BEGIN IMMEDIATE`` blocks so a claim holds the database write lock from
    its first read. Coroutines sharing the handle are serialized by a lock.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        dialect: Optional[SQLiteDialect] = None,
        lock: Optional[asyncio.Lock] = None,
        in_transaction: bool = False,
    ):
        self._conn = conn
        self.dialect = dialect or SQLiteDialect()
        self._lock = lock or asyncio.Lock()
        self._in_transaction = in_transaction
        if not in_transaction and conn.isolation_level is not None:
            conn.isolation_level = None

    @classmethod
    async def connect(
        cls,
        path: str,
        dialect: Optional[SQLiteDialect] = None,
        busy_timeout_ms: int = 5000,
        uri: bool = False,
    ) -> "SQLiteDatabase":
        """Open a connection configured for concurrent queue access."""
        conn = await aiosqlite.connect(path, isolation_level=None, uri=uri)
        try:
            async with conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}"):
                pass
            if path != ":memory:":
                async with conn.execute("PRAGMA journal_mode=WAL") as cursor:
                    await cursor.fetchall()
        except BaseException:
            await conn.close()
            raise
        return cls(conn, dialect)

    async def _run(self, sql: str) -> None:
        # An unfinalized statement keeps its lock, so the cursor is always closed.
        async with self._conn.execute(sql):
            pass

    @asynccontextmanager
    async def _guard(self):
        if self._in_transaction:
            yield
        else:
            async with self._lock:
                yield

    async def execute(self, sql: str, *args: Any) -> int:
        async with self._guard():
            cursor = await self._conn.execute(sql, args)
            try:
                return cursor.rowcount
            finally:
                await cursor.close()

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        async with self._guard():
            cursor = await self._conn.execute(sql, args)
            try:
                rows = await cursor.fetchall()
                names = [col[0] for col in cursor.description or ()]
            finally:
                await cursor.close()
        return [dict(zip(names, row)) for row in rows]

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return
        async with self._lock:
            await self._run("BEGIN IMMEDIATE")
            try:
                yield SQLiteDatabase(self._conn, self.dialect, self._lock, in_transaction=True)
            except BaseException:
                await self._run("ROLLBACK")
                raise
            await self._run("COMMIT")

    async def close(self) -> None:
        await self._conn.close()


def as_sql_database(handle: Any) -> Optional[SQLDatabase]:
    """Wrap a driver object in the matching handle, or None if it is not SQL-capable."""
    if isinstance(handle, SQLDatabase):
        return handle
    if isinstance(handle, (asyncpg.Pool, asyncpg.Connection)):
        return PostgresDatabase(handle)
    if isinstance(handle, aiosqlite.Connection):
        return SQLiteDatabase(handle)
    if isinstance(handle, (aiomysql.Pool, aiomysql.Connection)):
        return MySQLDatabase(handle)
    return None


class DatabaseRegistry:
    """Named database handles, one of which may be the default."""

    DEFAULT_ID = "default"

    def __init__(self):
        self._databases: Dict[str, Any] = {}
        self._default_id: Optional[str] = None

    def register(self, database_id: str, database: Any, default: bool = False) -> None:
        self._databases[database_id] = database
        if default or self._default_id is None:
            self._default_id = database_id

    def get(self, database_id: Optional[str] = None) -> Optional[Any]:
        """Look up a handle; ``None`` selects the default database."""
        if database_id is None:
            database_id = self._default_id
        if database_id is None:
            return None
        return self._databases.get(database_id)

    def ids(self) -> List[str]:
        return list(self._databases)

    def __contains__(self, database_id: str) -> bool:
        return database_id in self._databases


def sqlite_path_from_dsn(dsn: str) -> str:
    """Resolve ``sqlite:///relative.db``, ``sqlite:////abs.db`` and ``:memory:`` DSNs."""
    parsed = urlparse(dsn)
    combined = unquote(f"{parsed.netloc}{parsed.path}")
    if combined in ("", ":memory:", "/:memory:"):
        return ":memory:"
    if combined.startswith("//"):
        return combined[1:]
    if combined.startswith("/"):
        return combined[1:]
    return combined


async def connect_database(dsn: str, min_size: int = 1, max_size: int = 10) -> SQLDatabase:
    """Create a database handle from a DSN."""
    parsed = urlparse(dsn)
    scheme = (parsed.scheme or "").lower()

    if scheme.startswith("postgres"):
        logger.info("Connecting to PostgreSQL...")
        pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        return PostgresDatabase(pool)

    if scheme.startswith("mysql") or scheme.startswith("mariadb"):
        logger.info(f"Connecting to MySQL at {parsed.hostname}...")
        pool = await aiomysql.create_pool(
            host=parsed.hostname or "localhost",
            port=parsed.port or 3306,
            user=unquote(parsed.username or ""),
            password=unquote(parsed.password or ""),
            db=parsed.path.lstrip("/") or None,
            minsize=min_size,
            maxsize=max_size,
            autocommit=True,
        )
        return MySQLDatabase(pool)

    if scheme.startswith("sqlite"):
        path = sqlite_path_from_dsn(dsn)
        logger.info(f"Using SQLite database: {path}")
        return await SQLiteDatabase.connect(path)

    raise ValueError(f"Unsupported database DSN scheme: {scheme or dsn}")
