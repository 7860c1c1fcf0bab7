"""Per-engine SQL dialects.

Each :class:`Dialect` describes what one database engine can do (``RETURNING``,
``SKIP LOCKED``, enum types) and renders the engine-specific fragments the
queue needs: placeholders, identifier quoting, "now", locking clauses, upserts
and DDL. Everything engine-specific lives here so the queue logic can stay
dialect-agnostic.
"""

import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

from dateutil.parser import isoparse

from sql_jobs.models import JobState, as_utc

ENUM_VALUES = tuple(state.value for state in JobState)


class Dialect:
    """Capability descriptor and SQL renderer for one database engine."""

    name = "generic"

    #: ``UPDATE ... RETURNING`` is available.
    supports_returning = False
    #: ``SELECT ... FOR UPDATE`` style row locks are available.
    supports_row_locking = True
    #: Query returning the server version, used to decide on ``SKIP LOCKED``.
    version_query: Optional[str] = None

    column_types = {
        "identifier": "TEXT",
        "text": "TEXT",
        "timestamp": "TIMESTAMP",
        "integer": "BIGINT",
        "binary": "BLOB",
    }

    def placeholder(self, index: int) -> str:
        """Return the bind marker for the 1-based parameter ``index``."""
        return "?"

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def table(self, name: str, space: Optional[str] = None) -> str:
        """Return a quoted, optionally schema-qualified table reference."""
        if space:
            return f"{self.quote(space)}.{self.quote(name)}"
        return self.quote(name)

    def literal(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def now(self) -> str:
        """SQL expression for the current instant, comparable to stored timestamps."""
        return "current_timestamp"

    def encode_timestamp(self, value: Optional[datetime]) -> Any:
        return as_utc(value)

    def decode_timestamp(self, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return as_utc(value)
        if isinstance(value, str):
            return as_utc(isoparse(value))
        raise ValueError(f"Unsupported timestamp value {value!r}")

    def ascending(self, column: str, nulls_first: bool = False) -> str:
        """Ascending sort term; NULL already sorts first here."""
        return f"{self.quote(column)} ASC"

    def locking_clause(self, skip_locked: bool) -> str:
        """Row-lock clause appended to the claim selection."""
        if not self.supports_row_locking:
            return ""
        if skip_locked:
            return "FOR UPDATE SKIP LOCKED"
        return "FOR UPDATE"

    def supports_skip_locked(self, version: str) -> bool:
        """Decide from a ``version_query`` result whether ``SKIP LOCKED`` works."""
        return False

    # DDL

    def enum_type_name(self, table_name: str) -> str:
        return f"{table_name}_storedjobstatus"

    def state_column_type(self, table_name: str, space: Optional[str] = None) -> str:
        values = ", ".join(self.literal(v) for v in ENUM_VALUES)
        return f"TEXT CHECK ({self.quote('state')} IN ({values}))"

    def create_enum_sql(self, table_name: str, space: Optional[str] = None) -> Optional[str]:
        return None

    def drop_enum_sql(self, table_name: str, space: Optional[str] = None) -> Optional[str]:
        return None

    def index_columns(self, columns: Sequence[str], nulls_first: Sequence[str] = ()) -> str:
        return ", ".join(
            self.ascending(c, nulls_first=True) if c in nulls_first else self.quote(c)
            for c in columns
        )

    def create_index_sql(
        self,
        index: str,
        table_name: str,
        space: Optional[str],
        columns: Sequence[str],
        nulls_first: Sequence[str] = (),
    ) -> str:
        cols = self.index_columns(columns, nulls_first)
        return f"CREATE INDEX {self.quote(index)} ON {self.table(table_name, space)} ({cols})"

    def drop_index_sql(self, index: str, table_name: str, space: Optional[str] = None) -> Optional[str]:
        return f"DROP INDEX IF EXISTS {self.table(index, space)}"

    def drop_table_sql(self, table_name: str, space: Optional[str] = None) -> str:
        return f"DROP TABLE IF EXISTS {self.table(table_name, space)}"

    def rename_table_sql(self, old_name: str, new_name: str, space: Optional[str] = None) -> str:
        return f"ALTER TABLE {self.table(old_name, space)} RENAME TO {self.quote(new_name)}"

    def columns_query(self, table_name: str, space: Optional[str] = None) -> Tuple[str, List[Any]]:
        """Query listing the table's columns as ``column_name`` (empty if absent)."""
        raise NotImplementedError

    def index_exists_query(
        self, index: str, table_name: str, space: Optional[str] = None
    ) -> Tuple[str, List[Any]]:
        """Query returning a positive count when the index exists."""
        raise NotImplementedError

    def upsert_clause(self, conflict_column: str, update_columns: Sequence[str]) -> str:
        assignments = ", ".join(
            f"{self.quote(c)} = excluded.{self.quote(c)}" for c in update_columns
        )
        return f"ON CONFLICT ({self.quote(conflict_column)}) DO UPDATE SET {assignments}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PostgresDialect(Dialect):
    """PostgreSQL: RETURNING, named enum types, SKIP LOCKED from 9.5."""

    name = "postgresql"
    supports_returning = True
    version_query = "SELECT current_setting('server_version_num')"

    column_types = {
        "identifier": "TEXT",
        "text": "TEXT",
        "timestamp": "TIMESTAMPTZ",
        "integer": "BIGINT",
        "binary": "BYTEA",
    }

    def placeholder(self, index: int) -> str:
        return f"${index}"

    def ascending(self, column: str, nulls_first: bool = False) -> str:
        # PostgreSQL sorts NULL last by default.
        if nulls_first:
            return f"{self.quote(column)} ASC NULLS FIRST"
        return f"{self.quote(column)} ASC"

    def supports_skip_locked(self, version: str) -> bool:
        try:
            return int(version.strip()) >= 90500
        except ValueError:
            return False

    def state_column_type(self, table_name: str, space: Optional[str] = None) -> str:
        return self.table(self.enum_type_name(table_name), space)

    def create_enum_sql(self, table_name: str, space: Optional[str] = None) -> Optional[str]:
        values = ", ".join(self.literal(v) for v in ENUM_VALUES)
        type_name = self.table(self.enum_type_name(table_name), space)
        return (
            "DO $$ BEGIN "
            f"CREATE TYPE {type_name} AS ENUM ({values}); "
            "EXCEPTION WHEN duplicate_object THEN NULL; "
            "END $$"
        )

    def drop_enum_sql(self, table_name: str, space: Optional[str] = None) -> Optional[str]:
        return f"DROP TYPE IF EXISTS {self.table(self.enum_type_name(table_name), space)}"

    def columns_query(self, table_name, space=None):
        return (
            "SELECT column_name::text AS column_name FROM information_schema.columns "
            "WHERE table_name = $1 AND table_schema = COALESCE($2::text, current_schema()::text)",
            [table_name, space],
        )

    def index_exists_query(self, index, table_name, space=None):
        return (
            "SELECT COUNT(*) AS index_count FROM pg_indexes "
            "WHERE indexname = $1 AND schemaname = COALESCE($2::text, current_schema()::text)",
            [index, space],
        )


class MySQLDialect(Dialect):
    """MySQL and MariaDB: no RETURNING, inline ENUM columns, version-dependent SKIP LOCKED."""

    name = "mysql"
    supports_returning = False
    version_query = "SELECT version()"

    column_types = {
        "identifier": "VARCHAR(255)",
        "text": "VARCHAR(255)",
        "timestamp": "DATETIME(6)",
        "integer": "BIGINT",
        "binary": "LONGBLOB",
    }

    _version_re = re.compile(r"^(\d+)\.(\d+)")

    def placeholder(self, index: int) -> str:
        return "%s"

    def quote(self, identifier: str) -> str:
        return "`" + identifier.replace("`", "``") + "`"

    def literal(self, value: str) -> str:
        return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"

    def now(self) -> str:
        return "UTC_TIMESTAMP(6)"

    def encode_timestamp(self, value):
        value = as_utc(value)
        return value.replace(tzinfo=None) if value is not None else None

    def supports_skip_locked(self, version: str) -> bool:
        match = self._version_re.match(version.strip())
        if not match:
            return False
        major, minor = int(match.group(1)), int(match.group(2))
        if "mariadb" in version.lower():
            return (major, minor) >= (10, 6)
        return major >= 8

    def state_column_type(self, table_name, space=None):
        values = ", ".join(self.literal(v) for v in ENUM_VALUES)
        return f"ENUM({values})"

    def drop_index_sql(self, index, table_name, space=None):
        # Indexes go away with their table.
        return None

    def rename_table_sql(self, old_name, new_name, space=None):
        return f"RENAME TABLE {self.table(old_name, space)} TO {self.table(new_name, space)}"

    def columns_query(self, table_name, space=None):
        return (
            "SELECT column_name AS column_name FROM information_schema.columns "
            "WHERE table_name = %s AND table_schema = COALESCE(%s, DATABASE())",
            [table_name, space],
        )

    def index_exists_query(self, index, table_name, space=None):
        return (
            "SELECT COUNT(*) AS index_count FROM information_schema.statistics "
            "WHERE index_name = %s AND table_name = %s AND table_schema = COALESCE(%s, DATABASE())",
            [index, table_name, space],
        )

    def upsert_clause(self, conflict_column, update_columns):
        assignments = ", ".join(
            f"{self.quote(c)} = VALUES({self.quote(c)})" for c in update_columns
        )
        return f"ON DUPLICATE KEY UPDATE {assignments}"


class SQLiteDialect(Dialect):
    """SQLite: timestamps stored as unix seconds, database-level write locking.

    ``RETURNING`` needs SQLite 3.35; pass ``supports_returning`` to override
    the check against the linked library.
    """

    name = "sqlite"
    supports_row_locking = False

    column_types = {
        "identifier": "TEXT",
        "text": "TEXT",
        "timestamp": "REAL",
        "integer": "INTEGER",
        "binary": "BLOB",
    }

    def __init__(self, supports_returning: Optional[bool] = None):
        if supports_returning is None:
            supports_returning = sqlite3.sqlite_version_info >= (3, 35, 0)
        self.supports_returning = supports_returning

    def now(self) -> str:
        return "((julianday('now') - 2440587.5) * 86400.0)"

    def encode_timestamp(self, value):
        value = as_utc(value)
        return value.timestamp() if value is not None else None

    def decode_timestamp(self, value):
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        if isinstance(value, str):
            try:
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            except ValueError:
                pass
        return super().decode_timestamp(value)

    def create_index_sql(self, index, table_name, space, columns, nulls_first=()):
        # SQLite qualifies the index name, never the table.
        cols = self.index_columns(columns, nulls_first)
        return f"CREATE INDEX {self.table(index, space)} ON {self.quote(table_name)} ({cols})"

    def columns_query(self, table_name, space=None):
        if space:
            return "SELECT name AS column_name FROM pragma_table_info(?, ?)", [table_name, space]
        return "SELECT name AS column_name FROM pragma_table_info(?)", [table_name]

    def index_exists_query(self, index, table_name, space=None):
        master = f"{self.quote(space)}.sqlite_master" if space else "sqlite_master"
        return (
            f"SELECT COUNT(*) AS index_count FROM {master} WHERE type = 'index' AND name = ?",
            [index],
        )

    def __repr__(self) -> str:
        return f"SQLiteDialect(supports_returning={self.supports_returning})"
