"""Database schema management for the jobs table."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from sql_jobs.database import SQLDatabase
from sql_jobs.dialects import Dialect
from sql_jobs.errors import DataDecodingError, MigrationError
from sql_jobs.models import DEFAULT_JOBS_TABLE, JobModel, JobState, utc_now
from sql_jobs.queries import CLAIM_INDEX_COLUMNS, CLAIM_NULLS_FIRST, JOB_COLUMNS, JobsQueries

# Seconds between the unix epoch and 2001-01-01T00:00:00Z, the epoch used by
# timestamps inside the legacy ``data`` blob.
LEGACY_REFERENCE_EPOCH = 978307200.0

LEGACY_COLUMNS = ["job_id", "queue", "data", "state", "created_at", "updated_at"]


def create_table_sql(dialect: Dialect, table_name: str, table_space: Optional[str] = None) -> str:
    types = dialect.column_types
    q = dialect.quote
    return (
        f"CREATE TABLE IF NOT EXISTS {dialect.table(table_name, table_space)} (\n"
        f"  {q('id')} {types['identifier']} NOT NULL PRIMARY KEY,\n"
        f"  {q('queue_name')} {types['text']} NOT NULL,\n"
        f"  {q('job_name')} {types['text']} NOT NULL,\n"
        f"  {q('queued_at')} {types['timestamp']} NOT NULL,\n"
        f"  {q('delay_until')} {types['timestamp']} NULL,\n"
        f"  {q('state')} {dialect.state_column_type(table_name, table_space)} NOT NULL,\n"
        f"  {q('max_retry_count')} {types['integer']} NOT NULL,\n"
        f"  {q('attempts')} {types['integer']} NOT NULL,\n"
        f"  {q('payload')} {types['binary']} NOT NULL,\n"
        f"  {q('updated_at')} {types['timestamp']} NULL\n"
        f")"
    )


def jobs_table_ddl(
    dialect: Dialect,
    table_name: str = DEFAULT_JOBS_TABLE,
    table_space: Optional[str] = None,
) -> List[str]:
    """Return the statements that create the jobs table on an empty database."""
    queries = JobsQueries(dialect, table_name, table_space)
    statements = []
    create_enum = dialect.create_enum_sql(table_name, table_space)
    if create_enum:
        statements.append(create_enum)
    statements.append(create_table_sql(dialect, table_name, table_space))
    statements.append(
        dialect.create_index_sql(
            queries.index_name, table_name, table_space, CLAIM_INDEX_COLUMNS, CLAIM_NULLS_FIRST
        )
    )
    return statements


async def table_columns(
    db: SQLDatabase, table_name: str, table_space: Optional[str] = None
) -> Set[str]:
    """Return the column names of a table, empty when it does not exist."""
    sql, args = db.dialect.columns_query(table_name, table_space)
    rows = await db.fetch(sql, *args)
    return {str(row["column_name"]).lower() for row in rows}


class JobsTableMigration:
    """Creates (or removes) the jobs table, its state type and its claim index."""

    def __init__(
        self,
        table_name: str = DEFAULT_JOBS_TABLE,
        table_space: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.table_name = table_name
        self.table_space = table_space
        self.logger = logger or logging.getLogger(__name__)

    async def prepare(self, db: SQLDatabase) -> None:
        """Create whatever is missing. Safe to run repeatedly."""
        dialect = db.dialect
        queries = JobsQueries(dialect, self.table_name, self.table_space)

        existing = await table_columns(db, self.table_name, self.table_space)
        if existing:
            missing = [c for c in JOB_COLUMNS if c not in existing]
            if missing:
                raise MigrationError(
                    f"Table {queries.table} exists but lacks columns {', '.join(missing)}; "
                    f"tables in the legacy layout need LegacyFormatMigration"
                )
            self.logger.debug(f"Jobs table {queries.table} already exists")
        else:
            self.logger.info(f"Creating jobs table {queries.table}")
            create_enum = dialect.create_enum_sql(self.table_name, self.table_space)
            if create_enum:
                await db.execute(create_enum)
            await db.execute(create_table_sql(dialect, self.table_name, self.table_space))

        if not await self._index_exists(db, queries.index_name):
            self.logger.info(f"Creating index {queries.index_name}")
            await db.execute(
                dialect.create_index_sql(
                    queries.index_name,
                    self.table_name,
                    self.table_space,
                    CLAIM_INDEX_COLUMNS,
                    CLAIM_NULLS_FIRST,
                )
            )

    async def revert(self, db: SQLDatabase) -> None:
        """Drop the index, table and state type if they exist."""
        dialect = db.dialect
        queries = JobsQueries(dialect, self.table_name, self.table_space)
        self.logger.info(f"Dropping jobs table {queries.table}")

        drop_index = dialect.drop_index_sql(queries.index_name, self.table_name, self.table_space)
        if drop_index:
            await db.execute(drop_index)
        await db.execute(dialect.drop_table_sql(self.table_name, self.table_space))
        drop_enum = dialect.drop_enum_sql(self.table_name, self.table_space)
        if drop_enum:
            await db.execute(drop_enum)

    async def _index_exists(self, db: SQLDatabase, index: str) -> bool:
        sql, args = db.dialect.index_exists_query(index, self.table_name, self.table_space)
        count = await db.fetchval(sql, *args)
        return bool(count)


class LegacyJobData(BaseModel):
    """The JSON ``data`` blob stored by the legacy table layout."""

    payload: List[int] = Field(default_factory=list)
    max_retry_count: Optional[int] = Field(None, alias="maxRetryCount")
    job_name: Optional[str] = Field(None, alias="jobName")
    attempts: Optional[int] = None
    delay_until: Optional[float] = Field(None, alias="delayUntil")
    queued_at: Optional[float] = Field(None, alias="queuedAt")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @staticmethod
    def to_datetime(value: Optional[float]) -> Optional[datetime]:
        """Convert a reference-date offset to an aware UTC datetime."""
        if value is None:
            return None
        return datetime.fromtimestamp(value + LEGACY_REFERENCE_EPOCH, tz=timezone.utc)


class LegacyFormatMigration:
    """
    Upgrades a jobs table in the legacy layout to the current one.

    The legacy layout keeps ``job_id``, ``queue``, ``state``, ``created_at``,
    ``updated_at`` and ``deleted_at`` columns next to a JSON ``data`` blob
    holding the job itself. Use this in place of JobsTableMigration on
    databases that still have such a table, not in addition to it.

    The old table is moved aside and only dropped after every row has been
    copied. If anything fails, the new table is removed and the old one is
    put back before the error is re-raised.
    """

    def __init__(
        self,
        table_name: str = DEFAULT_JOBS_TABLE,
        table_space: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.table_name = table_name
        self.table_space = table_space
        self.temp_table_name = f"_temp_old_{table_name}"
        self.logger = logger or logging.getLogger(__name__)
        self.jobs_migration = JobsTableMigration(table_name, table_space, self.logger)

    async def prepare(self, db: SQLDatabase) -> None:
        dialect = db.dialect
        existing = await table_columns(db, self.table_name, self.table_space)
        if not existing or "data" not in existing:
            self.logger.info(
                f"No legacy jobs table {self.table_name} found, creating the current layout"
            )
            await self.jobs_migration.prepare(db)
            return

        self.logger.info(f"Moving legacy jobs table {self.table_name} to {self.temp_table_name}")
        await db.execute(
            dialect.rename_table_sql(self.table_name, self.temp_table_name, self.table_space)
        )

        try:
            await self.jobs_migration.prepare(db)
            copied = await self._copy_rows(db)
        except Exception:
            self.logger.error(
                f"Legacy migration of {self.table_name} failed, restoring the original table",
                exc_info=True,
            )
            await self._restore(db)
            raise

        self.logger.info(f"Copied {copied} jobs into {self.table_name}")
        await db.execute(dialect.drop_table_sql(self.temp_table_name, self.table_space))

    async def revert(self, db: SQLDatabase) -> None:
        self.logger.warning(
            f"Reverting the legacy format migration is not implemented; "
            f"jobs table {self.table_name} is unchanged"
        )

    async def _copy_rows(self, db: SQLDatabase) -> int:
        dialect = db.dialect
        queries = JobsQueries(dialect, self.table_name, self.table_space)
        cols = ", ".join(dialect.quote(c) for c in LEGACY_COLUMNS)
        rows = await db.fetch(
            f"SELECT {cols} FROM {dialect.table(self.temp_table_name, self.table_space)}"
        )

        models = [self._convert_row(dialect, row) for row in rows]
        async with db.transaction() as tx:
            for model in models:
                await tx.execute(
                    queries.insert(state=model.state),
                    model.id,
                    model.queue_name,
                    model.job_name,
                    dialect.encode_timestamp(model.queued_at),
                    dialect.encode_timestamp(model.delay_until),
                    model.max_retry_count,
                    model.attempts,
                    model.payload,
                    dialect.encode_timestamp(model.updated_at),
                )
        return len(models)

    def _convert_row(self, dialect: Dialect, row: Dict[str, Any]) -> JobModel:
        job_id = str(row["job_id"])
        raw = row["data"]
        if isinstance(raw, memoryview):
            raw = bytes(raw)

        try:
            data = LegacyJobData.model_validate_json(raw)
            payload = bytes(data.payload)
            state = JobState(str(row["state"]))
            created_at = dialect.decode_timestamp(row["created_at"])
            updated_at = dialect.decode_timestamp(row["updated_at"])
        except (ValidationError, ValueError, TypeError) as e:
            raise DataDecodingError(f"Legacy job {job_id} cannot be decoded: {e}") from e

        queued_at = LegacyJobData.to_datetime(data.queued_at) or created_at
        if queued_at is None:
            raise DataDecodingError(f"Legacy job {job_id} has no queue time")

        return JobModel(
            id=job_id,
            queue_name=str(row["queue"]),
            job_name=data.job_name or "",
            queued_at=queued_at,
            payload=payload,
            max_retry_count=data.max_retry_count or 0,
            attempts=data.attempts or 0,
            delay_until=LegacyJobData.to_datetime(data.delay_until),
            state=state,
            updated_at=updated_at or utc_now(),
        )

    async def _restore(self, db: SQLDatabase) -> None:
        """Put the legacy table back; failures here are logged, not raised."""
        dialect = db.dialect
        steps = [dialect.drop_table_sql(self.table_name, self.table_space)]
        drop_enum = dialect.drop_enum_sql(self.table_name, self.table_space)
        if drop_enum:
            steps.append(drop_enum)
        steps.append(
            dialect.rename_table_sql(self.temp_table_name, self.table_name, self.table_space)
        )

        for sql in steps:
            try:
                await db.execute(sql)
            except Exception as e:
                self.logger.error(f"Restore step failed ({sql}): {e}")
