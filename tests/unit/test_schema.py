"""Unit tests for schema module."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from sql_jobs.dialects import MySQLDialect, PostgresDialect, SQLiteDialect
from sql_jobs.errors import DataDecodingError, MigrationError
from sql_jobs.models import JobState
from sql_jobs.queries import JOB_COLUMNS
from sql_jobs.schema import (
    LEGACY_REFERENCE_EPOCH,
    JobsTableMigration,
    LegacyFormatMigration,
    LegacyJobData,
    jobs_table_ddl,
)


def test_postgres_ddl():
    """Test PostgreSQL creates the enum type, the table and the index."""
    statements = jobs_table_ddl(PostgresDialect(), "_jobs_meta")

    assert len(statements) == 3
    assert "CREATE TYPE" in statements[0]
    assert 'CREATE TABLE IF NOT EXISTS "_jobs_meta"' in statements[1]
    assert '"state" "_jobs_meta_storedjobstatus" NOT NULL' in statements[1]
    assert '"payload" BYTEA NOT NULL' in statements[1]
    assert '"queued_at" TIMESTAMPTZ NOT NULL' in statements[1]
    assert statements[2] == (
        'CREATE INDEX "i__jobs_meta_state_queue_name_delay_until" ON "_jobs_meta" '
        '("state", "queue_name", "delay_until" ASC NULLS FIRST, "queued_at")'
    )


def test_mysql_ddl():
    """Test MySQL uses an inline ENUM and DATETIME(6)."""
    statements = jobs_table_ddl(MySQLDialect(), "_jobs_meta", "app")

    assert len(statements) == 2
    assert "CREATE TABLE IF NOT EXISTS `app`.`_jobs_meta`" in statements[0]
    assert "`state` ENUM('pending', 'processing', 'completed') NOT NULL" in statements[0]
    assert "`delay_until` DATETIME(6) NULL" in statements[0]
    assert "`id` VARCHAR(255) NOT NULL PRIMARY KEY" in statements[0]
    assert statements[1] == (
        "CREATE INDEX `i__jobs_meta_state_queue_name_delay_until` ON `app`.`_jobs_meta` "
        "(`state`, `queue_name`, `delay_until` ASC, `queued_at`)"
    )


def test_sqlite_ddl():
    """Test SQLite stores timestamps as REAL with a CHECK on state."""
    statements = jobs_table_ddl(SQLiteDialect(), "_jobs_meta")

    assert "\"state\" TEXT CHECK (\"state\" IN ('pending', 'processing', 'completed'))" in statements[0]
    assert '"queued_at" REAL NOT NULL' in statements[0]


@pytest.mark.asyncio
async def test_prepare_creates_everything(mock_db):
    """Test prepare on an empty database."""
    mock_db.fetch.return_value = []
    mock_db.fetchval.return_value = 0

    await JobsTableMigration().prepare(mock_db)

    executed = [call.args[0] for call in mock_db.execute.call_args_list]
    assert executed == jobs_table_ddl(mock_db.dialect, "_jobs_meta")


@pytest.mark.asyncio
async def test_prepare_is_idempotent(mock_db):
    """Test prepare does nothing when table and index exist."""
    mock_db.fetch.return_value = [{"column_name": c} for c in JOB_COLUMNS]
    mock_db.fetchval.return_value = 1

    await JobsTableMigration().prepare(mock_db)

    mock_db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_prepare_adds_missing_index(mock_db):
    """Test a compatible table only gets its index."""
    mock_db.fetch.return_value = [{"column_name": c.upper()} for c in JOB_COLUMNS]
    mock_db.fetchval.return_value = 0

    await JobsTableMigration().prepare(mock_db)

    assert mock_db.execute.await_count == 1
    assert mock_db.execute.call_args.args[0].startswith("CREATE INDEX")


@pytest.mark.asyncio
async def test_prepare_rejects_incompatible_table(mock_db):
    """Test a table in another layout raises MigrationError."""
    mock_db.fetch.return_value = [{"column_name": c} for c in ("id", "job_id", "queue", "data")]

    with pytest.raises(MigrationError, match="LegacyFormatMigration"):
        await JobsTableMigration().prepare(mock_db)

    mock_db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_revert_drops_everything(mock_db):
    """Test revert drops index, table and type."""
    await JobsTableMigration(table_name="jobs").revert(mock_db)

    executed = [call.args[0] for call in mock_db.execute.call_args_list]
    assert executed == [
        'DROP INDEX IF EXISTS "i_jobs_state_queue_name_delay_until"',
        'DROP TABLE IF EXISTS "jobs"',
        'DROP TYPE IF EXISTS "jobs_storedjobstatus"',
    ]


def test_legacy_job_data_parsing():
    """Test the legacy JSON blob is read with its camelCase keys."""
    data = LegacyJobData.model_validate_json(
        json.dumps(
            {
                "payload": [104, 105],
                "maxRetryCount": 3,
                "jobName": "send_email",
                "attempts": 1,
                "queuedAt": 725760000.0,
                "delayUntil": None,
            }
        )
    )

    assert bytes(data.payload) == b"hi"
    assert data.max_retry_count == 3
    assert data.job_name == "send_email"
    assert LegacyJobData.to_datetime(data.queued_at) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert LegacyJobData.to_datetime(data.delay_until) is None
    assert LEGACY_REFERENCE_EPOCH == 978307200.0


def _legacy_row(blob, **overrides):
    row = {
        "job_id": "job-1",
        "queue": "emails",
        "data": json.dumps(blob).encode(),
        "state": "pending",
        "created_at": datetime(2023, 12, 31, tzinfo=timezone.utc),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_legacy_row_defaults():
    """Test missing legacy fields fall back to defaults and created_at."""
    migration = LegacyFormatMigration()

    model = migration._convert_row(PostgresDialect(), _legacy_row({"payload": [1, 2, 3]}))

    assert model.id == "job-1"
    assert model.queue_name == "emails"
    assert model.job_name == ""
    assert model.payload == b"\x01\x02\x03"
    assert model.max_retry_count == 0
    assert model.attempts == 0
    assert model.delay_until is None
    assert model.queued_at == datetime(2023, 12, 31, tzinfo=timezone.utc)
    assert model.state == JobState.PENDING


def test_legacy_row_undecodable():
    """Test broken legacy data raises DataDecodingError."""
    migration = LegacyFormatMigration()

    with pytest.raises(DataDecodingError):
        migration._convert_row(PostgresDialect(), _legacy_row({}, data=b"{not json"))
    with pytest.raises(DataDecodingError):
        migration._convert_row(PostgresDialect(), _legacy_row({"payload": [300]}))
    with pytest.raises(DataDecodingError):
        migration._convert_row(PostgresDialect(), _legacy_row({}, state="exploded"))


@pytest.mark.asyncio
async def test_legacy_migration_restores_on_failure(mock_db):
    """Test a failed copy puts the legacy table back and re-raises."""
    legacy_columns = [{"column_name": c} for c in ("id", "job_id", "queue", "data", "state")]
    mock_db.fetch = AsyncMock(side_effect=[legacy_columns, [], RuntimeError("copy failed")])
    mock_db.fetchval.return_value = 0

    with pytest.raises(RuntimeError, match="copy failed"):
        await LegacyFormatMigration().prepare(mock_db)

    executed = [call.args[0] for call in mock_db.execute.call_args_list]
    assert executed[0] == 'ALTER TABLE "_jobs_meta" RENAME TO "_temp_old__jobs_meta"'
    assert executed[-3:] == [
        'DROP TABLE IF EXISTS "_jobs_meta"',
        'DROP TYPE IF EXISTS "_jobs_meta_storedjobstatus"',
        'ALTER TABLE "_temp_old__jobs_meta" RENAME TO "_jobs_meta"',
    ]


@pytest.mark.asyncio
async def test_legacy_migration_without_legacy_table(mock_db):
    """Test a database without a legacy table just gets the current layout."""
    mock_db.fetch.return_value = []
    mock_db.fetchval.return_value = 0

    await LegacyFormatMigration().prepare(mock_db)

    executed = [call.args[0] for call in mock_db.execute.call_args_list]
    assert executed == jobs_table_ddl(mock_db.dialect, "_jobs_meta")


@pytest.mark.asyncio
async def test_legacy_revert_only_warns(mock_db, caplog):
    """Test reverting the legacy migration leaves the table alone."""
    await LegacyFormatMigration().revert(mock_db)

    mock_db.execute.assert_not_called()
    assert "not implemented" in caplog.text
