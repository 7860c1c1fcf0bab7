"""Unit tests for the SQL queue with a mocked database."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sql_jobs.dialects import MySQLDialect, SQLiteDialect
from sql_jobs.errors import DataDecodingError, DataEncodingError, MissingJobError
from sql_jobs.pop_queries import ReturningClausePopQuery, TransactionalPopQuery
from sql_jobs.queue import SqlQueue


def _stored_row(**overrides):
    row = {
        "payload": b"payload",
        "max_retry_count": 2,
        "job_name": "send_email",
        "delay_until": None,
        "queued_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "attempts": 1,
    }
    row.update(overrides)
    return row


def test_pop_strategy_follows_dialect(mock_db):
    """Test RETURNING-capable databases claim in one statement."""
    assert isinstance(SqlQueue(mock_db).pop_query, ReturningClausePopQuery)

    mock_db.dialect = MySQLDialect()
    assert isinstance(SqlQueue(mock_db).pop_query, TransactionalPopQuery)


@pytest.mark.asyncio
async def test_get_returns_job_data(mock_db):
    """Test get converts the stored row."""
    mock_db.fetchrow.return_value = _stored_row(payload=memoryview(b"payload"))
    queue = SqlQueue(mock_db, queue_name="emails")

    data = await queue.get("job-1")

    assert data.payload == b"payload"
    assert data.job_name == "send_email"
    assert data.attempts == 1
    assert data.queued_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    sql, job_id = mock_db.fetchrow.call_args.args
    assert job_id == "job-1"
    assert sql.startswith('SELECT "payload"')


@pytest.mark.asyncio
async def test_get_missing_job(mock_db):
    """Test get raises MissingJobError for an unknown id."""
    queue = SqlQueue(mock_db)

    with pytest.raises(MissingJobError) as exc_info:
        await queue.get("nope")

    assert exc_info.value.job_id == "nope"


@pytest.mark.asyncio
async def test_get_bad_timestamp(mock_db):
    """Test unreadable stored timestamps raise DataDecodingError."""
    mock_db.fetchrow.return_value = _stored_row(queued_at="not a date")
    queue = SqlQueue(mock_db)

    with pytest.raises(DataDecodingError):
        await queue.get("job-1")


@pytest.mark.asyncio
async def test_set_upserts_pending_row(mock_db, sample_job_data):
    """Test set binds every column and upserts."""
    queue = SqlQueue(mock_db, queue_name="emails")

    await queue.set("job-1", sample_job_data)

    sql, *args = mock_db.execute.call_args.args
    assert "'pending'" in sql
    assert "ON CONFLICT" in sql
    assert args[:5] == ["job-1", "emails", "send_email", sample_job_data.queued_at, None]
    assert args[5:8] == [3, 0, sample_job_data.payload]


@pytest.mark.asyncio
async def test_set_keeps_caller_attempts(mock_db, sample_job_data):
    """Test attempts is stored as given."""
    queue = SqlQueue(mock_db)

    await queue.set("job-1", sample_job_data.model_copy(update={"attempts": 2}))

    assert mock_db.execute.call_args.args[7] == 2


@pytest.mark.asyncio
async def test_set_rejects_invalid_data(mock_db):
    """Test invalid job data raises DataEncodingError before touching the database."""
    queue = SqlQueue(mock_db)

    with pytest.raises(DataEncodingError):
        await queue.set("job-1", {"payload": b"x"})

    mock_db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_set_encodes_for_sqlite(mock_db, sample_job_data):
    """Test timestamps are bound as unix seconds on SQLite."""
    mock_db.dialect = SQLiteDialect(supports_returning=True)
    queue = SqlQueue(mock_db)

    await queue.set("job-1", sample_job_data)

    assert mock_db.execute.call_args.args[4] == sample_job_data.queued_at.timestamp()


@pytest.mark.asyncio
async def test_clear_deletes_by_default(mock_db):
    """Test clear deletes the row."""
    await SqlQueue(mock_db).clear("job-1")

    sql, job_id = mock_db.execute.call_args.args
    assert sql.startswith("DELETE FROM")
    assert job_id == "job-1"


@pytest.mark.asyncio
async def test_clear_preserves_completed_jobs(mock_db):
    """Test clear marks the row completed when retention is on."""
    await SqlQueue(mock_db, preserve_completed_jobs=True).clear("job-1")

    sql = mock_db.execute.call_args.args[0]
    assert "SET \"state\" = 'completed'" in sql
    assert "<> 'completed'" in sql


@pytest.mark.asyncio
async def test_push_resets_state(mock_db):
    """Test push sets the job back to pending."""
    await SqlQueue(mock_db).push("job-1")

    sql, job_id = mock_db.execute.call_args.args
    assert "SET \"state\" = 'pending'" in sql
    assert job_id == "job-1"


@pytest.mark.asyncio
async def test_pop_returns_claimed_id(mock_db):
    """Test pop with the RETURNING strategy."""
    mock_db.fetchval.return_value = "160002"
    mock_db.fetchrow.return_value = {"id": "job-1"}
    queue = SqlQueue(mock_db, queue_name="emails")

    assert await queue.pop() == "job-1"

    sql, queue_name = mock_db.fetchrow.call_args.args
    assert queue_name == "emails"
    assert "FOR UPDATE SKIP LOCKED" in sql


@pytest.mark.asyncio
async def test_pop_empty_queue(mock_db):
    """Test pop returns None when nothing is eligible."""
    mock_db.fetchval.return_value = "160002"
    assert await SqlQueue(mock_db).pop() is None


@pytest.mark.asyncio
async def test_skip_locked_probe_runs_once(mock_db):
    """Test concurrent pops share one version probe."""
    mock_db.fetchval.return_value = "160002"
    queue = SqlQueue(mock_db)

    await asyncio.gather(*(queue.pop() for _ in range(5)))

    assert mock_db.fetchval.await_count == 1
    assert queue._skip_locked is True


@pytest.mark.asyncio
async def test_skip_locked_degrades_with_warning(mock_db, caplog):
    """Test old servers fall back to FOR UPDATE with a single warning."""
    mock_db.fetchval.return_value = "90400"
    queue = SqlQueue(mock_db)

    with caplog.at_level(logging.WARNING, logger="sql_jobs.queue"):
        await queue.pop()
        await queue.pop()

    sql = mock_db.fetchrow.call_args.args[0]
    assert "FOR UPDATE)" in sql
    assert "SKIP LOCKED" not in sql
    assert len([r for r in caplog.records if "SKIP LOCKED" in r.getMessage()]) == 1


@pytest.mark.asyncio
async def test_sqlite_pop_skips_probe(mock_db):
    """Test databases without row locks never run the probe."""
    mock_db.dialect = SQLiteDialect(supports_returning=True)
    mock_db.fetchrow.return_value = {"id": "job-1"}

    assert await SqlQueue(mock_db).pop() == "job-1"
    mock_db.fetchval.assert_not_called()


@pytest.mark.asyncio
async def test_pop_propagates_database_errors(mock_db):
    """Test SQL errors reach the caller unchanged."""
    mock_db.fetchval.return_value = "160002"
    mock_db.fetchrow.side_effect = RuntimeError("connection lost")

    with pytest.raises(RuntimeError, match="connection lost"):
        await SqlQueue(mock_db).pop()


def _transactional_db(select_result, update_count):
    tx = MagicMock()
    tx.fetchval = AsyncMock(return_value=select_result)
    tx.execute = AsyncMock(return_value=update_count)

    db = MagicMock()
    db.dialect = MySQLDialect()
    db.fetchval = AsyncMock(return_value="8.0.36")

    @asynccontextmanager
    async def transaction():
        yield tx

    db.transaction = transaction
    return db, tx


@pytest.mark.asyncio
async def test_transactional_pop_claims():
    """Test the select-then-update strategy returns the claimed id."""
    db, tx = _transactional_db("job-1", 1)

    assert await SqlQueue(db, queue_name="emails").pop() == "job-1"

    select_sql, queue_name = tx.fetchval.call_args.args
    assert queue_name == "emails"
    assert select_sql.endswith("FOR UPDATE SKIP LOCKED")
    update_sql, job_id = tx.execute.call_args.args
    assert job_id == "job-1"
    assert update_sql.endswith("AND `state` = 'pending'")


@pytest.mark.asyncio
async def test_transactional_pop_lost_race():
    """Test a claim that changed no row returns None."""
    db, _ = _transactional_db("job-1", 0)

    assert await SqlQueue(db).pop() is None


@pytest.mark.asyncio
async def test_transactional_pop_nothing_due():
    """Test no update is attempted when the selection is empty."""
    db, tx = _transactional_db(None, 0)

    assert await SqlQueue(db).pop() is None
    tx.execute.assert_not_called()
