"""Unit tests for queries module."""

from sql_jobs.dialects import MySQLDialect, PostgresDialect, SQLiteDialect
from sql_jobs.models import JobState
from sql_jobs.queries import JobsQueries


def test_index_name():
    """Test the claim index name."""
    queries = JobsQueries(PostgresDialect(), "_jobs_meta")
    assert queries.index_name == "i__jobs_meta_state_queue_name_delay_until"


def test_select_job_data():
    """Test the get query."""
    sql = JobsQueries(PostgresDialect(), "_jobs_meta").select_job_data()
    assert sql == (
        'SELECT "payload", "max_retry_count", "job_name", "delay_until", "queued_at", '
        '"attempts" FROM "_jobs_meta" WHERE "id" = $1'
    )


def test_insert_inlines_state_and_numbers_binds():
    """Test the state is a literal and the other columns are bound in order."""
    sql = JobsQueries(PostgresDialect(), "_jobs_meta").insert()
    assert "VALUES ($1, $2, $3, $4, $5, 'pending', $6, $7, $8, $9)" in sql
    assert "ON CONFLICT" not in sql

    sql = JobsQueries(PostgresDialect(), "_jobs_meta").insert(state=JobState.COMPLETED)
    assert "'completed'" in sql


def test_upsert_keeps_queued_at():
    """Test re-enqueueing overwrites everything except the queue time."""
    sql = JobsQueries(PostgresDialect(), "_jobs_meta").insert(upsert=True)
    assert 'ON CONFLICT ("id") DO UPDATE SET' in sql
    assert '"state" = excluded."state"' in sql
    assert '"attempts" = excluded."attempts"' in sql
    assert '"queued_at" = excluded' not in sql


def test_push_and_clear_queries():
    """Test the push, delete and complete statements."""
    queries = JobsQueries(MySQLDialect(), "_jobs_meta", "app")

    assert queries.push() == (
        "UPDATE `app`.`_jobs_meta` SET `state` = 'pending', `updated_at` = UTC_TIMESTAMP(6) "
        "WHERE `id` = %s"
    )
    assert queries.delete() == "DELETE FROM `app`.`_jobs_meta` WHERE `id` = %s"
    assert queries.complete().endswith("WHERE `id` = %s AND `state` <> 'completed'")


def test_select_next_pending():
    """Test eligibility, ordering and locking of the claim selection."""
    sql = JobsQueries(PostgresDialect(), "_jobs_meta").select_next_pending("FOR UPDATE SKIP LOCKED")

    assert "\"state\" = 'pending'" in sql
    assert '"queue_name" = $1' in sql
    assert '("delay_until" IS NULL OR "delay_until" <= current_timestamp)' in sql
    assert 'COALESCE' not in sql
    assert 'ORDER BY "delay_until" ASC NULLS FIRST, "queued_at" ASC LIMIT 1' in sql
    assert sql.endswith("LIMIT 1 FOR UPDATE SKIP LOCKED")


def test_select_next_pending_without_locking():
    """Test SQLite gets no locking clause."""
    sql = JobsQueries(SQLiteDialect(), "_jobs_meta").select_next_pending("")
    assert sql.endswith("LIMIT 1")
    assert 'ORDER BY "delay_until" ASC, "queued_at" ASC LIMIT 1' in sql
    assert '"queue_name" = ?' in sql


def test_claim_returning():
    """Test the single-statement claim."""
    sql = JobsQueries(PostgresDialect(), "_jobs_meta").claim_returning("FOR UPDATE SKIP LOCKED")

    assert sql.startswith("UPDATE \"_jobs_meta\" SET \"state\" = 'processing'")
    assert 'WHERE "id" IN (SELECT "id" FROM "_jobs_meta"' in sql
    assert sql.endswith('FOR UPDATE SKIP LOCKED) RETURNING "id"')


def test_claim_if_pending():
    """Test the compare-and-swap claim."""
    sql = JobsQueries(MySQLDialect(), "_jobs_meta").claim_if_pending()
    assert sql == (
        "UPDATE `_jobs_meta` SET `state` = 'processing', `updated_at` = UTC_TIMESTAMP(6) "
        "WHERE `id` = %s AND `state` = 'pending'"
    )
