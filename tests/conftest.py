"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sql_jobs.dialects import PostgresDialect
from sql_jobs.models import JobData


@pytest.fixture
def sample_job_data():
    """Sample job data for testing."""
    return JobData(
        payload=b'{"recipient": "test@example.com"}',
        max_retry_count=3,
        job_name="send_email",
        queued_at=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def delayed_job_data(sample_job_data):
    """Job data that only becomes due in an hour."""
    return sample_job_data.model_copy(
        update={"delay_until": datetime.now(timezone.utc) + timedelta(hours=1)}
    )


@pytest.fixture
def mock_db():
    """SQLDatabase double speaking the PostgreSQL dialect."""
    db = MagicMock()
    db.dialect = PostgresDialect()
    db.execute = AsyncMock(return_value=1)
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)
    return db
