"""Queue engine storing jobs in a SQL table."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Union

from sql_jobs.database import SQLDatabase
from sql_jobs.errors import DataDecodingError, MissingJobError
from sql_jobs.models import DEFAULT_JOBS_TABLE, JobData, JobModel, utc_now
from sql_jobs.pop_queries import PopQuery, ReturningClausePopQuery, TransactionalPopQuery
from sql_jobs.queries import JobsQueries


class Queue(ABC):
    """Operations a job scheduler needs from a queue backend."""

    queue_name: str

    @abstractmethod
    async def get(self, job_id: str) -> JobData:
        """Return the stored data for a job, raising MissingJobError if absent."""

    @abstractmethod
    async def set(self, job_id: str, job_data: Union[JobData, Mapping[str, Any]]) -> None:
        """Store (or re-store) a job in the pending state."""

    @abstractmethod
    async def clear(self, job_id: str) -> None:
        """Finish a job: delete it or mark it completed."""

    @abstractmethod
    async def push(self, job_id: str) -> None:
        """Make a job eligible for claiming again."""

    @abstractmethod
    async def pop(self) -> Optional[str]:
        """Claim the next eligible job and return its id, or None."""


class SqlQueue(Queue):
    """
    Job queue backed by one SQL table shared by every worker.

    All coordination between workers happens in the database: ``pop`` claims
    rows with row locks that skip rows other workers hold (or with
    database-level locking on SQLite), so one job is never handed to two
    callers. Errors raised by the driver propagate unchanged and nothing is
    retried here.

    Example:
        ```python
        db = await connect_database("postgresql://localhost/app")
        queue = SqlQueue(db, queue_name="emails")

        await queue.set(job_id, JobData(payload=b"...", job_name="send_email"))
        await queue.push(job_id)

        claimed = await queue.pop()
        ```
    """

    def __init__(
        self,
        db: SQLDatabase,
        queue_name: str = "default",
        table_name: str = DEFAULT_JOBS_TABLE,
        table_space: Optional[str] = None,
        preserve_completed_jobs: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.queue_name = queue_name
        self.preserve_completed_jobs = preserve_completed_jobs
        self.queries = JobsQueries(db.dialect, table_name, table_space)
        self.logger = logger or logging.getLogger(__name__)
        self.pop_query: PopQuery = (
            ReturningClausePopQuery()
            if db.dialect.supports_returning
            else TransactionalPopQuery()
        )
        self._skip_locked: Optional[bool] = None
        self._skip_locked_lock = asyncio.Lock()

    @property
    def dialect(self):
        return self.db.dialect

    async def get(self, job_id: str) -> JobData:
        row = await self.db.fetchrow(self.queries.select_job_data(), job_id)
        if row is None:
            raise MissingJobError(job_id)
        return self._row_to_job_data(job_id, row)

    async def set(self, job_id: str, job_data: Union[JobData, Mapping[str, Any]]) -> None:
        data = JobData.coerce(job_data)
        model = JobModel.from_job_data(job_id, self.queue_name, data)
        await self.db.execute(self.queries.insert(upsert=True), *self._insert_args(model))
        self.logger.debug(f"Stored job {job_id} ({data.job_name}) on queue {self.queue_name}")

    async def clear(self, job_id: str) -> None:
        if self.preserve_completed_jobs:
            await self.db.execute(self.queries.complete(), job_id)
        else:
            await self.db.execute(self.queries.delete(), job_id)

    async def push(self, job_id: str) -> None:
        await self.db.execute(self.queries.push(), job_id)

    async def pop(self) -> Optional[str]:
        locking_clause = await self._locking_clause()
        job_id = await self.pop_query.pop(self.db, self.queries, self.queue_name, locking_clause)
        if job_id is not None:
            self.logger.debug(f"Claimed job {job_id} from queue {self.queue_name}")
        return job_id

    async def _locking_clause(self) -> str:
        if not self.dialect.supports_row_locking:
            return ""
        if self._skip_locked is None:
            async with self._skip_locked_lock:
                if self._skip_locked is None:
                    self._skip_locked = await self._probe_skip_locked()
        return self.dialect.locking_clause(skip_locked=self._skip_locked)

    async def _probe_skip_locked(self) -> bool:
        """Ask the server for its version once and decide on SKIP LOCKED."""
        if not self.dialect.version_query:
            return False
        version = await self.db.fetchval(self.dialect.version_query)
        supported = self.dialect.supports_skip_locked(str(version or ""))
        if supported:
            self.logger.debug(f"{self.dialect.name} {version} supports SKIP LOCKED")
        else:
            self.logger.warning(
                f"{self.dialect.name} server version {version} does not support SKIP LOCKED; "
                f"falling back to FOR UPDATE, concurrent workers will wait on each other"
            )
        return supported

    def _insert_args(self, model: JobModel) -> list:
        encode = self.dialect.encode_timestamp
        return [
            model.id,
            model.queue_name,
            model.job_name,
            encode(model.queued_at),
            encode(model.delay_until),
            model.max_retry_count,
            model.attempts,
            model.payload,
            encode(utc_now()),
        ]

    def _row_to_job_data(self, job_id: str, row: Dict[str, Any]) -> JobData:
        """Convert a database row to JobData."""
        try:
            delay_until = self.dialect.decode_timestamp(row["delay_until"])
            queued_at = self.dialect.decode_timestamp(row["queued_at"])
        except (TypeError, ValueError) as e:
            raise DataDecodingError(f"Job {job_id} has an unreadable timestamp: {e}") from e

        payload = row["payload"]
        if isinstance(payload, (bytearray, memoryview)):
            payload = bytes(payload)

        model = JobModel(
            id=job_id,
            queue_name=self.queue_name,
            job_name=row["job_name"],
            queued_at=queued_at,
            payload=payload,
            max_retry_count=row["max_retry_count"],
            attempts=row["attempts"],
            delay_until=delay_until,
        )
        return model.to_job_data()
