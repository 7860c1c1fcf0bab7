"""Driver factory binding queues to configured databases."""

import logging
from typing import Any, Dict, Mapping, Optional, Union

from sql_jobs.database import DatabaseRegistry, SQLDatabase, as_sql_database
from sql_jobs.errors import DatabaseNotFoundError, UnsupportedDatabaseError
from sql_jobs.models import DEFAULT_JOBS_TABLE, JobData
from sql_jobs.queue import Queue, SqlQueue


class FailingQueue(Queue):
    """Stand-in queue whose every operation raises the stored error.

    ``SqlQueuesDriver.make_queue`` never raises; when its database binding is
    unusable it returns one of these so the misconfiguration surfaces on the
    first queue operation instead of at startup.
    """

    def __init__(self, failure: Exception, queue_name: str = "default"):
        self.failure = failure
        self.queue_name = queue_name

    async def get(self, job_id: str) -> JobData:
        raise self.failure

    async def set(self, job_id: str, job_data) -> None:
        raise self.failure

    async def clear(self, job_id: str) -> None:
        raise self.failure

    async def push(self, job_id: str) -> None:
        raise self.failure

    async def pop(self) -> Optional[str]:
        raise self.failure


class SqlQueuesDriver:
    """Builds SqlQueue instances bound to one configured database."""

    def __init__(
        self,
        databases: Union[DatabaseRegistry, Mapping[str, Any]],
        database_id: Optional[str] = None,
        preserve_completed_jobs: bool = False,
        jobs_table_name: str = DEFAULT_JOBS_TABLE,
        jobs_table_space: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            databases: Registry (or plain mapping) of named database handles
            database_id: Which database to use; None selects the default
            preserve_completed_jobs: Keep finished jobs as ``completed`` rows
                instead of deleting them
            jobs_table_name: Name of the jobs table
            jobs_table_space: Optional schema (or MySQL database) holding the table
            logger: Logger passed on to every queue
        """
        self.databases = databases
        self.database_id = database_id
        self.preserve_completed_jobs = preserve_completed_jobs
        self.jobs_table_name = jobs_table_name
        self.jobs_table_space = jobs_table_space
        self.logger = logger or logging.getLogger(__name__)
        # One adapter per raw driver object, shared by every queue.
        self._adapted: Dict[int, SQLDatabase] = {}

    def _lookup(self) -> Optional[Any]:
        if isinstance(self.databases, DatabaseRegistry):
            return self.databases.get(self.database_id)
        return self.databases.get(self.database_id or DatabaseRegistry.DEFAULT_ID)

    def make_queue(self, queue_name: str = "default") -> Queue:
        """Return a queue for ``queue_name``; never raises."""
        handle = self._lookup()
        if handle is None:
            self.logger.error(f"No database registered as {self.database_id or 'default'}")
            return FailingQueue(DatabaseNotFoundError(self.database_id), queue_name)

        db = self._adapted.get(id(handle)) or as_sql_database(handle)
        if db is None:
            reason = f"{type(handle).__name__} cannot run SQL queries"
            self.logger.error(f"Unsupported database for queue {queue_name}: {reason}")
            return FailingQueue(UnsupportedDatabaseError(self.database_id, reason), queue_name)
        self._adapted[id(handle)] = db

        return SqlQueue(
            db,
            queue_name=queue_name,
            table_name=self.jobs_table_name,
            table_space=self.jobs_table_space,
            preserve_completed_jobs=self.preserve_completed_jobs,
            logger=self.logger,
        )

    def shutdown(self) -> None:
        """Nothing to release; database handles belong to the caller."""
