"""Durable job queues stored in a SQL table."""

from sql_jobs.config import SqlJobsConfig
from sql_jobs.database import (
    DatabaseRegistry,
    MySQLDatabase,
    PostgresDatabase,
    SQLDatabase,
    SQLiteDatabase,
    connect_database,
)
from sql_jobs.dialects import Dialect, MySQLDialect, PostgresDialect, SQLiteDialect
from sql_jobs.driver import FailingQueue, SqlQueuesDriver
from sql_jobs.errors import (
    DatabaseNotFoundError,
    DataDecodingError,
    DataEncodingError,
    MigrationError,
    MissingJobError,
    SqlJobsError,
    UnsupportedDatabaseError,
)
from sql_jobs.models import JobData, JobModel, JobState, new_job_id
from sql_jobs.queue import Queue, SqlQueue
from sql_jobs.registry import JobRegistry, job_registry
from sql_jobs.schema import JobsTableMigration, LegacyFormatMigration, jobs_table_ddl
from sql_jobs.worker import process_next_job, run_worker_loop
from sql_jobs.worker_main import run_worker

__version__ = "0.1.0"

__all__ = [
    "SqlJobsConfig",
    "DatabaseRegistry",
    "MySQLDatabase",
    "PostgresDatabase",
    "SQLDatabase",
    "SQLiteDatabase",
    "connect_database",
    "Dialect",
    "MySQLDialect",
    "PostgresDialect",
    "SQLiteDialect",
    "FailingQueue",
    "SqlQueuesDriver",
    "DatabaseNotFoundError",
    "DataDecodingError",
    "DataEncodingError",
    "MigrationError",
    "MissingJobError",
    "SqlJobsError",
    "UnsupportedDatabaseError",
    "JobData",
    "JobModel",
    "JobState",
    "new_job_id",
    "Queue",
    "SqlQueue",
    "JobRegistry",
    "job_registry",
    "JobsTableMigration",
    "LegacyFormatMigration",
    "jobs_table_ddl",
    "process_next_job",
    "run_worker_loop",
    "run_worker",
]
