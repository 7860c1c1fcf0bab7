"""Exception types for the SQL jobs library."""

from typing import Optional


class SqlJobsError(Exception):
    """Base exception for all SQL jobs errors."""

    pass


class MissingJobError(SqlJobsError):
    """Raised when no job exists with the requested identifier."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class DatabaseNotFoundError(SqlJobsError):
    """Raised when the configured database id is not registered."""

    def __init__(self, database_id: Optional[str], message: str = None):
        self.database_id = database_id
        if message is None:
            name = database_id if database_id is not None else "<default>"
            message = f"Database {name} is not configured"
        super().__init__(message)


class UnsupportedDatabaseError(SqlJobsError):
    """Raised when a database handle cannot run the jobs queries."""

    def __init__(self, database_id: Optional[str], reason: str = None):
        self.database_id = database_id
        self.reason = reason
        name = database_id if database_id is not None else "<default>"
        message = f"Database {name} is not a supported SQL database"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DataEncodingError(SqlJobsError):
    """Raised when job data cannot be encoded for storage."""

    pass


class DataDecodingError(SqlJobsError):
    """Raised when stored job data cannot be decoded."""

    pass


class MigrationError(SqlJobsError):
    """Raised when the jobs table cannot be created or upgraded."""

    pass
