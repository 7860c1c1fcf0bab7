"""Configuration for SQL jobs."""

import os
from typing import Optional

from sql_jobs.models import DEFAULT_JOBS_TABLE

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


def _env_bool(name: str, default: str) -> bool:
    value = os.getenv(name, default).strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean in {name}: {value!r}")


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {value!r}") from e


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {value!r}") from e


class SqlJobsConfig:
    """Configuration object for SQL jobs."""

    def __init__(
        self,
        db_dsn: str,
        table_name: str = DEFAULT_JOBS_TABLE,
        table_space: Optional[str] = None,
        preserve_completed_jobs: bool = False,
        queue_name: str = "default",
        poll_interval_seconds: float = 1.0,
        pool_min_size: int = 1,
        pool_max_size: int = 10,
        handlers_module: Optional[str] = None,
    ):
        if pool_min_size < 0 or pool_max_size < 1 or pool_min_size > pool_max_size:
            raise ValueError(
                f"Invalid pool size: min={pool_min_size}, max={pool_max_size}"
            )
        if poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must not be negative")

        self.db_dsn = db_dsn
        self.table_name = table_name
        self.table_space = table_space
        self.preserve_completed_jobs = preserve_completed_jobs
        self.queue_name = queue_name
        self.poll_interval_seconds = poll_interval_seconds
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.handlers_module = handlers_module

    @classmethod
    def from_env(cls) -> "SqlJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("SQL_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("SQL_JOBS_DB_DSN environment variable is required")

        table_name = os.getenv("SQL_JOBS_TABLE_NAME", DEFAULT_JOBS_TABLE)
        if not table_name:
            raise ValueError("SQL_JOBS_TABLE_NAME must not be empty")

        return cls(
            db_dsn=db_dsn,
            table_name=table_name,
            table_space=os.getenv("SQL_JOBS_TABLE_SPACE") or None,
            preserve_completed_jobs=_env_bool("SQL_JOBS_PRESERVE_COMPLETED_JOBS", "false"),
            queue_name=os.getenv("SQL_JOBS_QUEUE_NAME", "default"),
            poll_interval_seconds=_env_float("SQL_JOBS_POLL_INTERVAL_SECONDS", "1.0"),
            pool_min_size=_env_int("SQL_JOBS_POOL_MIN_SIZE", "1"),
            pool_max_size=_env_int("SQL_JOBS_POOL_MAX_SIZE", "10"),
            handlers_module=os.getenv("SQL_JOBS_HANDLERS_MODULE") or None,
        )
