"""Data models for jobs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator

from sql_jobs.errors import DataDecodingError, DataEncodingError

DEFAULT_JOBS_TABLE = "_jobs_meta"


def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_job_id() -> str:
    """Generate a fresh job identifier."""
    return str(uuid4())


class JobState(str, Enum):
    """Stored job state values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class JobData(BaseModel):
    """The data a producer stores for a job and a worker reads back."""

    payload: bytes
    max_retry_count: int = 0
    job_name: str
    delay_until: Optional[datetime] = None
    queued_at: datetime = Field(default_factory=utc_now)
    attempts: Optional[int] = None

    model_config = {"extra": "forbid"}

    @field_validator("delay_until", "queued_at")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @classmethod
    def coerce(cls, value: Union["JobData", Mapping[str, Any]]) -> "JobData":
        """Validate caller input, raising DataEncodingError when it is unusable."""
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            raise DataEncodingError(f"Invalid job data: {e}") from e


class JobModel:
    """Represents one row of the jobs table."""

    def __init__(
        self,
        id: str,
        queue_name: str,
        job_name: str,
        queued_at: datetime,
        payload: bytes,
        max_retry_count: int,
        attempts: int = 0,
        delay_until: Optional[datetime] = None,
        state: JobState = JobState.PENDING,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.queue_name = queue_name
        self.job_name = job_name
        self.queued_at = as_utc(queued_at)
        self.payload = payload
        self.max_retry_count = max_retry_count
        self.attempts = attempts
        self.delay_until = as_utc(delay_until)
        self.state = JobState(state) if isinstance(state, str) else state
        self.updated_at = as_utc(updated_at) if updated_at else utc_now()

    @classmethod
    def from_job_data(cls, id: str, queue_name: str, job_data: JobData) -> "JobModel":
        """Build a fresh pending row from producer data."""
        return cls(
            id=id,
            queue_name=queue_name,
            job_name=job_data.job_name,
            queued_at=job_data.queued_at,
            payload=job_data.payload,
            max_retry_count=job_data.max_retry_count,
            attempts=job_data.attempts or 0,
            delay_until=job_data.delay_until,
        )

    def to_job_data(self) -> JobData:
        """Convert the row back to the producer-facing data."""
        try:
            return JobData(
                payload=self.payload,
                max_retry_count=self.max_retry_count,
                job_name=self.job_name,
                delay_until=self.delay_until,
                queued_at=self.queued_at,
                attempts=self.attempts,
            )
        except ValidationError as e:
            raise DataDecodingError(f"Stored job {self.id} is invalid: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert the row to a dictionary for logging and inspection."""
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "job_name": self.job_name,
            "queued_at": self.queued_at.isoformat() if self.queued_at else None,
            "delay_until": self.delay_until.isoformat() if self.delay_until else None,
            "state": self.state.value,
            "max_retry_count": self.max_retry_count,
            "attempts": self.attempts,
            "payload_size": len(self.payload),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
