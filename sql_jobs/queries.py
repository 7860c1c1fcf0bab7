"""SQL statements for the jobs table, rendered for one dialect."""

from typing import List, Optional

from sql_jobs.dialects import Dialect
from sql_jobs.models import JobState

JOB_COLUMNS = [
    "id",
    "queue_name",
    "job_name",
    "queued_at",
    "delay_until",
    "state",
    "max_retry_count",
    "attempts",
    "payload",
    "updated_at",
]

JOB_DATA_COLUMNS = [
    "payload",
    "max_retry_count",
    "job_name",
    "delay_until",
    "queued_at",
    "attempts",
]

# Columns rewritten when an existing id is enqueued again; queued_at is kept.
UPSERT_COLUMNS = [
    "queue_name",
    "job_name",
    "delay_until",
    "state",
    "max_retry_count",
    "attempts",
    "payload",
    "updated_at",
]

# Equality filters first, then the claim sort order, so the claim query reads
# the index in order and stops at the first unlocked row.
CLAIM_INDEX_COLUMNS = ["state", "queue_name", "delay_until", "queued_at"]
# Null delays sort first in the index and in the claim order.
CLAIM_NULLS_FIRST = ["delay_until"]


class JobsQueries:
    """Builds the statements run against one jobs table."""

    def __init__(self, dialect: Dialect, table_name: str, table_space: Optional[str] = None):
        self.dialect = dialect
        self.table_name = table_name
        self.table_space = table_space
        self.table = dialect.table(table_name, table_space)

    def _q(self, column: str) -> str:
        return self.dialect.quote(column)

    def _p(self, index: int) -> str:
        return self.dialect.placeholder(index)

    def _state(self, state: JobState) -> str:
        return self.dialect.literal(state.value)

    @property
    def index_name(self) -> str:
        return f"i_{self.table_name}_state_queue_name_delay_until"

    def select_job_data(self) -> str:
        """Args: id."""
        cols = ", ".join(self._q(c) for c in JOB_DATA_COLUMNS)
        return f"SELECT {cols} FROM {self.table} WHERE {self._q('id')} = {self._p(1)}"

    def insert(self, state: JobState = JobState.PENDING, upsert: bool = False) -> str:
        """Args: id, queue_name, job_name, queued_at, delay_until, max_retry_count,
        attempts, payload, updated_at."""
        cols = ", ".join(self._q(c) for c in JOB_COLUMNS)
        values: List[str] = []
        index = 1
        for column in JOB_COLUMNS:
            if column == "state":
                values.append(self._state(state))
            else:
                values.append(self._p(index))
                index += 1
        sql = f"INSERT INTO {self.table} ({cols}) VALUES ({', '.join(values)})"
        if upsert:
            sql += " " + self.dialect.upsert_clause("id", UPSERT_COLUMNS)
        return sql

    def push(self) -> str:
        """Args: id."""
        return (
            f"UPDATE {self.table} SET {self._q('state')} = {self._state(JobState.PENDING)}, "
            f"{self._q('updated_at')} = {self.dialect.now()} "
            f"WHERE {self._q('id')} = {self._p(1)}"
        )

    def delete(self) -> str:
        """Args: id."""
        return f"DELETE FROM {self.table} WHERE {self._q('id')} = {self._p(1)}"

    def complete(self) -> str:
        """Args: id."""
        completed = self._state(JobState.COMPLETED)
        return (
            f"UPDATE {self.table} SET {self._q('state')} = {completed}, "
            f"{self._q('updated_at')} = {self.dialect.now()} "
            f"WHERE {self._q('id')} = {self._p(1)} AND {self._q('state')} <> {completed}"
        )

    def select_next_pending(self, locking_clause: str = "") -> str:
        """The claim selection: one eligible id. Undelayed jobs come first, then
        the earliest delay, with ties going to the oldest queued.

        Args: queue_name.
        """
        now = self.dialect.now()
        sql = (
            f"SELECT {self._q('id')} FROM {self.table} "
            f"WHERE {self._q('state')} = {self._state(JobState.PENDING)} "
            f"AND {self._q('queue_name')} = {self._p(1)} "
            f"AND ({self._q('delay_until')} IS NULL OR {self._q('delay_until')} <= {now}) "
            f"ORDER BY {self.dialect.ascending('delay_until', nulls_first=True)}, "
            f"{self.dialect.ascending('queued_at')} "
            f"LIMIT 1"
        )
        if locking_clause:
            sql += f" {locking_clause}"
        return sql

    def claim_returning(self, locking_clause: str = "") -> str:
        """Atomic select-and-claim. Args: queue_name."""
        return (
            f"UPDATE {self.table} SET {self._q('state')} = {self._state(JobState.PROCESSING)}, "
            f"{self._q('updated_at')} = {self.dialect.now()} "
            f"WHERE {self._q('id')} IN ({self.select_next_pending(locking_clause)}) "
            f"RETURNING {self._q('id')}"
        )

    def claim_if_pending(self) -> str:
        """Compare-and-swap claim of a selected id. Args: id."""
        return (
            f"UPDATE {self.table} SET {self._q('state')} = {self._state(JobState.PROCESSING)}, "
            f"{self._q('updated_at')} = {self.dialect.now()} "
            f"WHERE {self._q('id')} = {self._p(1)} "
            f"AND {self._q('state')} = {self._state(JobState.PENDING)}"
        )
