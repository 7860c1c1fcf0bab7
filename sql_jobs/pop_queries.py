"""Strategies for atomically claiming the next pending job."""

from abc import ABC, abstractmethod
from typing import Optional

from sql_jobs.database import SQLDatabase
from sql_jobs.queries import JobsQueries


class PopQuery(ABC):
    """Claims at most one eligible job and returns its id."""

    @abstractmethod
    async def pop(
        self,
        db: SQLDatabase,
        queries: JobsQueries,
        queue_name: str,
        locking_clause: str,
    ) -> Optional[str]:
        ...


class ReturningClausePopQuery(PopQuery):
    """Single ``UPDATE ... WHERE id IN (<locked select>) RETURNING id`` statement.

    The database evaluates the selection and the update against one
    lock-protected view, so a returned id belongs to this caller alone.
    """

    async def pop(self, db, queries, queue_name, locking_clause):
        row = await db.fetchrow(queries.claim_returning(locking_clause), queue_name)
        if row is None:
            return None
        return str(row["id"])


class TransactionalPopQuery(PopQuery):
    """Locked select followed by a conditional update, inside one transaction.

    Used where the engine cannot update and return rows in one statement
    (MySQL, old SQLite). The update only succeeds while the row is still
    pending, so a concurrent claimer that slipped in between makes this call
    return None instead of a shared job. Any error rolls the claim back.
    """

    async def pop(self, db, queries, queue_name, locking_clause):
        async with db.transaction() as tx:
            job_id = await tx.fetchval(queries.select_next_pending(locking_clause), queue_name)
            if job_id is None:
                return None
            updated = await tx.execute(queries.claim_if_pending(), job_id)
            if updated != 1:
                return None
            return str(job_id)
