"""Simple standalone example using a SQLite database."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

from sql_jobs import (
    DatabaseRegistry,
    JobData,
    JobsTableMigration,
    SqlQueuesDriver,
    connect_database,
    job_registry,
    new_job_id,
    run_worker_loop,
)

import handlers  # noqa: F401  registers the example handlers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Enqueue a few jobs, then run a worker until they are done."""
    db = await connect_database("sqlite:///example_jobs.db")
    await JobsTableMigration().prepare(db)

    databases = DatabaseRegistry()
    databases.register("default", db)
    driver = SqlQueuesDriver(databases)
    queue = driver.make_queue("example")

    email = {"recipient": "test@example.com", "subject": "Welcome"}
    jobs = [
        JobData(payload=json.dumps(email).encode(), job_name="send_email"),
        JobData(
            payload=b"monthly",
            job_name="flaky_report",
            max_retry_count=2,
        ),
        JobData(
            payload=json.dumps(email).encode(),
            job_name="send_email",
            delay_until=datetime.now(timezone.utc) + timedelta(seconds=2),
        ),
    ]
    for job in jobs:
        job_id = new_job_id()
        await queue.set(job_id, job)
        await queue.push(job_id)
        logger.info(f"Enqueued {job.job_name} as {job_id}")

    shutdown_event = asyncio.Event()
    worker = asyncio.create_task(
        run_worker_loop(
            queue,
            job_registry,
            logger,
            poll_interval_seconds=0.5,
            shutdown_event=shutdown_event,
            backoff_policy={"type": "constant", "base_seconds": 1},
        )
    )

    await asyncio.sleep(5)
    shutdown_event.set()
    await worker

    driver.shutdown()
    await db.close()


if __name__ == "__main__":
    asyncio.run(main())
