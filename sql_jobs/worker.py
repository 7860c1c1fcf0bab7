"""Worker logic for SQL jobs."""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Optional

from sql_jobs.errors import DataDecodingError, MissingJobError
from sql_jobs.models import utc_now
from sql_jobs.queue import Queue
from sql_jobs.registry import JobRegistry

DEFAULT_BACKOFF_POLICY = {"type": "exponential", "base_seconds": 10}
MAX_BACKOFF_SECONDS = 3600


async def process_next_job(
    queue: Queue,
    registry: JobRegistry,
    logger: logging.Logger,
    backoff_policy: Optional[dict[str, Any]] = None,
) -> Optional[str]:
    """
    Claim one job from the queue and run its handler.

    Args:
        queue: Queue to claim from
        registry: Job handler registry
        logger: Logger instance
        backoff_policy: Retry delay policy; defaults to exponential from 10s

    Returns:
        The id of the job that was handled, or None when nothing was due
    """
    job_id = await queue.pop()
    if job_id is None:
        return None

    try:
        job = await queue.get(job_id)
    except MissingJobError:
        logger.warning(f"Job {job_id} disappeared after it was claimed")
        return job_id
    except DataDecodingError as e:
        logger.error(f"Job {job_id} cannot be decoded, discarding it: {e}")
        await queue.clear(job_id)
        return job_id

    handler = registry.get_handler(job.job_name)
    if not handler:
        logger.error(f"No handler found for job {job_id} (job_name={job.job_name}), discarding it")
        await queue.clear(job_id)
        return job_id

    attempts = job.attempts or 0
    logger.info(f"Executing job {job_id} (job_name={job.job_name}, attempt={attempts + 1})")

    try:
        ctx = {"job_id": job_id, "job": job, "queue": queue, "logger": logger}
        await handler(ctx, job.payload)
    except Exception as e:
        logger.error(f"Job {job_id} failed: {str(e)}", exc_info=True)

        if attempts < job.max_retry_count:
            next_attempt = attempts + 1
            backoff_seconds = _calculate_backoff_with_jitter(
                backoff_policy or DEFAULT_BACKOFF_POLICY, next_attempt
            )
            retry = job.model_copy(
                update={
                    "attempts": next_attempt,
                    "delay_until": utc_now() + timedelta(seconds=backoff_seconds),
                }
            )
            await queue.set(job_id, retry)
            await queue.push(job_id)
            logger.info(
                f"Job {job_id} will retry (attempt {next_attempt}/"
                f"{job.max_retry_count}) after {backoff_seconds}s"
            )
        else:
            await queue.clear(job_id)
            logger.error(f"Job {job_id} given up after {attempts + 1} attempts")
        return job_id

    await queue.clear(job_id)
    logger.info(f"Job {job_id} completed successfully")
    return job_id


async def run_worker_loop(
    queue: Queue,
    registry: JobRegistry,
    logger: logging.Logger,
    poll_interval_seconds: float = 1.0,
    shutdown_event: asyncio.Event = None,
    backoff_policy: Optional[dict[str, Any]] = None,
) -> None:
    """
    Run the worker loop that processes jobs from one queue.

    Jobs are handled back to back while the queue has due work; when ``pop``
    comes back empty the loop sleeps for ``poll_interval_seconds``.

    Args:
        queue: Queue to process
        registry: Job handler registry
        logger: Logger instance
        poll_interval_seconds: Idle sleep between polls
        shutdown_event: Optional event to signal shutdown
        backoff_policy: Retry delay policy passed to process_next_job
    """
    logger.info(f"Starting worker loop for queue {queue.queue_name}")

    while True:
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting worker loop")
            break

        try:
            job_id = await process_next_job(queue, registry, logger, backoff_policy)
        except Exception as e:
            logger.error(f"Error in worker loop: {str(e)}", exc_info=True)
            job_id = None

        if job_id is not None:
            continue

        if shutdown_event:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(poll_interval_seconds)


def _calculate_backoff_with_jitter(backoff_policy: dict[str, Any], attempt: int) -> int:
    """Apply +/-20% jitter to the policy delay, never below one second."""
    base_delay = _calculate_backoff(backoff_policy, attempt)
    jitter_factor = 1.0 + random.uniform(-0.2, 0.2)
    return max(1, int(base_delay * jitter_factor))


def _calculate_backoff(backoff_policy: dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        backoff_policy: ``{"type": "exponential"|"linear"|"constant", "base_seconds": n}``
        attempt: Retry attempt number (1-indexed)

    Returns:
        Backoff delay in seconds, capped at one hour
    """
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 10)

    if policy_type == "linear":
        delay = base_seconds * attempt
    elif policy_type == "constant":
        delay = base_seconds
    else:
        delay = base_seconds * (2 ** (attempt - 1))
    return min(delay, MAX_BACKOFF_SECONDS)
