"""Example job handlers for the example application."""

import json
import logging

from sql_jobs.registry import job_registry

logger = logging.getLogger(__name__)


@job_registry.handler("send_email")
async def send_email(ctx, payload: bytes):
    """Example email handler."""
    message = json.loads(payload)
    attempts = ctx["job"].attempts or 0
    logger.info(f"Sending email for job {ctx['job_id']} (attempt {attempts + 1})")
    logger.info(f"To {message.get('recipient')}: {message.get('subject')}")


@job_registry.handler("flaky_report")
async def flaky_report(ctx, payload: bytes):
    """Fails on its first run to show the retry path."""
    if not ctx["job"].attempts:
        raise RuntimeError("report service unavailable")
    logger.info(f"Report {payload.decode()} generated for job {ctx['job_id']}")
