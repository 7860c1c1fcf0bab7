"""CLI entrypoint and programmatic interface for worker."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

from sql_jobs.config import SqlJobsConfig
from sql_jobs.database import DatabaseRegistry, SQLDatabase, connect_database
from sql_jobs.driver import SqlQueuesDriver
from sql_jobs.registry import JobRegistry, job_registry
from sql_jobs.schema import JobsTableMigration
from sql_jobs.worker import run_worker_loop


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_handlers(handlers_module: Optional[str], logger: logging.Logger) -> None:
    """Import the module whose import registers the job handlers."""
    if handlers_module:
        try:
            importlib.import_module(handlers_module)
            logger.info(f"Loaded handlers from {handlers_module}")
        except ImportError as e:
            logger.warning(f"Failed to import handlers module {handlers_module}: {e}")
    else:
        logger.warning("SQL_JOBS_HANDLERS_MODULE not set, no handlers will be available")


async def run_worker(
    queue_name: Optional[str] = None,
    config: Optional[SqlJobsConfig] = None,
    db: Optional[SQLDatabase] = None,
    registry: Optional[JobRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    poll_interval_seconds: Optional[float] = None,
    handlers_module: Optional[str] = None,
    migrate: bool = False,
):
    """
    Run the worker programmatically.

    Args:
        queue_name: Queue to process. If None, uses config.queue_name.
        config: SqlJobsConfig instance. If None, will load from environment.
        db: Database handle. If None, will connect using config.db_dsn.
        registry: JobRegistry instance. If None, will use global job_registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        poll_interval_seconds: Idle sleep. If None, uses config.poll_interval_seconds.
        handlers_module: Module path to load handlers from. If None, uses config.handlers_module.
        migrate: Create the jobs table before processing.

    Example:
        ```python
        from sql_jobs import run_worker, SqlJobsConfig, job_registry
        import asyncio

        config = SqlJobsConfig.from_env()
        asyncio.run(run_worker(
            queue_name="emails",
            config=config,
            registry=job_registry,
            handlers_module="myapp.jobs.handlers",
        ))
        ```
    """
    if config is None:
        config = SqlJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = job_registry

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    load_handlers(handlers_module or config.handlers_module, logger)

    db_provided = db is not None
    if db is None:
        db = await connect_database(
            config.db_dsn, min_size=config.pool_min_size, max_size=config.pool_max_size
        )

    try:
        if migrate:
            await JobsTableMigration(config.table_name, config.table_space, logger).prepare(db)

        databases = DatabaseRegistry()
        databases.register(DatabaseRegistry.DEFAULT_ID, db)
        driver = SqlQueuesDriver(
            databases,
            preserve_completed_jobs=config.preserve_completed_jobs,
            jobs_table_name=config.table_name,
            jobs_table_space=config.table_space,
            logger=logger,
        )
        queue = driver.make_queue(queue_name or config.queue_name)

        await run_worker_loop(
            queue=queue,
            registry=registry,
            logger=logger,
            poll_interval_seconds=(
                poll_interval_seconds
                if poll_interval_seconds is not None
                else config.poll_interval_seconds
            ),
            shutdown_event=shutdown_event,
        )
        driver.shutdown()
    finally:
        if not db_provided:
            await db.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="SQL Jobs Worker")
    parser.add_argument(
        "--queue",
        default=None,
        help="Queue name to process (default: SQL_JOBS_QUEUE_NAME or 'default')",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to sleep when no job is due (default: SQL_JOBS_POLL_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--migrate",
        action="store_true",
        help="Create the jobs table before starting",
    )

    args = parser.parse_args()

    try:
        config = SqlJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info(f"Starting worker for queue: {args.queue or config.queue_name}...")
            await run_worker(
                queue_name=args.queue,
                config=config,
                registry=job_registry,
                logger=logger,
                shutdown_event=shutdown_event,
                poll_interval_seconds=args.poll_interval,
                migrate=args.migrate,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
