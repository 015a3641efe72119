"""Standalone worker process.

Usage:
    python -m course_jobs.worker --queues critical,emails --concurrency 8
"""

import argparse
import asyncio
import signal
from typing import List, Optional

from course_jobs.config.settings import get_config_dir, get_runtime_config, get_settings
from course_jobs.container import build_services
from course_jobs.logging_config import configure_logging, logger
from course_jobs.models.database import Database
from course_jobs.queue.job import WorkerCapabilities


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run course_jobs workers")
    parser.add_argument("--queues", help="Comma separated queues to consume, default all")
    parser.add_argument("--job-classes", help="Comma separated job classes to execute, default all")
    parser.add_argument("--concurrency", type=int, help="Workers in this process")
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Run every eligible job and exit instead of polling forever",
    )
    return parser.parse_args(argv)


def _split(value: Optional[str]) -> Optional[frozenset]:
    if not value:
        return None
    return frozenset(item.strip() for item in value.split(",") if item.strip())


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    config = get_runtime_config(get_config_dir(settings))
    services = build_services(settings, config, database=Database(settings.database_url))
    await services.startup()

    capabilities = WorkerCapabilities(queues=_split(args.queues), job_classes=_split(args.job_classes))
    pool = services.worker_pool(concurrency=args.concurrency, capabilities=capabilities)
    try:
        if args.drain:
            processed = await pool.run_until_idle()
            logger.info(f"Drained {processed} jobs")
            return processed

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await pool.start()
        await stop.wait()
        await pool.stop()
        return 0
    finally:
        await services.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging("worker")
    asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    main()
