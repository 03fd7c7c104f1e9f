"""Worker entry point: run as a separate process.

The worker is its own process, separate from the API server, so a crash in
a job handler never takes the API down. Several workers can run at once:
jobs are claimed with a conditional update, so each runs on one of them.

Usage:
    python -m switchboard.worker.main

Or via the console script:
    switchboard-worker
"""

import asyncio
import signal

import structlog

from switchboard.config import settings
from switchboard.realtime.pubsub import close_redis, init_redis
from switchboard.worker.runner import JobWorker

logger = structlog.get_logger()


async def run():
    """Run the worker until interrupted."""
    db_url = settings.database_url
    logger.info(
        "worker.boot",
        database=db_url.split("@")[1] if "@" in db_url else db_url,
    )

    # Redis is optional; without it events are only delivered by polling
    try:
        await init_redis()
    except Exception as e:
        logger.warning("worker.redis_unavailable", error=str(e))

    worker = JobWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run_loop()
    except asyncio.CancelledError:
        pass
    finally:
        await close_redis()
        logger.info("worker.stopped", **worker.get_stats())


def main():
    """CLI entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
