"""Submission queue worker process entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress

from app.config import settings
from app.core.database import close_db
from app.core.logging import setup_logging
from app.core.redis import close_redis
from app.services.pipeline_task_manager import (
    PipelineTaskManager,
    PipelineTaskWorker,
    get_pipeline_task_manager,
)

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent jobs in this process (defaults to PIPELINE_TASK_WORKERS).",
    )
    parser.add_argument(
        "--poll-timeout",
        type=int,
        default=5,
        help="Redis blocking-pop timeout (seconds).",
    )
    parser.add_argument(
        "--requeue-delay",
        type=float,
        default=settings.pipeline_requeue_delay_seconds,
        help="Delay before requeue when the submission is already being processed.",
    )
    parser.add_argument(
        "--promote-interval",
        type=float,
        default=0.5,
        help="How often delayed cascade jobs are checked (seconds).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


async def run_workers(
    *,
    worker_count: int | None,
    poll_timeout: int,
    requeue_delay: float,
    promote_interval: float,
    debug: bool = False,
) -> None:
    """Start workers and block until a shutdown signal arrives."""
    setup_logging(debug=debug)

    manager = (
        PipelineTaskManager(
            worker_count=worker_count,
            queue_size=settings.pipeline_task_queue_size,
        )
        if worker_count is not None
        else get_pipeline_task_manager()
    )
    worker = PipelineTaskWorker(
        manager=manager,
        poll_timeout_seconds=poll_timeout,
        requeue_delay_seconds=requeue_delay,
        promote_interval_seconds=promote_interval,
    )
    await worker.start()

    logger.info(
        "Pipeline worker process started",
        extra={
            "worker_count": manager.worker_count,
            "store_backend": settings.submission_store_backend,
        },
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_event.is_set():
            logger.info("Shutdown signal received")
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_stop)

    try:
        await stop_event.wait()
    finally:
        logger.info("Stopping pipeline worker process")
        await worker.stop()
        await close_redis()
        await close_db()


def main(argv: list[str] | None = None) -> int:
    """Run the worker process."""
    args = parse_args(argv)
    try:
        asyncio.run(
            run_workers(
                worker_count=args.workers,
                poll_timeout=args.poll_timeout,
                requeue_delay=args.requeue_delay,
                promote_interval=args.promote_interval,
                debug=args.debug,
            )
        )
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
