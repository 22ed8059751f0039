"""Wiring for the moderation worker, in-process or as a standalone service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

import httpx

from dancefeedback import obs
from dancefeedback.infra import postgres
from dancefeedback.moderation.domain import container
from dancefeedback.moderation.workers.moderation_worker import ModerationWorker, WorkerConfig
from dancefeedback.settings import settings

logger = logging.getLogger(__name__)


def worker_config() -> WorkerConfig:
    poll_interval = settings.moderation_poll_interval
    return WorkerConfig(
        poll_interval=poll_interval,
        poll_timeout=settings.moderation_block_ms / 1000.0,
        classifier_backoff=poll_interval,
        transport_backoff=max(poll_interval, 1.0),
        max_attempts=settings.moderation_max_attempts,
    )


def build_worker(http: httpx.AsyncClient, *, consumer: Optional[str] = None) -> ModerationWorker:
    return ModerationWorker(
        queue=container.build_queue(consumer=consumer),
        content=container.get_content_store(),
        ledger=container.get_ledger(),
        classifier=container.build_classifier(http),
        config=worker_config(),
    )


async def _run_with_client(consumer: Optional[str]) -> None:
    async with httpx.AsyncClient() as http:
        worker = build_worker(http, consumer=consumer)
        await worker.run_forever()


def _log_worker_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("moderation worker task died", exc_info=exc)
    else:
        logger.warning("moderation worker task exited")


def spawn_worker(loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Task:
    """Start the worker next to the API; cancel the task to stop it."""
    event_loop = loop or asyncio.get_event_loop()
    task = event_loop.create_task(_run_with_client(None), name="moderation-worker")
    task.add_done_callback(_log_worker_exit)
    return task


async def run_standalone(consumer: Optional[str] = None) -> None:
    pool = await postgres.init_pool()
    container.configure_postgres(pool)
    task = asyncio.create_task(_run_with_client(consumer), name="moderation-worker")
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:  # pragma: no cover - windows event loops
            pass
    try:
        await task
    except asyncio.CancelledError:
        logger.info("moderation worker shutdown requested")
    finally:
        await postgres.close_pool()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the feedback moderation worker.")
    parser.add_argument(
        "--consumer",
        default=None,
        help="consumer name inside the work queue group (defaults to MODERATION_CONSUMER_NAME)",
    )
    args = parser.parse_args(argv)
    obs.init()
    logger.info(
        "starting moderation worker",
        extra={
            "stream": settings.moderation_exchange,
            "group": settings.moderation_queue,
            "llm_base_url": settings.llm_base_url,
        },
    )
    asyncio.run(run_standalone(args.consumer))


if __name__ == "__main__":
    main()
