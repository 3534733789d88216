"""
Command-line entry point for the Resource Status service.

Each long-running process (api, worker, scheduler) builds its own clients
from configuration, installs SIGINT/SIGTERM handlers and tears everything
down through async context managers. The remaining commands are one-shot
operator actions against the queue.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import uvicorn
import yaml
from pydantic import ValidationError

from resource_status.api import create_app
from resource_status.config import AppConfig, build_arg_parser, load_config
from resource_status.errors import ResourceStatusError
from resource_status.jobqueue import WorkQueue
from resource_status.logging import get_logger, setup_logging
from resource_status.producer import CollectionProducer
from resource_status.scheduler import CollectionScheduler
from resource_status.store import SampleStore
from resource_status.worker import CollectionWorker

logger = get_logger(__name__)

Runner = Callable[[AppConfig, Any], Awaitable[int]]

# Commands that print JSON on stdout; their logs go to stderr.
ONE_SHOT_COMMANDS = frozenset({"check", "status", "dead", "retry"})


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        # Not supported on every platform
        with contextlib.suppress(ValueError, NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


async def run_api(config: AppConfig, args: Any) -> int:
    """Serve the query API until interrupted."""
    async with (
        SampleStore(config.store.path) as store,
        WorkQueue.from_config(config.queue) as queue,
    ):
        producer = CollectionProducer(queue, priority=config.queue.priority)
        app = create_app(store, producer, api_key=config.security.api_key)
        if not config.security.api_key:
            logger.warning("No API key configured; every API request will be rejected")

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.server.host,
                port=config.server.port,
                log_level=config.server.log_level,
                log_config=None,
            )
        )
        logger.info("Query API starting", extra={"listen": config.server.listen})
        await server.serve()
    return 0


async def run_worker(config: AppConfig, args: Any) -> int:
    """Consume collection requests until interrupted."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    async with (
        SampleStore(config.store.path) as store,
        WorkQueue.from_config(config.queue) as queue,
    ):
        worker = CollectionWorker(queue, store)
        worker.on_failed(
            lambda request_id, error: logger.warning(
                "Collection attempt failed",
                extra={"request_id": request_id, "error": error.message},
            )
        )
        await worker.start()
        await stop_event.wait()
        await worker.stop()
    return 0


async def run_scheduler(config: AppConfig, args: Any) -> int:
    """Enqueue a collection request on every cron match until interrupted."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    async with WorkQueue.from_config(config.queue) as queue:
        producer = CollectionProducer(queue, priority=config.queue.priority)
        scheduler = CollectionScheduler()
        await scheduler.start(
            config.scheduler.cron,
            config.scheduler.timezone,
            producer.enqueue_scheduled,
        )
        await stop_event.wait()
        await scheduler.stop()
    return 0


async def run_check(config: AppConfig, args: Any) -> int:
    """Enqueue one manual collection request."""
    async with WorkQueue.from_config(config.queue) as queue:
        producer = CollectionProducer(queue, priority=config.queue.priority)
        request_id = await producer.enqueue_manual()
    _print_json({"jobId": request_id})
    return 0


async def run_status(config: AppConfig, args: Any) -> int:
    """Print request counts per state and the connection status."""
    async with WorkQueue.from_config(config.queue) as queue:
        counts = await queue.counts()
        status = queue.status()
    _print_json({"counts": counts, **status})
    return 0


async def run_dead(config: AppConfig, args: Any) -> int:
    """Print dead-lettered requests."""
    async with WorkQueue.from_config(config.queue) as queue:
        dead = await queue.list_dead()
    _print_json([request.to_dict() for request in dead])
    return 0


async def run_retry(config: AppConfig, args: Any) -> int:
    """Re-submit one dead-lettered request."""
    if not args.request_id:
        print("retry requires --request-id", file=sys.stderr)
        return 2
    async with WorkQueue.from_config(config.queue) as queue:
        new_id = await queue.retry_dead(args.request_id)
    _print_json({"requestId": args.request_id, "jobId": new_id})
    return 0


RUNNERS: dict[str, Runner] = {
    "api": run_api,
    "worker": run_worker,
    "scheduler": run_scheduler,
    "check": run_check,
    "status": run_status,
    "dead": run_dead,
    "retry": run_retry,
}


def main(argv: list[str] | None = None) -> int:
    """
    Run the command named on the command line.

    Returns:
        Process exit code.
    """
    if argv is None:
        argv = sys.argv[1:]
    args = build_arg_parser().parse_args(argv)

    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(
        config.logging,
        stream=sys.stderr if args.command in ONE_SHOT_COMMANDS else None,
    )

    try:
        return asyncio.run(RUNNERS[args.command](config, args))
    except ResourceStatusError as e:
        logger.error(
            "Command failed",
            extra={"command": args.command, "error": e.to_dict()},
        )
        print(f"{args.command} failed: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
