"""
Command-line entry point.

Loads configuration, configures logging, and runs one of:
- watch:   stay subscribed to the change feed and log the task list
- list:    print the current tasks, optionally filtered by status
- summary: send the daily summary of open tasks
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .app import SyncApp
from .config import AppConfig, load_config
from .notifications import LoggingNotificationDispatcher
from .schemas.common import TaskStatus
from .summary import send_daily_summary


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


async def _list_tasks(config: AppConfig, status: str | None) -> None:
    app = SyncApp(config)
    await app.open()
    try:
        await app.store.refresh()
        tasks = app.store.get_by_status(TaskStatus(status)) if status else app.store.tasks
        for task in tasks:
            print(task.model_dump_json())
    finally:
        await app.disconnect()


async def _send_summary(config: AppConfig) -> None:
    app = SyncApp(config)
    await app.open()
    try:
        tasks = await app.repository.fetch_all()
        dispatcher = app.dispatcher or LoggingNotificationDispatcher()
        results = await send_daily_summary(tasks, dispatcher)
        for result in results:
            print(result.model_dump_json())
    finally:
        await app.disconnect()


def run() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Maintenance task synchronization client")
    parser.add_argument(
        "-c", "--config",
        default="maintrack.yaml",
        help="Path to configuration file (default: maintrack.yaml)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("watch", help="Follow the change feed until interrupted (default)")
    list_cmd = sub.add_parser("list", help="Print tasks as JSON lines")
    list_cmd.add_argument(
        "--status",
        choices=[s.value for s in TaskStatus],
        help="Only tasks with this status",
    )
    sub.add_parser("summary", help="Send the daily summary of open tasks")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("maintrack.config_loaded", config_path=args.config, backend=config.remote.backend)

    command = args.command or "watch"
    try:
        if command == "list":
            asyncio.run(_list_tasks(config, args.status))
        elif command == "summary":
            asyncio.run(_send_summary(config))
        else:
            asyncio.run(SyncApp(config).run_forever())
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        log.error("maintrack.command_failed", command=command, error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    run()
