"""CLI for hearth: calendar sync, task auto-scheduling and the periodic job runner."""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click
import httpx

from hearth.calendar.errors import CalendarSyncError, safe_error_message
from hearth.calendar.store import PostgresCalendarStore
from hearth.calendar.sync import CalendarSyncEngine
from hearth.config import ConfigError, HearthConfig, load_config
from hearth.core.jobs import JobFn, JobRunner
from hearth.core.logging import configure_logging
from hearth.db import Database
from hearth.scheduling.auto_scheduler import AutoScheduler, SchedulingError
from hearth.scheduling.defer import defer_overdue_tasks
from hearth.scheduling.store import PostgresTaskStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Runtime:
    """Connected collaborators shared by one CLI invocation."""

    config: HearthConfig
    db: Database
    http_client: httpx.AsyncClient

    def sync_engine(self) -> CalendarSyncEngine:
        return CalendarSyncEngine(
            store=PostgresCalendarStore(self.db),
            http_client=self.http_client,
            config=self.config,
        )

    def task_store(self) -> PostgresTaskStore:
        return PostgresTaskStore(self.db)

    def scheduler(self) -> AutoScheduler:
        return AutoScheduler(store=self.task_store(), config=self.config.scheduler)

    def job_registry(self) -> dict[str, JobFn]:
        engine = self.sync_engine()
        scheduler = self.scheduler()
        task_store = self.task_store()

        async def _defer() -> int:
            return await defer_overdue_tasks(task_store)

        return {
            "calendar-sync": engine.sync_all_calendars,
            "defer-tasks": _defer,
            "auto-schedule": scheduler.auto_schedule_all_users,
        }


def build_database(config: HearthConfig) -> Database:
    db_config = config.database
    pool_kwargs: dict[str, Any] = {
        "min_pool_size": db_config.min_pool_size,
        "max_pool_size": db_config.max_pool_size,
    }
    if db_config.url:
        return Database.from_url(db_config.url, **pool_kwargs)
    return Database.from_env(db_name=db_config.name, **pool_kwargs)


@asynccontextmanager
async def open_runtime(config: HearthConfig) -> AsyncIterator[Runtime]:
    db = build_database(config)
    await db.connect()
    try:
        async with httpx.AsyncClient(timeout=config.sync.http_timeout_s) as http_client:
            yield Runtime(config=config, db=db, http_client=http_client)
    finally:
        await db.close()


def _run(config: HearthConfig, action: Callable[[Runtime], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with open_runtime(config) as runtime:
            return await action(runtime)

    try:
        return asyncio.run(_main())
    except (CalendarSyncError, SchedulingError, ValueError) as exc:
        raise click.ClickException(safe_error_message(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    envvar="HEARTH_CONFIG",
    default=None,
    help="Path to hearth.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """hearth: household calendar sync and task auto-scheduling."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    ctx.obj = config


@cli.command()
@click.pass_obj
def migrate(config: HearthConfig) -> None:
    """Create the database if needed and run migrations to head."""
    from hearth.migrations import run_migrations

    async def _main() -> None:
        db = build_database(config)
        await db.provision()
        await run_migrations(db.url)

    asyncio.run(_main())
    click.echo("Migrations complete")


@cli.command()
@click.argument("calendar_id", type=click.UUID)
@click.pass_obj
def sync(config: HearthConfig, calendar_id: uuid.UUID) -> None:
    """Sync one calendar."""
    result = _run(config, lambda rt: rt.sync_engine().sync_calendar(calendar_id))
    click.echo(f"created={result.created} updated={result.updated} deleted={result.deleted}")


@cli.command("sync-all")
@click.pass_obj
def sync_all(config: HearthConfig) -> None:
    """Sync every active calendar."""
    synced = _run(config, lambda rt: rt.sync_engine().sync_all_calendars())
    click.echo(f"Synced {synced} calendar(s)")


@cli.command()
@click.argument("user_id", type=click.UUID)
@click.pass_obj
def schedule(config: HearthConfig, user_id: uuid.UUID) -> None:
    """Auto-schedule a user's unscheduled tasks."""
    placed = _run(config, lambda rt: rt.scheduler().auto_schedule_tasks(user_id))
    click.echo(f"Scheduled {placed} task(s)")


@cli.command("clear-schedule")
@click.argument("user_id", type=click.UUID)
@click.pass_obj
def clear_schedule(config: HearthConfig, user_id: uuid.UUID) -> None:
    """Remove scheduled slots from a user's open tasks."""
    cleared = _run(config, lambda rt: rt.scheduler().clear_scheduled_tasks(user_id))
    click.echo(f"Cleared {cleared} task(s)")


@cli.command("schedule-all")
@click.pass_obj
def schedule_all(config: HearthConfig) -> None:
    """Auto-schedule tasks for every user."""
    placed = _run(config, lambda rt: rt.scheduler().auto_schedule_all_users())
    click.echo(f"Scheduled {placed} task(s)")


@cli.command("defer-overdue")
@click.pass_obj
def defer_overdue(config: HearthConfig) -> None:
    """Move overdue scheduled tasks forward by one day."""
    deferred = _run(config, lambda rt: defer_overdue_tasks(rt.task_store()))
    click.echo(f"Deferred {deferred} task(s)")


@cli.command()
@click.pass_obj
def run(config: HearthConfig) -> None:
    """Run the periodic job loop until interrupted."""
    asyncio.run(_run_jobs(config))


async def _run_jobs(config: HearthConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with open_runtime(config) as runtime:
        runner = JobRunner(runtime.job_registry(), config.jobs)
        click.echo(f"Running {len(runner.jobs)} job(s)")
        await runner.run_forever(shutdown_event)
