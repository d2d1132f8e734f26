"""Cron-driven periodic job runner.

Jobs are registered by name and scheduled by ``[[jobs]]`` entries from
``hearth.toml``. Each :meth:`JobRunner.tick` runs every job whose next run
time has passed, one after another; a failing job is logged and rescheduled
like a successful one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from croniter import croniter
from opentelemetry import trace

from hearth.config import JobConfig
from hearth.core.logging import set_job_context

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[int]]

_MAX_IDLE_SECONDS = 60.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


def next_run(cron: str, *, now: datetime | None = None) -> datetime:
    """Next time *cron* fires strictly after *now* (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


@dataclass
class ScheduledJob:
    name: str
    cron: str
    fn: JobFn
    next_run_at: datetime


class JobRunner:
    """Evaluates job schedules and dispatches due jobs serially."""

    def __init__(
        self,
        registry: Mapping[str, JobFn],
        schedule: Sequence[JobConfig],
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._now = now
        anchor = now()
        self._jobs: list[ScheduledJob] = []
        for entry in schedule:
            fn = registry.get(entry.job)
            if fn is None:
                raise ValueError(f"Job '{entry.name}' refers to unknown job type '{entry.job}'")
            self._jobs.append(
                ScheduledJob(
                    name=entry.name,
                    cron=entry.cron,
                    fn=fn,
                    next_run_at=next_run(entry.cron, now=anchor),
                )
            )

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    async def tick(self) -> int:
        """Run every due job; return how many completed without raising."""
        tracer = trace.get_tracer("hearth")
        with tracer.start_as_current_span("hearth.jobs.tick") as span:
            now = self._now()
            due = sorted(
                (job for job in self._jobs if job.next_run_at <= now),
                key=lambda job: job.next_run_at,
            )
            span.set_attribute("jobs_due", len(due))

            succeeded = 0
            for job in due:
                set_job_context(job.name)
                try:
                    count = await job.fn()
                    succeeded += 1
                    if count:
                        logger.info("Job %s processed %d items", job.name, count)
                    else:
                        logger.debug("Job %s finished with nothing to do", job.name)
                except Exception:
                    logger.exception("Job %s failed", job.name)
                finally:
                    set_job_context(None)
                # Advance whether the job succeeded or failed.
                job.next_run_at = next_run(job.cron, now=now)

            span.set_attribute("jobs_run", succeeded)
            return succeeded

    def seconds_until_next(self) -> float:
        if not self._jobs:
            return _MAX_IDLE_SECONDS
        earliest = min(job.next_run_at for job in self._jobs)
        delay = (earliest - self._now()).total_seconds()
        return max(0.0, min(delay, _MAX_IDLE_SECONDS))

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick until *stop_event* is set (or forever without one)."""
        stop = stop_event or asyncio.Event()
        logger.info(
            "Job runner started with %d jobs: %s",
            len(self._jobs),
            ", ".join(f"{job.name} [{job.cron}]" for job in self._jobs),
        )
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.seconds_until_next())
            except TimeoutError:
                continue
        logger.info("Job runner stopped")
