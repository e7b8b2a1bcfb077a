from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone as dt_timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from marketing.util import now_utc

logger = logging.getLogger(__name__)

JOB_STATUSES = ("never_run", "running", "success", "failed")


@dataclass
class JobStatus:
    name: str
    last_run: datetime | None = None
    last_status: str = "never_run"
    last_error: str | None = None
    next_run: datetime | None = None
    run_count: int = 0
    fail_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "fail_count": self.fail_count,
        }


@dataclass
class _ScheduledJob:
    fn: Callable[[], Any]
    at: dtime
    status: JobStatus


def next_daily_run(at: dtime, timezone: str, *, now: datetime | None = None) -> datetime:
    """Next occurrence of local time `at` strictly after `now`, in UTC."""
    tz = ZoneInfo(timezone)
    local_now = (now or now_utc()).astimezone(tz)
    candidate = datetime.combine(local_now.date(), at, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), at, tzinfo=tz)
    return candidate.astimezone(dt_timezone.utc)


class Scheduler:
    """Daily jobs run in the business timezone, with per-job status tracking.

    Job functions may be plain callables or coroutine functions.
    """

    def __init__(self, timezone: str = "Asia/Manila"):
        self.timezone = timezone
        self._jobs: dict[str, _ScheduledJob] = {}

    def schedule_job(self, name: str, fn: Callable[[], Any], *, at: dtime, now: datetime | None = None) -> JobStatus:
        if name in self._jobs:
            self.stop_job(name)
        status = JobStatus(name=name, next_run=next_daily_run(at, self.timezone, now=now))
        self._jobs[name] = _ScheduledJob(fn=fn, at=at, status=status)
        logger.info("job scheduled: %s next_run=%s", name, status.next_run.isoformat())
        return status

    def stop_job(self, name: str) -> None:
        if self._jobs.pop(name, None) is not None:
            logger.info("job stopped: %s", name)

    def stop_all(self) -> None:
        self._jobs.clear()
        logger.info("all jobs stopped")

    async def _run(self, name: str, job: _ScheduledJob, *, now: datetime | None = None) -> None:
        status = job.status
        status.last_status = "running"
        status.last_run = now or now_utc()
        status.run_count += 1
        logger.info("starting job: %s (run %d)", name, status.run_count)
        try:
            result = job.fn()
            if inspect.isawaitable(result):
                await result
            status.last_status = "success"
            status.last_error = None
            logger.info("job completed: %s", name)
        except Exception as e:  # noqa: BLE001
            status.last_status = "failed"
            status.last_error = str(e) or type(e).__name__
            status.fail_count += 1
            logger.error("job failed: %s: %s", name, e)

    async def trigger_job(self, name: str) -> bool:
        job = self._jobs.get(name)
        if job is None:
            logger.warning("job not found: %s", name)
            return False
        logger.info("manually triggering job: %s", name)
        await self._run(name, job)
        return True

    async def run_pending(self, now: datetime | None = None) -> list[str]:
        """Run every job whose next_run has passed; returns the names run."""
        now = now or now_utc()
        ran: list[str] = []
        for name, job in list(self._jobs.items()):
            if job.status.next_run is None or job.status.next_run > now:
                continue
            await self._run(name, job, now=now)
            job.status.next_run = next_daily_run(job.at, self.timezone, now=now)
            ran.append(name)
        return ran

    def get_job_status(self, name: str) -> JobStatus | None:
        job = self._jobs.get(name)
        return JobStatus(**vars(job.status)) if job else None

    def get_all_job_statuses(self) -> list[JobStatus]:
        return [JobStatus(**vars(j.status)) for j in self._jobs.values()]

    def get_scheduled_job_names(self) -> list[str]:
        return list(self._jobs)
