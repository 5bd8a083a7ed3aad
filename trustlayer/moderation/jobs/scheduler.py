"""APScheduler wrapper for periodic trust graph recomputes."""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

RECOMPUTE_JOB_ID = "trust-graph-recompute"


class RecomputeScheduler:
    """Runs the recompute pipeline on a fixed interval, independent of admin triggers."""

    def __init__(self, run: Callable[[], Awaitable[object]], *, interval_seconds: int) -> None:
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._run = run
        self._interval = max(1, int(interval_seconds))
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=self._interval),
            id=RECOMPUTE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def next_run_at(self) -> datetime | None:
        if not self._started:
            return None
        job = self._scheduler.get_job(RECOMPUTE_JOB_ID)
        return job.next_run_time if job is not None else None


__all__ = ["RecomputeScheduler", "RECOMPUTE_JOB_ID"]
