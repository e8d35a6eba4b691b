"""Cron task scheduler.

Ticks on a fixed interval, fires every enabled task whose schedule
matches the current minute, and hands the prompt to the orchestrator as
a scheduled message. A task fires at most once per calendar minute.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import cron
from store import Store, Task

log = logging.getLogger(__name__)


def _minute_key(ts_ms: int | None) -> int | None:
    return None if ts_ms is None else ts_ms // 60_000


class TaskScheduler:
    def __init__(self, store: Store, orchestrator, tick_seconds: float = 30):
        self.store = store
        self.orchestrator = orchestrator
        self.tick_seconds = tick_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="task-scheduler")
        log.info("Scheduler started (tick %ss)", self.tick_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Scheduler tick failed")
            await asyncio.sleep(self.tick_seconds)

    def due_tasks(self, now: datetime) -> list[Task]:
        """Enabled tasks matching ``now`` that have not run this minute."""
        current = _minute_key(int(now.timestamp() * 1000))
        due = []
        for task in self.store.list_tasks():
            if not task.enabled:
                continue
            if _minute_key(task.last_run) == current:
                continue
            try:
                if cron.matches(task.schedule, now):
                    due.append(task)
            except cron.CronError as e:
                log.warning("Skipping task %s with invalid schedule %r: %s",
                            task.id, task.schedule, e)
        return due

    async def tick(self, now: datetime | None = None) -> list[Task]:
        """Fire due tasks. Returns the tasks that fired."""
        now = now or datetime.now()
        fired = self.due_tasks(now)
        for task in fired:
            task.last_run = int(now.timestamp() * 1000)
            self.store.save_task(task)
            log.info("Running scheduled task %s for %s", task.id, task.group_id)
            await self.orchestrator.submit_scheduled(task.group_id, task.prompt)
        return fired
