"""In-process task scheduler: a heap of `(run_at, seq, task)` on an injectable clock.

Recurring tasks (fixed interval or cron) re-enqueue themselves when they are
dispatched; one-shot tasks (manual triggers, backoff retries) run once.
`run_due()` executes due tasks inline and is what tests drive with a
`VirtualClock`; `run_forever()` dispatches them as separate asyncio tasks.
"""

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from croniter import croniter

from cardrelay.common.clock import Clock
from cardrelay.common.logging import logger

TaskFunc = Callable[[], Awaitable[object]]


@dataclass
class ScheduledTask:
    name: str
    func: TaskFunc
    interval: timedelta | None = None
    cron: str | None = None
    timezone: str = "UTC"

    @property
    def recurring(self) -> bool:
        return self.interval is not None or self.cron is not None

    def next_run(self, after: datetime) -> datetime | None:
        if self.interval is not None:
            return after + self.interval
        if self.cron is not None:
            local = after.astimezone(ZoneInfo(self.timezone))
            return croniter(self.cron, local).get_next(datetime).astimezone(timezone.utc)
        return None


@dataclass(order=True)
class ScheduledEntry:
    run_at: datetime
    seq: int
    task: ScheduledTask = field(compare=False)


class TaskScheduler:
    def __init__(self, clock: Clock, grace_seconds: float = 60.0, poll_seconds: float = 1.0) -> None:
        self.clock = clock
        self.grace_seconds = grace_seconds
        self.poll_seconds = poll_seconds
        self._heap: list[ScheduledEntry] = []
        self._seq = itertools.count()
        self._running_names: dict[str, int] = {}
        self._inflight: set[asyncio.Task] = set()
        self._wakeup: asyncio.Event | None = None
        self._stopping = False
        self.running = False

    def _push(self, task: ScheduledTask, run_at: datetime) -> None:
        heapq.heappush(self._heap, ScheduledEntry(run_at, next(self._seq), task))
        if self._wakeup is not None:
            self._wakeup.set()

    def add_interval(self, name: str, func: TaskFunc, interval: timedelta, run_immediately: bool = False) -> None:
        task = ScheduledTask(name=name, func=func, interval=interval)
        now = self.clock.now()
        self._push(task, now if run_immediately else now + interval)
        logger.info("task_registered name=%s interval_seconds=%s", name, interval.total_seconds())

    def add_cron(self, name: str, func: TaskFunc, expression: str, tz: str = "UTC") -> None:
        task = ScheduledTask(name=name, func=func, cron=expression, timezone=tz)
        self._push(task, task.next_run(self.clock.now()))
        logger.info("task_registered name=%s cron=%s timezone=%s", name, expression, tz)

    def is_queued(self, name: str) -> bool:
        return any(entry.task.name == name for entry in self._heap)

    def is_running(self, name: str) -> bool:
        return self._running_names.get(name, 0) > 0

    def cancel(self, name: str) -> int:
        """Drop queued entries with this name; returns how many were removed."""

        before = len(self._heap)
        self._heap = [entry for entry in self._heap if entry.task.name != name]
        heapq.heapify(self._heap)
        return before - len(self._heap)

    def call_at(
        self, name: str, func: TaskFunc, when: datetime, unique: bool = False, replace: bool = False
    ) -> bool:
        """Queue a one-shot task.

        `unique` refuses when a task of that name is queued or running;
        `replace` drops queued entries of that name first.
        """

        if unique and (self.is_queued(name) or self.is_running(name)):
            logger.info("task_already_pending name=%s", name)
            return False
        if replace:
            self.cancel(name)
        self._push(ScheduledTask(name=name, func=func), when)
        logger.info("task_queued name=%s run_at=%s", name, when.isoformat())
        return True

    def call_later(
        self, name: str, func: TaskFunc, delay: timedelta, unique: bool = False, replace: bool = False
    ) -> bool:
        return self.call_at(name, func, self.clock.now() + delay, unique=unique, replace=replace)

    def _pop_due(self) -> list[ScheduledTask]:
        now = self.clock.now()
        due = []
        while self._heap and self._heap[0].run_at <= now:
            entry = heapq.heappop(self._heap)
            if entry.task.recurring:
                # Missed ticks collapse into one run.
                self._push(entry.task, entry.task.next_run(max(now, entry.run_at)))
            due.append(entry.task)
        return due

    async def _execute(self, task: ScheduledTask) -> None:
        self._running_names[task.name] = self._running_names.get(task.name, 0) + 1
        try:
            await task.func()
        except Exception:
            logger.exception("scheduled_task_failed name=%s", task.name)
        finally:
            self._running_names[task.name] -= 1

    async def run_due(self) -> int:
        """Run every task due at the current clock time, one after another."""

        due = self._pop_due()
        for task in due:
            await self._execute(task)
        return len(due)

    def _seconds_until_next(self) -> float:
        if not self._heap:
            return self.poll_seconds
        delta = (self._heap[0].run_at - self.clock.now()).total_seconds()
        return max(0.0, min(self.poll_seconds, delta))

    async def run_forever(self) -> None:
        self._wakeup = asyncio.Event()
        self._stopping = False
        self.running = True
        logger.info("scheduler_started tasks=%s", len(self._heap))
        try:
            while not self._stopping:
                for task in self._pop_due():
                    running = asyncio.create_task(self._execute(task), name=f"cardrelay:{task.name}")
                    self._inflight.add(running)
                    running.add_done_callback(self._inflight.discard)
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._seconds_until_next())
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop dispatching and give in-flight tasks the grace period to finish."""

        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()
        if self._inflight:
            logger.info("scheduler_draining inflight=%s grace_seconds=%s", len(self._inflight), self.grace_seconds)
            _, pending = await asyncio.wait(set(self._inflight), timeout=self.grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("scheduler_cancelled_tasks count=%s", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("scheduler_stopped")

    def status(self) -> list[dict]:
        return [
            {
                "name": entry.task.name,
                "next_run_at": entry.run_at.isoformat(),
                "recurring": entry.task.recurring,
                "running": self.is_running(entry.task.name),
            }
            for entry in sorted(self._heap)
        ]
