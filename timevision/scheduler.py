"""
Background task scheduling.

Tasks run their job on a timer until stopped. A tick that fires while the
previous one is still running is skipped, never queued, so two runs of the
same job never overlap. Every tick outcome is counted in Prometheus and
passed to any registered hooks.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

TASK_TICKS = Counter(
    "timevision_task_ticks_total", "Scheduled task ticks by outcome", ["task", "outcome"]
)
TASK_DURATION = Histogram(
    "timevision_task_tick_seconds", "Scheduled task tick duration", ["task"]
)

Job = Callable[[], Awaitable[Any]]
TickHook = Callable[[str, str, float], Any]


class ScheduledTask:
    def __init__(self, name: str, job: Job, on_tick: Optional[list[TickHook]] = None):
        self.name = name
        self._job = job
        self._hooks: list[TickHook] = list(on_tick or [])
        self._guard = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self.last_outcome: Optional[str] = None

    def add_hook(self, hook: TickHook) -> None:
        self._hooks.append(hook)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._loop(), name=f"task:{self.name}")

    async def stop(self) -> None:
        """Stop scheduling new ticks and wait for the in-flight one to finish."""
        self._stop_event.set()
        if self._loop_task:
            await self._loop_task
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info(f"{self.name} stopped")

    async def run_once(self) -> str:
        """Run one guarded tick and return its outcome: ok, error or skipped."""
        if self._guard.locked():
            logger.warning(f"{self.name}: previous run still in progress, skipping tick")
            await self._record("skipped", 0.0)
            return "skipped"

        async with self._guard:
            started = time.monotonic()
            try:
                await self._job()
                outcome = "ok"
            except Exception as e:
                logger.error(f"{self.name} failed: {e}")
                outcome = "error"
            duration = time.monotonic() - started

        TASK_DURATION.labels(task=self.name).observe(duration)
        await self._record(outcome, duration)
        return outcome

    async def _record(self, outcome: str, duration: float) -> None:
        self.last_outcome = outcome
        TASK_TICKS.labels(task=self.name, outcome=outcome).inc()
        for hook in self._hooks:
            try:
                result = hook(self.name, outcome, duration)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{self.name}: tick hook failed: {e}")

    def seconds_until_next(self) -> float:
        raise NotImplementedError

    async def _loop(self) -> None:
        logger.info(f"{self.name} started")
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.seconds_until_next())
                break
            except asyncio.TimeoutError:
                pass
            tick = asyncio.create_task(self.run_once())
            self._inflight.add(tick)
            tick.add_done_callback(self._inflight.discard)


class PeriodicTask(ScheduledTask):
    """Runs its job every `interval` seconds."""

    def __init__(
        self, name: str, interval: float, job: Job, on_tick: Optional[list[TickHook]] = None
    ):
        super().__init__(name, job, on_tick)
        self.interval = interval

    def seconds_until_next(self) -> float:
        return self.interval


class CalendarTask(ScheduledTask):
    """Runs its job at wall-clock times given by a next_run(now) function."""

    def __init__(
        self,
        name: str,
        next_run: Callable[[datetime], datetime],
        job: Job,
        on_tick: Optional[list[TickHook]] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name, job, on_tick)
        self._next_run = next_run
        self._clock = clock

    def next_run_at(self) -> datetime:
        return self._next_run(datetime.fromtimestamp(self._clock(), tz=timezone.utc))

    def seconds_until_next(self) -> float:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return max(0.0, (self._next_run(now) - now).total_seconds())


def daily_at(hour: int, minute: int = 0) -> Callable[[datetime], datetime]:
    def next_run(now: datetime) -> datetime:
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    return next_run


def monthly_on(day: int, hour: int = 0, minute: int = 0) -> Callable[[datetime], datetime]:
    # Days past the 28th do not exist in every month
    day = min(max(day, 1), 28)

    def next_run(now: datetime) -> datetime:
        candidate = now.replace(day=day, hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            if now.month == 12:
                candidate = candidate.replace(year=now.year + 1, month=1)
            else:
                candidate = candidate.replace(month=now.month + 1)
        return candidate

    return next_run
