"""
Scheduler module for the certificate monitor.

Runs named callbacks on fixed intervals (scan cycle, provider sync). The
loop only decides *when* something is due; the callbacks themselves submit
work to the task queue, so a long scan never delays the loop.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .audit_logger import AuditLogger


@dataclass
class ScheduledTask:
    """Represents a task run every ``interval_seconds``."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[object]]
    next_run: float
    last_run: Optional[float] = None
    run_count: int = 0
    last_error: Optional[str] = None
    enabled: bool = True

    def is_due(self, now: float) -> bool:
        return self.enabled and now >= self.next_run


class Scheduler:
    """
    Fixed-interval scheduler.

    Time comes from an injectable monotonic clock so that ``run_pending``
    can be driven deterministically in tests without real timers.
    """

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_seconds: float = 1.0,
    ) -> None:
        self._tasks: dict[str, ScheduledTask] = {}
        self._logger = logger
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._running = False

    def schedule(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        run_immediately: bool = True,
    ) -> ScheduledTask:
        """
        Register a recurring task.

        Raises:
            ValueError: If the name is taken or the interval is not positive
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be > 0, got {interval_seconds}")

        now = self._clock()
        task = ScheduledTask(
            name=name,
            interval_seconds=interval_seconds,
            callback=callback,
            next_run=now if run_immediately else now + interval_seconds,
        )
        self._tasks[name] = task
        return task

    def unschedule(self, name: str) -> bool:
        return self._tasks.pop(name, None) is not None

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def enable_task(self, name: str) -> bool:
        if name in self._tasks:
            self._tasks[name].enabled = True
            return True
        return False

    def disable_task(self, name: str) -> bool:
        if name in self._tasks:
            self._tasks[name].enabled = False
            return True
        return False

    async def run_pending(self, now: Optional[float] = None) -> list[str]:
        """
        Run every task that is due at ``now``.

        The next run is measured from the scheduled time, not from when the
        callback finished, so intervals do not drift. Missed runs are not
        replayed.

        Returns:
            Names of the tasks that ran
        """
        now = self._clock() if now is None else now
        ran = []
        for task in list(self._tasks.values()):
            if not task.is_due(now):
                continue
            task.last_run = now
            task.run_count += 1
            task.next_run += task.interval_seconds
            if task.next_run <= now:
                task.next_run = now + task.interval_seconds
            try:
                await task.callback()
                task.last_error = None
            except Exception as e:
                # Keep the loop alive for the other tasks
                task.last_error = f"{type(e).__name__}: {e}"
                if self._logger:
                    self._logger.log_error("Scheduler", f"Scheduled task '{task.name}' failed", e)
            ran.append(task.name)
        return ran

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the scheduler loop until ``stop()`` or ``stop_event`` is set."""
        self._running = True
        try:
            while self._running:
                await self.run_pending()
                if stop_event is not None:
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=self._tick_seconds)
                        break
                    except asyncio.TimeoutError:
                        continue
                await asyncio.sleep(self._tick_seconds)
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False

    def is_running(self) -> bool:
        return self._running
