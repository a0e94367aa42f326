"""Clocks and cancellable periodic tasks.

Everything time-dependent takes a clock so tests can drive a `ManualClock`
instead of waiting on wall time.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """Virtual clock advanced explicitly by the caller."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


@dataclass
class ScheduledTask:
    name: str
    interval: timedelta
    callback: Callable[[], object]
    next_run_at: datetime
    cancelled: bool = False
    run_count: int = 0
    last_error: str | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True

    def is_due(self, now: datetime) -> bool:
        return not self.cancelled and now >= self.next_run_at


class Scheduler:
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._tasks: list[ScheduledTask] = []
        self._lock = threading.Lock()

    @property
    def tasks(self) -> list[ScheduledTask]:
        return [task for task in self._tasks if not task.cancelled]

    def every(
        self,
        seconds: float,
        callback: Callable[[], object],
        name: str | None = None,
        run_immediately: bool = False,
    ) -> ScheduledTask:
        if seconds <= 0:
            raise ValueError("interval must be positive")
        interval = timedelta(seconds=seconds)
        now = self.clock.now()
        task = ScheduledTask(
            name=name or getattr(callback, "__name__", "task"),
            interval=interval,
            callback=callback,
            next_run_at=now if run_immediately else now + interval,
        )
        with self._lock:
            self._tasks.append(task)
        return task

    def run_pending(self) -> int:
        """Run every due task once; returns how many ran.

        A task that fell several intervals behind runs once and is
        rescheduled relative to now.
        """
        now = self.clock.now()
        with self._lock:
            self._tasks = [task for task in self._tasks if not task.cancelled]
            due = [task for task in self._tasks if task.is_due(now)]
        ran = 0
        for task in due:
            task.next_run_at = now + task.interval
            task.run_count += 1
            ran += 1
            try:
                task.callback()
                task.last_error = None
            except Exception as exc:
                task.last_error = str(exc)
                logger.exception("scheduled_task_failed name=%s", task.name)
        return ran

    def seconds_until_next(self) -> float | None:
        tasks = self.tasks
        if not tasks:
            return None
        delta = min(task.next_run_at for task in tasks) - self.clock.now()
        return max(delta.total_seconds(), 0.0)

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 1.0) -> None:
        """Blocking loop for a background thread; returns once `stop_event` is set."""
        while not stop_event.is_set():
            self.run_pending()
            wait = self.seconds_until_next()
            stop_event.wait(poll_seconds if wait is None else min(wait, poll_seconds))
