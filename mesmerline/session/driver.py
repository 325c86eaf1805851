"""Timer drivers that call ``PlaybackScheduler.tick()``.

The scheduler never owns a timer. A driver supplies the recurring callback
on whatever loop the host application runs:

- QtTickDriver: ``QTimer`` on the Qt event loop (GUI)
- AsyncTickDriver: asyncio task
- run_blocking: plain sleep loop (CLI, headless dry runs)

Every driver stops on its own once the scheduler reaches COMPLETED or
CANCELLED. All of them tick on a single thread, so a tick always finishes
before the next one starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .scheduler import PlaybackScheduler, SchedulerState

logger = logging.getLogger(__name__)

TickCallback = Callable[["PlaybackScheduler"], None]


def _interval_ms(scheduler: PlaybackScheduler, interval_ms: Optional[int]) -> int:
    value = interval_ms if interval_ms is not None else scheduler.config.tick_interval_ms
    if value <= 0:
        raise ValueError(f"interval_ms must be positive, got {value}")
    return int(value)


class QtTickDriver:
    """Ticks the scheduler from a ``QTimer``.

    Requires a running Qt application (QCoreApplication or QApplication) on
    the calling thread.

    Usage:
        driver = QtTickDriver(scheduler)
        scheduler.start()
        driver.start()
    """

    def __init__(
        self,
        scheduler: PlaybackScheduler,
        interval_ms: Optional[int] = None,
        parent=None,
        on_finished: Optional[TickCallback] = None,
    ):
        from PyQt6.QtCore import QTimer

        self.scheduler = scheduler
        self.interval_ms = _interval_ms(scheduler, interval_ms)
        self.on_finished = on_finished
        self._timer = QTimer(parent)
        self._timer.setInterval(self.interval_ms)
        self._timer.timeout.connect(self._on_timeout)

    def start(self) -> None:
        logger.debug("[driver.qt] Ticking every %dms", self.interval_ms)
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    def is_active(self) -> bool:
        return self._timer.isActive()

    def _on_timeout(self) -> None:
        self.scheduler.tick()
        if self.scheduler.is_finished():
            self.stop()
            logger.debug("[driver.qt] Scheduler finished (%s)", self.scheduler.state.name)
            if self.on_finished is not None:
                self.on_finished(self.scheduler)


class AsyncTickDriver:
    """Ticks the scheduler from an asyncio task.

    Usage:
        driver = AsyncTickDriver(scheduler)
        scheduler.start()
        await driver.run()          # returns when the run ends
    """

    def __init__(self, scheduler: PlaybackScheduler, interval_ms: Optional[int] = None):
        self.scheduler = scheduler
        self.interval_ms = _interval_ms(scheduler, interval_ms)
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    async def run(self) -> SchedulerState:
        """Tick until the scheduler finishes or ``stop()`` is called."""
        self._stopping = False
        interval = self.interval_ms / 1000.0
        while not self._stopping and not self.scheduler.is_finished():
            self.scheduler.tick()
            if self.scheduler.is_finished():
                break
            await asyncio.sleep(interval)
        logger.debug("[driver.async] Stopped (%s)", self.scheduler.state.name)
        return self.scheduler.state

    def start(self) -> asyncio.Task:
        """Schedule ``run()`` on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def stop(self) -> None:
        self._stopping = True

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task


def run_blocking(
    scheduler: PlaybackScheduler,
    *,
    interval_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_tick: Optional[TickCallback] = None,
    max_ticks: Optional[int] = None,
) -> SchedulerState:
    """Start (if needed) and tick ``scheduler`` until the run ends.

    Args:
        scheduler: Scheduler with a loaded timeline
        interval_ms: Tick interval (defaults to the scheduler's config)
        sleep: Sleep function, injectable for tests
        on_tick: Called after every tick (progress output)
        max_ticks: Safety limit; the loop returns when reached

    Returns:
        The scheduler state when the loop exited
    """
    interval = _interval_ms(scheduler, interval_ms) / 1000.0
    if not scheduler.state.is_active and not scheduler.start():
        return scheduler.state

    ticks = 0
    while not scheduler.is_finished():
        scheduler.tick()
        ticks += 1
        if on_tick is not None:
            on_tick(scheduler)
        if scheduler.is_finished() or (max_ticks is not None and ticks >= max_ticks):
            break
        sleep(interval)
    return scheduler.state
