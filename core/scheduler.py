"""
Core Module - Scheduler.

============================================================
RESPONSIBILITY
============================================================
Runs the periodic concerns of the monitoring runtime.

- One cancellable asyncio task per concern
- All tasks share one shutdown signal
- A tick is awaited before the next interval starts,
  so ticks of one task never overlap
- A failing tick is logged and counted, never fatal

============================================================
TESTING
============================================================
Every task can be driven by hand through run_once(),
without starting the loop.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


TickCallback = Callable[[], Awaitable[Any]]


# ============================================================
# TASK STATISTICS
# ============================================================

@dataclass
class TaskStats:
    """Run counters for one periodic task."""

    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None


# ============================================================
# PERIODIC TASK
# ============================================================

class PeriodicTask:
    """
    One periodic concern (health poll, alert evaluation, ...).

    The loop waits on the shutdown event with the interval as
    timeout, so stopping never waits for a full interval.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = True,
    ):
        """
        Initialize periodic task.

        Args:
            name: Task name, used in logs
            interval: Seconds between the end of one tick and the next
            callback: Async callable run on every tick
            run_immediately: Run the first tick without waiting
        """
        if interval <= 0:
            raise ValueError(f"interval must be > 0 for task {name}")

        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Event] = None
        self.stats = TaskStats()

    @property
    def is_running(self) -> bool:
        """Whether the loop task is alive."""
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        """
        Run a single tick.

        Never throws, returns None on error.
        """
        self.stats.runs += 1
        try:
            return await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.failures += 1
            self.stats.last_error = str(e)
            logger.error(f"Periodic task {self.name} failed: {e}", exc_info=True)
            return None

    def start(self, shutdown: asyncio.Event) -> None:
        """Start the loop."""
        if self.is_running:
            return

        self._shutdown = shutdown
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.debug(f"Periodic task {self.name} started (interval={self.interval}s)")

    async def _run(self) -> None:
        """Main run loop."""
        if not self._run_immediately:
            if await self._wait_for_shutdown():
                return

        while not self._shutdown.is_set():
            await self.run_once()
            if await self._wait_for_shutdown():
                break

    async def _wait_for_shutdown(self) -> bool:
        """Sleep one interval; True if shutdown was signalled meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Wait for the loop to finish, cancelling it after timeout.

        The shutdown event must already be set by the owner.
        """
        if self._task is None:
            return

        task = self._task
        self._task = None

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(f"Periodic task {self.name} did not stop in {timeout}s, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ============================================================
# TASK SCHEDULER
# ============================================================

class TaskScheduler:
    """
    Owns all periodic tasks and their shared shutdown signal.
    """

    def __init__(self):
        """Initialize scheduler."""
        self._tasks: Dict[str, PeriodicTask] = {}
        self._shutdown: Optional[asyncio.Event] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the scheduler has been started and not stopped."""
        return self._running

    @property
    def tasks(self) -> List[PeriodicTask]:
        """All registered tasks."""
        return list(self._tasks.values())

    def add(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = True,
    ) -> PeriodicTask:
        """Register a periodic task."""
        if name in self._tasks:
            raise ValueError(f"Task already registered: {name}")

        task = PeriodicTask(name, interval, callback, run_immediately)
        self._tasks[name] = task

        if self._running:
            task.start(self._shutdown)

        return task

    def get(self, name: str) -> Optional[PeriodicTask]:
        """Get a task by name."""
        return self._tasks.get(name)

    async def start(self) -> None:
        """Start every registered task."""
        if self._running:
            return

        self._shutdown = asyncio.Event()
        self._running = True

        for task in self._tasks.values():
            task.start(self._shutdown)

        logger.info(f"Scheduler started with {len(self._tasks)} task(s)")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Signal shutdown and wait for all tasks.

        In-flight ticks get `timeout` seconds to complete before
        they are cancelled.
        """
        if not self._running:
            return

        self._running = False
        self._shutdown.set()

        await asyncio.gather(
            *(task.stop(timeout) for task in self._tasks.values()),
            return_exceptions=True,
        )

        logger.info("Scheduler stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-task run statistics."""
        return {
            name: {
                "interval": task.interval,
                "running": task.is_running,
                "runs": task.stats.runs,
                "failures": task.stats.failures,
                "last_error": task.stats.last_error,
            }
            for name, task in self._tasks.items()
        }


__all__ = [
    "TaskStats",
    "PeriodicTask",
    "TaskScheduler",
]
