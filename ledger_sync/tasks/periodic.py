"""
ledger_sync/tasks/periodic.py
Supervised background tasks with a stop handle.

Replaces self-rescheduling timers: one asyncio task per job, a bounded
backoff policy, and stop() that interrupts the wait.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """
    Delay policy for retries.

    multiplier=1.0 gives a fixed backoff; larger values grow the delay
    per attempt up to maximum.
    """
    base: float
    maximum: Optional[float] = None
    multiplier: float = 1.0

    def delay(self, attempt: int) -> float:
        value = self.base * (self.multiplier ** max(attempt - 1, 0))
        if self.maximum is not None:
            value = min(value, self.maximum)
        return max(value, 0.0)


async def wait_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """
    Sleep for delay seconds unless stop_event fires first.

    Returns:
        True when stopped
    """
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


class PeriodicTask:
    """
    Runs `job` every `interval` seconds until stopped.

    Errors raised by the job are logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self._job = job
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def _loop(self) -> None:
        logger.info(f"Starting {self.name} loop with interval {self.interval}s")
        if not self.run_immediately:
            if await wait_or_stop(self._stop, self.interval):
                return

        while not self._stop.is_set():
            try:
                await self._job()
                self.runs += 1
            except Exception as e:
                self.failures += 1
                logger.exception(f"{self.name} loop error: {e}")

            if await wait_or_stop(self._stop, self.interval):
                break
        logger.info(f"{self.name} loop stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self, timeout: Optional[float] = 5.0) -> None:
        """
        Signal the loop and wait briefly; a job still running after
        timeout is cancelled.
        """
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
