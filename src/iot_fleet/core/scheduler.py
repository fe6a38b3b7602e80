# Timer abstraction for sweeps and deferred one-shot callbacks.
# Components never sleep themselves; they ask the scheduler, so tests can
# drive time by hand.

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Set
import asyncio
import traceback

from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        pass


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> datetime:
        pass

    @abstractmethod
    def call_at(self, when: datetime, callback: AsyncCallback, name: str = "") -> TimerHandle:
        """Run callback once at (or just after) when"""
        pass

    @abstractmethod
    def call_every(self, interval: float, callback: AsyncCallback, name: str = "") -> TimerHandle:
        """Run callback every interval seconds, first run after one interval"""
        pass

    async def shutdown(self) -> None:
        pass


async def run_guarded(callback: AsyncCallback, name: str) -> None:
    """A failing tick is logged and never stops the next one."""
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.error(f"Scheduled job {name or callback} failed: {traceback.format_exc()}")


class _TaskHandle(TimerHandle):
    def __init__(self, task: asyncio.Task):
        self.task = task

    def cancel(self) -> None:
        self.task.cancel()


class AsyncioScheduler(Scheduler):
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return utcnow()

    def _spawn(self, coro, name: str) -> TimerHandle:
        task = asyncio.create_task(coro, name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return _TaskHandle(task)

    def call_at(self, when: datetime, callback: AsyncCallback, name: str = "") -> TimerHandle:
        async def one_shot():
            delay = (when - self.now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await run_guarded(callback, name)
        return self._spawn(one_shot(), name)

    def call_every(self, interval: float, callback: AsyncCallback, name: str = "") -> TimerHandle:
        async def periodic():
            while True:
                await asyncio.sleep(interval)
                await run_guarded(callback, name)
        logger.info(f"Scheduled {name or callback} every {interval}s")
        return self._spawn(periodic(), name)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Scheduler stopped")
