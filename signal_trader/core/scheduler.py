"""
Periodic Task Scheduler
Drives the sentiment refresh, balance refresh and health monitor tickers

Time flows through an injectable Clock so tests can advance a VirtualClock
instead of sleeping.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class Clock(ABC):
    """Source of wall time, monotonic time and sleeping"""

    @abstractmethod
    def now(self) -> datetime:
        pass

    @abstractmethod
    def monotonic(self) -> float:
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock(Clock):
    """
    Manually advanced clock

    sleep() parks the caller until advance() moves time past its wake-up
    point. Sleepers wake in deadline order, and each wake is followed by a
    few event-loop turns so the woken coroutine can run up to its next await.
    """

    SETTLE_TURNS = 10

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._now = start.timestamp()
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now, tz=timezone.utc)

    def monotonic(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def _settle(self):
        for _ in range(self.SETTLE_TURNS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes"""
        target = self._now + seconds
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            wake_at, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, wake_at)
            if not future.done():
                future.set_result(None)
                await self._settle()
        self._now = target
        await self._settle()


class CancellationToken:
    """Cooperative stop signal shared by periodic tasks"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


@dataclass
class TaskStats:
    """Statistics for one periodic task"""
    name: str
    iterations: int = 0
    errors: int = 0
    consecutive_errors: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    avg_duration_ms: float = 0.0
    total_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iterations": self.iterations,
            "errors": self.errors,
            "consecutive_errors": self.consecutive_errors,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "avg_duration_ms": round(self.avg_duration_ms, 2),
        }


class PeriodicTask:
    """
    Runs an async callback on a fixed interval until cancelled

    After ``max_consecutive_errors`` failures in a row the task backs off
    for ``error_cooldown_seconds`` before trying again.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        clock: Optional[Clock] = None,
        run_immediately: bool = True,
        max_consecutive_errors: int = 5,
        error_cooldown_seconds: float = 60.0,
        error_callback: Optional[Callable[[str, Exception], Awaitable[Any]]] = None,
    ):
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self.run_immediately = run_immediately
        self.max_consecutive_errors = max_consecutive_errors
        self.error_cooldown_seconds = error_cooldown_seconds
        self.error_callback = error_callback
        self.stats = TaskStats(name=name)
        self._cooldown_until: Optional[float] = None

    def in_cooldown(self) -> bool:
        return self._cooldown_until is not None and self.clock.monotonic() < self._cooldown_until

    async def _sleep(self, seconds: float, token: CancellationToken):
        """Sleep on the clock, returning early if the token is cancelled"""
        if token.cancelled:
            return
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                if not pending.done():
                    pending.cancel()

    async def run_once(self) -> Any:
        started = self.clock.monotonic()
        try:
            result = await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_error(e)
            return None

        duration_ms = (self.clock.monotonic() - started) * 1000
        self.stats.iterations += 1
        self.stats.consecutive_errors = 0
        self.stats.last_run = self.clock.now()
        self.stats.total_duration_ms += duration_ms
        self.stats.avg_duration_ms = self.stats.total_duration_ms / self.stats.iterations
        return result

    async def run(self, token: CancellationToken):
        logger.info(f"Periodic task '{self.name}' started (every {self.interval_seconds}s)")
        if not self.run_immediately:
            await self._sleep(self.interval_seconds, token)

        while not token.cancelled:
            if self.in_cooldown():
                await self._sleep(self._cooldown_until - self.clock.monotonic(), token)
                continue

            started = self.clock.monotonic()
            await self.run_once()
            elapsed = self.clock.monotonic() - started
            await self._sleep(max(0.0, self.interval_seconds - elapsed), token)

        logger.info(f"Periodic task '{self.name}' stopped")

    async def _handle_error(self, error: Exception):
        self.stats.errors += 1
        self.stats.consecutive_errors += 1
        self.stats.last_error = str(error)

        logger.error(f"{self.name} error ({self.stats.consecutive_errors}): {error}")

        if self.stats.consecutive_errors >= self.max_consecutive_errors:
            self._cooldown_until = self.clock.monotonic() + self.error_cooldown_seconds
            self.stats.consecutive_errors = 0
            logger.warning(f"{self.name} entering cooldown for {self.error_cooldown_seconds}s")

        if self.error_callback:
            try:
                await self.error_callback(self.name, error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")


class TaskScheduler:
    """Owns a set of periodic tasks and a shared cancellation token"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.tasks: Dict[str, PeriodicTask] = {}
        self._token: Optional[CancellationToken] = None
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._running) and not (self._token and self._token.cancelled)

    def add(self, task: PeriodicTask) -> PeriodicTask:
        task.clock = self.clock
        self.tasks[task.name] = task
        return task

    def every(self, name: str, interval_seconds: float, callback: Callable[[], Awaitable[Any]], **kwargs) -> PeriodicTask:
        return self.add(PeriodicTask(name, callback, interval_seconds, clock=self.clock, **kwargs))

    async def start(self):
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._token = CancellationToken()
        for name, task in self.tasks.items():
            self._running[name] = asyncio.create_task(task.run(self._token), name=f"periodic:{name}")
        logger.info(f"Scheduler started with {len(self.tasks)} tasks: {', '.join(self.tasks)}")

    async def stop(self, timeout: float = 10.0):
        if not self._running:
            return
        logger.info("Stopping scheduler...")
        self._token.cancel()
        tasks = list(self._running.values())
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._running.clear()
        logger.info("Scheduler stopped")

    async def run_once(self, name: str) -> Any:
        """Run a single iteration of one task"""
        return await self.tasks[name].run_once()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "tasks": {
                name: dict(task.stats.to_dict(), interval_seconds=task.interval_seconds,
                           in_cooldown=task.in_cooldown())
                for name, task in self.tasks.items()
            },
        }
