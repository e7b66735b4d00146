"""Host wake-up timer abstraction and the single master timer registration.

The engine never runs its own loop: it is woken by exactly one named,
recurring host timer. ``APSchedulerTimer`` backs a long-lived process;
``ManualTimer`` backs hosts that wake the process from outside (system cron
running ``expensebot tick``) and tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

FireCallback = Callable[[], Awaitable[None]]

MIN_PERIOD = timedelta(minutes=1)


class HostTimer(ABC):
    """Named recurring wake-up registrations provided by the host."""

    @abstractmethod
    def create(self, name: str, delay: timedelta, period: timedelta) -> None:
        """Register (or replace) the timer ``name``."""

    @abstractmethod
    def clear(self, name: str) -> bool:
        """Remove the timer ``name``. Returns True if it existed."""

    @abstractmethod
    def on_fire(self, name: str, callback: FireCallback) -> None:
        """Set the coroutine invoked whenever ``name`` fires."""


class APSchedulerTimer(HostTimer):
    """Host timer backed by an APScheduler ``AsyncIOScheduler``."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self._scheduler = scheduler or AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )
        self._callbacks: dict[str, FireCallback] = {}

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("APScheduler host timer started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("APScheduler host timer stopped")

    def create(self, name: str, delay: timedelta, period: timedelta) -> None:
        trigger = IntervalTrigger(
            seconds=period.total_seconds(),
            start_date=datetime.now(timezone.utc) + delay,
        )
        self._scheduler.add_job(
            self._fire, trigger=trigger, id=name, args=[name], replace_existing=True,
        )

    def clear(self, name: str) -> bool:
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return False
        return True

    def on_fire(self, name: str, callback: FireCallback) -> None:
        self._callbacks[name] = callback

    async def _fire(self, name: str) -> None:
        callback = self._callbacks.get(name)
        if callback is None:
            logger.warning(f"Timer {name} fired with no listener")
            return
        try:
            await callback()
        except Exception as e:
            logger.error(f"Error in timer handler {name}: {e}")


class ManualTimer(HostTimer):
    """Host timer fired explicitly via :meth:`fire`."""

    def __init__(self) -> None:
        self.registrations: dict[str, tuple[timedelta, timedelta]] = {}
        self._callbacks: dict[str, FireCallback] = {}

    def create(self, name: str, delay: timedelta, period: timedelta) -> None:
        self.registrations[name] = (delay, period)

    def clear(self, name: str) -> bool:
        return self.registrations.pop(name, None) is not None

    def on_fire(self, name: str, callback: FireCallback) -> None:
        self._callbacks[name] = callback

    async def fire(self, name: str) -> bool:
        """Fire ``name`` once. Returns False if it is not registered."""
        if name not in self.registrations or name not in self._callbacks:
            logger.warning(f"Timer {name} is not registered")
            return False
        await self._callbacks[name]()
        return True


class MasterTimerManager:
    """Owns the one named wake-up registration the whole engine runs from."""

    def __init__(
        self,
        timer: HostTimer,
        name: str = "expensebot_master_scheduler",
        period_minutes: int = 1,
    ):
        self.timer = timer
        self.name = name
        self.period = max(timedelta(minutes=period_minutes), MIN_PERIOD)

    def initialize(self, callback: FireCallback) -> None:
        """Clear any previous registration under our name and create exactly one.

        A failure to create the registration propagates.
        """
        self.timer.on_fire(self.name, callback)
        self._clear_existing()
        try:
            self.timer.create(self.name, delay=self.period, period=self.period)
        except Exception as e:
            logger.error(f"Failed to create master timer {self.name}: {e}")
            raise
        logger.info(
            f"Master timer {self.name} created "
            f"(every {int(self.period.total_seconds() // 60)} min)"
        )

    def _clear_existing(self) -> None:
        try:
            if self.timer.clear(self.name):
                logger.info(f"Cleared existing master timer {self.name}")
        except Exception as e:
            logger.error(f"Error clearing existing master timer: {e}")
