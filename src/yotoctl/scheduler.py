"""Periodic execution of stored schedules.

Once a minute :class:`SchedulerClock` looks for due schedules and plays
their card on the scheduled device.  When the device has no connected
session and the schedule asks for it, the user is notified instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from yotoctl._constants import SCHEDULER_TICK_INTERVAL
from yotoctl.commands import PlayCard
from yotoctl.connection import ConnectionManager
from yotoctl.exceptions import (
    DeviceOfflineError,
    DispatchFailedError,
    PublishError,
    ScheduleExecutionError,
)
from yotoctl.schedules import RepeatMode, Schedule, ScheduleStore, is_due

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """User-facing notification channel.  May be sync or async."""

    def notify(self, title: str, body: str) -> Awaitable[None] | None: ...


class LogNotificationSink:
    """Writes notifications to the log when no other channel exists."""

    def notify(self, title: str, body: str) -> None:
        logger.warning("%s: %s", title, body)


class Outcome(str, enum.Enum):
    DISPATCHED = "dispatched"
    NOTIFIED = "notified"
    OFFLINE = "offline"
    FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    schedule_id: str
    outcome: Outcome
    error: ScheduleExecutionError | None = None


class SchedulerClock:
    """Runs :meth:`tick` every *interval* seconds.

    Args:
        store: Schedule collection.
        connections: Used to find a connected session and publish.
        notifier: Receives the offline notification.  Defaults to the log.
        clock: Returns the current local time.
        interval: Seconds between ticks.
    """

    def __init__(
        self,
        store: ScheduleStore,
        connections: ConnectionManager,
        *,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = datetime.now,
        interval: float = SCHEDULER_TICK_INTERVAL,
    ) -> None:
        self._store = store
        self._connections = connections
        self._notifier: NotificationSink = notifier or LogNotificationSink()
        self._clock = clock
        self._interval = interval
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking in the background.  No-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler started (every %gs)", self._interval)

    async def stop(self) -> None:
        """Stop ticking and wait for an in-flight tick to finish or cancel."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                # A broken tick must not stop future ticks.
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._interval)

    async def tick(self, now: datetime | None = None) -> list[TickResult]:
        """Run one pass over all enabled schedules.

        Returns one result per schedule that was due.  If the previous
        tick is still running this one is skipped and returns ``[]``.
        """
        if self._tick_lock.locked():
            logger.warning("Previous scheduler tick still running; skipping")
            return []
        async with self._tick_lock:
            now = now or self._clock()
            results: list[TickResult] = []
            for schedule in self._store.list():
                if not is_due(schedule, now):
                    continue
                logger.info("Schedule %s is due: %s", schedule.id, schedule.label)
                results.append(await self._execute(schedule, now))
            return results

    async def _execute(self, schedule: Schedule, now: datetime) -> TickResult:
        try:
            await self._dispatch(schedule, now)
        except DeviceOfflineError as e:
            if not schedule.notify_if_offline:
                logger.warning("%s; trigger dropped", e)
                return TickResult(schedule.id, Outcome.OFFLINE, e)
            await self._notify_offline(schedule)
            await self._record(schedule, now)
            return TickResult(schedule.id, Outcome.NOTIFIED, e)
        except DispatchFailedError as e:
            logger.error("%s; will retry at the next occurrence", e)
            return TickResult(schedule.id, Outcome.FAILED, e)
        return TickResult(schedule.id, Outcome.DISPATCHED)

    async def _dispatch(self, schedule: Schedule, now: datetime) -> None:
        if not self._connections.is_connected(schedule.device_id):
            raise DeviceOfflineError(
                schedule.id, f"Device {schedule.device_id} is not connected"
            )
        try:
            await self._connections.publish(schedule.device_id, PlayCard(schedule.card_uri))
        except PublishError as e:
            raise DispatchFailedError(
                schedule.id, f"Could not play {schedule.label} on {schedule.device_id}: {e}"
            ) from e
        logger.info("Played %s on %s", schedule.label, schedule.device_id)
        await self._record(schedule, now, disable=schedule.repeat_mode is RepeatMode.NONE)

    async def _record(self, schedule: Schedule, now: datetime, *, disable: bool = False) -> None:
        try:
            await self._store.mark_triggered(schedule.id, now, disable=disable)
        except KeyError:
            logger.warning("Schedule %s was deleted while it was firing", schedule.id)

    async def _notify_offline(self, schedule: Schedule) -> None:
        device = schedule.device_name or schedule.device_id
        result = self._notifier.notify(
            "Device Offline",
            f'Could not play "{schedule.label}" because {device} is offline.',
        )
        if inspect.isawaitable(result):
            await result
