"""Durable schedules and the time rules that decide when they fire.

Days of the week are numbered ``0`` (Sunday) to ``6`` (Saturday).  Times
are local wall-clock times.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import fcntl
import json
import logging
import os
import uuid
from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, time, timedelta
from pathlib import Path

from yotoctl._constants import SCHEDULE_FILE

logger = logging.getLogger(__name__)

DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")

# A tick within this many minutes of the scheduled time counts as on time.
DUE_TOLERANCE = timedelta(minutes=1)
# Minimum gap between two fires of the same schedule.
REFIRE_GUARD = timedelta(seconds=60)
# Disabled one-off schedules older than this are removed by cleanup().
CLEANUP_AGE = timedelta(days=30)


class RepeatMode(str, enum.Enum):
    NONE = "none"
    WEEKLY = "weekly"


@dataclass(frozen=True)
class Schedule:
    """A stored rule to play a card on a device at a time of day."""

    device_id: str
    card_uri: str
    time_of_day: time
    days_of_week: frozenset[int]
    repeat_mode: RepeatMode = RepeatMode.WEEKLY
    enabled: bool = True
    notify_if_offline: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
    last_triggered_at: datetime | None = None
    card_title: str = ""
    device_name: str = ""

    def __post_init__(self) -> None:
        if not self.days_of_week:
            raise ValueError("A schedule needs at least one day of the week.")
        bad = sorted(d for d in self.days_of_week if not 0 <= d <= 6)
        if bad:
            raise ValueError(f"Invalid day(s) {bad}. Days are 0 (Sunday) to 6 (Saturday).")
        if not self.device_id:
            raise ValueError("A schedule needs a device ID.")
        if not self.card_uri:
            raise ValueError("A schedule needs a card URI.")

    @property
    def label(self) -> str:
        return self.card_title or self.card_uri

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "cardUri": self.card_uri,
            "cardTitle": self.card_title,
            "deviceName": self.device_name,
            "timeOfDay": self.time_of_day.strftime("%H:%M"),
            "daysOfWeek": sorted(self.days_of_week),
            "repeatMode": self.repeat_mode.value,
            "enabled": self.enabled,
            "notifyIfOffline": self.notify_if_offline,
            "createdAt": self.created_at.isoformat(),
            "lastTriggeredAt": (
                self.last_triggered_at.isoformat() if self.last_triggered_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Schedule:
        last = data.get("lastTriggeredAt")
        return cls(
            id=str(data["id"]),
            device_id=str(data["deviceId"]),
            card_uri=str(data["cardUri"]),
            card_title=str(data.get("cardTitle") or ""),
            device_name=str(data.get("deviceName") or ""),
            time_of_day=parse_time_of_day(str(data["timeOfDay"])),
            days_of_week=frozenset(int(d) for d in data["daysOfWeek"]),  # type: ignore[attr-defined]
            repeat_mode=RepeatMode(data.get("repeatMode", RepeatMode.WEEKLY.value)),
            enabled=bool(data.get("enabled", True)),
            notify_if_offline=bool(data.get("notifyIfOffline", False)),
            created_at=datetime.fromisoformat(str(data["createdAt"])),
            last_triggered_at=datetime.fromisoformat(str(last)) if last else None,
        )


# ---------------------------------------------------------------------------
# Time rules
# ---------------------------------------------------------------------------


def weekday(moment: datetime) -> int:
    """Day number of *moment*, ``0`` = Sunday."""
    return (moment.weekday() + 1) % 7


def parse_time_of_day(text: str) -> time:
    """Parse ``HH:MM`` (24-hour).  Raises :class:`ValueError` if malformed."""
    try:
        hour_text, minute_text = text.strip().split(":")
        return time(int(hour_text), int(minute_text))
    except ValueError:
        raise ValueError(f"Invalid time '{text}'. Expected HH:MM (24-hour).") from None


def is_due(schedule: Schedule, now: datetime) -> bool:
    """Whether a tick at *now* should fire *schedule*.

    Due when enabled, today is a scheduled day, *now* is within one
    minute of the scheduled time, and the schedule has neither fired in
    the last 60 seconds nor already fired for today's occurrence.
    """
    if not schedule.enabled:
        return False
    if weekday(now) not in schedule.days_of_week:
        return False

    occurrence = datetime.combine(now.date(), schedule.time_of_day)
    if abs(now.replace(second=0, microsecond=0) - occurrence) > DUE_TOLERANCE:
        return False

    last = schedule.last_triggered_at
    if last is not None:
        if now - last <= REFIRE_GUARD:
            return False
        if abs(last - occurrence) <= DUE_TOLERANCE + REFIRE_GUARD:
            return False
    return True


def next_execution_time(schedule: Schedule, now: datetime) -> datetime | None:
    """Earliest time at or after *now* when *schedule* will fire.

    Returns ``None`` when it is disabled.  A one-off schedule only looks
    at the next seven days starting today, so once today's time has
    passed on its only matching day it returns ``None`` instead of
    wrapping round to the same day next week.
    """
    if not schedule.enabled:
        return None
    horizon = 8 if schedule.repeat_mode is RepeatMode.WEEKLY else 7
    for offset in range(horizon):
        day = now.date() + timedelta(days=offset)
        candidate = datetime.combine(day, schedule.time_of_day)
        if candidate >= now and weekday(candidate) in schedule.days_of_week:
            return candidate
    return None


def format_days(days: Iterable[int]) -> str:
    """Human-readable day set: ``Every day``, ``Weekdays``, ``Weekends`` or a list."""
    day_set = set(days)
    if len(day_set) == 7:
        return "Every day"
    if day_set == {1, 2, 3, 4, 5}:
        return "Weekdays"
    if day_set == {0, 6}:
        return "Weekends"
    return ", ".join(DAY_NAMES[d] for d in sorted(day_set))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

_PATCHABLE = frozenset(
    f.name for f in fields(Schedule) if f.name not in ("id", "created_at")
)


class ScheduleStore:
    """The schedule collection, persisted as a JSON list at *path*.

    The file is shared with other processes (``yotoctl run`` and the
    ``yotoctl schedule`` commands), so every write is a read-modify-write
    against disk under an advisory file lock, and reads pick up changes
    written by others.  Within one process, writes to a given schedule are
    also serialized through a per-ID lock.  Pass ``path=None`` for an
    in-memory store.
    """

    def __init__(self, path: Path | None = SCHEDULE_FILE) -> None:
        self._path = path
        self._schedules: dict[str, Schedule] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._signature: tuple[int, int, int] | None = None
        self._reload()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, schedule_id: str) -> Schedule:
        """Raises :class:`KeyError` if no schedule has *schedule_id*."""
        self._reload()
        try:
            return self._schedules[schedule_id]
        except KeyError:
            raise KeyError(f"No schedule with id '{schedule_id}'.") from None

    def list(self, device_id: str | None = None) -> list[Schedule]:
        """All schedules, or only those for *device_id*, oldest first."""
        self._reload()
        items = sorted(self._schedules.values(), key=lambda s: s.created_at)
        if device_id is None:
            return items
        return [s for s in items if s.device_id == device_id]

    def for_card(self, card_uri: str) -> list[Schedule]:
        return [s for s in self.list() if s.card_uri == card_uri]

    def __len__(self) -> int:
        self._reload()
        return len(self._schedules)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        device_id: str,
        card_uri: str,
        time_of_day: time,
        days_of_week: Iterable[int],
        *,
        repeat_mode: RepeatMode = RepeatMode.WEEKLY,
        notify_if_offline: bool = False,
        enabled: bool = True,
        card_title: str = "",
        device_name: str = "",
    ) -> Schedule:
        schedule = Schedule(
            device_id=device_id,
            card_uri=card_uri,
            time_of_day=time_of_day.replace(second=0, microsecond=0),
            days_of_week=frozenset(days_of_week),
            repeat_mode=repeat_mode,
            enabled=enabled,
            notify_if_offline=notify_if_offline,
            card_title=card_title,
            device_name=device_name,
        )
        async with self._locks[schedule.id]:
            with self._file_lock():
                self._reload()
                self._schedules[schedule.id] = schedule
                self._save()
        logger.info(
            "Created schedule %s: %s at %s (%s)",
            schedule.id,
            schedule.label,
            schedule.time_of_day.strftime("%H:%M"),
            format_days(schedule.days_of_week),
        )
        return schedule

    async def update(self, schedule_id: str, patch: Mapping[str, object]) -> Schedule:
        """Apply *patch* (field name -> new value) atomically.

        Only the patched fields change; everything else is taken from the
        file as it is at the time of the write.

        Raises:
            KeyError: Unknown schedule.
            ValueError: Unknown or read-only field, or an invalid value.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}.")
        changes = dict(patch)
        if "days_of_week" in changes:
            changes["days_of_week"] = frozenset(changes["days_of_week"])  # type: ignore[arg-type]
        if "repeat_mode" in changes:
            changes["repeat_mode"] = RepeatMode(changes["repeat_mode"])
        if isinstance(changes.get("time_of_day"), str):
            changes["time_of_day"] = parse_time_of_day(str(changes["time_of_day"]))

        self.get(schedule_id)  # no lock is created for an unknown id
        try:
            async with self._locks[schedule_id]:
                with self._file_lock():
                    updated = replace(self.get(schedule_id), **changes)  # type: ignore[arg-type]
                    self._schedules[schedule_id] = updated
                    self._save()
        except KeyError:
            # Deleted by someone else after the check above.
            self._locks.pop(schedule_id, None)
            raise
        logger.debug("Updated schedule %s: %s", schedule_id, sorted(changes))
        return updated

    async def set_enabled(self, schedule_id: str, enabled: bool) -> Schedule:
        return await self.update(schedule_id, {"enabled": enabled})

    async def mark_triggered(self, schedule_id: str, at: datetime, *, disable: bool = False) -> Schedule:
        """Record a fire.  With *disable*, also switch the schedule off."""
        patch: dict[str, object] = {"last_triggered_at": at}
        if disable:
            patch["enabled"] = False
        return await self.update(schedule_id, patch)

    async def delete(self, schedule_id: str) -> bool:
        """Remove a schedule.  Returns ``False`` if it did not exist."""
        async with self._locks[schedule_id]:
            with self._file_lock():
                self._reload()
                removed = self._schedules.pop(schedule_id, None)
                if removed is not None:
                    self._save()
        self._locks.pop(schedule_id, None)
        if removed is not None:
            logger.info("Deleted schedule %s", schedule_id)
        return removed is not None

    async def cleanup(self, now: datetime) -> int:
        """Delete one-off schedules that are disabled and older than 30 days."""
        expired = [
            s.id
            for s in self.list()
            if s.repeat_mode is RepeatMode.NONE
            and not s.enabled
            and now - (s.last_triggered_at or s.created_at) > CLEANUP_AGE
        ]
        for schedule_id in expired:
            await self.delete(schedule_id)
        if expired:
            logger.info("Cleaned up %d old schedules", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _reload(self) -> None:
        """Re-read the file if another writer replaced it since we last looked."""
        if self._path is None:
            return
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            if self._signature is not None:
                self._schedules = {}
                self._signature = None
            return
        # _save() swaps in a new file, so the inode changes on every write.
        signature = (stat.st_ino, stat.st_mtime_ns, stat.st_size)
        if signature == self._signature:
            return
        items = json.loads(self._path.read_text())
        self._schedules = {s.id: s for s in map(Schedule.from_dict, items)}
        self._signature = signature
        logger.debug("Loaded %d schedules from %s", len(self._schedules), self._path)

    @contextlib.contextmanager
    def _file_lock(self) -> Iterator[None]:
        if self._path is None:
            yield
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self._path.with_name(self._path.name + ".lock")
        with open(lock_path, "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _save(self) -> None:
        if self._path is None:
            return
        data = [s.to_dict() for s in sorted(self._schedules.values(), key=lambda s: s.created_at)]
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self._path)
        stat = self._path.stat()
        self._signature = (stat.st_ino, stat.st_mtime_ns, stat.st_size)
