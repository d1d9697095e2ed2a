"""Bookable window and conflict resolution.

Pure functions over an observed schedule: nothing here talks to the network.
All instants are integer epoch seconds and intervals are half-open [start, end).
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from fleetrobot.backoff import DAY, truncate_quarter
from fleetrobot.domain import BoatAvailability, BookingRecord, EntryKind, ScheduleEntry

UNBOUNDED = sys.maxsize

_DAY_MARKERS = frozenset({EntryKind.DARKNESS, EntryKind.BLOCKED})


class Action(str, Enum):
    NONE = "none"
    WAIT = "wait"
    FAIL = "fail"
    BLOCK = "block"
    CREATE = "create"
    MOVE = "move"


@dataclass(frozen=True)
class DayWindow:
    sunrise: int
    sunset: int
    sunset_window: int

    @property
    def is_open(self) -> bool:
        return self.sunrise != 0 and self.sunset != UNBOUNDED


@dataclass(frozen=True)
class WindowLimits:
    min_duration: int  # minutes
    book_window: int  # hours


@dataclass(frozen=True)
class Resolution:
    action: Action
    message: str = ""
    start: int = 0
    end: int = 0
    next_eligible_epoch: int = 0
    resource_id: str = ""
    resource_name: str = ""
    cancel_first: bool = False
    own: ScheduleEntry | None = None


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def _open_gaps(markers: list[ScheduleEntry], day_start: int, day_end: int) -> list[tuple[int, int]]:
    gaps: list[tuple[int, int]] = []
    cursor = day_start
    for m in sorted(markers, key=lambda e: e.start):
        if m.start > cursor:
            gaps.append((cursor, m.start))
        cursor = max(cursor, m.end)
    if cursor < day_end:
        gaps.append((cursor, day_end))
    return gaps


def day_window(
    entries: Iterable[ScheduleEntry], desired_start: int, day_start: int, day_end: int
) -> DayWindow:
    """Find the open stretch of the day that the desired start belongs to.

    Darkness and administrative blocks split the day into open gaps. The gap
    containing the desired start wins; a start that falls inside a block moves
    to the next gap. A day without any marker has not been published yet.
    """
    entries = list(entries)
    markers = [e for e in entries if e.kind in _DAY_MARKERS]
    if not markers:
        return DayWindow(sunrise=0, sunset=UNBOUNDED, sunset_window=UNBOUNDED)

    gaps = _open_gaps(markers, day_start, day_end)
    if not gaps:
        return DayWindow(sunrise=0, sunset=UNBOUNDED, sunset_window=UNBOUNDED)

    sunrise, sunset_window = next(((s, e) for s, e in gaps if e > desired_start), gaps[-1])
    sunset = sunset_window

    for e in entries:
        if e.kind != EntryKind.NOT_AVAILABLE:
            continue
        if e.start <= sunrise:
            # Closed from before opening time: the day is not bookable (yet).
            sunrise = 0
        sunset = min(sunset, e.start)

    return DayWindow(sunrise=sunrise, sunset=sunset, sunset_window=sunset_window)


def clip(window: DayWindow, desired_start: int, desired_end: int, min_duration: int) -> tuple[int, int]:
    end = min(window.sunset, desired_end)
    start = max(window.sunrise, min(desired_start, end - min_duration * 60))
    return start, end


def find_conflict(
    entries: Iterable[ScheduleEntry], start: int, end: int, own_id: str
) -> ScheduleEntry | None:
    for e in entries:
        if e.kind != EntryKind.RESERVATION:
            continue
        if own_id and e.external_id == own_id:
            continue
        if overlaps(start, end, e.start, e.end):
            return e
    return None


def find_own(entries: Iterable[ScheduleEntry], own_id: str) -> ScheduleEntry | None:
    if not own_id:
        return None
    for e in entries:
        if e.kind == EntryKind.RESERVATION and e.external_id == own_id:
            return e
    return None


def resolve(record: BookingRecord, availability: BoatAvailability, limits: WindowLimits) -> Resolution:
    """Decide what to do with ``record`` given today's observed schedule."""
    boat = availability.find(record.resource)
    if boat is None:
        return Resolution(Action.BLOCK, f"Resource not found {record.resource}")

    window = day_window(
        boat.entries, record.epoch_start, record.epoch_date, record.epoch_date + DAY
    )
    book_window = limits.book_window * 3600
    min_seconds = limits.min_duration * 60

    if not window.is_open:
        return Resolution(
            Action.WAIT,
            "Date not open yet",
            next_eligible_epoch=truncate_quarter(record.epoch_date - book_window),
        )

    start, end = clip(window, record.epoch_start, record.epoch_end, limits.min_duration)
    if end - start < min_seconds:
        return Resolution(
            Action.WAIT,
            f"Available duration < {limits.min_duration}min",
            next_eligible_epoch=truncate_quarter(window.sunrise - book_window + min_seconds),
        )

    if record.epoch_start >= window.sunset_window:
        return Resolution(Action.FAIL, "Booking beyond sunset not allowed")

    conflict = find_conflict(boat.entries, start, end, record.external_id)
    if conflict is not None:
        return Resolution(
            Action.BLOCK,
            f"Booking blocked by {conflict.holder or 'another reservation'}",
            start=start,
            end=end,
            resource_id=boat.resource_id,
            resource_name=boat.name,
            cancel_first=record.has_reservation,
        )

    own = find_own(boat.entries, record.external_id)
    if own is not None:
        if own.start == start and own.end == end:
            return Resolution(Action.NONE, own=own)
        return Resolution(
            Action.MOVE,
            start=start,
            end=end,
            resource_id=boat.resource_id,
            resource_name=boat.name,
            own=own,
        )

    return Resolution(
        Action.CREATE,
        start=start,
        end=end,
        resource_id=boat.resource_id,
        resource_name=boat.name,
    )
