from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable


class State(str, Enum):
    """Reconciliation state of a booking record.

    The empty string is the state of a record nobody has looked at yet.
    """

    NEW = ""
    WAITING = "Waiting"
    RETRY = "Retry"
    MOVING = "Moving"
    FINISHED = "Finished"
    CONFIRMED = "Confirmed"
    BLOCKED = "Blocked"
    FAILED = "Failed"
    CANCEL = "Cancel"
    CANCELED = "Canceled"
    REPEAT = "Repeat"
    DELETE = "Delete"


class RepeatRule(IntEnum):
    NONE = 0
    DAILY = 1
    WEEKLY = 2
    MONTHLY = 3
    YEARLY = 4


# States in which the record still wants a reservation.
ACTIVE_STATES = frozenset(
    {State.NEW, State.WAITING, State.RETRY, State.MOVING, State.REPEAT, State.BLOCKED}
)
_ANY = frozenset(State) - {State.DELETE}

# target -> states it may be entered from
TRANSITIONS: dict[State, frozenset[State]] = {
    State.FINISHED: ACTIVE_STATES,
    State.MOVING: ACTIVE_STATES,
    State.WAITING: ACTIVE_STATES,
    State.BLOCKED: ACTIVE_STATES,
    State.RETRY: ACTIVE_STATES,
    State.FAILED: _ANY,
    State.CONFIRMED: frozenset({State.FINISHED}),
    State.CANCEL: _ANY,
    State.CANCELED: frozenset({State.CANCEL, State.FINISHED, State.MOVING}),
    State.REPEAT: _ANY,
    State.DELETE: _ANY,
    State.NEW: frozenset(),
}


class IllegalTransition(ValueError):
    pass


class ValidationError(ValueError):
    """Malformed user input (date, time). Never retried."""


class GatewayError(RuntimeError):
    """Base class for everything a booking gateway may raise."""


class NetworkError(GatewayError):
    """Transport failure or unexpected HTTP status. Retried on a later tick."""


class AuthError(GatewayError):
    """Login rejected or session could not be established. Retried like NetworkError."""


class ConflictError(GatewayError):
    """The remote side refused the reservation (slot taken, boat not bookable)."""


class StructuralChangeError(GatewayError):
    """The remote markup no longer looks like what the parser expects."""


class UnimplementedError(GatewayError):
    pass


class DeadlineExceeded(RuntimeError):
    """A task ran out of time before a remote write; nothing was written."""


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True)
class LogEntry:
    epoch: int
    state: State
    text: str


@dataclass
class BookingRecord:
    id: int
    team: str
    resource: str
    fallback: str = ""
    date: str = ""  # YYYY-MM-DD
    time: str = ""  # HH:MM
    duration: int = 0  # minutes
    username: str = ""
    password: str = ""
    comment: str = ""
    repeat: RepeatRule = RepeatRule.NONE
    state: State = State.NEW
    external_id: str = ""
    resource_id: str = ""
    message: str = ""
    next_eligible_epoch: int = 0
    retry_count: int = 0
    user_comment: bool = False
    notify_to: str = ""
    granted_start: int = 0
    granted_duration: int = 0  # minutes
    log: list[LogEntry] = field(default_factory=list)

    # Derived every tick, never persisted.
    epoch_date: int = field(default=0, compare=False)
    epoch_start: int = field(default=0, compare=False)
    epoch_end: int = field(default=0, compare=False)
    changed: bool = field(default=False, compare=False)
    # Only next_eligible_epoch moved: persist, but no log entry or notification.
    rescheduled: bool = field(default=False, compare=False)

    @property
    def credentials(self) -> Credentials:
        return Credentials(username=self.username, password=self.password)

    @property
    def granted_end(self) -> int:
        return self.granted_start + self.granted_duration * 60

    @property
    def has_reservation(self) -> bool:
        return self.external_id != ""

    def transition(self, state: State, message: str) -> None:
        if state != self.state and self.state not in TRANSITIONS[state]:
            raise IllegalTransition(f"{self.state.value or '<new>'} -> {state.value}")
        if state == self.state and message == self.message:
            return
        self.state = state
        self.message = message
        self.changed = True

    def grant(self, start: int, end: int) -> None:
        self.granted_start = start
        self.granted_duration = (end - start) // 60

    def release(self) -> None:
        self.external_id = ""
        self.granted_start = 0
        self.granted_duration = 0


def short_date(value: str) -> str:
    """'2030-06-15T00:00:00.000Z' -> '2030-06-15'; plain dates pass through."""
    return value.split("T", 1)[0]


def records_for_team(records: Iterable[BookingRecord], team: str) -> list[BookingRecord]:
    return [r for r in records if r.team == team]


class EntryKind(str, Enum):
    RESERVATION = "R"
    BLOCKED = "B"  # administrative no-book window
    DARKNESS = "S"  # before sunrise / after sunset
    NOT_AVAILABLE = "N"


@dataclass(frozen=True)
class ScheduleEntry:
    """One occupied interval [start, end) on a boat's schedule."""

    kind: EntryKind
    start: int
    end: int
    external_id: str = ""
    holder: str = ""


@dataclass(frozen=True)
class BoatSchedule:
    resource_id: str
    name: str
    entries: tuple[ScheduleEntry, ...] = ()


@dataclass(frozen=True)
class BoatAvailability:
    date: str
    boats: tuple[BoatSchedule, ...] = ()

    def find(self, name: str) -> BoatSchedule | None:
        # Users type partial boat names; the first boat containing it wins.
        needle = name.strip().lower()
        if not needle:
            return None
        for boat in self.boats:
            if needle in boat.name.lower():
                return boat
        return None


@dataclass(frozen=True)
class Reservation:
    external_id: str
    resource_id: str
    start: int
    end: int
