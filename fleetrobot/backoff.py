"""Retry, cool-down and repeat policy.

The remote system only hands out quarter-hour slots, so every deadline this
module produces is aligned to a 15 minute boundary.
"""

from __future__ import annotations

import datetime as dt

from dateutil.relativedelta import relativedelta

from fleetrobot.domain import BookingRecord, RepeatRule, State, short_date

QUARTER = 15 * 60
DAY = 24 * 60 * 60
COOLDOWN = QUARTER

# Done with ordinary processing, but a repeat rule can bring them back.
SETTLED_STATES = frozenset({State.FINISHED, State.CONFIRMED, State.CANCELED, State.FAILED})
REPEATABLE_STATES = SETTLED_STATES | {State.BLOCKED}

# These come back on the very next tick.
NO_COOLDOWN_STATES = frozenset({State.BLOCKED, State.RETRY})

_REPEAT_STEP = {
    RepeatRule.DAILY: relativedelta(days=1),
    RepeatRule.WEEKLY: relativedelta(days=7),
    RepeatRule.MONTHLY: relativedelta(months=1),
    RepeatRule.YEARLY: relativedelta(years=1),
}


def truncate_quarter(epoch: int) -> int:
    return epoch - epoch % QUARTER


def ceil_quarter(epoch: int) -> int:
    return -(-epoch // QUARTER) * QUARTER


def apply_cooldown(record: BookingRecord, now: int) -> None:
    """Push next_eligible_epoch out after a change, unless the state wants a fast re-attempt."""
    if record.state in NO_COOLDOWN_STATES:
        record.next_eligible_epoch = 0
    elif record.next_eligible_epoch <= now:
        record.next_eligible_epoch = max(record.next_eligible_epoch, ceil_quarter(now + COOLDOWN))


def is_dormant(record: BookingRecord, now: int) -> bool:
    return record.state in SETTLED_STATES or record.next_eligible_epoch > now


def next_repeat_date(date_iso: str, rule: RepeatRule) -> str:
    step = _REPEAT_STEP.get(rule)
    if step is None:
        raise ValueError(f"record does not repeat: {rule!r}")
    # relativedelta clamps Jan 31 + 1 month to the last day of February.
    return (dt.date.fromisoformat(short_date(date_iso)) + step).isoformat()


def expired(record: BookingRecord, now: int) -> bool:
    return record.epoch_end < now - DAY


def settle_dormant(record: BookingRecord, now: int) -> bool:
    """Regenerate or expire a record that ordinary processing should skip.

    Returns True when the record should not be reconciled any further this tick.
    """
    if not (record.state in REPEATABLE_STATES or record.next_eligible_epoch > now):
        return False

    if record.repeat != RepeatRule.NONE and record.epoch_end < now:
        record.date = next_repeat_date(record.date, record.repeat)
        record.external_id = ""
        record.granted_start = 0
        record.granted_duration = 0
        record.retry_count = 0
        record.transition(State.REPEAT, "Booking is repeated")
        return True

    if expired(record, now):
        record.transition(State.DELETE, "Booking marked for delete")
        return True

    # Blocked is handed back to the reconciler once its deadline passes.
    return is_dormant(record, now)


def register_transient_failure(record: BookingRecord, reason: str, max_retry: int) -> None:
    record.retry_count += 1
    if max_retry and record.retry_count > max_retry:
        record.transition(State.FAILED, f"Giving up after {max_retry} retries: {reason}")
        return
    if record.state == State.CANCEL:
        # Stay in Cancel so the cancellation itself is retried.
        record.message = reason
        record.changed = True
        return
    record.transition(State.RETRY, reason)
    # retry_count moved even when the reason repeats.
    record.changed = True


def confirm_due(record: BookingRecord, confirm_time: int, now: int) -> bool:
    if record.state != State.FINISHED or confirm_time == 0:
        return False
    return record.epoch_start - confirm_time * 60 <= now <= record.epoch_start
