from __future__ import annotations

import copy
import datetime as dt
import logging
import time
from typing import Any, Callable, TypeVar

from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fleetrobot import backoff
from fleetrobot.config import TickContext
from fleetrobot.domain import (
    AuthError,
    BoatAvailability,
    BookingRecord,
    ConflictError,
    DeadlineExceeded,
    GatewayError,
    LogEntry,
    NetworkError,
    Reservation,
    State,
    StructuralChangeError,
    ValidationError,
    short_date,
)
from fleetrobot.gateway import BookingGateway
from fleetrobot.window import Action, Resolution, WindowLimits, resolve

logger = logging.getLogger(__name__)

T = TypeVar("T")


def short_time(value: str, tz: dt.tzinfo) -> str:
    """Normalize 'HH:MM' or an RFC 3339 timestamp to local 'HH:MM' on a quarter hour."""
    value = value.strip()
    try:
        if "T" in value:
            moment = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=dt.timezone.utc)
            moment = moment.astimezone(tz)
            seconds = moment.hour * 3600 + moment.minute * 60 + moment.second
        else:
            hours, minutes = (int(p) for p in value.split(":")[:2])
            if not (0 <= hours < 24 and 0 <= minutes < 60):
                raise ValueError(value)
            seconds = hours * 3600 + minutes * 60
    except ValueError as e:
        raise ValidationError("time not valid hh:mm") from e

    # Round half up to the nearest quarter, the remote side has no finer slots.
    # The last quarter of the day is 23:45, later times stay on that day.
    seconds = (seconds + backoff.QUARTER // 2) // backoff.QUARTER * backoff.QUARTER
    seconds = min(seconds, backoff.DAY - backoff.QUARTER)
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}"


def prepare_record(record: BookingRecord, ctx: TickContext) -> None:
    """Clamp the duration and derive the absolute instants for this tick."""
    record.duration = min(max(record.duration, ctx.min_duration), ctx.max_duration)

    tz = ctx.tz
    try:
        day = dt.date.fromisoformat(short_date(record.date))
    except ValueError as e:
        raise ValidationError("date not valid yyyy-MM-dd") from e
    hhmm = short_time(record.time, tz)
    hours, minutes = (int(p) for p in hhmm.split(":"))

    record.epoch_date = int(dt.datetime.combine(day, dt.time(0, 0), tzinfo=tz).timestamp())
    record.epoch_start = int(dt.datetime.combine(day, dt.time(hours, minutes), tzinfo=tz).timestamp())
    record.epoch_end = record.epoch_start + record.duration * 60


def _clock(epoch: int, ctx: TickContext) -> str:
    return dt.datetime.fromtimestamp(epoch, ctx.tz).strftime("%H:%M")


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_before_attempt(retry_state: RetryCallState) -> None:
    logger.debug("Attempt %s: start", retry_state.attempt_number)


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        reason = _short_exc(retry_state)
        logger.warning("Attempt %s failed (%s)", retry_state.attempt_number, reason or "no details")


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    if sleep_seconds is None:
        logger.info("Waiting before attempt %s", retry_state.attempt_number + 1)
        return
    logger.info("Waiting %.0f sec before attempt %s", sleep_seconds, retry_state.attempt_number + 1)


def _with_retry(fn: Callable[..., T], attempts: int, *args: Any) -> T:
    decorated = retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=2, min=2, max=4),
        retry=retry_if_exception_type((NetworkError, AuthError)),
        before=_log_before_attempt,
        after=_log_after_attempt,
        before_sleep=_log_before_sleep,
        reraise=True,
    )(fn)
    return decorated(*args)


def _observe_once(gateway: BookingGateway, record: BookingRecord) -> tuple[Any, BoatAvailability]:
    session = gateway.authenticate(record.credentials)
    try:
        availability = gateway.query_availability(session, record.resource, short_date(record.date))
    except Exception:
        _logout(gateway, session)
        raise
    return session, availability


def _logout(gateway: BookingGateway, session: Any) -> None:
    try:
        gateway.logout(session)
    except Exception:
        logger.warning("Failed to log out cleanly", exc_info=True)


def _held_reservation(record: BookingRecord) -> Reservation:
    return Reservation(
        external_id=record.external_id,
        resource_id=record.resource_id,
        start=record.granted_start,
        end=record.granted_end,
    )


def _remote_comment(record: BookingRecord, ctx: TickContext) -> str:
    return ctx.prefix_for(record.team) + record.comment


def _apply_default_comment(record: BookingRecord, ctx: TickContext) -> None:
    if not record.user_comment and ctx.team(record.team).add_time:
        record.comment = f"{_clock(record.epoch_start, ctx)} - {_clock(record.epoch_end, ctx)}"


def _granted(record: BookingRecord, reservation: Reservation, ctx: TickContext) -> None:
    record.external_id = reservation.external_id
    record.resource_id = reservation.resource_id
    record.grant(reservation.start, reservation.end)
    record.retry_count = 0
    exact = reservation.start == record.epoch_start and reservation.end == record.epoch_end
    state = State.FINISHED if exact else State.MOVING
    record.transition(
        state, f"{state.value}: {_clock(reservation.start, ctx)} - {_clock(reservation.end, ctx)}"
    )


def _before_write(deadline: float | None) -> None:
    # A write that starts after the deadline would land in a result the driver drops.
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceeded("task deadline passed before a remote write")


def _cancel(gateway: BookingGateway, session: Any, record: BookingRecord, deadline: float | None) -> None:
    _before_write(deadline)
    gateway.cancel_reservation(session, _held_reservation(record))
    record.release()


def _cancel_held(record: BookingRecord, ctx: TickContext, gateway: BookingGateway, deadline: float | None) -> None:
    session = _with_retry(gateway.authenticate, ctx.observe_retry_attempts, record.credentials)
    try:
        _cancel(gateway, session, record, deadline)
    finally:
        _logout(gateway, session)


def _apply(
    resolution: Resolution,
    record: BookingRecord,
    ctx: TickContext,
    gateway: BookingGateway,
    session: Any,
    deadline: float | None,
) -> None:
    action = resolution.action
    if action == Action.NONE:
        return
    if action == Action.WAIT:
        record.next_eligible_epoch = resolution.next_eligible_epoch
        record.rescheduled = True
        record.transition(State.WAITING, resolution.message)
        return
    if action == Action.FAIL:
        record.transition(State.FAILED, resolution.message)
        return
    if action == Action.BLOCK:
        if resolution.cancel_first:
            logger.info("Canceling %s on %s: %s", record.external_id, record.resource, resolution.message)
            _cancel(gateway, session, record, deadline)
        record.release()
        record.transition(State.BLOCKED, resolution.message)
        return

    comment = _remote_comment(record, ctx)
    _before_write(deadline)
    try:
        if action == Action.MOVE and resolution.own is not None:
            logger.info("Moving %s on %s", record.external_id, resolution.resource_name)
            current = Reservation(
                external_id=record.external_id,
                resource_id=resolution.resource_id,
                start=resolution.own.start,
                end=resolution.own.end,
            )
            reservation = gateway.move_reservation(session, current, resolution.start, resolution.end, comment)
        else:
            logger.info("Reserving %s for %s", resolution.resource_name, record.username)
            reservation = gateway.create_reservation(
                session, resolution.resource_id, resolution.start, resolution.end, comment
            )
    except ConflictError as e:
        if record.has_reservation:
            # The old slot is still ours; give it back before looking elsewhere.
            _cancel(gateway, session, record, deadline)
        record.release()
        record.transition(State.BLOCKED, f"Boat not bookable {record.resource} ({e})")
        return
    _granted(record, reservation, ctx)


def _reconcile_active(
    record: BookingRecord, ctx: TickContext, gateway: BookingGateway, deadline: float | None
) -> None:
    now = ctx.now

    if record.state == State.CANCEL:
        if record.has_reservation:
            _cancel_held(record, ctx, gateway, deadline)
        record.release()
        record.transition(State.CANCELED, "Booking canceled")
        return

    if backoff.expired(record, now):
        record.transition(State.DELETE, "Booking marked for delete")
        return

    if record.epoch_start < now:
        if not record.has_reservation:
            record.transition(State.FAILED, "Booking in the past")
        # A held reservation that already started is left as it is.
        return

    if record.state == State.BLOCKED:
        if record.has_reservation:
            logger.info("Releasing %s on %s before giving up on it", record.external_id, record.resource)
            _cancel_held(record, ctx, gateway, deadline)
        if record.fallback:
            message = f"Using fallback {record.fallback} for boat {record.resource}"
            record.resource, record.fallback = record.fallback, ""
            record.resource_id = ""
            record.transition(State.RETRY, message)
        else:
            record.transition(State.FAILED, record.message or "Booking blocked")
        return

    _apply_default_comment(record, ctx)

    session, availability = _with_retry(_observe_once, ctx.observe_retry_attempts, gateway, record)
    try:
        limits = WindowLimits(min_duration=ctx.min_duration, book_window=ctx.book_window)
        _apply(resolve(record, availability, limits), record, ctx, gateway, session, deadline)
    finally:
        _logout(gateway, session)


def _confirm(record: BookingRecord, ctx: TickContext, gateway: BookingGateway) -> None:
    if not gateway.supports_confirm:
        logger.debug("Gateway cannot confirm, %s stays %s", record.id, record.state.value)
        return
    try:
        session = _with_retry(gateway.authenticate, ctx.observe_retry_attempts, record.credentials)
        try:
            gateway.confirm_reservation(session, _held_reservation(record))
        finally:
            _logout(gateway, session)
    except GatewayError as e:
        # Stays Finished; the next eligible tick tries again.
        logger.warning("Confirm failed for %s on %s (%s: %s)", record.id, record.resource, type(e).__name__, e)
        return
    record.transition(State.CONFIRMED, "Booking confirmed")


def _reconcile(record: BookingRecord, ctx: TickContext, gateway: BookingGateway, deadline: float | None) -> None:
    prepare_record(record, ctx)

    if backoff.confirm_due(record, ctx.confirm_time, ctx.now):
        _confirm(record, ctx, gateway)
        if record.changed:
            return

    if backoff.settle_dormant(record, ctx.now):
        return

    _reconcile_active(record, ctx, gateway, deadline)


def reconcile_record(
    original: BookingRecord,
    ctx: TickContext,
    gateway: BookingGateway,
    deadline: float | None = None,
) -> BookingRecord:
    """Reconcile one record and return the updated copy.

    ``original`` is never mutated. Every error ends up on the returned record's
    message and log instead of propagating, except StructuralChangeError and
    DeadlineExceeded which leave the record exactly as it was so the next tick
    retries it verbatim. ``deadline`` is a ``time.monotonic()`` instant after
    which no remote write is started.
    """
    record = copy.deepcopy(original)
    record.changed = False
    record.rescheduled = False

    try:
        _reconcile(record, ctx, gateway, deadline)
    except ValidationError as e:
        record.transition(State.FAILED, str(e))
    except (StructuralChangeError, DeadlineExceeded) as e:
        if isinstance(e, StructuralChangeError):
            logger.error("Remote markup changed, leaving record %s untouched", original.id, exc_info=True)
        else:
            logger.warning("Record %s: %s, left untouched", original.id, e)
        untouched = copy.deepcopy(original)
        untouched.changed = False
        untouched.rescheduled = False
        return untouched
    except (NetworkError, AuthError) as e:
        logger.error("Gateway error for record %s (%s: %s)", record.id, type(e).__name__, e)
        backoff.register_transient_failure(record, f"{type(e).__name__}: {e}", ctx.max_retry)
    except ConflictError as e:
        record.transition(State.BLOCKED, f"Boat not bookable {record.resource} ({e})")
    except GatewayError as e:
        logger.error("Gateway error for record %s (%s: %s)", record.id, type(e).__name__, e)
        backoff.register_transient_failure(record, f"{type(e).__name__}: {e}", ctx.max_retry)
    except Exception as e:
        logger.exception("Unexpected error while reconciling record %s", record.id)
        record.message = f"{type(e).__name__}: {e}"
        record.changed = True

    _append_log(record, ctx.now)
    return record


def _append_log(record: BookingRecord, now: int) -> None:
    if record.changed:
        record.log.append(LogEntry(epoch=now, state=record.state, text=record.message))
