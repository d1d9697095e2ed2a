from __future__ import annotations

import datetime as dt
import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Mapping
from zoneinfo import ZoneInfo

from fleetrobot.backoff import apply_cooldown
from fleetrobot.config import Settings, TeamPolicy, TickContext, build_tick_context
from fleetrobot.domain import BookingRecord, State, ValidationError, short_date
from fleetrobot.gateway import BookingGateway, NotificationGateway
from fleetrobot.reconciler import reconcile_record, short_time
from fleetrobot.state_file import load_records, load_teams, save_records
from fleetrobot.telegram_notifier import send_telegram_message

logger = logging.getLogger(__name__)

# States worth a chat message.
NOTIFY_STATES = frozenset({State.FINISHED, State.BLOCKED, State.FAILED, State.CONFIRMED})


def _broadcast_telegram(settings: Settings, text: str) -> None:
    if not settings.telegram_bot_token:
        return

    errors: list[tuple[str, Exception]] = []

    for chat_id in settings.telegram_admin_chat_ids:
        try:
            send_telegram_message(
                bot_token=settings.telegram_bot_token,
                chat_id=chat_id,
                text=text,
            )
        except Exception as e:
            # Best-effort: don't stop sending to other chat_ids.
            logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
            errors.append((chat_id, e))

    if errors:
        failed = ", ".join([cid for cid, _ in errors])
        raise RuntimeError(f"Failed to send telegram message to some recipients: {failed}")


def _send_status_message(settings: Settings, text: str) -> None:
    _broadcast_telegram(settings, text)


def _log_change(record: BookingRecord, tz: ZoneInfo, error: bool = False) -> None:
    next_at = (
        dt.datetime.fromtimestamp(record.next_eligible_epoch, tz).strftime("%Y-%m-%d %H:%M")
        if record.next_eligible_epoch
        else "-"
    )
    level = logging.ERROR if error else logging.INFO
    logger.log(
        level,
        "[%s] boat=%s user=%s at=%s %s next=%s: %s",
        record.state.value,
        record.resource,
        record.username,
        short_date(record.date),
        record.time,
        next_at,
        record.message,
    )


def _report_late_result(original: BookingRecord):
    def _check(future: Future[BookingRecord]) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        late = future.result()
        if late.external_id and late.external_id != original.external_id:
            logger.error(
                "Record %s reserved %s after its deadline; the reservation is not tracked",
                original.id,
                late.external_id,
            )

    return _check


def _reconcile_all(
    records: list[BookingRecord], ctx: TickContext, gateway: BookingGateway, settings: Settings
) -> list[BookingRecord]:
    if not records:
        return []

    workers = max(1, min(settings.max_workers, len(records)))
    # Queued tasks only start once a worker frees up, so the deadline grows with the backlog.
    budget = settings.task_timeout_seconds * math.ceil(len(records) / workers)
    deadline = time.monotonic() + budget

    results = list(records)
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")
    try:
        futures: list[tuple[int, Future[BookingRecord]]] = [
            (i, executor.submit(reconcile_record, r, ctx, gateway, deadline)) for i, r in enumerate(records)
        ]
        for i, future in futures:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                results[i] = future.result(timeout=remaining)
            except FuturesTimeout:
                # The thread can't be killed; its result is dropped and the record kept as it was.
                logger.error("Record %s did not finish within %.0fs, left unchanged", records[i].id, budget)
                future.add_done_callback(_report_late_result(records[i]))
            except Exception:
                logger.exception("Record %s crashed its task, left unchanged", records[i].id)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return results


def run_tick(
    records: list[BookingRecord],
    settings: Settings,
    teams: Mapping[str, TeamPolicy],
    gateway: BookingGateway,
    now: int | None = None,
) -> bool:
    """Reconcile every record once.

    Replaces the list items in place. Returns True when anything has to be
    saved, which includes records whose next check was only pushed out.
    """
    now = int(time.time()) if now is None else now
    ctx = build_tick_context(settings, teams, now)

    results = _reconcile_all(records, ctx, gateway, settings)

    # Join barrier passed: from here on only this thread touches the records.
    any_changed = False
    tz = ctx.tz
    for i, record in enumerate(results):
        records[i] = record
        if not (record.changed or record.rescheduled):
            continue
        any_changed = True
        apply_cooldown(record, now)
        if record.changed:
            _log_change(record, tz, error=record.state == State.FAILED)
    return any_changed


def _join_names(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " and " + names[-1]


def _display_time(value: str, tz: ZoneInfo) -> str:
    try:
        return short_time(value, tz)
    except ValidationError:
        return value


def build_notifications(
    records: list[BookingRecord], teams: Mapping[str, TeamPolicy], tz: ZoneInfo
) -> list[tuple[str, str, str]]:
    """Group changed, user visible records into (team, recipient, text) messages."""
    groups: dict[tuple[State, str, str], list[BookingRecord]] = {}
    for r in records:
        if not r.changed or not r.notify_to or r.state not in NOTIFY_STATES:
            continue
        policy = teams.get(r.team)
        if policy is not None and not policy.notify:
            continue
        groups.setdefault((r.state, r.team, r.notify_to), []).append(r)

    messages = []
    for (state, team, recipient), group in groups.items():
        first = group[0]
        text = (
            f"Booking {state.value.lower()} for {_join_names([r.resource for r in group])} "
            f"at {short_date(first.date)} {_display_time(first.time, tz)} hour."
        )
        messages.append((team, recipient, text))
    return messages


def notify_changes(
    records: list[BookingRecord],
    teams: Mapping[str, TeamPolicy],
    notifier: NotificationGateway | None,
    tz: ZoneInfo,
) -> None:
    if notifier is None:
        return
    for team, recipient, text in build_notifications(records, teams, tz):
        try:
            notifier.send(team, recipient, text)
            logger.info("Notified %s/%s: %s", team, recipient, text)
        except Exception:
            # Advisory only: the state change stands.
            logger.warning("Failed to notify %s/%s", team, recipient, exc_info=True)


def run_check_once(
    settings: Settings,
    gateway: BookingGateway,
    notifier: NotificationGateway | None = None,
    now: int | None = None,
) -> bool:
    records = load_records(settings.booking_file)
    teams = load_teams(settings.teams_file)

    changed = run_tick(records, settings, teams, gateway, now=now)
    if not changed:
        logger.debug("Tick over %d bookings: nothing changed", len(records))
        return False

    save_records(settings.booking_file, records)
    logger.info("State saved to %s", settings.booking_file)
    notify_changes(records, teams, notifier, ZoneInfo(settings.timezone))
    return True


def seconds_until_next_tick(interval: int, now: float | None = None) -> float:
    now = time.time() if now is None else now
    return interval - (now % interval)


def run_forever(
    settings: Settings,
    gateway: BookingGateway,
    notifier: NotificationGateway | None = None,
    stop: threading.Event | None = None,
) -> None:
    stop = stop or threading.Event()
    logger.info("Worker started. Interval=%ss", settings.refresh_interval)
    while not stop.is_set():
        try:
            run_check_once(settings, gateway, notifier)
        except Exception as e:
            logger.error("Tick failed (%s: %s)", type(e).__name__, e, exc_info=True)
        if stop.wait(seconds_until_next_tick(settings.refresh_interval)):
            break
    logger.info("Worker stopped")
