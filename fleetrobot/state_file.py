from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Any, Iterable

from fleetrobot.config import TeamPolicy
from fleetrobot.domain import BookingRecord, LogEntry, RepeatRule, State

logger = logging.getLogger(__name__)

# Shared with anything else that writes the data files (admin tooling included).
STORE_LOCK = threading.RLock()


class CorruptStoreError(ValueError):
    pass


def backup_path(path: str) -> str:
    return path + ".bak"


def corrupt_path(path: str) -> str:
    return path + ".corrupt"


def record_to_json(r: BookingRecord) -> dict[str, Any]:
    # Keys follow the data file written by earlier releases.
    return {
        "id": r.id,
        "team": r.team,
        "boat": r.resource,
        "fallback": r.fallback,
        "date": r.date,
        "time": r.time,
        "duration": r.duration,
        "user": r.username,
        "password": r.password,
        "comment": r.comment,
        "repeat": int(r.repeat),
        "state": r.state.value,
        "bookingid": r.external_id,
        "boatid": r.resource_id,
        "message": r.message,
        "next": r.next_eligible_epoch,
        "retry": r.retry_count,
        "usercomment": r.user_comment,
        "whatsapp": r.notify_to,
        "bookstart": r.granted_start,
        "bookdur": r.granted_duration,
        "logs": [{"date": e.epoch, "state": e.state.value, "log": e.text} for e in r.log],
    }


def record_from_json(item: dict[str, Any]) -> BookingRecord:
    return BookingRecord(
        id=int(item["id"]),
        team=str(item.get("team", "")),
        resource=str(item.get("boat", "")),
        fallback=str(item.get("fallback") or ""),
        date=str(item.get("date", "")),
        time=str(item.get("time", "")),
        duration=int(item.get("duration") or 0),
        username=str(item.get("user", "")),
        password=str(item.get("password", "")),
        comment=str(item.get("comment") or ""),
        repeat=RepeatRule(int(item.get("repeat") or 0)),
        state=State(item.get("state") or ""),
        external_id=str(item.get("bookingid") or ""),
        resource_id=str(item.get("boatid") or ""),
        message=str(item.get("message") or ""),
        next_eligible_epoch=int(item.get("next") or 0),
        retry_count=int(item.get("retry") or 0),
        user_comment=bool(item.get("usercomment", False)),
        notify_to=str(item.get("whatsapp") or ""),
        granted_start=int(item.get("bookstart") or 0),
        granted_duration=int(item.get("bookdur") or 0),
        log=[
            LogEntry(epoch=int(e["date"]), state=State(e.get("state") or ""), text=str(e.get("log", "")))
            for e in item.get("logs") or []
        ],
    )


def _read_records(path: str) -> list[BookingRecord]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise CorruptStoreError(f"{path}: {e}") from e

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise CorruptStoreError(f"{path}: expected a list of bookings")

    records: list[BookingRecord] = []
    for n, item in enumerate(raw):
        try:
            records.append(record_from_json(item))
        except (KeyError, TypeError, ValueError) as e:
            # Dropping it here would delete the booking on the next save.
            raise CorruptStoreError(f"{path}: booking #{n} unreadable ({type(e).__name__}: {e})") from e
    return records


def _readable(path: str) -> bool:
    try:
        _read_records(path)
    except (OSError, CorruptStoreError):
        return False
    return True


def load_records(path: str) -> list[BookingRecord]:
    """Read every booking record.

    A corrupt (or missing, after an interrupted write) primary file is
    recovered from its backup. A single unreadable booking makes the whole
    file corrupt. When neither file can be read, the primary is kept aside as
    ``.corrupt`` and an empty set is persisted and returned.
    """
    backup = backup_path(path)
    with STORE_LOCK:
        if not os.path.exists(path) and not os.path.exists(backup):
            return []

        try:
            return _read_records(path)
        except (OSError, CorruptStoreError) as e:
            logger.error("Booking file unreadable (%s), trying backup %s", e, backup)

        try:
            records = _read_records(backup)
        except (OSError, CorruptStoreError) as e:
            logger.error("Backup unreadable too (%s), starting with an empty set", e)
            if os.path.exists(path):
                os.replace(path, corrupt_path(path))
                logger.error("Unreadable booking file kept as %s", corrupt_path(path))
            save_records(path, [])
            return []

        logger.warning("Recovered %d bookings from %s", len(records), backup)
        return records


def _atomic_write_json(path: str, data: Any) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tf.flush()
        os.fsync(tf.fileno())
        tmp_name = tf.name

    os.replace(tmp_name, path)


def save_records(path: str, records: Iterable[BookingRecord]) -> None:
    """Write the whole set, dropping records marked Delete.

    The current primary becomes the backup first, but only if it can still be
    read, so a good backup is never replaced by a corrupt primary.
    """
    kept: list[BookingRecord] = []
    for r in records:
        if r.state == State.DELETE:
            logger.info("Deleting booking %s: %s %s %s (%s)", r.id, r.resource, r.date, r.time, r.username)
            continue
        kept.append(r)

    data = [record_to_json(r) for r in kept]

    with STORE_LOCK:
        if os.path.exists(path) and _readable(path):
            os.replace(path, backup_path(path))
        _atomic_write_json(path, data)


def load_teams(path: str) -> dict[str, TeamPolicy]:
    if not os.path.exists(path):
        return {}

    with STORE_LOCK:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            logger.error("Teams file %s unreadable (%s), using defaults", path, e)
            return {}

    teams: dict[str, TeamPolicy] = {}
    for item in raw or []:
        try:
            team = TeamPolicy(
                team=str(item["team"]),
                prefix=str(item.get("prefix") or ""),
                add_time=bool(item.get("addtime", False)),
                notify=bool(item.get("whatsapp", True)),
            )
        except (KeyError, TypeError, AttributeError):
            continue
        teams[team.team] = team
    return teams
