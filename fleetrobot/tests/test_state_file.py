from __future__ import annotations

import json
from pathlib import Path

from fleetrobot.config import TeamPolicy
from fleetrobot.domain import LogEntry, RepeatRule, State
from fleetrobot.state_file import backup_path, corrupt_path, load_records, load_teams, save_records
from fleetrobot.tests.fakes import make_record


def test_save_and_load_keep_the_data_file_keys(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")
    record = make_record(
        repeat=RepeatRule.WEEKLY,
        state=State.MOVING,
        external_id="4711",
        notify_to="31612345678",
        log=[LogEntry(epoch=100, state=State.MOVING, text="Moving: 21:00 - 22:00")],
    )

    save_records(path, [record])

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    assert raw[0]["boat"] == "Lynx"
    assert raw[0]["bookingid"] == "4711"
    assert raw[0]["whatsapp"] == "31612345678"
    assert raw[0]["logs"] == [{"date": 100, "state": "Moving", "log": "Moving: 21:00 - 22:00"}]
    assert load_records(path) == [record]


def test_missing_files_mean_no_bookings(tmp_path: Path) -> None:
    assert load_records(str(tmp_path / "booking.json")) == []


def test_records_marked_delete_are_purged(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")

    save_records(path, [make_record(id=1), make_record(id=2, state=State.DELETE)])

    assert [r.id for r in load_records(path)] == [1]


def test_corrupt_primary_is_recovered_from_backup(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")
    save_records(path, [make_record(id=1)])
    save_records(path, [make_record(id=1), make_record(id=2)])

    Path(path).write_text("{ truncated", encoding="utf-8")

    assert [r.id for r in load_records(path)] == [1]


def test_corrupt_primary_never_replaces_a_good_backup(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")
    save_records(path, [make_record(id=1)])
    save_records(path, [make_record(id=1), make_record(id=2)])
    Path(path).write_text("{ truncated", encoding="utf-8")

    save_records(path, [make_record(id=3)])

    backup = json.loads(Path(backup_path(path)).read_text(encoding="utf-8"))
    assert [item["id"] for item in backup] == [1]


def test_both_files_corrupt_start_empty(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")
    Path(path).write_text("nope", encoding="utf-8")
    Path(backup_path(path)).write_text("nope", encoding="utf-8")

    assert load_records(path) == []
    assert json.loads(Path(path).read_text(encoding="utf-8")) == []
    assert Path(corrupt_path(path)).read_text(encoding="utf-8") == "nope"


def test_unreadable_booking_falls_back_to_the_backup(tmp_path: Path) -> None:
    path = str(tmp_path / "booking.json")
    save_records(path, [make_record(id=1), make_record(id=2, state=State.WAITING)])
    save_records(path, [make_record(id=1), make_record(id=2, state=State.WAITING)])
    items = json.loads(Path(path).read_text(encoding="utf-8"))
    items[1]["state"] = "Pending"
    Path(path).write_text(json.dumps(items), encoding="utf-8")

    records = load_records(path)
    assert [(r.id, r.state) for r in records] == [(1, State.NEW), (2, State.WAITING)]

    save_records(path, records)
    assert [r.id for r in load_records(path)] == [1, 2]


def test_unreadable_booking_without_backup_is_kept_aside(tmp_path: Path) -> None:
    path = tmp_path / "booking.json"
    raw = json.dumps([{"team": "no id"}, {"id": 7, "boat": "Lynx", "state": "Waiting"}])
    path.write_text(raw, encoding="utf-8")

    assert load_records(str(path)) == []
    assert Path(corrupt_path(str(path))).read_text(encoding="utf-8") == raw


def test_load_teams(tmp_path: Path) -> None:
    path = tmp_path / "teams.json"
    path.write_text(
        json.dumps(
            [
                {"team": "rowers", "prefix": "[R] ", "addtime": True, "whatsapp": False, "title": "Rowers"},
                {"prefix": "x"},
            ]
        ),
        encoding="utf-8",
    )

    teams = load_teams(str(path))

    assert list(teams) == ["rowers"]
    assert teams["rowers"].add_time is True
    assert teams["rowers"].notify is False
    assert teams["rowers"] == TeamPolicy(team="rowers", prefix="[R] ", add_time=True, notify=False)
