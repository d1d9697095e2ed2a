from __future__ import annotations

import pytest

from fleetrobot.config import TeamPolicy, build_tick_context, load_settings
from fleetrobot.tests.fakes import make_settings


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TIMEZONE", "FLEET_VERSION", "MIN_DURATION", "MAX_DURATION", "TELEGRAM_ADMIN_CHAT_ID", "DB_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings(dotenv_path="/nonexistent/.env")

    assert settings.timezone == "Europe/Amsterdam"
    assert settings.fleet_version == "R1B34"
    assert (settings.min_duration, settings.max_duration) == (60, 120)
    assert settings.telegram_admin_chat_ids == ()
    assert settings.booking_file.endswith("booking.json")


def test_dotenv_does_not_override_the_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("CLUB_ID=fromfile\nPREFIX=\"FR: \"\n", encoding="utf-8")
    monkeypatch.setenv("CLUB_ID", "fromenv")
    monkeypatch.setenv("PREFIX", "placeholder")
    monkeypatch.delenv("PREFIX")  # unset again after the test, even once .env sets it

    settings = load_settings(dotenv_path=str(env_file))

    assert settings.club_id == "fromenv"
    assert settings.comment_prefix == "FR: "


def test_load_settings_parses_multiple_admin_chat_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    # Spaces, duplicates and empty parts.
    monkeypatch.setenv("TELEGRAM_ADMIN_CHAT_ID", "1, 2,2,, -1003, 1")

    settings = load_settings(dotenv_path="/nonexistent/.env")
    assert settings.telegram_admin_chat_ids == ("1", "2", "-1003")


@pytest.mark.parametrize(
    "name, value, match",
    [
        ("TELEGRAM_ADMIN_CHAT_ID", "abc", r"Invalid TELEGRAM_ADMIN_CHAT_ID"),
        ("TELEGRAM_ADMIN_CHAT_ID", "0", r"'0' is not a valid chat id"),
        ("TIMEZONE", "Mars/Olympus", r"Unknown TIMEZONE"),
        ("FLEET_VERSION", "R2B01", r"Unsupported FLEET_VERSION"),
        ("MIN_DURATION", "sixty", r"MIN_DURATION must be an integer"),
        ("MAX_DURATION", "30", r"MAX_DURATION must be >= MIN_DURATION"),
        ("TASK_TIMEOUT_SECONDS", "0", r"TASK_TIMEOUT_SECONDS must be > 0"),
    ],
)
def test_load_settings_rejects_bad_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str, match: str) -> None:
    monkeypatch.delenv("MIN_DURATION", raising=False)
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError, match=match):
        load_settings(dotenv_path="/nonexistent/.env")


def test_tick_context_is_isolated_from_later_team_edits() -> None:
    teams = {"rowers": TeamPolicy(team="rowers", prefix="[R] ")}
    ctx = build_tick_context(make_settings(comment_prefix="FR: "), teams, now=0)

    teams["rowers"] = TeamPolicy(team="rowers", prefix="[X] ")
    teams["scullers"] = TeamPolicy(team="scullers")

    assert ctx.prefix_for("rowers") == "[R] "
    assert ctx.prefix_for("scullers") == "FR: "
    with pytest.raises(TypeError):
        ctx.teams["rowers"] = TeamPolicy(team="rowers")  # type: ignore[index]
