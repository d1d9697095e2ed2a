from __future__ import annotations

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from fleetrobot.myfleet_parser import PARSERS


def _parse_telegram_chat_ids(raw: str, *, name: str = "TELEGRAM_ADMIN_CHAT_ID") -> tuple[str, ...]:
    # Single value or a comma-separated list, e.g. 123456789,-1001234567890
    parts = [p.strip() for p in raw.split(",")]
    parts = [p for p in parts if p]

    seen: set[str] = set()
    result: list[str] = []
    for p in parts:
        try:
            int(p)
        except ValueError as e:
            raise RuntimeError(f"Invalid {name} value: {p!r}. Expected integer chat id.") from e

        if p == "0":
            raise RuntimeError(f"Invalid {name} value: '0' is not a valid chat id")

        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    return tuple(result)


@dataclass(frozen=True)
class Settings:
    club_id: str = "rvs"
    fleet_version: str = "R1B34"
    timezone: str = "Europe/Amsterdam"
    comment_prefix: str = ""

    # Booking policy, minutes unless noted
    min_duration: int = 60
    max_duration: int = 120
    book_window: int = 48  # hours ahead of opening time
    confirm_time: int = 0  # 0 = disabled
    max_retry: int = 100  # 0 = unlimited

    # Tick pacing and concurrency
    refresh_interval: int = 60  # seconds
    task_timeout_seconds: float = 120.0
    max_workers: int = 16

    # How many times authenticate + query is attempted inside one task.
    observe_retry_attempts: int = 2
    http_timeout_seconds: float = 30.0

    db_path: str = "db"

    telegram_bot_token: str | None = None
    telegram_admin_chat_ids: tuple[str, ...] = ()

    @property
    def booking_file(self) -> str:
        return os.path.join(self.db_path, "booking.json")

    @property
    def teams_file(self) -> str:
        return os.path.join(self.db_path, "teams.json")


@dataclass(frozen=True)
class TeamPolicy:
    team: str
    prefix: str = ""
    add_time: bool = False
    notify: bool = True


@dataclass(frozen=True)
class TickContext:
    """Everything a reconciliation task may read, frozen at tick start."""

    now: int
    timezone: str
    comment_prefix: str
    min_duration: int
    max_duration: int
    book_window: int
    confirm_time: int
    max_retry: int
    observe_retry_attempts: int
    teams: Mapping[str, TeamPolicy]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def team(self, name: str) -> TeamPolicy:
        return self.teams.get(name) or TeamPolicy(team=name)

    def prefix_for(self, team: str) -> str:
        return self.team(team).prefix or self.comment_prefix


def build_tick_context(settings: Settings, teams: Mapping[str, TeamPolicy], now: int) -> TickContext:
    return TickContext(
        now=now,
        timezone=settings.timezone,
        comment_prefix=settings.comment_prefix,
        min_duration=settings.min_duration,
        max_duration=settings.max_duration,
        book_window=settings.book_window,
        confirm_time=settings.confirm_time,
        max_retry=settings.max_retry,
        observe_retry_attempts=settings.observe_retry_attempts,
        # Copy, so an administrative write to the caller's dict can't leak into a running tick.
        teams=MappingProxyType(dict(teams)),
    )


def _int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise RuntimeError(f"{name} must be > 0")
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    timezone = os.getenv("TIMEZONE", "Europe/Amsterdam").strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise RuntimeError(f"Unknown TIMEZONE: {timezone!r}") from e

    fleet_version = os.getenv("FLEET_VERSION", "R1B34").strip()
    if fleet_version not in PARSERS:
        known = ", ".join(sorted(PARSERS))
        raise RuntimeError(f"Unsupported FLEET_VERSION {fleet_version!r}. Known: {known}")

    min_duration = _int_env("MIN_DURATION", 60, minimum=15)
    max_duration = _int_env("MAX_DURATION", 120, minimum=15)
    if max_duration < min_duration:
        raise RuntimeError("MAX_DURATION must be >= MIN_DURATION")

    admin_raw = os.getenv("TELEGRAM_ADMIN_CHAT_ID", "")
    bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or None

    return Settings(
        club_id=os.getenv("CLUB_ID", "rvs"),
        fleet_version=fleet_version,
        timezone=timezone,
        comment_prefix=os.getenv("PREFIX", ""),
        min_duration=min_duration,
        max_duration=max_duration,
        book_window=_int_env("BOOK_WINDOW", 48, minimum=0),
        confirm_time=_int_env("CONFIRM_TIME", 0, minimum=0),
        max_retry=_int_env("MAX_RETRY", 100, minimum=0),
        refresh_interval=_int_env("REFRESH_INTERVAL", 60, minimum=1),
        task_timeout_seconds=_float_env("TASK_TIMEOUT_SECONDS", 120.0),
        max_workers=_int_env("MAX_WORKERS", 16, minimum=1),
        observe_retry_attempts=_int_env("OBSERVE_RETRY_ATTEMPTS", 2, minimum=1),
        http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        db_path=os.getenv("DB_PATH", "db"),
        telegram_bot_token=bot_token,
        telegram_admin_chat_ids=_parse_telegram_chat_ids(admin_raw),
    )
