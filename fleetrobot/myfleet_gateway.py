from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from fleetrobot.config import Settings
from fleetrobot.domain import (
    AuthError,
    BoatAvailability,
    BoatSchedule,
    ConflictError,
    Credentials,
    NetworkError,
    Reservation,
    UnimplementedError,
)
from fleetrobot.gateway import BookingGateway
from fleetrobot.myfleet_parser import PARSERS, QUARTER

logger = logging.getLogger(__name__)

BASE_URL = "https://my-fleet.eu"


def build_gui_url(version: str) -> str:
    return f"{BASE_URL}/{version}/gui/index.php"


def build_text_url(version: str) -> str:
    return f"{BASE_URL}/{version}/text/index.php"


def build_auth_url(version: str) -> str:
    return f"{BASE_URL}/{version}/text/authenticate.php"


def _random() -> str:
    # The site kills an existing session whenever it sees a new random value.
    return str(time.time_ns() % 1_000_000_000)


@dataclass
class MyFleetSession:
    client: httpx.Client
    credentials: Credentials
    gui_epoch_start: int
    fleet_id: str
    user_id: int

    def quarter(self, epoch: int) -> int:
        return (epoch - self.gui_epoch_start) // QUARTER


class MyFleetGateway(BookingGateway):
    """Talks to the my-fleet.eu web GUI the way a browser would."""

    def __init__(self, settings: Settings) -> None:
        self._club_id = settings.club_id
        self._timeout = settings.http_timeout_seconds
        self._tz = ZoneInfo(settings.timezone)
        self._parser = PARSERS[settings.fleet_version]
        self.gui_url = build_gui_url(settings.fleet_version)
        self.text_url = build_text_url(settings.fleet_version)
        self.auth_url = build_auth_url(settings.fleet_version)

    def _new_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            headers={
                "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/122.0 Safari/537.36"
            },
        )

    @staticmethod
    def _send(client: httpx.Client, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            r = client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {url} failed: {type(e).__name__}: {e}") from e
        if not r.is_success:
            raise NetworkError(f"{method} {url} returned HTTP {r.status_code}")
        return r

    def _get(self, client: httpx.Client, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        return self._send(client, "GET", url, params=params)

    def _post(
        self, client: httpx.Client, url: str, data: dict[str, Any], params: dict[str, Any] | None = None
    ) -> httpx.Response:
        return self._send(client, "POST", url, params=params, data=data)

    def authenticate(self, credentials: Credentials) -> MyFleetSession:
        client = self._new_client()
        try:
            # Session cookies come from both the text and the gui front ends.
            self._get(client, self.text_url, params={"clubname": self._club_id, "variant": ""})
            self._get(client, self.gui_url, params={"clubname": self._club_id, "variant": ""})
            page = self._get(client, self.gui_url, params={"clubname": self._club_id})
            gui_epoch_start = self._parser.gui_start(page.text, self._tz)

            random = _random()
            self._get(client, self.auth_url, params={"random": random})
            r = self._post(
                client,
                self.auth_url,
                params={"random": random},
                data={"un": credentials.username, "pw": credentials.password},
            )
            if not self._parser.login_ok(r.text):
                raise AuthError(f"login rejected for {credentials.username}")

            r = self._get(client, self.text_url, params={"clubname": self._club_id, "variant": ""})
            user_id = self._parser.user_id(r.text)
            if not user_id:
                raise AuthError(f"user id not found for {credentials.username}")

            r = self._get(
                client,
                self.gui_url,
                params={"language": "NL", "brsuser": user_id, "clubname": self._club_id},
            )
            fleet_id = self._parser.fleet_id(r.text)
        except Exception:
            client.close()
            raise

        return MyFleetSession(
            client=client,
            credentials=credentials,
            gui_epoch_start=gui_epoch_start,
            fleet_id=fleet_id,
            user_id=user_id,
        )

    def _gui_action(self, session: MyFleetSession, action: str) -> str:
        return self._get(session.client, self.gui_url, params={"a": action, "uniq": session.fleet_id}).text

    def _day_bounds(self, date: str) -> tuple[int, int]:
        day = dt.date.fromisoformat(date)
        start = dt.datetime.combine(day, dt.time(0, 0), tzinfo=self._tz)
        end = dt.datetime.combine(day + dt.timedelta(days=1), dt.time(0, 0), tzinfo=self._tz)
        return int(start.timestamp()), int(end.timestamp())

    def query_availability(self, session: MyFleetSession, resource_filter: str, date: str) -> BoatAvailability:
        epoch_start = self._parser.start_time_unix(self._gui_action(session, "b"))
        boats = self._parser.boats(self._gui_action(session, "c"), epoch_start)

        day_start, day_end = self._day_bounds(date)
        needle = resource_filter.strip().lower()
        selected = []
        for boat in boats:
            if needle and needle not in boat.name.lower():
                continue
            entries = tuple(e for e in boat.entries if e.start < day_end and day_start < e.end)
            selected.append(BoatSchedule(resource_id=boat.resource_id, name=boat.name, entries=entries))

        logger.debug("Observed %d of %d boats for %r on %s", len(selected), len(boats), resource_filter, date)
        return BoatAvailability(date=date, boats=tuple(selected))

    def create_reservation(
        self, session: MyFleetSession, resource_id: str, start: int, end: int, comment: str
    ) -> Reservation:
        start_q = session.quarter(start)
        end_q = session.quarter(end)
        self._get(
            session.client,
            self.gui_url,
            params={
                "a": "e",
                "menu": "Amenu",
                "extrainfo": f"mid={resource_id}&from={start_q}&dur={end_q - start_q}",
            },
        )

        data = {"newStart": start_q, "newEnd": end_q, "act": "Verder\n>>"}
        if comment:
            data["comment"] = comment
        r = self._post(session.client, self.gui_url, params={"a": "e", "menu": "Amenu", "page": "1_single"}, data=data)

        external_id = self._parser.reservation_id(r.text)
        if not external_id:
            raise ConflictError("failed to create reservation")
        return Reservation(external_id=external_id, resource_id=resource_id, start=start, end=end)

    def move_reservation(
        self, session: MyFleetSession, reservation: Reservation, start: int, end: int, comment: str
    ) -> Reservation:
        start_q = session.quarter(start)
        end_q = session.quarter(end)
        self._get(
            session.client,
            self.gui_url,
            params={
                "a": "e",
                "menu": "Rmenu",
                "extrainfo": (
                    f"mid={reservation.resource_id}&co=0&rid={reservation.external_id}"
                    f"&from={start_q}&dur={end_q - start_q}&rec=0"
                ),
            },
        )
        self._post(
            session.client,
            self.gui_url,
            params={"a": "e", "menu": "Rmenu", "page": "1_modifylogbook"},
            data={
                "newStart": start_q,
                "newEnd": end_q,
                "clubcode": "",
                "username": session.credentials.username,
                "password": session.credentials.password,
            },
        )

        data = {"newStart": start_q, "newEnd": end_q, "page": "3_commit", "act": "Ok"}
        if comment:
            data["comment"] = comment
        self._post(session.client, self.gui_url, params={"a": "e", "menu": "Amenu"}, data=data)
        return Reservation(
            external_id=reservation.external_id,
            resource_id=reservation.resource_id,
            start=start,
            end=end,
        )

    def cancel_reservation(self, session: MyFleetSession, reservation: Reservation) -> None:
        start_q = session.quarter(reservation.start)
        end_q = session.quarter(reservation.end)
        self._get(
            session.client,
            self.gui_url,
            params={
                "a": "e",
                "menu": "Omenu",
                "extrainfo": (
                    f"mid={reservation.resource_id}&co=0&rid={reservation.external_id}"
                    f"&from={start_q}&dur={end_q - start_q}&rec=0&user={session.user_id}"
                ),
            },
        )
        self._post(
            session.client,
            self.gui_url,
            params={"a": "e", "menu": "Rmenu", "page": "1_cancel"},
            data={"newStart": start_q, "newEnd": end_q},
        )

    @property
    def supports_confirm(self) -> bool:
        return False

    def confirm_reservation(self, session: MyFleetSession, reservation: Reservation) -> None:
        raise UnimplementedError("my-fleet has no confirm action")

    def logout(self, session: MyFleetSession) -> None:
        try:
            # Authenticating with a fresh random value ends the session server side.
            self._get(session.client, self.auth_url, params={"random": _random()})
        finally:
            session.client.close()
