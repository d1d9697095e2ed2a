"""Markup parsers for the my-fleet.eu booking GUI, keyed by its software version.

Every parser raises StructuralChangeError when a page no longer contains what
it used to, so a site update shows up as a loud error instead of silently
wrong bookings.
"""

from __future__ import annotations

import datetime as dt
import json
import re

from bs4 import BeautifulSoup

from fleetrobot.domain import BoatSchedule, EntryKind, ScheduleEntry, StructuralChangeError

QUARTER = 15 * 60
NOT_AVAILABLE_COLOR = "#404040"


class ParserR1B34:
    version = "R1B34"

    _user_id_re = re.compile(r'brsuser=(\d+)"')
    _fleet_id_re = re.compile(r'&uniq=([^"&]+)"')
    _start_unix_re = re.compile(r'var starttime_unix = "(\d+)";')
    _info_re = re.compile(r"var info=(.*);")
    _grid_width_re = re.compile(r"var grid_width = ([\d.]+);")
    _reservation_id_re = re.compile(r"ReservationId = (\S+)")

    def gui_start(self, html: str, tz: dt.tzinfo) -> int:
        """Epoch of the first quarter shown by the GUI (the form's ``start`` input)."""
        soup = BeautifulSoup(html, "html.parser")
        field = soup.select_one('form input[name="start"]')
        value = field.get("value") if field is not None else None
        if not value:
            raise StructuralChangeError("start input not found on GUI page")
        try:
            moment = dt.datetime.strptime(" ".join(str(value).split()[:2]), "%Y-%m-%d %H:%M")
        except ValueError as e:
            raise StructuralChangeError(f"unexpected start value {value!r}") from e
        return int(moment.replace(tzinfo=tz).timestamp())

    def login_ok(self, body: str) -> bool:
        return "Exit Page" in body

    def user_id(self, body: str) -> int | None:
        m = self._user_id_re.search(body)
        return int(m.group(1)) if m else None

    def fleet_id(self, body: str) -> str:
        m = self._fleet_id_re.search(body)
        if not m:
            raise StructuralChangeError("uniq fleet id not found")
        return m.group(1)

    def start_time_unix(self, body: str) -> int:
        m = self._start_unix_re.search(body)
        if not m:
            raise StructuralChangeError("starttime_unix not found")
        return int(m.group(1))

    def reservation_id(self, body: str) -> str:
        m = self._reservation_id_re.search(body)
        return m.group(1).strip() if m else ""

    def boats(self, body: str, epoch_start: int) -> list[BoatSchedule]:
        m = self._info_re.search(body)
        if not m:
            raise StructuralChangeError("boat info not found")
        try:
            raw = json.loads(m.group(1))
        except json.JSONDecodeError as e:
            raise StructuralChangeError(f"boat info is not JSON: {e}") from e

        gw = self._grid_width_re.search(body)
        pixels_per_quarter = float(gw.group(1)) if gw else 12.0

        boats: list[BoatSchedule] = []
        try:
            for item in raw:
                meta = item["m"]
                info = meta["c"]  # [name, type, location, weight class, permission]
                entries = []
                for r in item.get("r") or []:
                    if r.get("s") not in ("B", "R") or float(r.get("w", 0)) <= 0:
                        continue
                    if r.get("c") == NOT_AVAILABLE_COLOR:
                        kind = EntryKind.NOT_AVAILABLE
                    elif r.get("i") == -1:
                        kind = EntryKind.DARKNESS
                    else:
                        kind = EntryKind(r["s"])
                    x = float(r["x"])
                    w = float(r["w"])
                    entries.append(
                        ScheduleEntry(
                            kind=kind,
                            start=epoch_start + round(x / pixels_per_quarter) * QUARTER,
                            end=epoch_start + round((x + w) / pixels_per_quarter) * QUARTER,
                            external_id=str(r.get("id") or ""),
                            holder=str(r.get("u") or ""),
                        )
                    )
                boats.append(
                    BoatSchedule(
                        resource_id=str(meta["i"]),
                        name=str(info[0]).split("&")[0].strip(),
                        entries=tuple(entries),
                    )
                )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise StructuralChangeError(f"unexpected boat info layout ({type(e).__name__}: {e})") from e
        return boats


PARSERS = {
    ParserR1B34.version: ParserR1B34(),
}
