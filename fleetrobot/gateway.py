"""Collaborator interfaces used by the reconciliation core.

The core only ever talks to the remote booking site and to the chat service
through these two seams, so it can be exercised against in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

from fleetrobot.domain import BoatAvailability, Credentials, Reservation


class BookingGateway(ABC):
    """Remote boat booking system.

    Implementations raise the errors from ``fleetrobot.domain``:
    NetworkError/AuthError for transient trouble, ConflictError when the
    remote side refuses a reservation and StructuralChangeError when its
    markup can no longer be understood.
    """

    @abstractmethod
    def authenticate(self, credentials: Credentials) -> Any:
        """Log in and return an opaque session handle."""

    @abstractmethod
    def query_availability(self, session: Any, resource_filter: str, date: str) -> BoatAvailability:
        """Observed schedule of every boat whose name contains ``resource_filter`` on ``date``."""

    @abstractmethod
    def create_reservation(
        self, session: Any, resource_id: str, start: int, end: int, comment: str
    ) -> Reservation: ...

    @abstractmethod
    def move_reservation(
        self, session: Any, reservation: Reservation, start: int, end: int, comment: str
    ) -> Reservation: ...

    @abstractmethod
    def cancel_reservation(self, session: Any, reservation: Reservation) -> None: ...

    @abstractmethod
    def confirm_reservation(self, session: Any, reservation: Reservation) -> None: ...

    @property
    def supports_confirm(self) -> bool:
        """False when confirm_reservation always raises UnimplementedError; lets callers skip the login."""
        return True

    def logout(self, session: Any) -> None:
        return None


class NotificationGateway(Protocol):
    def send(self, team: str, recipient: str, text: str) -> None: ...
