"""
External Collaborator Interfaces and Stub Implementations.

The coordination core consumes four external systems through narrow
contracts: the identity gateway, the notification dispatcher, the
conferencing backend and the telephony backend.  Each contract is a
``typing.Protocol``; production adapters (an e-mail provider, a calendar
API, a voice provider) implement them outside this package.

The stubs in this module record every call and can be switched into a
failing mode.  They make no external connections.  Telephony delivery is
asynchronous: ``dial()`` only returns a handle, and the provider later
reports pickup and hang-up through ``CallSessionMonitor.on_connected`` and
``CallSessionMonitor.on_ended``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

import structlog

from carebridge.models import Actor, CallHandle, DeliveryTicket

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    """Raised by a collaborator that could not accept a request."""


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

@runtime_checkable
class IdentityGateway(Protocol):
    def current_user(self) -> Optional[Actor]:
        """Return the authenticated caller, or None when unauthenticated."""
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    def send(
        self, destination: str, template_kind: str, payload: dict[str, Any]
    ) -> DeliveryTicket:
        """Queue a templated message for delivery.  Must not block on delivery."""
        ...


@runtime_checkable
class ConferencingBackend(Protocol):
    def create_meeting(
        self,
        title: str,
        start: datetime,
        duration_minutes: int,
        attendees: list[str],
    ) -> str:
        """Return a meeting URI, or raise ``GatewayError``."""
        ...


@runtime_checkable
class TelephonyBackend(Protocol):
    def dial(self, from_party_id: str, to_party_id: str) -> CallHandle:
        """Start an outbound call.  Raise ``GatewayError`` if rejected."""
        ...


# ---------------------------------------------------------------------------
# Stubs
# ---------------------------------------------------------------------------

class StaticIdentityGateway:
    """Identity gateway that returns whichever actor was last signed in."""

    def __init__(self, actor: Optional[Actor] = None) -> None:
        self._actor = actor

    def sign_in(self, actor: Actor) -> None:
        self._actor = actor

    def sign_out(self) -> None:
        self._actor = None

    def current_user(self) -> Optional[Actor]:
        return self._actor


class RecordingDispatcher:
    """Notification dispatcher stub that keeps every accepted message.

    Set ``fail = True`` to simulate an unavailable provider; ``send()``
    then raises ``GatewayError``.
    """

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[DeliveryTicket] = []
        self.payloads: list[dict[str, Any]] = []

    def send(
        self, destination: str, template_kind: str, payload: dict[str, Any]
    ) -> DeliveryTicket:
        if self.fail:
            raise GatewayError(
                f"[STUB] Notification provider unavailable for '{template_kind}'."
            )
        ticket = DeliveryTicket(destination=destination, template_kind=template_kind)
        self.sent.append(ticket)
        self.payloads.append(dict(payload))
        return ticket

    def sent_to(self, destination: str) -> list[DeliveryTicket]:
        return [t for t in self.sent if t.destination == destination]


class StubConferencingBackend:
    """Conferencing stub that mints deterministic meeting URIs."""

    def __init__(self, base_uri: str = "https://meet.example.invalid", fail: bool = False) -> None:
        self.base_uri = base_uri.rstrip("/")
        self.fail = fail
        self.meetings: list[dict[str, Any]] = []

    def create_meeting(
        self,
        title: str,
        start: datetime,
        duration_minutes: int,
        attendees: list[str],
    ) -> str:
        if self.fail:
            raise GatewayError("[STUB] Conferencing backend unavailable.")
        uri = f"{self.base_uri}/m/{len(self.meetings) + 1}"
        self.meetings.append({
            "title": title,
            "start": start,
            "duration_minutes": duration_minutes,
            "attendees": list(attendees),
            "uri": uri,
        })
        return uri


class StubTelephonyBackend:
    """Telephony stub that records dial-outs.

    ``reject_parties`` lists party ids whose dial-out is refused, which is
    how the provider rejecting an unverified number is simulated.
    """

    def __init__(self, fail: bool = False, reject_parties: set[str] | None = None) -> None:
        self.fail = fail
        self.reject_parties = set(reject_parties or ())
        self.calls: list[CallHandle] = []

    def dial(self, from_party_id: str, to_party_id: str) -> CallHandle:
        if self.fail or {from_party_id, to_party_id} & self.reject_parties:
            raise GatewayError(
                f"[STUB] Dial-out rejected for {from_party_id} -> {to_party_id}."
            )
        handle = CallHandle(from_party_id=from_party_id, to_party_id=to_party_id)
        self.calls.append(handle)
        return handle


# ---------------------------------------------------------------------------
# Dispatch helper
# ---------------------------------------------------------------------------

def dispatch_notification(
    dispatcher: Optional[NotificationDispatcher],
    destination: Optional[str],
    template_kind: str,
    payload: dict[str, Any],
) -> tuple[Optional[DeliveryTicket], Optional[str]]:
    """Hand a message to the dispatcher without letting its failure escape.

    Returns:
        ``(ticket, error)``; exactly one of them is set.  A missing
        dispatcher or destination is reported as an error string.
    """
    if dispatcher is None:
        return None, "No notification dispatcher configured."
    if not destination:
        return None, "No destination address for notification."
    try:
        ticket = dispatcher.send(destination, template_kind, payload)
    except GatewayError as exc:
        logger.warning(
            "Notification dispatch failed",
            template_kind=template_kind,
            destination=destination,
            error=str(exc),
        )
        return None, str(exc)
    if not ticket.accepted:
        logger.warning(
            "Notification rejected by dispatcher",
            template_kind=template_kind,
            ticket_id=ticket.ticket_id,
        )
        return None, f"Dispatcher did not accept '{template_kind}' notification."
    return ticket, None
