"""
Engagement Scheduler -- Turning Relationships into Calls.

A call may be booked for later (``schedule``) or placed right away
(``initiate_immediate``).  Both require a relationship between the
parties:

* two patients need a CONFIRMED connection (``NotConnectedError``
  otherwise);
* two doctors may always call each other;
* a doctor and a patient never share an engagement session
  (``ForbiddenError``), and nobody can call themselves.

Conferencing and notification are side effects of scheduling.  A
conferencing or dispatcher failure never undoes the booking: the session
is stored with ``conferencing_error`` / ``delivery_error`` set, the failure
is logged and audited, and ``retry_conferencing()`` can attach a meeting
later.

Dialling is delegated to the ``CallSessionMonitor``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from carebridge.audit import AuditEventType, AuditLog
from carebridge.call_monitor import CallSessionMonitor, validate_transition
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.connections import ConnectionLedger
from carebridge.errors import (
    ForbiddenError,
    InvalidStateError,
    InvalidTimeError,
    NotConnectedError,
    UpstreamUnavailableError,
)
from carebridge.gateways import (
    ConferencingBackend,
    GatewayError,
    NotificationDispatcher,
    dispatch_notification,
)
from carebridge.models import (
    CallMode,
    EngagementSession,
    Role,
    SessionKind,
    SessionStatus,
    UserAccount,
    utcnow,
)
from carebridge.storage import InMemoryStore

logger = structlog.get_logger(__name__)


class EngagementScheduler:
    """Owns creation and cancellation of ``EngagementSession`` records."""

    def __init__(
        self,
        store: InMemoryStore,
        audit_log: AuditLog,
        connections: ConnectionLedger,
        monitor: CallSessionMonitor,
        dispatcher: Optional[NotificationDispatcher] = None,
        conferencing: Optional[ConferencingBackend] = None,
        settings: CoordinationSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._connections = connections
        self._monitor = monitor
        self._dispatcher = dispatcher
        self._conferencing = conferencing
        self._settings = settings
        self._clock = clock

    # -- helpers --

    def _check_parties(self, a_id: str, b_id: str) -> tuple[UserAccount, UserAccount, SessionKind]:
        """Return both accounts and the session kind, or raise."""
        if a_id == b_id:
            raise ForbiddenError("You cannot call yourself.")
        a = self._store.get_user(a_id)
        b = self._store.get_user(b_id)
        if a is None or b is None:
            raise ForbiddenError("Both participants must be registered users.")

        if a.role == Role.DOCTOR and b.role == Role.DOCTOR:
            return a, b, SessionKind.DOCTOR_DOCTOR
        if a.role == Role.PATIENT and b.role == Role.PATIENT:
            if self._connections.confirmed_between(a_id, b_id) is None:
                raise NotConnectedError(
                    "You can only call patients you are connected with. "
                    "Your invitation has not been accepted yet."
                )
            return a, b, SessionKind.PATIENT_PATIENT
        raise ForbiddenError("Calls are only available between patients or between doctors.")

    def _check_time(self, scheduled_at: datetime, duration_minutes: int) -> None:
        if scheduled_at.tzinfo is None or scheduled_at.utcoffset() is None:
            raise InvalidTimeError("The meeting time must include a timezone.")
        if scheduled_at <= self._clock():
            raise InvalidTimeError("The meeting time is in the past.")
        if not 0 < duration_minutes <= self._settings.max_duration_minutes:
            raise InvalidTimeError(
                f"Duration must be between 1 and {self._settings.max_duration_minutes} minutes."
            )

    def _check_party(self, session: EngagementSession, acting_user_id: str) -> None:
        if not session.involves(acting_user_id):
            raise ForbiddenError("Only a participant can manage this call.")

    def _bookkeep(self, session: EngagementSession, **changes: Any) -> EngagementSession:
        """Follow-up write after a side effect; a lost race keeps the winner."""
        try:
            return self._store.update_session(session.id, session.version, **changes)
        except InvalidStateError:
            logger.info("Skipped session bookkeeping", session_id=session.id,
                        fields=sorted(changes))
            return self._store.get_session(session.id)

    def _request_meeting(
        self, session: EngagementSession, a: UserAccount, b: UserAccount
    ) -> tuple[Optional[str], Optional[str]]:
        """Return ``(meeting_uri, error)``."""
        if self._conferencing is None or not self._settings.conferencing_enabled:
            return None, None
        try:
            uri = self._conferencing.create_meeting(
                title=f"CareBridge {session.mode.value} call",
                start=session.scheduled_at,
                duration_minutes=session.duration_minutes,
                attendees=[a.email, b.email],
            )
        except GatewayError as exc:
            logger.warning("Conferencing request failed", session_id=session.id, error=str(exc))
            self._audit_log.record(
                event_type=AuditEventType.CONFERENCING_FAILED,
                actor_id=a.user_id,
                actor_role=a.role.value,
                target_entity=session.id,
                metadata={"error": str(exc)},
                timestamp=self._clock(),
            )
            return None, str(exc)
        return uri, None

    def _notify_scheduled(
        self, session: EngagementSession, requester: UserAccount, target: UserAccount
    ) -> EngagementSession:
        _, error = dispatch_notification(
            self._dispatcher,
            target.email,
            "call_scheduled",
            {
                "requester_name": requester.name,
                "scheduled_at": session.scheduled_at.isoformat(),
                "duration_minutes": session.duration_minutes,
                "mode": session.mode.value,
                "meeting_uri": session.conferencing_ref,
            },
        )
        if error is None:
            return session
        self._audit_log.record(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            actor_id=requester.user_id,
            actor_role=requester.role.value,
            target_entity=session.id,
            metadata={"template_kind": "call_scheduled", "error": error},
            timestamp=self._clock(),
        )
        return self._bookkeep(session, delivery_error=error)

    # -- operations --

    def schedule(
        self,
        requester_id: str,
        target_id: str,
        scheduled_at: datetime,
        duration_minutes: Optional[int] = None,
        mode: CallMode | str = CallMode.VOICE,
    ) -> EngagementSession:
        """Book a future call between two related parties.

        Raises:
            ForbiddenError: Self, unknown or mixed-role parties.
            NotConnectedError: Two patients without a CONFIRMED connection.
            InvalidTimeError: Naive or past ``scheduled_at``, or a duration
                outside ``1..max_duration_minutes``.
        """
        mode = CallMode(mode)
        if duration_minutes is None:
            duration_minutes = self._settings.default_duration_minutes
        requester, target, kind = self._check_parties(requester_id, target_id)
        self._check_time(scheduled_at, duration_minutes)

        session = self._store.insert_session(
            EngagementSession(
                party_a_id=requester_id,
                party_b_id=target_id,
                kind=kind,
                mode=mode,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                status=SessionStatus.SCHEDULED,
                created_at=self._clock(),
            )
        )
        self._audit_log.record(
            event_type=AuditEventType.CALL_SCHEDULED,
            actor_id=requester_id,
            actor_role=requester.role.value,
            target_entity=session.id,
            metadata={
                "target_id": target_id,
                "kind": kind.value,
                "scheduled_at": scheduled_at.isoformat(),
                "duration_minutes": duration_minutes,
            },
            timestamp=self._clock(),
        )
        logger.info("Call scheduled", session_id=session.id, kind=kind.value,
                    requester_id=requester_id, target_id=target_id)

        uri, error = self._request_meeting(session, requester, target)
        if uri is not None or error is not None:
            session = self._bookkeep(session, conferencing_ref=uri, conferencing_error=error)

        if kind == SessionKind.PATIENT_PATIENT:
            try:
                self._connections.mark_scheduled(requester_id, target_id, scheduled_at)
            except InvalidStateError:
                logger.info("Connection changed while marking scheduled",
                            session_id=session.id)

        return self._notify_scheduled(session, requester, target)

    def retry_conferencing(self, session_id: str, acting_user_id: str) -> EngagementSession:
        """Request a meeting again for a SCHEDULED session that has none.

        Raises:
            UpstreamUnavailableError: No backend configured, or it failed again.
        """
        session = self._store.get_session(session_id)
        self._check_party(session, acting_user_id)
        if session.status != SessionStatus.SCHEDULED:
            raise InvalidStateError(
                f"Session {session_id} is {session.status.value}, not SCHEDULED."
            )
        if session.conferencing_ref is not None:
            return session
        if self._conferencing is None or not self._settings.conferencing_enabled:
            raise UpstreamUnavailableError("Video conferencing is not available right now.")

        a = self._store.get_user(session.party_a_id)
        b = self._store.get_user(session.party_b_id)
        uri, error = self._request_meeting(session, a, b)
        session = self._bookkeep(session, conferencing_ref=uri, conferencing_error=error)
        if error is not None:
            raise UpstreamUnavailableError(
                "Video conferencing is not available right now. Try again later."
            )
        return session

    def initiate_immediate(
        self, caller_id: str, callee_id: str, mode: CallMode | str = CallMode.VOICE
    ) -> EngagementSession:
        """Create a CONNECTING session and dial it.

        A rejected dial-out comes back as an ENDED session with
        ``end_reason=DIAL_FAILED`` rather than an exception.

        Raises:
            ForbiddenError / NotConnectedError: As for ``schedule``.
            PartyBusyError: Either party is already on a call.
        """
        mode = CallMode(mode)
        _, _, kind = self._check_parties(caller_id, callee_id)
        now = self._clock()
        session = self._store.insert_session(
            EngagementSession(
                party_a_id=caller_id,
                party_b_id=callee_id,
                kind=kind,
                mode=mode,
                scheduled_at=None,
                duration_minutes=self._settings.default_duration_minutes,
                status=SessionStatus.CONNECTING,
                created_at=now,
                connecting_at=now,
            )
        )
        logger.info("Immediate call requested", session_id=session.id,
                    caller_id=caller_id, callee_id=callee_id)
        return self._monitor.place_call(session)

    def start_scheduled(self, session_id: str, acting_user_id: str) -> EngagementSession:
        """Dial a SCHEDULED session now."""
        session = self._store.get_session(session_id)
        self._check_party(session, acting_user_id)
        validate_transition(session, SessionStatus.CONNECTING)
        self._check_parties(session.party_a_id, session.party_b_id)
        return self._monitor.place_call(session)

    def cancel(self, session_id: str, acting_user_id: str) -> EngagementSession:
        """Either party cancels a SCHEDULED session."""
        session = self._store.get_session(session_id)
        self._check_party(session, acting_user_id)
        validate_transition(session, SessionStatus.CANCELLED)

        updated = self._store.update_session(
            session.id,
            session.version,
            status=SessionStatus.CANCELLED,
            cancelled_at=self._clock(),
            cancelled_by=acting_user_id,
        )
        actor = self._store.get_user(acting_user_id)
        self._audit_log.record(
            event_type=AuditEventType.CALL_CANCELLED,
            actor_id=acting_user_id,
            actor_role=actor.role.value if actor else "UNKNOWN",
            target_entity=session.id,
            metadata={"scheduled_at": session.scheduled_at.isoformat()
                      if session.scheduled_at else None},
            timestamp=self._clock(),
        )
        logger.info("Call cancelled", session_id=session.id, cancelled_by=acting_user_id)
        return updated

    def cancel_between(self, a: str, b: str, acting_user_id: str) -> list[EngagementSession]:
        """Cancel every SCHEDULED session between ``a`` and ``b``."""
        cancelled = []
        for session in self._store.list_sessions(a):
            if session.status != SessionStatus.SCHEDULED or not session.involves(b):
                continue
            try:
                cancelled.append(self.cancel(session.id, acting_user_id))
            except InvalidStateError:
                # Started or cancelled by the other party in the meantime.
                logger.info("Session no longer cancellable", session_id=session.id)
        return cancelled

    # -- queries --

    def list_sessions(self, user_id: str) -> list[EngagementSession]:
        return sorted(self._store.list_sessions(user_id),
                      key=lambda s: s.created_at, reverse=True)

    def get(self, session_id: str) -> EngagementSession:
        return self._store.get_session(session_id)
