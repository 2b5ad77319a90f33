"""
Call Session Monitor -- Live Call Lifecycle and Post-Call Artifacts.

**State machine:**

    SCHEDULED -> CONNECTING -> LIVE -> ENDED
    SCHEDULED -> CANCELLED
    CONNECTING -> ENDED       (no answer, dial failure, provider timeout)

``ENDED`` and ``CANCELLED`` are terminal.  States cannot be skipped: a
SCHEDULED session must be dialled before it can go LIVE, and a session that
never went LIVE keeps ``started_at`` null.

**Provider events:**  the telephony provider reports pickup and hang-up
asynchronously through ``on_connected()`` and ``on_ended()``, keyed by the
``call_ref`` returned from ``dial()``.  Providers redeliver events, so a
duplicate ``on_connected`` for a LIVE session and a duplicate ``on_ended``
for an ENDED one return the session unchanged.

**Busy invariant:**  entering CONNECTING claims both parties in the store's
busy index under the store lock; a party can hold at most one CONNECTING or
LIVE session.

**Artifacts:**  transcript and summary are attach-if-absent.  Each field is
written only when it is still null and the new value is non-null, so late
or repeated deliveries never overwrite what was stored first.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from carebridge.audit import AuditEventType, AuditLog
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.errors import ForbiddenError, InvalidStateError
from carebridge.gateways import GatewayError, TelephonyBackend
from carebridge.models import (
    EndReason,
    EngagementSession,
    SessionStatus,
    TranscriptChunk,
    utcnow,
)
from carebridge.storage import InMemoryStore

logger = structlog.get_logger(__name__)

# Artifact merges re-read and retry when another writer bumped the version.
_MERGE_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.SCHEDULED: {SessionStatus.CONNECTING, SessionStatus.CANCELLED},
    SessionStatus.CONNECTING: {SessionStatus.LIVE, SessionStatus.ENDED},
    SessionStatus.LIVE: {SessionStatus.ENDED},
    SessionStatus.ENDED: set(),  # terminal state
    SessionStatus.CANCELLED: set(),  # terminal state
}


def validate_transition(session: EngagementSession, target: SessionStatus) -> None:
    """Raise InvalidStateError if ``session`` may not move to ``target``."""
    allowed = _VALID_TRANSITIONS.get(session.status, set())
    if target not in allowed:
        raise InvalidStateError(
            f"Cannot transition session {session.id} from {session.status.value} "
            f"to {target.value}. Allowed transitions: {sorted(s.value for s in allowed)}"
        )


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class CallSessionMonitor:
    """Drives sessions through dial-out, pickup and hang-up.

    Every transition emits an audit event and is a compare-and-swap on the
    session's version.
    """

    def __init__(
        self,
        store: InMemoryStore,
        audit_log: AuditLog,
        telephony: Optional[TelephonyBackend] = None,
        settings: CoordinationSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._telephony = telephony
        self._settings = settings
        self._clock = clock

    # -- helpers --

    def _transition(
        self,
        session: EngagementSession,
        target: SessionStatus,
        event_type: AuditEventType,
        actor_id: str,
        actor_role: str = "SYSTEM",
        metadata: dict[str, Any] | None = None,
        **changes: Any,
    ) -> EngagementSession:
        validate_transition(session, target)
        updated = self._store.update_session(
            session.id, session.version, status=target, **changes
        )
        self._audit_log.record(
            event_type=event_type,
            actor_id=actor_id,
            actor_role=actor_role,
            target_entity=session.id,
            metadata={
                "previous_state": session.status.value,
                "new_state": target.value,
                **(metadata or {}),
            },
            timestamp=self._clock(),
        )
        logger.info(
            "Session transition",
            session_id=session.id,
            previous_state=session.status.value,
            new_state=target.value,
            end_reason=updated.end_reason.value if updated.end_reason else None,
        )
        return updated

    def _end(
        self,
        session: EngagementSession,
        reason: EndReason,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
        metadata: dict[str, Any] | None = None,
    ) -> EngagementSession:
        return self._transition(
            session,
            SessionStatus.ENDED,
            AuditEventType.CALL_ENDED,
            actor_id,
            actor_role,
            {"end_reason": reason.value, **(metadata or {})},
            ended_at=self._clock(),
            end_reason=reason,
        )

    # -- dial-out --

    def place_call(self, session: EngagementSession) -> EngagementSession:
        """Dial the session's parties.

        A SCHEDULED session first moves to CONNECTING, which claims both
        parties.  A rejected dial-out ends the session with
        ``DIAL_FAILED``; it is not raised to the caller.

        Raises:
            PartyBusyError: A party is already CONNECTING or LIVE elsewhere.
            InvalidStateError: The session is neither SCHEDULED nor CONNECTING.
        """
        if session.status == SessionStatus.SCHEDULED:
            session = self._transition(
                session,
                SessionStatus.CONNECTING,
                AuditEventType.CALL_INITIATED,
                session.party_a_id,
                metadata={"scheduled_at": session.scheduled_at.isoformat()
                          if session.scheduled_at else None},
                connecting_at=self._clock(),
            )
        elif session.status != SessionStatus.CONNECTING:
            raise InvalidStateError(
                f"Session {session.id} is {session.status.value}; it cannot be dialled."
            )

        if self._telephony is None:
            error = "No telephony backend configured."
        else:
            try:
                handle = self._telephony.dial(session.party_a_id, session.party_b_id)
            except GatewayError as exc:
                error = str(exc)
            else:
                updated = self._store.update_session(
                    session.id, session.version, call_ref=handle.call_ref
                )
                self._audit_log.record(
                    event_type=AuditEventType.CALL_INITIATED,
                    actor_id=session.party_a_id,
                    actor_role="SYSTEM",
                    target_entity=session.id,
                    metadata={"call_ref": handle.call_ref, "mode": session.mode.value},
                    timestamp=self._clock(),
                )
                logger.info("Call dialled", session_id=session.id, call_ref=handle.call_ref)
                return updated

        logger.warning("Dial-out failed", session_id=session.id, error=error)
        return self._end(session, EndReason.DIAL_FAILED, metadata={"error": error})

    # -- provider events --

    def on_connected(self, call_ref: str) -> EngagementSession:
        """Provider reports pickup: CONNECTING -> LIVE."""
        session = self._store.get_session_by_call_ref(call_ref)
        if session.status == SessionStatus.LIVE:
            logger.debug("Duplicate connected event ignored", session_id=session.id)
            return session
        return self._transition(
            session,
            SessionStatus.LIVE,
            AuditEventType.CALL_CONNECTED,
            "TELEPHONY",
            metadata={"call_ref": call_ref},
            started_at=self._clock(),
        )

    def on_ended(self, call_ref: str, reason: EndReason = EndReason.HANGUP) -> EngagementSession:
        """Provider reports hang-up, no-answer or timeout."""
        session = self._store.get_session_by_call_ref(call_ref)
        if session.status == SessionStatus.ENDED:
            logger.debug("Duplicate ended event ignored", session_id=session.id)
            return session
        return self._end(session, EndReason(reason), "TELEPHONY",
                         metadata={"call_ref": call_ref})

    def end(self, session_id: str, acting_user_id: str) -> EngagementSession:
        """A party hangs up from the app.  Ending an ended call is a no-op."""
        session = self._store.get_session(session_id)
        if not session.involves(acting_user_id):
            raise ForbiddenError("Only a participant can end this call.")
        if session.status == SessionStatus.ENDED:
            return session
        return self._end(session, EndReason.ENDED_BY_PARTY, acting_user_id, "PARTY")

    # -- artifacts --

    def attach_artifacts(
        self,
        session_id: str,
        transcript: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> EngagementSession:
        """Store transcript and summary where they are still missing.

        Raises:
            InvalidStateError: The session never went live (SCHEDULED,
                CONNECTING or CANCELLED).
        """
        for _ in range(_MERGE_ATTEMPTS):
            session = self._store.get_session(session_id)
            if session.status not in (SessionStatus.LIVE, SessionStatus.ENDED):
                raise InvalidStateError(
                    f"Session {session_id} is {session.status.value}; "
                    "artifacts can only be attached to live or ended calls."
                )
            changes: dict[str, Any] = {}
            if session.transcript is None and transcript is not None:
                changes["transcript"] = transcript
            if session.summary is None and summary is not None:
                changes["summary"] = summary
            if not changes:
                return session
            try:
                updated = self._store.update_session(session.id, session.version, **changes)
            except InvalidStateError:
                continue
            self._audit_log.record(
                event_type=AuditEventType.CALL_ARTIFACTS_ATTACHED,
                actor_id="SYSTEM",
                actor_role="SYSTEM",
                target_entity=session.id,
                metadata={"fields": sorted(changes)},
                timestamp=self._clock(),
            )
            logger.info("Call artifacts attached", session_id=session.id, fields=sorted(changes))
            return updated
        raise InvalidStateError(f"Session {session_id} kept changing; artifacts not attached.")

    def append_transcript_chunk(self, session_id: str, seq: int, text: str) -> EngagementSession:
        """Add one live transcript fragment.  A repeated ``seq`` is ignored."""
        for _ in range(_MERGE_ATTEMPTS):
            session = self._store.get_session(session_id)
            if session.status != SessionStatus.LIVE:
                raise InvalidStateError(
                    f"Session {session_id} is {session.status.value}; "
                    "transcript chunks are only accepted while live."
                )
            if any(chunk.seq == seq for chunk in session.transcript_chunks):
                return session
            chunks = sorted(
                [*session.transcript_chunks,
                 TranscriptChunk(seq=seq, text=text, received_at=self._clock())],
                key=lambda c: c.seq,
            )
            try:
                return self._store.update_session(
                    session.id, session.version, transcript_chunks=chunks
                )
            except InvalidStateError:
                continue
        raise InvalidStateError(f"Session {session_id} kept changing; chunk {seq} not stored.")

    # -- housekeeping --

    def sweep_stale(self, now: Optional[datetime] = None) -> list[EngagementSession]:
        """End calls the provider never reported back on.

        CONNECTING longer than ``connecting_timeout_seconds`` ends with
        ``PROVIDER_TIMEOUT``; LIVE longer than ``live_max_seconds`` ends
        with ``STALE``.
        """
        now = now or self._clock()
        connecting_limit = timedelta(seconds=self._settings.connecting_timeout_seconds)
        live_limit = timedelta(seconds=self._settings.live_max_seconds)

        ended: list[EngagementSession] = []
        for session in self._store.list_sessions():
            reason: Optional[EndReason] = None
            if (session.status == SessionStatus.CONNECTING and session.connecting_at
                    and now - session.connecting_at > connecting_limit):
                reason = EndReason.PROVIDER_TIMEOUT
            elif (session.status == SessionStatus.LIVE and session.started_at
                    and now - session.started_at > live_limit):
                reason = EndReason.STALE
            if reason is None:
                continue
            try:
                ended.append(self._end(session, reason))
            except InvalidStateError:
                # A provider event ended it between the scan and the write.
                logger.info("Stale sweep lost race", session_id=session.id)
        if ended:
            logger.warning("Stale calls cleared", count=len(ended))
        return ended
