"""
CareBridge Service Facade -- Result-Returning Entry Point.

Wires the five ledgers over one store and one audit log and exposes every
user-facing operation as a method returning ``Ok`` or ``Err``.

**Per call, in order:**

1. resolve the actor (explicit ``Actor`` or the identity gateway's
   current user) and confirm it matches a registered account;
2. check the role against the RBAC table;
3. run the ledger operation;
4. convert a ``CoordinationError`` into ``Err(kind, message)``, or wrap
   the value in ``Ok`` with warnings for any degraded side effect
   (undelivered notification, missing meeting link, failed dial-out).

Unexpected exceptions are logged with the operation name and re-raised.

Provider callbacks (``on_call_connected``, ``on_call_ended``,
``attach_call_artifacts``, ``append_transcript_chunk``) and the survey
intake boundary (``record_survey_completion``) are system entry points and
take no actor.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from carebridge.audit import AuditEventType, AuditLog
from carebridge.call_monitor import CallSessionMonitor
from carebridge.care_links import CareLinkLedger
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.connections import ConnectionLedger
from carebridge.engagement import EngagementScheduler
from carebridge.errors import (
    CoordinationError,
    Err,
    ErrorKind,
    ForbiddenError,
    Ok,
    Result,
)
from carebridge.gateways import (
    ConferencingBackend,
    IdentityGateway,
    NotificationDispatcher,
    TelephonyBackend,
)
from carebridge.matching import rank_available_peers
from carebridge.models import (
    Actor,
    CallMode,
    ConnectionRequest,
    ConnectionStatus,
    EndReason,
    EngagementSession,
    Role,
    SurveyOccasion,
    SurveyRequest,
    UserAccount,
    utcnow,
)
from carebridge.rbac import require_permission
from carebridge.session_report import generate_session_report
from carebridge.storage import InMemoryStore
from carebridge.surveys import SurveyOrchestrator

logger = structlog.get_logger(__name__)


def _warnings_for(value: Any) -> list[str]:
    """Describe degraded side effects recorded on a returned record."""
    if isinstance(value, list):
        return [w for item in value for w in _warnings_for(item)]
    warnings: list[str] = []
    if isinstance(value, (ConnectionRequest, SurveyRequest)) and value.delivery_error:
        warnings.append(f"Notification was not delivered: {value.delivery_error}")
    if isinstance(value, EngagementSession):
        if value.conferencing_error:
            warnings.append(
                "The meeting link could not be created; retry from the call details."
            )
        if value.delivery_error:
            warnings.append(f"Notification was not delivered: {value.delivery_error}")
        if value.end_reason == EndReason.DIAL_FAILED:
            warnings.append("The call could not be placed. Check the phone numbers and try again.")
    return warnings


class CareBridgeService:
    """Facade over the coordination ledgers."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        audit_log: Optional[AuditLog] = None,
        settings: CoordinationSettings = DEFAULT_SETTINGS,
        identity: Optional[IdentityGateway] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        conferencing: Optional[ConferencingBackend] = None,
        telephony: Optional[TelephonyBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store if store is not None else InMemoryStore()
        self.audit_log = audit_log if audit_log is not None else AuditLog()
        self.settings = settings
        self._identity = identity
        self._clock = clock

        self.connections = ConnectionLedger(
            self.store, self.audit_log, dispatcher, settings, clock
        )
        self.care_links = CareLinkLedger(self.store, self.audit_log, settings, clock)
        self.surveys = SurveyOrchestrator(
            self.store, self.audit_log, dispatcher, settings, clock
        )
        self.monitor = CallSessionMonitor(
            self.store, self.audit_log, telephony, settings, clock
        )
        self.scheduler = EngagementScheduler(
            self.store,
            self.audit_log,
            self.connections,
            self.monitor,
            dispatcher,
            conferencing,
            settings,
            clock,
        )

    # -- plumbing --

    def register_user(self, user: UserAccount) -> UserAccount:
        """Make an account known to the core.  Duplicate emails raise ValueError."""
        stored = self.store.add_user(user)
        logger.info("User registered", user_id=stored.user_id, role=stored.role.value)
        return stored

    def _resolve_actor(self, actor: Optional[Actor], action: str) -> Actor:
        if actor is None and self._identity is not None:
            actor = self._identity.current_user()
        if actor is None:
            raise ForbiddenError("Sign in to continue.")
        account = self.store.get_user(actor.user_id)
        if account is None or account.role != actor.role:
            raise ForbiddenError("Your account could not be verified.")
        require_permission(actor.role, action)
        return actor

    def _run(self, operation: str, fn: Callable[[], Any]) -> Result:
        try:
            value = fn()
        except CoordinationError as exc:
            level = logger.warning if exc.kind == ErrorKind.FORBIDDEN else logger.info
            level("Operation rejected", operation=operation,
                  kind=exc.kind.value, detail=exc.message)
            return Err.from_error(exc)
        except Exception:
            logger.exception("Operation failed unexpectedly", operation=operation)
            raise
        return Ok(value, _warnings_for(value))

    def _authorized(
        self, operation: str, actor: Optional[Actor], fn: Callable[[Actor], Any]
    ) -> Result:
        return self._run(operation, lambda: fn(self._resolve_actor(actor, operation)))

    # ------------------------------------------------------------------
    # Peer connections
    # ------------------------------------------------------------------

    def invite_peer(self, actor: Optional[Actor], target: str) -> Result:
        return self._authorized(
            "invite_peer", actor, lambda a: self.connections.invite(a.user_id, target)
        )

    def accept_invite(self, actor: Optional[Actor], invite_token: str) -> Result:
        return self._authorized(
            "respond_to_invite", actor,
            lambda a: self.connections.accept(invite_token, a.user_id),
        )

    def decline_invite(self, actor: Optional[Actor], invite_token: str) -> Result:
        return self._authorized(
            "respond_to_invite", actor,
            lambda a: self.connections.decline(invite_token, a.user_id),
        )

    def resend_invite(self, actor: Optional[Actor], request_id: str) -> Result:
        return self._authorized(
            "invite_peer", actor, lambda a: self.connections.resend(request_id, a.user_id)
        )

    def cancel_connection(self, actor: Optional[Actor], request_id: str) -> Result:
        """Withdraw an invite or end a connection, cancelling its booked calls."""

        def _cancel(a: Actor) -> ConnectionRequest:
            before = self.connections.get(request_id)
            record = self.connections.cancel(request_id, a.user_id)
            peer_id = record.counterpart_of(a.user_id)
            if before.status == ConnectionStatus.CONFIRMED and peer_id:
                cancelled = self.scheduler.cancel_between(a.user_id, peer_id, a.user_id)
                if cancelled:
                    logger.info("Booked calls cancelled with connection",
                                request_id=request_id, count=len(cancelled))
            return record

        return self._authorized("invite_peer", actor, _cancel)

    def list_connections(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "list_connections", actor, lambda a: self.connections.list(a.user_id)
        )

    def browse_peers(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "browse_peers", actor, lambda a: rank_available_peers(self.store, a.user_id)
        )

    # ------------------------------------------------------------------
    # Doctor-patient links
    # ------------------------------------------------------------------

    def issue_link_token(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "issue_link_token", actor, lambda a: self.care_links.issue_link_token(a.user_id)
        )

    def current_link_token(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "issue_link_token", actor, lambda a: self.care_links.current_link_token(a.user_id)
        )

    def verify_link_token(self, token: str, actor: Optional[Actor] = None) -> Result:
        """Landing-page lookup; works signed out, in which case ``is_linked`` is False."""
        if actor is None and self._identity is not None:
            actor = self._identity.current_user()
        patient_id = actor.user_id if actor is not None and actor.role == Role.PATIENT else None
        return self._run(
            "verify_link_token", lambda: self.care_links.verify_link_token(token, patient_id)
        )

    def resolve_link_token(self, actor: Optional[Actor], token: str) -> Result:
        return self._authorized(
            "resolve_link_token", actor,
            lambda a: self.care_links.resolve_link_token(token, a.user_id),
        )

    def list_linked_patients(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "list_linked_patients", actor,
            lambda a: self.care_links.list_linked_patients(a.user_id),
        )

    def list_linked_doctors(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "list_linked_doctors", actor,
            lambda a: self.care_links.list_linked_doctors(a.user_id),
        )

    # ------------------------------------------------------------------
    # Surveys
    # ------------------------------------------------------------------

    def send_survey(
        self,
        actor: Optional[Actor],
        patient_id: str,
        when: SurveyOccasion | str,
        form_name: Optional[str] = None,
    ) -> Result:
        return self._authorized(
            "send_survey", actor,
            lambda a: self.surveys.send(a.user_id, patient_id, when, form_name),
        )

    def resend_survey(self, actor: Optional[Actor], survey_id: str) -> Result:
        return self._authorized(
            "send_survey", actor, lambda a: self.surveys.resend(survey_id, a.user_id)
        )

    def record_survey_completion(self, survey_id: str, response_data: dict[str, Any]) -> Result:
        """Survey intake boundary."""
        return self._run(
            "record_survey_completion",
            lambda: self.surveys.record_completion(survey_id, response_data),
        )

    def list_surveys(self, actor: Optional[Actor]) -> Result:
        def _list(a: Actor) -> list[SurveyRequest]:
            if a.role == Role.DOCTOR:
                return self.surveys.list_for_doctor(a.user_id)
            return self.surveys.list_for_patient(a.user_id)

        return self._authorized("list_own_surveys", actor, _list)

    def survey_analytics(self, actor: Optional[Actor], patient_id: Optional[str] = None) -> Result:
        return self._authorized(
            "view_survey_analytics", actor,
            lambda a: self.surveys.compute_analytics(a.user_id, patient_id),
        )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def schedule_call(
        self,
        actor: Optional[Actor],
        target_id: str,
        scheduled_at: datetime,
        duration_minutes: Optional[int] = None,
        mode: CallMode | str = CallMode.VOICE,
    ) -> Result:
        return self._authorized(
            "schedule_call", actor,
            lambda a: self.scheduler.schedule(
                a.user_id, target_id, scheduled_at, duration_minutes, mode
            ),
        )

    def retry_conferencing(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "schedule_call", actor,
            lambda a: self.scheduler.retry_conferencing(session_id, a.user_id),
        )

    def call_now(
        self, actor: Optional[Actor], callee_id: str, mode: CallMode | str = CallMode.VOICE
    ) -> Result:
        return self._authorized(
            "place_call", actor,
            lambda a: self.scheduler.initiate_immediate(a.user_id, callee_id, mode),
        )

    def start_scheduled_call(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "place_call", actor,
            lambda a: self.scheduler.start_scheduled(session_id, a.user_id),
        )

    def cancel_call(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "schedule_call", actor, lambda a: self.scheduler.cancel(session_id, a.user_id)
        )

    def end_call(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "place_call", actor, lambda a: self.monitor.end(session_id, a.user_id)
        )

    def list_calls(self, actor: Optional[Actor]) -> Result:
        return self._authorized(
            "view_call", actor, lambda a: self.scheduler.list_sessions(a.user_id)
        )

    def _party_session(self, a: Actor, session_id: str) -> EngagementSession:
        session = self.scheduler.get(session_id)
        if not session.involves(a.user_id):
            raise ForbiddenError("You are not a participant in this call.")
        return session

    def get_call(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "view_call", actor, lambda a: self._party_session(a, session_id)
        )

    def session_report(self, actor: Optional[Actor], session_id: str) -> Result:
        return self._authorized(
            "view_call", actor,
            lambda a: generate_session_report(
                self._party_session(a, session_id), generated_at=self._clock()
            ),
        )

    # ------------------------------------------------------------------
    # Provider callbacks and housekeeping
    # ------------------------------------------------------------------

    def on_call_connected(self, call_ref: str) -> Result:
        return self._run("on_call_connected", lambda: self.monitor.on_connected(call_ref))

    def on_call_ended(self, call_ref: str, reason: EndReason = EndReason.HANGUP) -> Result:
        return self._run("on_call_ended", lambda: self.monitor.on_ended(call_ref, reason))

    def attach_call_artifacts(
        self,
        session_id: str,
        transcript: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Result:
        return self._run(
            "attach_call_artifacts",
            lambda: self.monitor.attach_artifacts(session_id, transcript, summary),
        )

    def append_transcript_chunk(self, session_id: str, seq: int, text: str) -> Result:
        return self._run(
            "append_transcript_chunk",
            lambda: self.monitor.append_transcript_chunk(session_id, seq, text),
        )

    def sweep_stale_calls(self, now: Optional[datetime] = None) -> list[EngagementSession]:
        return self.monitor.sweep_stale(now)

    def export_audit(
        self,
        reviewer_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """PHI-redacted audit export; the export itself is audited."""
        bundle = self.audit_log.export_for_review(time_start, time_end)
        self.audit_log.record(
            event_type=AuditEventType.AUDIT_EXPORTED,
            actor_id=reviewer_id,
            actor_role="REVIEWER",
            metadata={"entry_count": bundle["export_metadata"]["entry_count"]},
            timestamp=self._clock(),
        )
        return bundle
