"""
Connection Ledger -- Patient-to-Patient Relationship Lifecycle.

**State machine:**

    PENDING -> CONFIRMED      (target accepts)
    PENDING -> DECLINED       (target declines, or requester cancels)
    CONFIRMED -> DECLINED     (requester cancels)
    PENDING -> EXPIRED        (computed once now > expires_at; stored and
                               audited when a later write for the pair
                               touches the request)

**Invariants enforced at the store write boundary:**

* For any unordered pair of patients at most one PENDING-and-unexpired or
  CONFIRMED request exists.  An inbound pending invite blocks an outbound
  one: the invited patient must accept, never auto-confirm by inviting back.
* Every transition is a compare-and-swap on the record's version.  Of two
  concurrent accept/decline/cancel calls only the first applies; the other
  receives ``InvalidStateError``.

**Resend policy:**  the invite token is never rotated.  When
``settings.resend_resets_expiry`` is true (the default) the expiry window
restarts from the moment of the resend.

Notification delivery is fire-and-forget.  A failed dispatch is logged,
audited and stored in ``delivery_error``; the request stays valid and the
requester may ``resend``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from carebridge.audit import AuditEventType, AuditLog
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from carebridge.gateways import NotificationDispatcher, dispatch_notification
from carebridge.models import (
    ConnectionRequest,
    ConnectionStatus,
    Role,
    UserAccount,
    utcnow,
)
from carebridge.storage import InMemoryStore

logger = structlog.get_logger(__name__)


class ConnectionLedger:
    """Owns ``ConnectionRequest`` records and their transitions."""

    def __init__(
        self,
        store: InMemoryStore,
        audit_log: AuditLog,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: CoordinationSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

    # -- helpers --

    def _require_patient(self, user_id: str) -> UserAccount:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found.")
        if user.role != Role.PATIENT:
            raise ForbiddenError("Only patients can take part in peer connections.")
        return user

    def _resolve_target(
        self, requester: UserAccount, target: str
    ) -> tuple[Optional[str], str]:
        """Return ``(target_id, target_email)`` for an email address or user id."""
        target = target.strip()
        if "@" in target:
            email = target.lower()
            user = self._store.get_user_by_email(email)
        else:
            user = self._store.get_user(target)
            if user is None:
                raise NotFoundError(f"User '{target}' not found.")
            email = user.email

        if user is not None:
            if user.user_id == requester.user_id:
                raise ForbiddenError("You cannot invite yourself.")
            if user.role != Role.PATIENT:
                raise ForbiddenError("Peer connections can only be made with patients.")
            return user.user_id, email
        if email == requester.email:
            raise ForbiddenError("You cannot invite yourself.")
        return None, email

    def _audit(self, event_type: AuditEventType, record: ConnectionRequest,
               actor_id: str, metadata: dict | None = None,
               actor_role: str = Role.PATIENT.value) -> None:
        self._audit_log.record(
            event_type=event_type,
            actor_id=actor_id,
            actor_role=actor_role,
            target_entity=record.id,
            metadata=metadata or {},
            timestamp=self._clock(),
        )

    def _audit_expired(self) -> None:
        """Record every request the store has just moved to EXPIRED."""
        for record in self._store.take_expired_connections():
            self._audit(AuditEventType.CONNECTION_EXPIRED, record, "SYSTEM",
                        {"expires_at": record.expires_at.isoformat()},
                        actor_role="SYSTEM")
            logger.info("Connection invite expired", request_id=record.id)

    def _update(self, record: ConnectionRequest, now: datetime, **changes) -> ConnectionRequest:
        try:
            return self._store.update_connection(record.id, record.version, now, **changes)
        finally:
            self._audit_expired()

    def _send_invite(self, record: ConnectionRequest, requester: UserAccount) -> ConnectionRequest:
        """Dispatch the invite e-mail and record the outcome on the request."""
        now = self._clock()
        ticket, error = dispatch_notification(
            self._dispatcher,
            record.target_email,
            "connection_invite",
            {
                "invite_url": self._settings.invite_url(record.invite_token),
                "requester_name": requester.name,
                "expires_at": record.expires_at.isoformat(),
            },
        )
        if error is None:
            changes = {
                "last_notified_at": now,
                "notification_count": record.notification_count + 1,
                "delivery_error": None,
            }
        else:
            self._audit(AuditEventType.NOTIFICATION_FAILED, record, requester.user_id,
                        {"template_kind": "connection_invite", "error": error})
            changes = {"delivery_error": error}
        try:
            return self._update(record, now, **changes)
        except InvalidStateError:
            # The invite moved on (accepted, cancelled) while we were
            # dispatching; the delivery bookkeeping is not worth a retry.
            logger.info("Skipped invite delivery bookkeeping", request_id=record.id)
            return self._store.get_connection(record.id)

    def _check_invitee(self, record: ConnectionRequest, acting_user_id: str) -> None:
        if acting_user_id == record.requester_id:
            raise ForbiddenError("You cannot respond to your own invitation.")
        if record.target_id is not None and record.target_id != acting_user_id:
            raise ForbiddenError("This invitation was sent to someone else.")
        self._require_patient(acting_user_id)

    def _with_effective_status(self, record: ConnectionRequest, now: datetime) -> ConnectionRequest:
        status = record.effective_status(now)
        if status == record.status:
            return record
        return record.model_copy(update={"status": status})

    # -- lifecycle operations --

    def invite(self, requester_id: str, target: str) -> ConnectionRequest:
        """Create a PENDING invite from ``requester_id`` to an email or user id.

        Raises:
            NotFoundError: If the requester or a target user id is unknown.
            ForbiddenError: On self-invites or non-patient parties.
            DuplicateActiveRelationshipError: If the pair already has a
                pending or confirmed relationship in either direction.
        """
        now = self._clock()
        requester = self._require_patient(requester_id)
        target_id, target_email = self._resolve_target(requester, target)

        try:
            record = self._store.insert_connection(
                ConnectionRequest(
                    requester_id=requester_id,
                    target_id=target_id,
                    target_email=target_email,
                    created_at=now,
                    expires_at=now + timedelta(days=self._settings.invite_expiry_days),
                ),
                now,
            )
        finally:
            self._audit_expired()
        self._audit(AuditEventType.CONNECTION_INVITE_SENT, record, requester_id,
                    {"target_id": target_id, "target_email": target_email})
        logger.info("Connection invite created", request_id=record.id,
                    requester_id=requester_id, target_id=target_id)

        return self._send_invite(record, requester)

    def accept(self, invite_token: str, acting_user_id: str) -> ConnectionRequest:
        """Confirm a pending invite; binds email-only invites to the acceptor.

        Raises:
            NotFoundError: Unknown token.
            ForbiddenError: Actor is the requester or not the invited patient.
            ExpiredError: The invite is past its expiry.
            InvalidStateError: The invite is no longer pending.
            DuplicateActiveRelationshipError: The acceptor already holds
                another active relationship with the requester.
        """
        now = self._clock()
        record = self._store.get_connection_by_token(invite_token)
        self._check_invitee(record, acting_user_id)

        if record.is_expired(now):
            raise ExpiredError("This invitation has expired.")
        if record.status != ConnectionStatus.PENDING:
            raise InvalidStateError(
                f"Invitation {record.id} is {record.status.value}, not PENDING."
            )

        updated = self._update(
            record,
            now,
            status=ConnectionStatus.CONFIRMED,
            target_id=acting_user_id,
            confirmed_at=now,
        )
        self._audit(AuditEventType.CONNECTION_ACCEPTED, updated, acting_user_id)
        logger.info("Connection confirmed", request_id=updated.id,
                    requester_id=updated.requester_id, target_id=acting_user_id)
        return updated

    def decline(self, invite_token: str, acting_user_id: str) -> ConnectionRequest:
        """Decline a pending invite.  Declining twice is a no-op."""
        now = self._clock()
        record = self._store.get_connection_by_token(invite_token)
        self._check_invitee(record, acting_user_id)

        if record.status == ConnectionStatus.DECLINED:
            return record
        if record.is_expired(now):
            raise ExpiredError("This invitation has expired.")
        if record.status != ConnectionStatus.PENDING:
            raise InvalidStateError(
                f"Invitation {record.id} is {record.status.value}, not PENDING."
            )

        updated = self._update(
            record,
            now,
            status=ConnectionStatus.DECLINED,
            target_id=acting_user_id,
        )
        self._audit(AuditEventType.CONNECTION_DECLINED, updated, acting_user_id)
        logger.info("Connection declined", request_id=updated.id)
        return updated

    def resend(self, request_id: str, acting_user_id: str) -> ConnectionRequest:
        """Re-send a pending invite with the same token.

        Raises:
            ForbiddenError: Actor is not the original requester.
            ExpiredError: The invite already expired; send a new one.
            InvalidStateError: The invite is no longer pending.
        """
        now = self._clock()
        record = self._store.get_connection(request_id)
        if record.requester_id != acting_user_id:
            raise ForbiddenError("Only the patient who sent the invitation can resend it.")
        if record.is_expired(now):
            raise ExpiredError("This invitation has expired.")
        if record.status != ConnectionStatus.PENDING:
            raise InvalidStateError(
                f"Invitation {record.id} is {record.status.value}, not PENDING."
            )

        if self._settings.resend_resets_expiry:
            record = self._update(
                record,
                now,
                expires_at=now + timedelta(days=self._settings.invite_expiry_days),
            )
        self._audit(AuditEventType.CONNECTION_INVITE_RESENT, record, acting_user_id,
                    {"expires_at": record.expires_at.isoformat()})

        requester = self._require_patient(acting_user_id)
        return self._send_invite(record, requester)

    def cancel(self, request_id: str, acting_user_id: str) -> ConnectionRequest:
        """Withdraw a pending invite or end a confirmed connection.

        The record moves to DECLINED with ``cancelled_at`` set.  Cancelling
        an already-declined request is a no-op.
        """
        now = self._clock()
        record = self._store.get_connection(request_id)
        if record.requester_id != acting_user_id:
            raise ForbiddenError("Only the patient who sent the invitation can cancel it.")
        if record.status == ConnectionStatus.DECLINED:
            return record
        if record.effective_status(now) == ConnectionStatus.EXPIRED:
            raise InvalidStateError(f"Invitation {record.id} has already expired.")

        previous = record.status
        updated = self._update(
            record,
            now,
            status=ConnectionStatus.DECLINED,
            cancelled_at=now,
        )
        self._audit(AuditEventType.CONNECTION_CANCELLED, updated, acting_user_id,
                    {"previous_status": previous.value})
        logger.info("Connection cancelled", request_id=updated.id,
                    previous_status=previous.value)
        return updated

    # -- queries --

    def list(self, user_id: str) -> list[ConnectionRequest]:
        """All requests the user sent or received, newest first, with computed expiry."""
        now = self._clock()
        records = [
            self._with_effective_status(r, now)
            for r in self._store.list_connections_for(user_id)
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def get(self, request_id: str) -> ConnectionRequest:
        return self._with_effective_status(self._store.get_connection(request_id), self._clock())

    def get_by_token(self, invite_token: str) -> ConnectionRequest:
        return self._with_effective_status(
            self._store.get_connection_by_token(invite_token), self._clock()
        )

    def confirmed_between(self, a: str, b: str) -> Optional[ConnectionRequest]:
        for record in self._store.connections_between(a, b):
            if record.status == ConnectionStatus.CONFIRMED:
                return record
        return None

    def mark_scheduled(self, a: str, b: str, scheduled_at: datetime) -> Optional[ConnectionRequest]:
        """Record that a meeting was booked on the pair's confirmed connection."""
        record = self.confirmed_between(a, b)
        if record is None:
            return None
        return self._update(record, self._clock(), scheduled_at=scheduled_at)
