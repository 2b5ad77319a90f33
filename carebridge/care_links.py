"""
Care-Link Ledger -- Doctor-to-Patient Linking via QR / Link Tokens.

A doctor issues a link token (rendered elsewhere as a QR code or URL).  A
patient who resolves the token becomes linked to that doctor.  Linking is
idempotent: the store keeps exactly one ``CareLink`` per
(doctor, patient) pair, and a second resolution returns the existing link.

Issuing a new token leaves earlier ones valid until they expire, so a
printed QR code keeps working.  CareLinks themselves have no expiry.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from carebridge.audit import AuditEventType, AuditLog
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.errors import ExpiredError, ForbiddenError, NotFoundError
from carebridge.models import CareLink, LinkToken, Role, UserAccount, utcnow
from carebridge.storage import InMemoryStore

logger = structlog.get_logger(__name__)


class CareLinkLedger:
    """Owns link tokens and ``CareLink`` records."""

    def __init__(
        self,
        store: InMemoryStore,
        audit_log: AuditLog,
        settings: CoordinationSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._settings = settings
        self._clock = clock

    def _require_role(self, user_id: str, role: Role) -> UserAccount:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found.")
        if user.role != role:
            raise ForbiddenError(f"This action requires the {role.value} role.")
        return user

    def _valid_token(self, token: str) -> LinkToken:
        record = self._store.get_link_token(token)
        if record is None:
            raise NotFoundError("Invalid or expired link code.")
        if self._clock() > record.expires_at:
            raise ExpiredError("This link code has expired. Ask your doctor for a new one.")
        return record

    def issue_link_token(self, doctor_id: str) -> LinkToken:
        """Create a fresh link token for ``doctor_id``."""
        self._require_role(doctor_id, Role.DOCTOR)
        now = self._clock()
        token = LinkToken(
            doctor_id=doctor_id,
            created_at=now,
            expires_at=now + timedelta(days=self._settings.link_token_expiry_days),
        )
        token.link_url = self._settings.link_url(token.token)
        stored = self._store.add_link_token(token)

        self._audit_log.record(
            event_type=AuditEventType.LINK_TOKEN_ISSUED,
            actor_id=doctor_id,
            actor_role=Role.DOCTOR.value,
            target_entity=doctor_id,
            metadata={"expires_at": stored.expires_at.isoformat()},
            timestamp=self._clock(),
        )
        logger.info("Link token issued", doctor_id=doctor_id)
        return stored

    def current_link_token(self, doctor_id: str) -> LinkToken:
        """The doctor's newest token.

        Raises:
            NotFoundError: If none was issued or the latest one expired.
        """
        record = self._store.latest_link_token(doctor_id)
        if record is None or self._clock() > record.expires_at:
            raise NotFoundError("No active link code; issue a new one.")
        return record

    def verify_link_token(
        self, token: str, patient_id: Optional[str] = None
    ) -> tuple[str, bool]:
        """Look up a token before linking.

        Returns:
            ``(doctor_id, is_linked)``; ``is_linked`` is False when no
            patient id is given.
        """
        record = self._valid_token(token)
        is_linked = bool(patient_id) and self.is_linked(record.doctor_id, patient_id)
        return record.doctor_id, is_linked

    def resolve_link_token(self, token: str, patient_id: str) -> CareLink:
        """Link ``patient_id`` to the token's doctor.  Repeat calls return the same link.

        Raises:
            NotFoundError: Unknown token or unknown patient.
            ExpiredError: Token past its expiry.
            ForbiddenError: The actor is not a patient.
        """
        record = self._valid_token(token)
        self._require_role(patient_id, Role.PATIENT)

        link, created = self._store.upsert_care_link(
            CareLink(
                doctor_id=record.doctor_id,
                patient_id=patient_id,
                linked_at=self._clock(),
                via_token=token,
            )
        )
        if created:
            self._audit_log.record(
                event_type=AuditEventType.PATIENT_LINKED_TO_DOCTOR,
                actor_id=patient_id,
                actor_role=Role.PATIENT.value,
                target_entity=link.id,
                metadata={"doctor_id": record.doctor_id},
                timestamp=self._clock(),
            )
            logger.info("Patient linked to doctor", link_id=link.id,
                        doctor_id=record.doctor_id, patient_id=patient_id)
        return link

    def is_linked(self, doctor_id: str, patient_id: str) -> bool:
        return self._store.get_care_link(doctor_id, patient_id) is not None

    def list_linked_patients(self, doctor_id: str) -> list[CareLink]:
        return sorted(self._store.care_links_for_doctor(doctor_id), key=lambda l: l.linked_at)

    def list_linked_doctors(self, patient_id: str) -> list[CareLink]:
        return sorted(self._store.care_links_for_patient(patient_id), key=lambda l: l.linked_at)
