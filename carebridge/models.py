"""
Core data models for the CareBridge coordination core.

Records are pydantic models owned by exactly one ledger.  Each mutable
record carries a ``version`` counter that the store uses for
compare-and-swap updates, so a transition either applies completely or
not at all.

Timestamps are always timezone-aware UTC.  Expiry of connection invites
is derived from ``expires_at`` at read time (see
``ConnectionRequest.effective_status``) rather than by a background job.
"""

from __future__ import annotations

import enum
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Default clock used by every ledger."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def new_token() -> str:
    """Return an opaque, unguessable token for invite and link URLs."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Roles yielded by the identity gateway."""

    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"


class ConnectionStatus(str, enum.Enum):
    """Lifecycle of a patient-to-patient connection request.

    ``EXPIRED`` is normally computed from ``expires_at``; it is persisted
    only when an expired request is touched by a later write.
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class SurveyOccasion(str, enum.Enum):
    """Clinical occasion a survey is attached to."""

    PREOP = "preop"
    POSTOP = "postop"
    OTHER = "other"


class SurveyStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    COMPLETED = "COMPLETED"


class SessionStatus(str, enum.Enum):
    """Lifecycle of an engagement session.

    * ``SCHEDULED``  -- booked for a future time, not dialled.
    * ``CONNECTING`` -- dial-out requested, waiting for pickup.
    * ``LIVE``       -- provider confirmed pickup.
    * ``ENDED``      -- terminal; reached from CONNECTING or LIVE.
    * ``CANCELLED``  -- terminal; reached only from SCHEDULED.
    """

    SCHEDULED = "SCHEDULED"
    CONNECTING = "CONNECTING"
    LIVE = "LIVE"
    ENDED = "ENDED"
    CANCELLED = "CANCELLED"


class SessionKind(str, enum.Enum):
    PATIENT_PATIENT = "PATIENT_PATIENT"
    DOCTOR_DOCTOR = "DOCTOR_DOCTOR"


class CallMode(str, enum.Enum):
    VOICE = "voice"
    VIDEO = "video"


class EndReason(str, enum.Enum):
    """Why a CONNECTING or LIVE session ended."""

    HANGUP = "HANGUP"
    ENDED_BY_PARTY = "ENDED_BY_PARTY"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    NO_ANSWER = "NO_ANSWER"
    DIAL_FAILED = "DIAL_FAILED"
    STALE = "STALE"


ACTIVE_CALL_STATES = frozenset({SessionStatus.CONNECTING, SessionStatus.LIVE})


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class PatientDemographics(BaseModel):
    """Self-reported demographics used for peer matching only."""

    age: Optional[int] = Field(default=None, ge=0, le=130)
    gender: Optional[str] = Field(default=None)
    procedure: Optional[str] = Field(
        default=None,
        description="Procedure the patient is undergoing or has undergone.",
    )


class UserAccount(BaseModel):
    """A registered user as known to the coordination core.

    Authentication is handled by the identity provider; this record only
    holds what the ledgers need to resolve invites and route calls.
    """

    user_id: str = Field(default_factory=_new_id)
    email: str = Field(..., min_length=3)
    role: Role
    name: str = Field(default="")
    phone_number: Optional[str] = Field(default=None)
    demographics: PatientDemographics = Field(default_factory=PatientDemographics)
    created_at: datetime = Field(default_factory=utcnow)


class Actor(BaseModel):
    """Authenticated caller identity passed explicitly to every operation."""

    user_id: str
    role: Role


# ---------------------------------------------------------------------------
# Connection Ledger
# ---------------------------------------------------------------------------

class ConnectionRequest(BaseModel):
    """A directed patient-to-patient relationship proposal with expiry."""

    id: str = Field(default_factory=_new_id)
    requester_id: str = Field(..., description="Patient who sent the invite.")
    target_id: Optional[str] = Field(
        default=None,
        description="Invited patient; null until an email-only invite is accepted.",
    )
    target_email: Optional[str] = Field(
        default=None,
        description="Address the invite was sent to, lowercased.",
    )
    status: ConnectionStatus = Field(default=ConnectionStatus.PENDING)
    invite_token: str = Field(default_factory=new_token)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    confirmed_at: Optional[datetime] = Field(default=None)
    scheduled_at: Optional[datetime] = Field(
        default=None,
        description="Set once a meeting is booked on this relationship.",
    )
    cancelled_at: Optional[datetime] = Field(default=None)
    last_notified_at: Optional[datetime] = Field(default=None)
    notification_count: int = Field(default=0, ge=0)
    delivery_error: Optional[str] = Field(
        default=None,
        description="Last notification failure; the request itself stays valid.",
    )
    version: int = Field(default=0, ge=0)

    def is_expired(self, now: datetime) -> bool:
        """True once stored as EXPIRED or while PENDING past ``expires_at``."""
        if self.status == ConnectionStatus.EXPIRED:
            return True
        return self.status == ConnectionStatus.PENDING and now > self.expires_at

    def effective_status(self, now: datetime) -> ConnectionStatus:
        if self.is_expired(now):
            return ConnectionStatus.EXPIRED
        return self.status

    def is_active(self, now: datetime) -> bool:
        """PENDING (not yet expired) or CONFIRMED."""
        return self.effective_status(now) in (
            ConnectionStatus.PENDING,
            ConnectionStatus.CONFIRMED,
        )

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.target_id)

    def counterpart_of(self, user_id: str) -> Optional[str]:
        if user_id == self.requester_id:
            return self.target_id
        if user_id == self.target_id:
            return self.requester_id
        return None


# ---------------------------------------------------------------------------
# Care-Link Ledger
# ---------------------------------------------------------------------------

class LinkToken(BaseModel):
    """Credential encoded in a doctor's QR code or link URL."""

    token: str = Field(default_factory=new_token)
    doctor_id: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    link_url: str = Field(default="")


class CareLink(BaseModel):
    """A confirmed doctor-patient relationship."""

    id: str = Field(default_factory=_new_id)
    doctor_id: str
    patient_id: str
    linked_at: datetime = Field(default_factory=utcnow)
    via_token: Optional[str] = Field(
        default=None,
        description="Link token the patient resolved to create this link.",
    )


# ---------------------------------------------------------------------------
# Survey Orchestrator
# ---------------------------------------------------------------------------

class SurveyRequest(BaseModel):
    """One outcome-survey assignment tied to a CareLink and an occasion."""

    id: str = Field(default_factory=_new_id)
    patient_id: str
    doctor_id: str
    when: SurveyOccasion = Field(default=SurveyOccasion.PREOP)
    form_name: str = Field(default="")
    survey_link: Optional[str] = Field(default=None)
    status: SurveyStatus = Field(default=SurveyStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    response_data: Optional[dict[str, Any]] = Field(
        default=None,
        description="Opaque answers payload; null until completed.",
    )
    send_count: int = Field(default=0, ge=0)
    delivery_error: Optional[str] = Field(default=None)
    version: int = Field(default=0, ge=0)

    @property
    def is_active(self) -> bool:
        return self.status != SurveyStatus.COMPLETED


# ---------------------------------------------------------------------------
# Engagement Scheduler / Call Session Monitor
# ---------------------------------------------------------------------------

class TranscriptChunk(BaseModel):
    seq: int = Field(..., ge=0)
    text: str
    received_at: datetime = Field(default_factory=utcnow)


class EngagementSession(BaseModel):
    """One call, scheduled or immediate, between two related parties."""

    id: str = Field(default_factory=_new_id)
    party_a_id: str = Field(..., description="Requester or caller.")
    party_b_id: str = Field(..., description="Target or callee.")
    kind: SessionKind
    mode: CallMode = Field(default=CallMode.VOICE)
    scheduled_at: Optional[datetime] = Field(
        default=None,
        description="Null for an immediate (ad-hoc) call.",
    )
    duration_minutes: int = Field(default=30, gt=0)
    conferencing_ref: Optional[str] = Field(default=None)
    conferencing_error: Optional[str] = Field(default=None)
    delivery_error: Optional[str] = Field(default=None)
    status: SessionStatus = Field(default=SessionStatus.SCHEDULED)
    call_ref: Optional[str] = Field(
        default=None,
        description="Telephony provider handle for the dial-out.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    connecting_at: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    ended_at: Optional[datetime] = Field(default=None)
    end_reason: Optional[EndReason] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)
    cancelled_by: Optional[str] = Field(default=None)
    transcript: Optional[str] = Field(default=None)
    summary: Optional[str] = Field(default=None)
    transcript_chunks: list[TranscriptChunk] = Field(default_factory=list)
    version: int = Field(default=0, ge=0)

    @property
    def parties(self) -> tuple[str, str]:
        return (self.party_a_id, self.party_b_id)

    def involves(self, user_id: str) -> bool:
        return user_id in self.parties

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


# ---------------------------------------------------------------------------
# Gateway value objects
# ---------------------------------------------------------------------------

class DeliveryTicket(BaseModel):
    """Receipt returned by the notification dispatcher."""

    ticket_id: str = Field(default_factory=_new_id)
    destination: str
    template_kind: str
    accepted: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class CallHandle(BaseModel):
    """Receipt returned by the telephony backend for one dial-out."""

    call_ref: str = Field(default_factory=_new_id)
    from_party_id: str
    to_party_id: str
