"""
In-Memory Transactional Store.

All ledger state lives here.  The store is the write boundary: every
uniqueness invariant is checked and every record is written inside one
lock acquisition, so two concurrent callers cannot both pass a check and
both insert.

**Write primitives:**

* ``insert_*`` -- check unique indexes, then insert.
* ``update_*`` -- compare-and-swap keyed by record id and the ``version``
  the caller read.  A stale version raises ``InvalidStateError``; the
  loser of a race never applies a partial transition.

**Unique indexes:**

* invite token -> connection request
* unordered pair -> the single active (PENDING or CONFIRMED) connection
* (doctor, patient) -> care link
* (patient, occasion) -> the single non-completed survey
* party -> the single CONNECTING/LIVE session
* provider call ref -> session

Reads return deep copies, so no caller ever holds a reference into the
store and no lock is held outside these methods.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Iterable, Optional, TypeVar

from pydantic import BaseModel

from carebridge.errors import (
    AlreadyActiveError,
    DuplicateActiveRelationshipError,
    InvalidStateError,
    NotFoundError,
    PartyBusyError,
)
from carebridge.models import (
    ACTIVE_CALL_STATES,
    CareLink,
    ConnectionRequest,
    ConnectionStatus,
    EngagementSession,
    LinkToken,
    Role,
    SurveyOccasion,
    SurveyRequest,
    SurveyStatus,
    UserAccount,
)

R = TypeVar("R", bound=BaseModel)

PairKey = frozenset


def email_key(email: str) -> str:
    return f"email:{email.strip().lower()}"


class InMemoryStore:
    """Process-local store guarded by a single re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

        self._users: dict[str, UserAccount] = {}
        self._email_index: dict[str, str] = {}

        self._connections: dict[str, ConnectionRequest] = {}
        self._token_index: dict[str, str] = {}
        self._pair_index: dict[PairKey, str] = {}
        self._expired_unreported: list[ConnectionRequest] = []

        self._link_tokens: dict[str, LinkToken] = {}
        self._care_links: dict[str, CareLink] = {}
        self._care_link_index: dict[tuple[str, str], str] = {}

        self._surveys: dict[str, SurveyRequest] = {}
        self._active_survey_index: dict[tuple[str, SurveyOccasion], str] = {}

        self._sessions: dict[str, EngagementSession] = {}
        self._busy_index: dict[str, str] = {}
        self._call_ref_index: dict[str, str] = {}

    # -- helpers --

    @staticmethod
    def _copy(record: R) -> R:
        return record.model_copy(deep=True)

    @staticmethod
    def _apply(record: R, expected_version: int, changes: dict[str, Any]) -> R:
        """Return an updated copy of ``record`` or raise on a stale version."""
        current = getattr(record, "version")
        if current != expected_version:
            raise InvalidStateError(
                f"{type(record).__name__} {getattr(record, 'id', '')} was modified "
                f"concurrently (expected version {expected_version}, found {current})."
            )
        return record.model_copy(update={**changes, "version": current + 1}, deep=True)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, user: UserAccount) -> UserAccount:
        key = user.email.strip().lower()
        with self._lock:
            if key in self._email_index:
                raise ValueError(f"A user with email '{user.email}' already exists.")
            if user.user_id in self._users:
                raise ValueError(f"A user with id '{user.user_id}' already exists.")
            stored = user.model_copy(update={"email": key}, deep=True)
            self._users[user.user_id] = stored
            self._email_index[key] = user.user_id
            return self._copy(stored)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._lock:
            user = self._users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._lock:
            user_id = self._email_index.get(email.strip().lower())
            return self._copy(self._users[user_id]) if user_id else None

    def list_users(self, role: Optional[Role] = None) -> list[UserAccount]:
        with self._lock:
            return [
                self._copy(u) for u in self._users.values()
                if role is None or u.role == role
            ]

    # ------------------------------------------------------------------
    # Connection requests
    # ------------------------------------------------------------------

    def _primary_pair_key(self, request: ConnectionRequest) -> PairKey:
        if request.target_id is not None:
            return frozenset({request.requester_id, request.target_id})
        return frozenset({request.requester_id, email_key(request.target_email or "")})

    def _candidate_pair_keys(self, request: ConnectionRequest) -> list[PairKey]:
        """Every key under which an active relationship for this pair could be
        indexed, including email-only invites sent before a user registered."""
        keys = [self._primary_pair_key(request)]
        if request.target_id is None:
            return keys
        target = self._users.get(request.target_id)
        requester = self._users.get(request.requester_id)
        if target is not None:
            keys.append(frozenset({request.requester_id, email_key(target.email)}))
        if requester is not None:
            keys.append(frozenset({request.target_id, email_key(requester.email)}))
        return keys

    def _expire_in_place(self, record: ConnectionRequest) -> None:
        expired = record.model_copy(
            update={"status": ConnectionStatus.EXPIRED, "version": record.version + 1},
            deep=True,
        )
        self._connections[record.id] = expired
        self._expired_unreported.append(self._copy(expired))

    def _active_for_keys(
        self, keys: Iterable[PairKey], now: datetime, exclude_id: Optional[str] = None
    ) -> Optional[ConnectionRequest]:
        for key in keys:
            existing_id = self._pair_index.get(key)
            if existing_id is None or existing_id == exclude_id:
                continue
            existing = self._connections[existing_id]
            if existing.is_active(now):
                return existing
            # Expired or terminal entries no longer hold the pair.
            if existing.status == ConnectionStatus.PENDING and existing.is_expired(now):
                self._expire_in_place(existing)
            del self._pair_index[key]
        return None

    def insert_connection(self, request: ConnectionRequest, now: datetime) -> ConnectionRequest:
        with self._lock:
            if request.invite_token in self._token_index:
                raise InvalidStateError("Invite token collision; retry the invite.")
            existing = self._active_for_keys(self._candidate_pair_keys(request), now)
            if existing is not None:
                raise DuplicateActiveRelationshipError(
                    "An active connection or pending invitation already exists "
                    "between these patients."
                )
            self._connections[request.id] = self._copy(request)
            self._token_index[request.invite_token] = request.id
            self._pair_index[self._primary_pair_key(request)] = request.id
            return self._copy(request)

    def get_connection(self, request_id: str) -> ConnectionRequest:
        with self._lock:
            record = self._connections.get(request_id)
            if record is None:
                raise NotFoundError(f"Connection request '{request_id}' not found.")
            return self._copy(record)

    def get_connection_by_token(self, token: str) -> ConnectionRequest:
        with self._lock:
            request_id = self._token_index.get(token)
            if request_id is None:
                raise NotFoundError("Invitation not found.")
            return self._copy(self._connections[request_id])

    def update_connection(
        self,
        request_id: str,
        expected_version: int,
        now: datetime,
        **changes: Any,
    ) -> ConnectionRequest:
        """Compare-and-swap a connection request and maintain the pair index.

        Binding ``target_id`` on an email-only invite moves the record to
        the user-id pair key; if another active relationship already holds
        that key the update is rejected without being applied.
        """
        with self._lock:
            current = self._connections.get(request_id)
            if current is None:
                raise NotFoundError(f"Connection request '{request_id}' not found.")
            updated = self._apply(current, expected_version, changes)

            old_key = self._primary_pair_key(current)
            new_key = self._primary_pair_key(updated)
            if updated.is_active(now):
                clash = self._active_for_keys(
                    self._candidate_pair_keys(updated), now, exclude_id=request_id
                )
                if clash is not None:
                    raise DuplicateActiveRelationshipError(
                        "You already have an active connection with this patient."
                    )

            if self._pair_index.get(old_key) == request_id:
                del self._pair_index[old_key]
            if updated.is_active(now):
                self._pair_index[new_key] = request_id

            self._connections[request_id] = updated
            return self._copy(updated)

    def take_expired_connections(self) -> list[ConnectionRequest]:
        """Return and forget the requests expired in place since the last call.

        A write can persist EXPIRED on an unrelated request and still raise
        (the pair is held under another key), so the records are queued here
        rather than returned from the write.
        """
        with self._lock:
            expired, self._expired_unreported = self._expired_unreported, []
            return expired

    def list_connections_for(self, user_id: str) -> list[ConnectionRequest]:
        with self._lock:
            user = self._users.get(user_id)
            email = user.email if user else None
            return [
                self._copy(c) for c in self._connections.values()
                if c.involves(user_id)
                or (c.target_id is None and email is not None and c.target_email == email)
            ]

    def connections_between(self, a: str, b: str) -> list[ConnectionRequest]:
        with self._lock:
            return [
                self._copy(c) for c in self._connections.values()
                if {c.requester_id, c.target_id} == {a, b}
            ]

    # ------------------------------------------------------------------
    # Link tokens and care links
    # ------------------------------------------------------------------

    def add_link_token(self, token: LinkToken) -> LinkToken:
        """Store a link token.  Earlier tokens stay valid until they expire."""
        with self._lock:
            self._link_tokens[token.token] = self._copy(token)
            return self._copy(token)

    def get_link_token(self, token: str) -> Optional[LinkToken]:
        with self._lock:
            record = self._link_tokens.get(token)
            return self._copy(record) if record else None

    def latest_link_token(self, doctor_id: str) -> Optional[LinkToken]:
        with self._lock:
            candidates = [t for t in self._link_tokens.values() if t.doctor_id == doctor_id]
            if not candidates:
                return None
            return self._copy(max(candidates, key=lambda t: t.created_at))

    def upsert_care_link(self, link: CareLink) -> tuple[CareLink, bool]:
        """Insert a care link unless one exists for the pair.

        Returns:
            ``(link, created)`` where ``link`` is the stored record.
        """
        key = (link.doctor_id, link.patient_id)
        with self._lock:
            existing_id = self._care_link_index.get(key)
            if existing_id is not None:
                return self._copy(self._care_links[existing_id]), False
            self._care_links[link.id] = self._copy(link)
            self._care_link_index[key] = link.id
            return self._copy(link), True

    def get_care_link(self, doctor_id: str, patient_id: str) -> Optional[CareLink]:
        with self._lock:
            link_id = self._care_link_index.get((doctor_id, patient_id))
            return self._copy(self._care_links[link_id]) if link_id else None

    def care_links_for_doctor(self, doctor_id: str) -> list[CareLink]:
        with self._lock:
            return [self._copy(l) for l in self._care_links.values() if l.doctor_id == doctor_id]

    def care_links_for_patient(self, patient_id: str) -> list[CareLink]:
        with self._lock:
            return [self._copy(l) for l in self._care_links.values() if l.patient_id == patient_id]

    # ------------------------------------------------------------------
    # Surveys
    # ------------------------------------------------------------------

    def insert_survey(self, survey: SurveyRequest) -> SurveyRequest:
        key = (survey.patient_id, survey.when)
        with self._lock:
            existing_id = self._active_survey_index.get(key)
            if existing_id is not None:
                raise AlreadyActiveError(
                    f"A {survey.when.value} survey is already outstanding for this "
                    "patient; resend it instead of sending a new one."
                )
            self._surveys[survey.id] = self._copy(survey)
            if survey.is_active:
                self._active_survey_index[key] = survey.id
            return self._copy(survey)

    def get_survey(self, survey_id: str) -> SurveyRequest:
        with self._lock:
            record = self._surveys.get(survey_id)
            if record is None:
                raise NotFoundError(f"Survey request '{survey_id}' not found.")
            return self._copy(record)

    def update_survey(
        self, survey_id: str, expected_version: int, **changes: Any
    ) -> SurveyRequest:
        with self._lock:
            current = self._surveys.get(survey_id)
            if current is None:
                raise NotFoundError(f"Survey request '{survey_id}' not found.")
            updated = self._apply(current, expected_version, changes)
            key = (updated.patient_id, updated.when)
            if updated.status == SurveyStatus.COMPLETED and self._active_survey_index.get(key) == survey_id:
                del self._active_survey_index[key]
            self._surveys[survey_id] = updated
            return self._copy(updated)

    def active_survey(self, patient_id: str, when: SurveyOccasion) -> Optional[SurveyRequest]:
        with self._lock:
            survey_id = self._active_survey_index.get((patient_id, when))
            return self._copy(self._surveys[survey_id]) if survey_id else None

    def list_surveys(
        self, doctor_id: Optional[str] = None, patient_id: Optional[str] = None
    ) -> list[SurveyRequest]:
        with self._lock:
            return [
                self._copy(s) for s in self._surveys.values()
                if (doctor_id is None or s.doctor_id == doctor_id)
                and (patient_id is None or s.patient_id == patient_id)
            ]

    # ------------------------------------------------------------------
    # Engagement sessions
    # ------------------------------------------------------------------

    def _check_parties_free(self, session: EngagementSession) -> None:
        for party in session.parties:
            holder = self._busy_index.get(party)
            if holder is not None and holder != session.id:
                raise PartyBusyError(
                    "One of the participants is already on a call. Try again shortly."
                )

    def _reindex_session(self, old: Optional[EngagementSession], new: EngagementSession) -> None:
        if old is not None and old.status in ACTIVE_CALL_STATES:
            for party in old.parties:
                if self._busy_index.get(party) == old.id:
                    del self._busy_index[party]
        if new.status in ACTIVE_CALL_STATES:
            for party in new.parties:
                self._busy_index[party] = new.id
        if new.call_ref is not None:
            self._call_ref_index[new.call_ref] = new.id

    def insert_session(self, session: EngagementSession) -> EngagementSession:
        """Insert a session; CONNECTING sessions atomically claim both parties."""
        with self._lock:
            if session.status in ACTIVE_CALL_STATES:
                self._check_parties_free(session)
            self._sessions[session.id] = self._copy(session)
            self._reindex_session(None, session)
            return self._copy(session)

    def get_session(self, session_id: str) -> EngagementSession:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise NotFoundError(f"Engagement session '{session_id}' not found.")
            return self._copy(record)

    def get_session_by_call_ref(self, call_ref: str) -> EngagementSession:
        with self._lock:
            session_id = self._call_ref_index.get(call_ref)
            if session_id is None:
                raise NotFoundError(f"No session for call '{call_ref}'.")
            return self._copy(self._sessions[session_id])

    def update_session(
        self, session_id: str, expected_version: int, **changes: Any
    ) -> EngagementSession:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(f"Engagement session '{session_id}' not found.")
            updated = self._apply(current, expected_version, changes)
            if updated.status in ACTIVE_CALL_STATES and current.status not in ACTIVE_CALL_STATES:
                self._check_parties_free(updated)
            self._reindex_session(current, updated)
            self._sessions[session_id] = updated
            return self._copy(updated)

    def active_session_for(self, party_id: str) -> Optional[EngagementSession]:
        with self._lock:
            session_id = self._busy_index.get(party_id)
            return self._copy(self._sessions[session_id]) if session_id else None

    def list_sessions(self, party_id: Optional[str] = None) -> list[EngagementSession]:
        with self._lock:
            return [
                self._copy(s) for s in self._sessions.values()
                if party_id is None or s.involves(party_id)
            ]
