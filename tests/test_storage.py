"""
Tests for carebridge.storage -- In-Memory Transactional Store.

Covers: user registration and lookup, pair uniqueness for connection
requests (both directions, email-keyed invites, lazy expiry), compare-and-
swap updates, care-link upsert, the active-survey index, the busy-party
index and call-ref lookup, and copy-on-read isolation.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from carebridge.errors import (
    AlreadyActiveError,
    DuplicateActiveRelationshipError,
    InvalidStateError,
    NotFoundError,
    PartyBusyError,
)
from carebridge.models import (
    CareLink,
    ConnectionRequest,
    ConnectionStatus,
    EngagementSession,
    Role,
    SessionKind,
    SessionStatus,
    SurveyOccasion,
    SurveyRequest,
    SurveyStatus,
    UserAccount,
)
from carebridge.storage import InMemoryStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_user(store: InMemoryStore, user_id: str, role: Role = Role.PATIENT) -> UserAccount:
    return store.add_user(UserAccount(user_id=user_id, email=f"{user_id}@example.com", role=role))


def _make_request(
    requester_id: str = "alice",
    target_id: str | None = "bob",
    target_email: str | None = "bob@example.com",
    **kwargs,
) -> ConnectionRequest:
    defaults = {"created_at": NOW, "expires_at": NOW + timedelta(days=7)}
    defaults.update(kwargs)
    return ConnectionRequest(
        requester_id=requester_id, target_id=target_id, target_email=target_email, **defaults
    )


def _make_session(a: str = "alice", b: str = "bob", **kwargs) -> EngagementSession:
    defaults = {"kind": SessionKind.PATIENT_PATIENT, "status": SessionStatus.CONNECTING}
    defaults.update(kwargs)
    return EngagementSession(party_a_id=a, party_b_id=b, **defaults)


@pytest.fixture
def populated() -> InMemoryStore:
    store = InMemoryStore()
    for user_id in ("alice", "bob", "carol"):
        _make_user(store, user_id)
    _make_user(store, "dr_who", Role.DOCTOR)
    return store


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class TestUsers:
    def test_email_is_lowercased_and_unique(self):
        store = InMemoryStore()
        store.add_user(UserAccount(user_id="u1", email="Alice@Example.COM", role=Role.PATIENT))
        assert store.get_user_by_email("alice@example.com").user_id == "u1"
        with pytest.raises(ValueError):
            store.add_user(UserAccount(user_id="u2", email="alice@example.com", role=Role.PATIENT))

    def test_list_users_by_role(self, populated):
        assert {u.user_id for u in populated.list_users(Role.DOCTOR)} == {"dr_who"}
        assert len(populated.list_users()) == 4

    def test_unknown_user_is_none(self, populated):
        assert populated.get_user("nobody") is None
        assert populated.get_user_by_email("nobody@example.com") is None


# ---------------------------------------------------------------------------
# 2. Connection pair uniqueness
# ---------------------------------------------------------------------------

class TestConnectionPairIndex:
    def test_second_request_same_direction_rejected(self, populated):
        populated.insert_connection(_make_request(), NOW)
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.insert_connection(_make_request(), NOW)

    def test_reverse_direction_rejected(self, populated):
        populated.insert_connection(_make_request(), NOW)
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.insert_connection(
                _make_request("bob", "alice", "alice@example.com"), NOW
            )

    def test_email_only_invite_blocks_invite_by_id(self, populated):
        populated.insert_connection(_make_request(target_id=None), NOW)
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.insert_connection(_make_request(), NOW)

    def test_email_only_invite_blocks_reverse_invite(self, populated):
        populated.insert_connection(_make_request(target_id=None), NOW)
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.insert_connection(
                _make_request("bob", "alice", "alice@example.com"), NOW
            )

    def test_expired_request_frees_pair_and_is_persisted(self, populated):
        old = populated.insert_connection(_make_request(), NOW)
        later = NOW + timedelta(days=8)
        populated.insert_connection(_make_request(created_at=later,
                                                  expires_at=later + timedelta(days=7)), later)
        assert populated.get_connection(old.id).status == ConnectionStatus.EXPIRED

    def test_stored_expiry_is_handed_out_once(self, populated):
        old = populated.insert_connection(_make_request(), NOW)
        later = NOW + timedelta(days=8)
        populated.insert_connection(_make_request(created_at=later,
                                                  expires_at=later + timedelta(days=7)), later)
        assert [r.id for r in populated.take_expired_connections()] == [old.id]
        assert populated.take_expired_connections() == []

    def test_declined_request_frees_pair(self, populated):
        req = populated.insert_connection(_make_request(), NOW)
        populated.update_connection(req.id, req.version, NOW, status=ConnectionStatus.DECLINED)
        populated.insert_connection(_make_request(), NOW)

    def test_other_pairs_unaffected(self, populated):
        populated.insert_connection(_make_request(), NOW)
        populated.insert_connection(_make_request("alice", "carol", "carol@example.com"), NOW)

    def test_lookup_by_token(self, populated):
        req = populated.insert_connection(_make_request(), NOW)
        assert populated.get_connection_by_token(req.invite_token).id == req.id
        with pytest.raises(NotFoundError):
            populated.get_connection_by_token("nope")

    def test_list_connections_includes_unbound_email_invites(self, populated):
        req = populated.insert_connection(_make_request(target_id=None), NOW)
        assert [r.id for r in populated.list_connections_for("bob")] == [req.id]
        assert populated.list_connections_for("carol") == []

    def test_concurrent_inserts_only_one_wins(self, populated):
        results: list[str] = []
        barrier = threading.Barrier(8)

        def _invite() -> None:
            barrier.wait()
            try:
                populated.insert_connection(_make_request(), NOW)
                results.append("ok")
            except DuplicateActiveRelationshipError:
                results.append("dup")

        threads = [threading.Thread(target=_invite) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count("ok") == 1


# ---------------------------------------------------------------------------
# 3. Compare-and-swap
# ---------------------------------------------------------------------------

class TestCompareAndSwap:
    def test_update_bumps_version(self, populated):
        req = populated.insert_connection(_make_request(), NOW)
        updated = populated.update_connection(req.id, req.version, NOW,
                                              status=ConnectionStatus.CONFIRMED)
        assert updated.version == req.version + 1

    def test_stale_version_rejected_and_not_applied(self, populated):
        req = populated.insert_connection(_make_request(), NOW)
        populated.update_connection(req.id, req.version, NOW, status=ConnectionStatus.CONFIRMED)
        with pytest.raises(InvalidStateError):
            populated.update_connection(req.id, req.version, NOW,
                                        status=ConnectionStatus.DECLINED)
        assert populated.get_connection(req.id).status == ConnectionStatus.CONFIRMED

    def test_binding_email_invite_clashing_with_active_pair_rejected(self, populated):
        direct = populated.insert_connection(_make_request(), NOW)
        populated.update_connection(direct.id, direct.version, NOW,
                                    status=ConnectionStatus.CONFIRMED)
        # An invite to an unregistered address bob later accepts.
        email_invite = populated.insert_connection(
            _make_request("alice", None, "bob.work@example.com"), NOW
        )
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.update_connection(email_invite.id, email_invite.version, NOW,
                                        target_id="bob", status=ConnectionStatus.CONFIRMED)
        assert populated.get_connection(email_invite.id).status == ConnectionStatus.PENDING

    def test_binding_email_invite_to_new_pair(self, populated):
        email_invite = populated.insert_connection(
            _make_request("carol", None, "bob@example.com"), NOW
        )
        bound = populated.update_connection(email_invite.id, email_invite.version, NOW,
                                            target_id="bob", status=ConnectionStatus.CONFIRMED)
        assert bound.target_id == "bob"
        with pytest.raises(DuplicateActiveRelationshipError):
            populated.insert_connection(_make_request("bob", "carol", "carol@example.com"), NOW)

    def test_reads_are_copies(self, populated):
        req = populated.insert_connection(_make_request(), NOW)
        fetched = populated.get_connection(req.id)
        fetched.status = ConnectionStatus.CONFIRMED
        assert populated.get_connection(req.id).status == ConnectionStatus.PENDING


# ---------------------------------------------------------------------------
# 4. Care links
# ---------------------------------------------------------------------------

class TestCareLinks:
    def test_upsert_is_idempotent(self, populated):
        first, created = populated.upsert_care_link(
            CareLink(doctor_id="dr_who", patient_id="alice")
        )
        second, created_again = populated.upsert_care_link(
            CareLink(doctor_id="dr_who", patient_id="alice")
        )
        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert len(populated.care_links_for_doctor("dr_who")) == 1


# ---------------------------------------------------------------------------
# 5. Active survey index
# ---------------------------------------------------------------------------

class TestSurveyIndex:
    def test_one_active_survey_per_patient_and_occasion(self, populated):
        populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_who"))
        with pytest.raises(AlreadyActiveError):
            populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_other"))

    def test_other_occasion_allowed(self, populated):
        populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_who"))
        populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_who",
                                              when=SurveyOccasion.POSTOP))

    def test_completion_frees_the_slot(self, populated):
        survey = populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_who"))
        populated.update_survey(survey.id, survey.version, status=SurveyStatus.COMPLETED)
        assert populated.active_survey("alice", SurveyOccasion.PREOP) is None
        populated.insert_survey(SurveyRequest(patient_id="alice", doctor_id="dr_who"))


# ---------------------------------------------------------------------------
# 6. Busy index and call refs
# ---------------------------------------------------------------------------

class TestSessionIndexes:
    def test_connecting_session_claims_both_parties(self, populated):
        session = populated.insert_session(_make_session())
        assert populated.active_session_for("alice").id == session.id
        assert populated.active_session_for("bob").id == session.id

    def test_busy_party_rejected(self, populated):
        populated.insert_session(_make_session())
        with pytest.raises(PartyBusyError):
            populated.insert_session(_make_session("carol", "bob"))

    def test_scheduled_sessions_do_not_claim(self, populated):
        populated.insert_session(_make_session(status=SessionStatus.SCHEDULED))
        populated.insert_session(_make_session(status=SessionStatus.SCHEDULED))
        assert populated.active_session_for("alice") is None

    def test_ending_releases_parties(self, populated):
        session = populated.insert_session(_make_session())
        populated.update_session(session.id, session.version, status=SessionStatus.ENDED)
        assert populated.active_session_for("alice") is None
        populated.insert_session(_make_session("carol", "bob"))

    def test_entering_connecting_checks_busy(self, populated):
        populated.insert_session(_make_session())
        scheduled = populated.insert_session(
            _make_session("carol", "bob", status=SessionStatus.SCHEDULED)
        )
        with pytest.raises(PartyBusyError):
            populated.update_session(scheduled.id, scheduled.version,
                                     status=SessionStatus.CONNECTING)
        assert populated.get_session(scheduled.id).status == SessionStatus.SCHEDULED

    def test_call_ref_lookup(self, populated):
        session = populated.insert_session(_make_session())
        populated.update_session(session.id, session.version, call_ref="CA123")
        assert populated.get_session_by_call_ref("CA123").id == session.id
        with pytest.raises(NotFoundError):
            populated.get_session_by_call_ref("CA999")
