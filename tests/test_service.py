"""
Tests for carebridge.service -- the Result-returning facade.

Covers: Ok / Err conversion, warnings for degraded side effects, actor
resolution (explicit, identity gateway, unauthenticated), RBAC denial,
cross-ledger effects, and end-to-end flows across connections, care
links, surveys and calls.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from carebridge.audit import AuditEventType
from carebridge.errors import NO_LONGER_AVAILABLE, Err, ErrorKind, Ok
from carebridge.gateways import StaticIdentityGateway
from carebridge.models import (
    Actor,
    ConnectionStatus,
    EndReason,
    PatientDemographics,
    Role,
    SessionStatus,
    SurveyStatus,
    UserAccount,
)
from carebridge.service import CareBridgeService

ALICE = Actor(user_id="alice", role=Role.PATIENT)
BOB = Actor(user_id="bob", role=Role.PATIENT)
CAROL = Actor(user_id="carol", role=Role.PATIENT)
DR_WHO = Actor(user_id="dr_who", role=Role.DOCTOR)
DR_NO = Actor(user_id="dr_no", role=Role.DOCTOR)


def _register_all(service: CareBridgeService) -> None:
    for actor in (ALICE, BOB, CAROL, DR_WHO, DR_NO):
        service.register_user(UserAccount(
            user_id=actor.user_id,
            email=f"{actor.user_id}@example.com",
            role=actor.role,
            name=actor.user_id.title(),
            demographics=PatientDemographics(procedure="knee replacement", age=50),
        ))


@pytest.fixture
def svc(service) -> CareBridgeService:
    _register_all(service)
    return service


def _connect(svc: CareBridgeService, a: Actor, b: Actor) -> None:
    invite = svc.invite_peer(a, b.user_id).value
    assert svc.accept_invite(b, invite.invite_token).ok


# ---------------------------------------------------------------------------
# 1. Result conversion
# ---------------------------------------------------------------------------

class TestResults:
    def test_success_is_ok_without_warnings(self, svc):
        result = svc.invite_peer(ALICE, "bob")
        assert isinstance(result, Ok)
        assert result.warnings == []
        assert result.value.status == ConnectionStatus.PENDING

    def test_failure_is_err_with_kind(self, svc):
        result = svc.invite_peer(ALICE, "alice")
        assert isinstance(result, Err)
        assert result.kind == ErrorKind.FORBIDDEN

    def test_invalid_state_message_is_generic(self, svc):
        invite = svc.invite_peer(ALICE, "bob").value
        svc.accept_invite(BOB, invite.invite_token)
        result = svc.accept_invite(BOB, invite.invite_token)
        assert result.kind == ErrorKind.INVALID_STATE
        assert result.message == NO_LONGER_AVAILABLE

    def test_undelivered_invite_is_ok_with_warning(self, svc, dispatcher):
        dispatcher.fail = True
        result = svc.invite_peer(ALICE, "bob")
        assert result.ok
        assert result.warnings[0].startswith("Notification was not delivered")

    def test_unexpected_errors_propagate(self, svc):
        with pytest.raises(ValueError):
            svc.send_survey(DR_WHO, "alice", "during")

    def test_duplicate_registration_rejected(self, svc):
        with pytest.raises(ValueError):
            svc.register_user(UserAccount(user_id="alice2", email="alice@example.com",
                                          role=Role.PATIENT))


# ---------------------------------------------------------------------------
# 2. Actor resolution and RBAC
# ---------------------------------------------------------------------------

class TestActors:
    def test_unauthenticated_call_forbidden(self, svc):
        result = svc.invite_peer(None, "bob")
        assert result.kind == ErrorKind.FORBIDDEN
        assert result.message == "Sign in to continue."

    def test_identity_gateway_supplies_actor(self, store, audit_log, dispatcher, clock):
        identity = StaticIdentityGateway(ALICE)
        service = CareBridgeService(store=store, audit_log=audit_log, identity=identity,
                                    dispatcher=dispatcher, clock=clock)
        _register_all(service)
        assert service.invite_peer(None, "bob").value.requester_id == "alice"
        identity.sign_out()
        assert service.invite_peer(None, "carol").kind == ErrorKind.FORBIDDEN

    def test_unregistered_actor_forbidden(self, svc):
        ghost = Actor(user_id="ghost", role=Role.PATIENT)
        assert svc.list_connections(ghost).kind == ErrorKind.FORBIDDEN

    def test_role_mismatch_forbidden(self, svc):
        fake = Actor(user_id="alice", role=Role.DOCTOR)
        assert svc.issue_link_token(fake).kind == ErrorKind.FORBIDDEN

    @pytest.mark.parametrize("call", [
        lambda s: s.invite_peer(DR_WHO, "bob"),
        lambda s: s.issue_link_token(ALICE),
        lambda s: s.send_survey(ALICE, "bob", "preop"),
        lambda s: s.survey_analytics(BOB),
        lambda s: s.browse_peers(DR_NO),
    ])
    def test_rbac_denials(self, svc, call):
        assert call(svc).kind == ErrorKind.FORBIDDEN

    def test_outsider_cannot_view_call(self, svc, clock):
        session = svc.schedule_call(DR_WHO, "dr_no", clock.now + timedelta(days=1)).value
        assert svc.get_call(ALICE, session.id).kind == ErrorKind.FORBIDDEN
        assert svc.get_call(DR_NO, session.id).value.id == session.id


# ---------------------------------------------------------------------------
# 3. Peer connections
# ---------------------------------------------------------------------------

class TestConnections:
    def test_email_invite_binds_on_accept_and_blocks_reverse(self, svc, store):
        store.add_user(UserAccount(user_id="dave", email="dave@example.com",
                                   role=Role.PATIENT))
        invite = svc.invite_peer(ALICE, "dave.home@example.org").value
        assert invite.target_id is None

        dave = Actor(user_id="dave", role=Role.PATIENT)
        accepted = svc.accept_invite(dave, invite.invite_token).value
        assert accepted.target_id == "dave"
        assert accepted.status == ConnectionStatus.CONFIRMED

        reverse = svc.invite_peer(dave, "alice")
        assert reverse.kind == ErrorKind.DUPLICATE_ACTIVE_RELATIONSHIP

    def test_decline_invite(self, svc):
        invite = svc.invite_peer(ALICE, "bob").value
        assert svc.decline_invite(BOB, invite.invite_token).value.status == ConnectionStatus.DECLINED

    def test_expired_invite_message_guides_user(self, svc, clock):
        invite = svc.invite_peer(ALICE, "bob").value
        clock.advance(days=8)
        result = svc.accept_invite(BOB, invite.invite_token)
        assert result.kind == ErrorKind.EXPIRED
        assert "new invitation" in result.message

    def test_cancel_confirmed_connection_cancels_booked_calls(self, svc, clock):
        invite = svc.invite_peer(ALICE, "bob").value
        svc.accept_invite(BOB, invite.invite_token)
        session = svc.schedule_call(BOB, "alice", clock.now + timedelta(days=2)).value

        assert svc.cancel_connection(ALICE, invite.id).ok
        assert svc.get_call(BOB, session.id).value.status == SessionStatus.CANCELLED
        assert svc.schedule_call(BOB, "alice", clock.now + timedelta(days=3)).kind == \
            ErrorKind.NOT_CONNECTED

    def test_browse_peers_ranks_other_patients(self, svc):
        peers = svc.browse_peers(ALICE).value
        assert {p.user.user_id for p in peers} == {"bob", "carol"}
        assert all(p.match_percentage == 80 for p in peers)


# ---------------------------------------------------------------------------
# 4. Care links and surveys
# ---------------------------------------------------------------------------

class TestCareLinksAndSurveys:
    def test_link_then_survey_lifecycle(self, svc, dispatcher):
        token = svc.issue_link_token(DR_WHO).value
        assert svc.verify_link_token(token.token).value == ("dr_who", False)
        assert svc.resolve_link_token(ALICE, token.token).ok
        assert svc.verify_link_token(token.token, ALICE).value == ("dr_who", True)
        assert [l.patient_id for l in svc.list_linked_patients(DR_WHO).value] == ["alice"]

        survey = svc.send_survey(DR_WHO, "alice", "preop").value
        assert survey.status == SurveyStatus.SENT
        again = svc.send_survey(DR_WHO, "alice", "preop")
        assert again.kind == ErrorKind.ALREADY_ACTIVE
        assert len(svc.list_surveys(ALICE).value) == 1

        done = svc.record_survey_completion(survey.id, {"pain": 2}).value
        assert done.status == SurveyStatus.COMPLETED
        assert svc.survey_analytics(DR_WHO).value.overall.completed == 1

    def test_survey_without_link(self, svc):
        assert svc.send_survey(DR_NO, "bob", "postop").kind == ErrorKind.NOT_LINKED

    def test_undelivered_survey_warns(self, svc, dispatcher):
        svc.resolve_link_token(ALICE, svc.issue_link_token(DR_WHO).value.token)
        dispatcher.fail = True
        result = svc.send_survey(DR_WHO, "alice", "other")
        assert result.ok
        assert result.value.status == SurveyStatus.PENDING
        assert len(result.warnings) == 1


# ---------------------------------------------------------------------------
# 5. Calls
# ---------------------------------------------------------------------------

class TestCalls:
    def test_schedule_requires_accepted_connection(self, svc, clock):
        invite = svc.invite_peer(ALICE, "bob").value
        when = clock.now + timedelta(days=1)
        assert svc.schedule_call(ALICE, "bob", when).kind == ErrorKind.NOT_CONNECTED
        svc.accept_invite(BOB, invite.invite_token)
        assert svc.schedule_call(ALICE, "bob", when).value.status == SessionStatus.SCHEDULED

    def test_call_now_between_pending_parties(self, svc):
        svc.invite_peer(ALICE, "bob")
        assert svc.call_now(ALICE, "bob").kind == ErrorKind.NOT_CONNECTED

    def test_conferencing_failure_warns_and_retry_reports_upstream(self, svc, conferencing, clock):
        conferencing.fail = True
        result = svc.schedule_call(DR_WHO, "dr_no", clock.now + timedelta(days=1))
        assert result.ok
        assert "meeting link" in result.warnings[0]
        retry = svc.retry_conferencing(DR_NO, result.value.id)
        assert retry.kind == ErrorKind.UPSTREAM_UNAVAILABLE

    def test_past_time_message(self, svc, clock):
        result = svc.schedule_call(DR_WHO, "dr_no", clock.now - timedelta(hours=1))
        assert result.kind == ErrorKind.INVALID_TIME
        assert "Pick a new time" in result.message

    def test_full_call_with_artifacts_and_report(self, svc, clock):
        _connect(svc, ALICE, BOB)
        session = svc.call_now(ALICE, "bob", "video").value

        svc.on_call_connected(session.call_ref)
        svc.append_transcript_chunk(session.id, 1, "hello")
        clock.advance(minutes=5)
        ended = svc.on_call_ended(session.call_ref).value
        assert ended.duration_seconds == 300
        svc.attach_call_artifacts(session.id, transcript="hello", summary="greeting")

        report = svc.session_report(BOB, session.id).value.to_dict()
        assert [e["state"] for e in report["timeline"]] == ["CONNECTING", "LIVE", "ENDED"]
        assert report["artifacts"]["summary"] is True

    def test_busy_party(self, svc):
        _connect(svc, ALICE, BOB)
        _connect(svc, CAROL, BOB)
        svc.call_now(ALICE, "bob")
        assert svc.call_now(CAROL, "bob").kind == ErrorKind.PARTY_BUSY

    def test_dial_failure_warns(self, svc, telephony):
        telephony.fail = True
        result = svc.call_now(DR_WHO, "dr_no")
        assert result.ok
        assert result.value.end_reason == EndReason.DIAL_FAILED
        assert "could not be placed" in result.warnings[0]

    def test_end_call_and_list(self, svc):
        session = svc.call_now(DR_WHO, "dr_no").value
        assert svc.end_call(DR_NO, session.id).value.end_reason == EndReason.ENDED_BY_PARTY
        assert [s.id for s in svc.list_calls(DR_WHO).value] == [session.id]

    def test_cancel_then_start_is_invalid_state(self, svc, clock):
        session = svc.schedule_call(DR_WHO, "dr_no", clock.now + timedelta(days=1)).value
        assert svc.cancel_call(DR_NO, session.id).ok
        result = svc.start_scheduled_call(DR_WHO, session.id)
        assert result.kind == ErrorKind.INVALID_STATE

    def test_sweep_stale_calls(self, svc, clock):
        session = svc.call_now(DR_WHO, "dr_no").value
        clock.advance(hours=1)
        swept = svc.sweep_stale_calls()
        assert [s.id for s in swept] == [session.id]

    def test_unknown_call_ref_is_not_found(self, svc):
        assert svc.on_call_connected("missing").kind == ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# 6. Audit export
# ---------------------------------------------------------------------------

class TestAuditExport:
    def test_export_redacts_and_is_audited(self, svc, audit_log):
        svc.invite_peer(ALICE, "someone@else.org")
        bundle = svc.export_audit("reviewer_1")
        invite_entry = next(e for e in bundle["entries"]
                            if e["event_type"] == AuditEventType.CONNECTION_INVITE_SENT.value)
        assert invite_entry["metadata"]["target_email"] == "[REDACTED]"
        assert bundle["export_metadata"]["chain_integrity"] == "VALID"
        assert audit_log.query(event_type=AuditEventType.AUDIT_EXPORTED)[0].actor_id == "reviewer_1"

    def test_export_window_follows_service_clock(self, svc, clock):
        svc.invite_peer(ALICE, "bob")
        clock.advance(days=3)
        svc.issue_link_token(DR_WHO)
        clock.advance(days=3)

        bundle = svc.export_audit("reviewer_1", time_start=clock.now - timedelta(days=4),
                                  time_end=clock.now)
        assert [e["event_type"] for e in bundle["entries"]] == [
            AuditEventType.LINK_TOKEN_ISSUED.value
        ]
