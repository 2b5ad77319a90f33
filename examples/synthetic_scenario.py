"""
Synthetic Scenario: Peer Support and Surgical Follow-Up Walkthrough
===================================================================

This script demonstrates the CareBridge coordination core end to end using
entirely synthetic users and stub collaborators.  No real patient data,
PHI or PII is used, and no e-mail, calendar or telephony provider is
contacted.

Steps demonstrated:
  1. Load coordination settings from YAML
  2. Register synthetic patients and doctors
  3. Doctor issues a link token; patient links by scanning it
  4. Doctor sends a pre-operative survey; patient completes it
  5. Patients connect through an e-mail invite
  6. Schedule a call, then call now and walk through provider events
  7. Generate an engagement session report
  8. Export the audit log for compliance review

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carebridge.config import DEFAULT_SETTINGS, load_settings_from_yaml
from carebridge.gateways import (
    RecordingDispatcher,
    StubConferencingBackend,
    StubTelephonyBackend,
)
from carebridge.logging_setup import configure_logging
from carebridge.models import Actor, PatientDemographics, Role, UserAccount, utcnow
from carebridge.service import CareBridgeService


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(label: str, result) -> None:
    if result.ok:
        print(f"{label}: OK")
        for warning in result.warnings:
            print(f"  warning: {warning}")
    else:
        print(f"{label}: {result.kind.value} -- {result.message}")


def main() -> None:
    configure_logging(level=logging.WARNING, json_output=False)

    _banner("CareBridge Synthetic Scenario")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Coordination Settings")

    sample_yaml = Path(__file__).parent / "coordination_settings.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)
        print(f"Loaded settings from {sample_yaml.name} (app_url: {settings.app_url})")
    else:
        settings = DEFAULT_SETTINGS
        print("Using built-in settings.")

    dispatcher = RecordingDispatcher()
    service = CareBridgeService(
        settings=settings,
        dispatcher=dispatcher,
        conferencing=StubConferencingBackend(),
        telephony=StubTelephonyBackend(),
    )

    # ------------------------------------------------------------------
    # Step 2: Users
    # ------------------------------------------------------------------
    _banner("Step 2: Register Synthetic Users")

    knee = PatientDemographics(age=58, gender="female", procedure="knee replacement")
    accounts = [
        UserAccount(user_id="pat_a", email="pat.a@example.org", role=Role.PATIENT,
                    name="Synthetic Patient A", demographics=knee),
        UserAccount(user_id="pat_b", email="pat.b@example.org", role=Role.PATIENT,
                    name="Synthetic Patient B",
                    demographics=knee.model_copy(update={"age": 61})),
        UserAccount(user_id="doc_a", email="doc.a@example.org", role=Role.DOCTOR,
                    name="Synthetic Surgeon"),
    ]
    for account in accounts:
        service.register_user(account)
        print(f"Registered {account.role.value:8s} {account.name}")

    pat_a = Actor(user_id="pat_a", role=Role.PATIENT)
    pat_b = Actor(user_id="pat_b", role=Role.PATIENT)
    doc_a = Actor(user_id="doc_a", role=Role.DOCTOR)

    # ------------------------------------------------------------------
    # Step 3: Care link
    # ------------------------------------------------------------------
    _banner("Step 3: Doctor-Patient Link")

    token = service.issue_link_token(doc_a).value
    print(f"QR code encodes: {token.link_url}")
    _show("Patient A scans the code", service.resolve_link_token(pat_a, token.token))

    # ------------------------------------------------------------------
    # Step 4: Survey
    # ------------------------------------------------------------------
    _banner("Step 4: Pre-Operative Survey")

    survey = service.send_survey(doc_a, "pat_a", "preop").value
    print(f"Survey {survey.form_name} is {survey.status.value}: {survey.survey_link}")
    _show("Sending it again", service.send_survey(doc_a, "pat_a", "preop"))
    _show("Patient A completes it",
          service.record_survey_completion(survey.id, {"pain_score": 3, "mobility": "cane"}))
    analytics = service.survey_analytics(doc_a).value
    print(f"Completion rate: {analytics.overall.completion_rate:.0%}")

    # ------------------------------------------------------------------
    # Step 5: Peer connection
    # ------------------------------------------------------------------
    _banner("Step 5: Peer Connection")

    for match in service.browse_peers(pat_a).value:
        print(f"Peer {match.user.name}: {match.match_percentage}% match")
    invite = service.invite_peer(pat_a, "pat.b@example.org").value
    print(f"Invite sent, expires {invite.expires_at.isoformat()}")
    _show("Call before acceptance", service.call_now(pat_a, "pat_b"))
    _show("Patient B accepts", service.accept_invite(pat_b, invite.invite_token))

    # ------------------------------------------------------------------
    # Step 6: Calls
    # ------------------------------------------------------------------
    _banner("Step 6: Scheduled and Immediate Calls")

    booked = service.schedule_call(pat_b, "pat_a", utcnow() + timedelta(days=2), 45, "video")
    _show("Schedule video call", booked)
    print(f"  meeting link: {booked.value.conferencing_ref}")

    session = service.call_now(pat_a, "pat_b").value
    print(f"Immediate call is {session.status.value} (call_ref {session.call_ref})")
    service.on_call_connected(session.call_ref)
    service.append_transcript_chunk(session.id, 1, "Hi, how is the recovery going?")
    ended = service.on_call_ended(session.call_ref).value
    service.attach_call_artifacts(
        session.id,
        transcript="Hi, how is the recovery going? ...",
        summary="Shared physiotherapy tips.",
    )
    print(f"Call {ended.status.value} ({ended.end_reason.value})")

    # ------------------------------------------------------------------
    # Step 7: Session report
    # ------------------------------------------------------------------
    _banner("Step 7: Engagement Session Report")

    report = service.session_report(pat_a, session.id).value
    print(json.dumps(report.to_dict(), indent=2))

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Audit Export")

    bundle = service.export_audit("synthetic_reviewer")
    meta = bundle["export_metadata"]
    print(f"Entries: {meta['entry_count']}, chain: {meta['chain_integrity']}")
    print(f"Notifications dispatched: {len(dispatcher.sent)}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    main()
