"""
Engagement Session Report Generator.

Builds a structured summary of one engagement session for the parties and
their care team: who took part, a timeline of state transitions, how the
call ended and which post-call artifacts are on file.  Transcript and
summary text are never copied into the report, only their availability.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from carebridge.models import EngagementSession, SessionStatus


class SessionReport:
    """A structured timeline report for one engagement session."""

    def __init__(
        self,
        session_id: str,
        kind: str,
        mode: str,
        parties: list[str],
        current_state: str,
        end_reason: Optional[str],
        duration_seconds: Optional[float],
        timeline: list[dict[str, str]],
        artifacts: dict[str, bool],
        warnings: list[str],
        generated_at: str,
    ) -> None:
        self.session_id = session_id
        self.kind = kind
        self.mode = mode
        self.parties = parties
        self.current_state = current_state
        self.end_reason = end_reason
        self.duration_seconds = duration_seconds
        self.timeline = timeline
        self.artifacts = artifacts
        self.warnings = warnings
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Engagement Session Report",
            "session_id": self.session_id,
            "kind": self.kind,
            "mode": self.mode,
            "parties": self.parties,
            "current_state": self.current_state,
            "end_reason": self.end_reason,
            "duration_seconds": self.duration_seconds,
            "timeline": self.timeline,
            "artifacts": self.artifacts,
            "warnings": self.warnings,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return f"SessionReport(session_id={self.session_id}, state={self.current_state})"


def generate_session_report(
    session: EngagementSession,
    generated_at: Optional[datetime] = None,
) -> SessionReport:
    """Generate a timeline report from an engagement session.

    Args:
        session: The session to report on.
        generated_at: Report timestamp; defaults to now (UTC).

    Returns:
        A ``SessionReport`` instance.
    """
    warnings = [w for w in (session.conferencing_error, session.delivery_error) if w]
    return SessionReport(
        session_id=session.id,
        kind=session.kind.value,
        mode=session.mode.value,
        parties=[session.party_a_id, session.party_b_id],
        current_state=session.status.value,
        end_reason=session.end_reason.value if session.end_reason else None,
        duration_seconds=session.duration_seconds,
        timeline=_build_timeline(session),
        artifacts={
            "transcript": session.transcript is not None,
            "summary": session.summary is not None,
            "transcript_chunks": bool(session.transcript_chunks),
            "meeting_link": session.conferencing_ref is not None,
        },
        warnings=warnings,
        generated_at=(generated_at or datetime.now(timezone.utc)).isoformat(),
    )


def _build_timeline(session: EngagementSession) -> list[dict[str, str]]:
    """Build a chronological timeline of session state transitions."""
    events: list[dict[str, str]] = []

    if session.scheduled_at:
        events.append({
            "state": SessionStatus.SCHEDULED.value,
            "timestamp": session.created_at.isoformat(),
            "description": (
                f"Booked for {session.scheduled_at.isoformat()} "
                f"({session.duration_minutes} minutes)."
            ),
        })
    if session.connecting_at:
        events.append({
            "state": SessionStatus.CONNECTING.value,
            "timestamp": session.connecting_at.isoformat(),
            "description": f"Dial-out started by {session.party_a_id}.",
        })
    if session.started_at:
        events.append({
            "state": SessionStatus.LIVE.value,
            "timestamp": session.started_at.isoformat(),
            "description": "Call connected.",
        })
    if session.ended_at:
        reason = session.end_reason.value if session.end_reason else "unknown"
        events.append({
            "state": SessionStatus.ENDED.value,
            "timestamp": session.ended_at.isoformat(),
            "description": f"Call ended ({reason}).",
        })
    if session.cancelled_at:
        events.append({
            "state": SessionStatus.CANCELLED.value,
            "timestamp": session.cancelled_at.isoformat(),
            "description": f"Cancelled by {session.cancelled_by or 'unknown'}.",
        })

    return events
