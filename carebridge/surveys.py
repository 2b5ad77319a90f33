"""
Survey Orchestrator -- Outcome-Survey Dispatch and Completion Tracking.

**State machine:**

    PENDING -> SENT -> COMPLETED
    PENDING -> COMPLETED      (patient reached the form by another route)

A survey can only be sent by a doctor with a ``CareLink`` to the patient.
At most one non-completed survey exists per (patient, occasion); the store
rejects a second one with ``AlreadyActiveError``.

**Resend policy:** replace in place.  ``resend()`` re-dispatches the
notification for the existing record and overwrites ``sent_at``; it never
creates a second record.  It is also how a first dispatch that failed is
retried -- such a survey stays PENDING with ``delivery_error`` set.

Completion arrives from the external survey-intake boundary through
``record_completion()``, which is a compare-and-swap: a second completion
for the same survey fails with ``InvalidStateError`` and leaves the stored
responses untouched.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from carebridge.audit import AuditEventType, AuditLog
from carebridge.config import DEFAULT_SETTINGS, CoordinationSettings
from carebridge.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    NotLinkedError,
)
from carebridge.gateways import NotificationDispatcher, dispatch_notification
from carebridge.models import (
    Role,
    SurveyOccasion,
    SurveyRequest,
    SurveyStatus,
    UserAccount,
    utcnow,
)
from carebridge.storage import InMemoryStore

logger = structlog.get_logger(__name__)

_OCCASION_LABELS = {
    SurveyOccasion.PREOP: "Pre-Operative",
    SurveyOccasion.POSTOP: "Post-Operative",
    SurveyOccasion.OTHER: "Follow-Up",
}


# ---------------------------------------------------------------------------
# Analytics models
# ---------------------------------------------------------------------------

class OccasionStats(BaseModel):
    """Completion figures for one slice of surveys."""

    total: int = 0
    completed: int = 0
    pending: int = Field(default=0, description="Not yet completed, sent or not.")
    completion_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_latency_seconds: Optional[float] = Field(
        default=None,
        description=(
            "Mean of completed_at - sent_at over completed surveys that were "
            "sent.  None when no such survey exists."
        ),
    )


class SurveyAnalytics(BaseModel):
    doctor_id: str
    patient_id: Optional[str] = None
    overall: OccasionStats
    by_occasion: dict[SurveyOccasion, OccasionStats]


def _stats_for(surveys: list[SurveyRequest]) -> OccasionStats:
    total = len(surveys)
    completed = [s for s in surveys if s.status == SurveyStatus.COMPLETED]
    latencies = [
        (s.completed_at - s.sent_at).total_seconds()
        for s in completed
        if s.sent_at is not None and s.completed_at is not None
    ]
    return OccasionStats(
        total=total,
        completed=len(completed),
        pending=total - len(completed),
        completion_rate=(len(completed) / total) if total else 0.0,
        average_latency_seconds=(sum(latencies) / len(latencies)) if latencies else None,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SurveyOrchestrator:
    """Owns ``SurveyRequest`` records."""

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

    def _require_user(self, user_id: str, role: Role) -> UserAccount:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"{role.value.title()} '{user_id}' not found.")
        if user.role != role:
            raise ForbiddenError(f"User '{user_id}' is not a {role.value}.")
        return user

    def _dispatch(self, survey: SurveyRequest, doctor: UserAccount) -> SurveyRequest:
        """Send the survey link and move the record to SENT on acceptance."""
        patient = self._store.get_user(survey.patient_id)
        ticket, error = dispatch_notification(
            self._dispatcher,
            patient.email if patient else None,
            "survey",
            {
                "survey_link": survey.survey_link,
                "doctor_name": doctor.name,
                "occasion": _OCCASION_LABELS[survey.when],
                "form_name": survey.form_name,
            },
        )
        now = self._clock()
        if error is None:
            changes: dict[str, Any] = {
                "status": SurveyStatus.SENT,
                "sent_at": now,
                "send_count": survey.send_count + 1,
                "delivery_error": None,
            }
        else:
            self._audit_log.record(
                event_type=AuditEventType.NOTIFICATION_FAILED,
                actor_id=doctor.user_id,
                actor_role=Role.DOCTOR.value,
                target_entity=survey.id,
                metadata={"template_kind": "survey", "error": error},
                timestamp=self._clock(),
            )
            changes = {"delivery_error": error}

        try:
            updated = self._store.update_survey(survey.id, survey.version, **changes)
        except InvalidStateError:
            # Completed while the link was being delivered; keep the completion.
            logger.info("Skipped survey send bookkeeping", survey_id=survey.id)
            return self._store.get_survey(survey.id)

        if error is None:
            self._audit_log.record(
                event_type=AuditEventType.SURVEY_SENT,
                actor_id=doctor.user_id,
                actor_role=Role.DOCTOR.value,
                target_entity=survey.id,
                metadata={
                    "patient_id": survey.patient_id,
                    "when": survey.when.value,
                    "send_count": updated.send_count,
                    "ticket_id": ticket.ticket_id,
                },
                timestamp=self._clock(),
            )
        return updated

    # -- lifecycle operations --

    def send(
        self,
        doctor_id: str,
        patient_id: str,
        when: SurveyOccasion | str,
        form_name: Optional[str] = None,
    ) -> SurveyRequest:
        """Assign a survey to a linked patient and dispatch its link.

        Raises:
            NotFoundError: Unknown doctor or patient.
            NotLinkedError: No CareLink between doctor and patient.
            AlreadyActiveError: A non-completed survey exists for
                (patient, when); use ``resend()``.
        """
        when = SurveyOccasion(when)
        doctor = self._require_user(doctor_id, Role.DOCTOR)
        self._require_user(patient_id, Role.PATIENT)
        if self._store.get_care_link(doctor_id, patient_id) is None:
            raise NotLinkedError(
                "This patient is not linked to you. Ask them to scan your link code first."
            )

        survey = SurveyRequest(
            patient_id=patient_id,
            doctor_id=doctor_id,
            when=when,
            form_name=form_name or f"{when.value}_survey",
            created_at=self._clock(),
        )
        survey.survey_link = self._settings.survey_url(survey.id)
        survey = self._store.insert_survey(survey)

        self._audit_log.record(
            event_type=AuditEventType.SURVEY_CREATED,
            actor_id=doctor_id,
            actor_role=Role.DOCTOR.value,
            target_entity=survey.id,
            metadata={"patient_id": patient_id, "when": when.value},
            timestamp=self._clock(),
        )
        logger.info("Survey created", survey_id=survey.id, doctor_id=doctor_id,
                    patient_id=patient_id, when=when.value)
        return self._dispatch(survey, doctor)

    def resend(self, survey_id: str, doctor_id: str) -> SurveyRequest:
        """Re-dispatch an outstanding survey in place.

        Raises:
            ForbiddenError: The survey belongs to another doctor.
            InvalidStateError: The survey is already completed.
        """
        survey = self._store.get_survey(survey_id)
        if survey.doctor_id != doctor_id:
            raise ForbiddenError("Only the doctor who assigned this survey can resend it.")
        if survey.status == SurveyStatus.COMPLETED:
            raise InvalidStateError(f"Survey {survey_id} is already completed.")
        doctor = self._require_user(doctor_id, Role.DOCTOR)
        return self._dispatch(survey, doctor)

    def record_completion(self, survey_id: str, response_data: dict[str, Any]) -> SurveyRequest:
        """Store the patient's responses and mark the survey COMPLETED.

        Raises:
            NotFoundError: Unknown survey id.
            InvalidStateError: Already completed (responses are not replaced).
        """
        survey = self._store.get_survey(survey_id)
        if survey.status == SurveyStatus.COMPLETED:
            raise InvalidStateError(f"Survey {survey_id} is already completed.")

        updated = self._store.update_survey(
            survey.id,
            survey.version,
            status=SurveyStatus.COMPLETED,
            completed_at=self._clock(),
            response_data=dict(response_data),
        )
        self._audit_log.record(
            event_type=AuditEventType.SURVEY_COMPLETED,
            actor_id="SYSTEM",
            actor_role="SYSTEM",
            target_entity=survey.id,
            metadata={
                "doctor_id": survey.doctor_id,
                "patient_id": survey.patient_id,
                "when": survey.when.value,
                "field_count": len(response_data),
            },
            timestamp=self._clock(),
        )
        logger.info("Survey completed", survey_id=survey.id, when=survey.when.value)
        return updated

    # -- queries --

    def get(self, survey_id: str) -> SurveyRequest:
        return self._store.get_survey(survey_id)

    def list_for_patient(self, patient_id: str) -> list[SurveyRequest]:
        return sorted(self._store.list_surveys(patient_id=patient_id),
                      key=lambda s: s.created_at, reverse=True)

    def list_for_doctor(self, doctor_id: str) -> list[SurveyRequest]:
        return sorted(self._store.list_surveys(doctor_id=doctor_id),
                      key=lambda s: s.created_at, reverse=True)

    def compute_analytics(
        self, doctor_id: str, patient_id: Optional[str] = None
    ) -> SurveyAnalytics:
        """Completion rate and latency for a doctor's surveys, by occasion.

        Surveys never sent count toward totals and pending counts but are
        excluded from the latency average.
        """
        surveys = self._store.list_surveys(doctor_id=doctor_id, patient_id=patient_id)
        return SurveyAnalytics(
            doctor_id=doctor_id,
            patient_id=patient_id,
            overall=_stats_for(surveys),
            by_occasion={
                occasion: _stats_for([s for s in surveys if s.when == occasion])
                for occasion in SurveyOccasion
            },
        )
