"""
Peer Matching -- Ranking Patients for Peer-Support Invitations.

Scores how similar two patients' self-reported demographics are so the
peer browser can list the most relevant peers first.  The score is a
percentage built from three weighted signals:

* same procedure -- 50 points, and required: different or unknown
  procedures score 0;
* age similarity -- up to 30 points, minus 2 per year of difference;
* same gender    -- 20 points when both are given and equal.

The score only orders the list.  It never restricts who a patient may
invite.
"""

from __future__ import annotations

from typing import Optional

from carebridge.models import PatientDemographics, Role, UserAccount
from carebridge.storage import InMemoryStore

_PROCEDURE_POINTS = 50
_AGE_POINTS = 30
_AGE_PENALTY_PER_YEAR = 2
_GENDER_POINTS = 20


class PeerMatch:
    """One candidate peer with the match score and the reasons behind it."""

    def __init__(self, user: UserAccount, match_percentage: int, reasons: list[str]) -> None:
        self.user = user
        self.match_percentage = match_percentage
        self.reasons = reasons

    def __repr__(self) -> str:
        return f"PeerMatch(user_id={self.user.user_id}, match={self.match_percentage})"


def _normalise(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def _score(a: PatientDemographics, b: PatientDemographics) -> tuple[int, list[str]]:
    reasons: list[str] = []
    proc_a, proc_b = _normalise(a.procedure), _normalise(b.procedure)
    if proc_a is None or proc_b is None:
        return 0, ["Procedure unknown; no match score."]
    if proc_a != proc_b:
        return 0, ["Different procedures."]

    score = _PROCEDURE_POINTS
    reasons.append(f"Same procedure (+{_PROCEDURE_POINTS}).")

    if a.age is not None and b.age is not None:
        age_points = max(0, _AGE_POINTS - _AGE_PENALTY_PER_YEAR * abs(a.age - b.age))
        score += age_points
        reasons.append(f"Age difference {abs(a.age - b.age)} years (+{age_points}).")

    gender_a, gender_b = _normalise(a.gender), _normalise(b.gender)
    if gender_a is not None and gender_a == gender_b:
        score += _GENDER_POINTS
        reasons.append(f"Same gender (+{_GENDER_POINTS}).")

    return min(100, score), reasons


def calculate_match_percentage(a: PatientDemographics, b: PatientDemographics) -> int:
    """Return a 0-100 similarity score between two patients' demographics."""
    return _score(a, b)[0]


def rank_available_peers(store: InMemoryStore, patient_id: str) -> list[PeerMatch]:
    """Every other patient, best match first.

    Ties are ordered by name so the listing is stable.
    """
    me = store.get_user(patient_id)
    if me is None:
        return []
    matches = []
    for user in store.list_users(Role.PATIENT):
        if user.user_id == patient_id:
            continue
        percentage, reasons = _score(me.demographics, user.demographics)
        matches.append(PeerMatch(user=user, match_percentage=percentage, reasons=reasons))
    return sorted(matches, key=lambda m: (-m.match_percentage, m.user.name, m.user.user_id))
