"""
Tests for carebridge.matching -- Peer Matching.
"""

import pytest

from carebridge.matching import calculate_match_percentage, rank_available_peers
from carebridge.models import PatientDemographics, Role, UserAccount
from carebridge.storage import InMemoryStore


def _demo(**kwargs) -> PatientDemographics:
    defaults = {"age": 40, "gender": "female", "procedure": "knee replacement"}
    defaults.update(kwargs)
    return PatientDemographics(**defaults)


def _make_patient(user_id: str, name: str, **demo) -> UserAccount:
    return UserAccount(user_id=user_id, email=f"{user_id}@example.com",
                       role=Role.PATIENT, name=name, demographics=_demo(**demo))


class TestMatchPercentage:
    def test_identical_profiles_score_full(self):
        assert calculate_match_percentage(_demo(), _demo()) == 100

    def test_different_procedure_scores_zero(self):
        assert calculate_match_percentage(_demo(), _demo(procedure="hip replacement")) == 0

    def test_missing_procedure_scores_zero(self):
        assert calculate_match_percentage(_demo(procedure=None), _demo()) == 0

    def test_procedure_comparison_ignores_case_and_spaces(self):
        assert calculate_match_percentage(_demo(), _demo(procedure="  Knee Replacement ")) == 100

    @pytest.mark.parametrize("age,expected", [(41, 98), (45, 90), (55, 70), (80, 70)])
    def test_age_penalty(self, age, expected):
        assert calculate_match_percentage(_demo(), _demo(age=age)) == expected

    def test_unknown_age_skips_age_points(self):
        assert calculate_match_percentage(_demo(age=None), _demo()) == 70

    def test_gender_mismatch(self):
        assert calculate_match_percentage(_demo(), _demo(gender="male")) == 80

    def test_unknown_gender_never_matches(self):
        assert calculate_match_percentage(_demo(gender=None), _demo(gender=None)) == 80

    def test_symmetric(self):
        a, b = _demo(age=30), _demo(age=37, gender="Female")
        assert calculate_match_percentage(a, b) == calculate_match_percentage(b, a)


class TestRankAvailablePeers:
    def test_best_match_first_and_self_excluded(self):
        store = InMemoryStore()
        store.add_user(_make_patient("me", "Me"))
        store.add_user(_make_patient("far", "Far", procedure="cataract"))
        store.add_user(_make_patient("close", "Close", age=41))
        store.add_user(_make_patient("twin", "Twin"))
        store.add_user(UserAccount(user_id="doc", email="doc@example.com", role=Role.DOCTOR))

        ranked = rank_available_peers(store, "me")
        assert [m.user.user_id for m in ranked] == ["twin", "close", "far"]
        assert ranked[0].match_percentage == 100
        assert ranked[-1].reasons == ["Different procedures."]

    def test_ties_ordered_by_name(self):
        store = InMemoryStore()
        store.add_user(_make_patient("me", "Me", procedure=None))
        store.add_user(_make_patient("z", "Zed"))
        store.add_user(_make_patient("a", "Ann"))
        assert [m.user.name for m in rank_available_peers(store, "me")] == ["Ann", "Zed"]

    def test_unknown_patient_gets_empty_list(self):
        assert rank_available_peers(InMemoryStore(), "ghost") == []
