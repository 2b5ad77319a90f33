"""
Tests for carebridge.rbac -- Role-Based Access Control.
"""

import pytest

from carebridge.errors import ForbiddenError
from carebridge.models import Role
from carebridge.rbac import check_permission, require_permission


class TestRBAC:
    def test_patient_can_invite_peer(self):
        assert check_permission(Role.PATIENT, "invite_peer") is True

    def test_doctor_cannot_invite_peer(self):
        assert check_permission(Role.DOCTOR, "invite_peer") is False

    def test_doctor_can_send_survey(self):
        assert check_permission(Role.DOCTOR, "send_survey") is True

    def test_patient_cannot_send_survey(self):
        assert check_permission(Role.PATIENT, "send_survey") is False

    def test_patient_cannot_issue_link_token(self):
        assert check_permission(Role.PATIENT, "issue_link_token") is False

    def test_both_roles_can_place_calls(self):
        assert check_permission(Role.PATIENT, "place_call") is True
        assert check_permission(Role.DOCTOR, "place_call") is True

    def test_unknown_action_denied(self):
        assert check_permission(Role.DOCTOR, "delete_everything") is False

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(ForbiddenError):
            require_permission(Role.PATIENT, "view_survey_analytics")

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.DOCTOR, "view_survey_analytics")  # should not raise
