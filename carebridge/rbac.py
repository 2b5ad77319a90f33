"""
Role-Based Access Control (RBAC) for CareBridge.

Maps each role to the operations it may invoke through the service
facade.  Record-level rules (only the requester may resend an invite,
only a party may cancel a session) are enforced by the ledgers
themselves; this table only answers "may this role attempt the action
at all".

**Roles:**

* PATIENT -- peer connections, doctor linking, surveys about themselves,
  calls with confirmed peers.
* DOCTOR  -- link tokens, survey dispatch and analytics, calls with
  other doctors.
"""

from __future__ import annotations

from carebridge.errors import ForbiddenError
from carebridge.models import Role


# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    # Patient permissions
    (Role.PATIENT, "invite_peer"): True,
    (Role.PATIENT, "respond_to_invite"): True,
    (Role.PATIENT, "list_connections"): True,
    (Role.PATIENT, "browse_peers"): True,
    (Role.PATIENT, "resolve_link_token"): True,
    (Role.PATIENT, "issue_link_token"): False,
    (Role.PATIENT, "list_linked_doctors"): True,
    (Role.PATIENT, "list_linked_patients"): False,
    (Role.PATIENT, "send_survey"): False,
    (Role.PATIENT, "view_survey_analytics"): False,
    (Role.PATIENT, "list_own_surveys"): True,
    (Role.PATIENT, "schedule_call"): True,
    (Role.PATIENT, "place_call"): True,
    (Role.PATIENT, "view_call"): True,
    # Doctor permissions
    (Role.DOCTOR, "invite_peer"): False,
    (Role.DOCTOR, "respond_to_invite"): False,
    (Role.DOCTOR, "list_connections"): False,
    (Role.DOCTOR, "browse_peers"): False,
    (Role.DOCTOR, "resolve_link_token"): False,
    (Role.DOCTOR, "issue_link_token"): True,
    (Role.DOCTOR, "list_linked_doctors"): False,
    (Role.DOCTOR, "list_linked_patients"): True,
    (Role.DOCTOR, "send_survey"): True,
    (Role.DOCTOR, "view_survey_analytics"): True,
    (Role.DOCTOR, "list_own_surveys"): True,
    (Role.DOCTOR, "schedule_call"): True,
    (Role.DOCTOR, "place_call"): True,
    (Role.DOCTOR, "view_call"): True,
}


def check_permission(role: Role, action: str) -> bool:
    """Return True if ``role`` may perform ``action``; unknown actions are denied."""
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check.

    Raises:
        ForbiddenError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise ForbiddenError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )
