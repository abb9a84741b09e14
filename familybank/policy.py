"""
Authorization Policy

DESIGN DECISION: Every access decision in the core goes through
`authorize()`. Services never compare roles themselves.

A capability is always checked against the child profile that owns the
resource (the account's, allowance's or goal's child).
"""

from enum import Enum

from familybank.exceptions import ForbiddenError
from familybank.models.identity import AccessProfile, UserRole


class Capability(str, Enum):
    VIEW_ACCOUNT = "view_account"
    USE_ACCOUNT = "use_account"              # spend from / request transfers out of
    OPEN_ACCOUNT = "open_account"
    MANAGE_ACCOUNT = "manage_account"        # suspend, reactivate, close
    REVIEW_TRANSACTION = "review_transaction"  # approve or decline
    VIEW_ALLOWANCE = "view_allowance"
    MANAGE_ALLOWANCE = "manage_allowance"
    MANAGE_GOAL = "manage_goal"


CHILD_CAPABILITIES = frozenset({
    Capability.VIEW_ACCOUNT,
    Capability.USE_ACCOUNT,
    Capability.OPEN_ACCOUNT,
    Capability.VIEW_ALLOWANCE,
    Capability.MANAGE_GOAL,
})

GUARDIAN_CAPABILITIES = frozenset(Capability)


def is_allowed(profile: AccessProfile, capability: Capability, child_id: str) -> bool:
    """Whether `profile` holds `capability` over resources of `child_id`."""
    if not profile.reaches(child_id):
        return False
    if profile.is_guardian:
        return capability in GUARDIAN_CAPABILITIES
    if profile.role == UserRole.CHILD:
        return capability in CHILD_CAPABILITIES
    return False


def authorize(profile: AccessProfile, capability: Capability, child_id: str) -> None:
    """
    Raise ForbiddenError unless `profile` holds `capability` for `child_id`.
    """
    if not is_allowed(profile, capability, child_id):
        raise ForbiddenError(
            f"User {profile.user_id} ({profile.role.value}) may not "
            f"{capability.value.replace('_', ' ')} for child {child_id}"
        )
