"""
Identity models.

The core never authenticates anyone; it receives a resolved AccessProfile
from the identity collaborator and decides from that alone.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


SYSTEM_USER_ID = "system"


class UserRole(str, Enum):
    PARENT = "PARENT"   # guardian role
    CHILD = "CHILD"
    SYSTEM = "SYSTEM"   # scheduled jobs acting on nobody's behalf


GUARDIAN_ROLES = frozenset({UserRole.PARENT})


class AccessProfile(BaseModel):
    """
    What a user is, and which child profiles they reach.

    For a parent, child_ids are the linked children.
    For a child, child_ids holds exactly their own profile.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    role: UserRole
    child_ids: frozenset[str] = Field(default_factory=frozenset)

    @property
    def is_guardian(self) -> bool:
        return self.role in GUARDIAN_ROLES

    def reaches(self, child_id: str) -> bool:
        return child_id in self.child_ids


SYSTEM_PROFILE = AccessProfile(user_id=SYSTEM_USER_ID, role=UserRole.SYSTEM)
