"""
Identity Provider

The core never authenticates anyone. Whoever wires the core up supplies an
IdentityProvider that turns a user id into an AccessProfile (role plus the
child profiles that user reaches) and, for notifications, a child profile
back into the user who should receive them.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from familybank.exceptions import NotFoundError
from familybank.models.identity import (
    SYSTEM_PROFILE,
    SYSTEM_USER_ID,
    AccessProfile,
    UserRole,
)


class IdentityProvider(ABC):
    """Resolves users to access profiles."""

    @abstractmethod
    async def resolve_access(self, user_id: str) -> AccessProfile:
        """
        Raises:
            NotFoundError: If the user is unknown
        """
        pass

    @abstractmethod
    async def user_id_for_child(self, child_id: str) -> Optional[str]:
        """The user account behind a child profile, if any."""
        pass


class StaticIdentityProvider(IdentityProvider):
    """
    In-process user directory.

    Used by the test-suite and the cron entry point, where the set of
    users is known up front.
    """

    def __init__(self):
        self._profiles: dict[str, AccessProfile] = {SYSTEM_USER_ID: SYSTEM_PROFILE}
        self._child_users: dict[str, str] = {}

    def add_child(self, user_id: str, child_id: Optional[str] = None) -> AccessProfile:
        """Register a child user. The child profile id defaults to the user id."""
        child_id = child_id or user_id
        profile = AccessProfile(
            user_id=user_id,
            role=UserRole.CHILD,
            child_ids=frozenset({child_id}),
        )
        self._profiles[user_id] = profile
        self._child_users[child_id] = user_id
        return profile

    def add_parent(self, user_id: str, child_ids: Iterable[str] = ()) -> AccessProfile:
        """Register a parent, or link more children to an existing one."""
        existing = self._profiles.get(user_id)
        linked = set(existing.child_ids) if existing else set()
        linked.update(child_ids)
        profile = AccessProfile(
            user_id=user_id,
            role=UserRole.PARENT,
            child_ids=frozenset(linked),
        )
        self._profiles[user_id] = profile
        return profile

    async def resolve_access(self, user_id: str) -> AccessProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFoundError(f"User not found: {user_id}")
        return profile

    async def user_id_for_child(self, child_id: str) -> Optional[str]:
        return self._child_users.get(child_id)
