"""Identity collaborators."""

from familybank.identity.provider import IdentityProvider, StaticIdentityProvider

__all__ = ["IdentityProvider", "StaticIdentityProvider"]
