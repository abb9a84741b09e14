"""
Transaction Listing

DESIGN DECISION: Listings are scoped before they are filtered. The
executor first works out which accounts the requester may see, then asks
the store only for transactions touching those accounts. Filters can
narrow that set but never widen it.
"""

from typing import Optional
from uuid import UUID

from familybank.config import LedgerSettings, get_settings
from familybank.exceptions import NotFoundError
from familybank.identity import IdentityProvider
from familybank.models.finance import Transaction, TransactionFilters
from familybank.models.identity import AccessProfile
from familybank.policy import Capability, authorize, is_allowed
from familybank.storage import FinanceStorageInterface


class TransactionQueryExecutor:
    """Executes transaction listings against the finance store."""

    def __init__(
        self,
        storage: FinanceStorageInterface,
        identity: IdentityProvider,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._identity = identity
        self._settings = settings or get_settings().ledger

    async def list_transactions(
        self,
        requester_id: str,
        filters: Optional[TransactionFilters] = None,
    ) -> list[Transaction]:
        """
        Transactions on the requester's visible accounts, newest first.

        Raises:
            NotFoundError: filters.account_id names an unknown account
            ForbiddenError: filters.account_id names an account the
                requester cannot see
        """
        filters = filters or TransactionFilters()
        profile = await self._identity.resolve_access(requester_id)

        if filters.account_id is not None:
            account = await self._storage.get_account(filters.account_id)
            if account is None:
                raise NotFoundError(f"Account not found: {filters.account_id}")
            authorize(profile, Capability.VIEW_ACCOUNT, account.child_id)

        visible = await self._visible_account_ids(profile)
        if not visible:
            return []

        return await self._storage.list_transactions(
            account_ids=visible,
            filters=filters,
            limit=self.page_size(filters.limit),
        )

    def page_size(self, requested: Optional[int]) -> int:
        """Requested page size, defaulted and capped by configuration."""
        if requested is None:
            return self._settings.default_page_size
        return min(requested, self._settings.max_page_size)

    async def _visible_account_ids(self, profile: AccessProfile) -> set[UUID]:
        if not profile.child_ids:
            return set()
        accounts = await self._storage.list_accounts(child_ids=profile.child_ids)
        return {
            account.id
            for account in accounts
            if is_allowed(profile, Capability.VIEW_ACCOUNT, account.child_id)
        }
