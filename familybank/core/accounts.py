"""
Account Service

Opening, reading and status changes for child accounts. Balances are read
here but only ever written by the ledger. Accounts are never deleted;
closing one is a terminal status change.
"""

from decimal import Decimal
from uuid import UUID

from familybank.core.base import CoreService, build, require
from familybank.exceptions import InvalidStateError
from familybank.models.events import DomainEventBuilder
from familybank.models.finance import Account, AccountStatus
from familybank.policy import Capability, authorize, is_allowed


class AccountService(CoreService):

    async def create_account(self, requester_id: str, child_id: str, name: str) -> Account:
        """Open a new ACTIVE account with a zero balance."""
        profile = await self._profile(requester_id)
        authorize(profile, Capability.OPEN_ACCOUNT, child_id)

        now = self._clock.now()
        account = build(Account, child_id=child_id, name=name, created_at=now, updated_at=now)
        account = await self._storage.create_account(account)

        await self._publish(DomainEventBuilder.account_created(account, requester_id))
        return account

    async def list_accounts(self, requester_id: str) -> list[Account]:
        """Every account the requester can see, oldest first."""
        profile = await self._profile(requester_id)
        if not profile.child_ids:
            return []
        accounts = await self._storage.list_accounts(child_ids=profile.child_ids)
        return [a for a in accounts if is_allowed(profile, Capability.VIEW_ACCOUNT, a.child_id)]

    async def get_account(self, requester_id: str, account_id: UUID) -> Account:
        profile = await self._profile(requester_id)
        account = require(await self._storage.get_account(account_id), "Account", account_id)
        authorize(profile, Capability.VIEW_ACCOUNT, account.child_id)
        return account

    async def get_balance(self, requester_id: str, account_id: UUID) -> Decimal:
        account = await self.get_account(requester_id, account_id)
        return account.balance

    async def set_account_status(
        self,
        requester_id: str,
        account_id: UUID,
        status: AccountStatus,
    ) -> Account:
        """
        Suspend, reactivate or close an account.

        Raises:
            InvalidStateError: For a move the account lifecycle doesn't allow
                (anything out of CLOSED, or to the current status)
        """
        profile = await self._profile(requester_id)
        account = require(await self._storage.get_account(account_id), "Account", account_id)
        authorize(profile, Capability.MANAGE_ACCOUNT, account.child_id)

        if not account.can_transition_to(status):
            raise InvalidStateError(
                f"Account {account_id} cannot move from {account.status.value} to {status.value}"
            )

        previous = account.status
        updated = await self._storage.update_account(
            account_id, {"status": status, "updated_at": self._clock.now()}
        )
        await self._publish(
            DomainEventBuilder.account_status_changed(updated, previous.value, requester_id)
        )
        return updated
