"""
Account Ledger

The only code path that changes a balance. Every change goes through the
store's `apply_balance_changes`, which locks the affected accounts, rejects
any debit that would go below zero, and writes all changes or none.
"""

from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID

from familybank.clock import Clock, SystemClock
from familybank.core.base import build
from familybank.models.finance import (
    Account,
    BalanceChange,
    BalanceDirection,
    quantize_money,
)
from familybank.storage import FinanceStorageInterface


class AccountLedger:
    def __init__(self, storage: FinanceStorageInterface, clock: Optional[Clock] = None):
        self._storage = storage
        self._clock = clock or SystemClock()

    async def apply_delta(
        self,
        account_id: UUID,
        amount: Decimal,
        direction: BalanceDirection,
    ) -> Account:
        """
        Credit or debit one account.

        Raises:
            NotFoundError: If the account doesn't exist
            InsufficientFundsError: If a debit would make the balance negative
            ValidationFailure: If the amount is not positive
        """
        change = build(
            BalanceChange,
            account_id=account_id,
            amount=quantize_money(amount),
            direction=direction,
        )
        accounts = await self.settle([change])
        return accounts[0]

    async def settle(self, changes: Sequence[BalanceChange]) -> list[Account]:
        """Apply several changes as one unit. Either all apply or none do."""
        if not changes:
            return []
        return await self._storage.apply_balance_changes(changes, self._clock.now())
