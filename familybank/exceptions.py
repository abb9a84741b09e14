"""
Core error taxonomy.

Every operation of the core reports failures synchronously with one of
these. A FAILED transaction is NOT an exception by itself: the record is the
outcome. The exception that caused the failure is still raised to the caller
and carries the id of the transaction it failed.
"""

from typing import Optional
from uuid import UUID


class FamilyBankError(Exception):
    """Base exception for core operations."""

    def __init__(self, message: str, *, transaction_id: Optional[UUID] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id


class NotFoundError(FamilyBankError):
    """Entity does not exist."""
    pass


class ForbiddenError(FamilyBankError):
    """Requester is not allowed to perform the operation."""
    pass


class InvalidStateError(FamilyBankError):
    """Operation is illegal for the entity's current state."""
    pass


class InsufficientFundsError(FamilyBankError):
    """A debit would drive the balance below zero."""

    def __init__(self, account_id: UUID, balance, amount):
        super().__init__(
            f"Insufficient balance in account {account_id}: "
            f"balance {balance}, requested {amount}"
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class ValidationFailure(FamilyBankError):
    """Malformed input reached the core."""
    pass
