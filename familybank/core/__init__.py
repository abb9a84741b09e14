"""The money-moving core: ledger, transactions, allowances and savings goals."""

from familybank.core.accounts import AccountService
from familybank.core.allowances import AllowanceScheduler, compute_next_due_date
from familybank.core.ledger import AccountLedger
from familybank.core.savings import SavingsGoalTracker
from familybank.core.transactions import TransactionService

__all__ = [
    "AccountLedger",
    "AccountService",
    "AllowanceScheduler",
    "SavingsGoalTracker",
    "TransactionService",
    "compute_next_due_date",
]
