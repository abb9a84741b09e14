"""Read paths outside the core's state machines."""

from familybank.queries.executor import TransactionQueryExecutor

__all__ = ["TransactionQueryExecutor"]
