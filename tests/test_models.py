"""
Tests for the core data models.

Pure model behavior: validation rules, the transaction state machine
tables and the event builders. No storage involved.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from familybank.models import (
    Account,
    AccountStatus,
    Allowance,
    AllowanceFrequency,
    BalanceDirection,
    DomainEventBuilder,
    DomainEventType,
    SavingsGoal,
    Transaction,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    quantize_money,
)
from familybank.models.identity import SYSTEM_PROFILE, AccessProfile, UserRole


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestMoney:

    def test_quantize_rounds_half_up(self):
        assert quantize_money("10.005") == Decimal("10.01")
        assert quantize_money(3) == Decimal("3.00")

    def test_quantize_float_goes_through_str(self):
        """0.1 + 0.2 must not leak binary noise into the ledger."""
        assert quantize_money(0.1 + 0.2) == Decimal("0.30")


class TestAccount:

    def test_new_account_is_active_with_zero_balance(self):
        account = Account(child_id="alice", name="  Spending  ")
        assert account.balance == Decimal("0.00")
        assert account.status == AccountStatus.ACTIVE
        assert account.name == "Spending"

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError):
            Account(child_id="alice", name="Spending", balance=Decimal("-0.01"))

    def test_closed_is_terminal(self):
        account = Account(child_id="alice", name="Spending", status=AccountStatus.CLOSED)
        assert not account.can_transition_to(AccountStatus.ACTIVE)
        assert not account.can_transition_to(AccountStatus.SUSPENDED)

    def test_suspend_and_reactivate_allowed(self):
        account = Account(child_id="alice", name="Spending")
        assert account.can_transition_to(AccountStatus.SUSPENDED)
        suspended = account.model_copy(update={"status": AccountStatus.SUSPENDED})
        assert suspended.can_transition_to(AccountStatus.ACTIVE)


class TestTransaction:

    def test_requires_an_account(self):
        with pytest.raises(ValueError, match="source or a destination"):
            Transaction(type=TransactionType.PURCHASE, amount=Decimal("5.00"))

    def test_same_account_on_both_sides_rejected(self):
        account_id = uuid4()
        with pytest.raises(ValueError, match="must differ"):
            Transaction(
                type=TransactionType.TRANSFER,
                amount=Decimal("5.00"),
                from_account_id=account_id,
                to_account_id=account_id,
            )

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00"), Decimal("1.001")])
    def test_bad_amounts_rejected(self, amount):
        with pytest.raises(ValueError):
            Transaction(type=TransactionType.PURCHASE, amount=amount, from_account_id=uuid4())

    def test_balance_changes_debit_first(self):
        source, destination = uuid4(), uuid4()
        tx = Transaction(
            type=TransactionType.TRANSFER,
            amount=Decimal("12.50"),
            from_account_id=source,
            to_account_id=destination,
        )
        changes = tx.balance_changes()
        assert [c.direction for c in changes] == [BalanceDirection.DEBIT, BalanceDirection.CREDIT]
        assert changes[0].account_id == source
        assert changes[0].signed_amount == Decimal("-12.50")
        assert changes[1].signed_amount == Decimal("12.50")

    def test_credit_only_has_one_change(self):
        tx = Transaction(type=TransactionType.ALLOWANCE, amount=Decimal("5"), to_account_id=uuid4())
        assert len(tx.balance_changes()) == 1

    def test_state_machine(self):
        tx = Transaction(type=TransactionType.PURCHASE, amount=Decimal("1"), from_account_id=uuid4())
        assert tx.can_transition_to(TransactionStatus.APPROVED)
        assert tx.can_transition_to(TransactionStatus.DECLINED)
        assert not tx.can_transition_to(TransactionStatus.COMPLETED)
        assert not tx.is_terminal

        for terminal in (TransactionStatus.COMPLETED, TransactionStatus.DECLINED, TransactionStatus.FAILED):
            done = tx.model_copy(update={"status": terminal})
            assert done.is_terminal
            assert not any(done.can_transition_to(s) for s in TransactionStatus)


class TestFilters:

    def test_reversed_range_rejected(self):
        with pytest.raises(ValueError):
            TransactionFilters(start_date=NOW, end_date=NOW - timedelta(days=1))

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            TransactionFilters(limit=0)

    def test_naive_dates_are_utc(self):
        filters = TransactionFilters(start_date=datetime(2024, 3, 1, 12, 0), end_date=NOW)
        assert filters.start_date == NOW
        assert filters.start_date.tzinfo is not None


class TestAllowance:

    def _allowance(self, **overrides):
        data = dict(
            child_id="alice",
            amount=Decimal("5.00"),
            frequency=AllowanceFrequency.WEEKLY,
            start_date=NOW,
            next_due_date=NOW + timedelta(weeks=1),
        )
        data.update(overrides)
        return Allowance(**data)

    def test_next_due_before_start_rejected(self):
        with pytest.raises(ValueError, match="Next due date"):
            self._allowance(next_due_date=NOW - timedelta(days=1))

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError, match="End date"):
            self._allowance(end_date=NOW - timedelta(days=1))

    def test_is_due(self):
        allowance = self._allowance()
        assert not allowance.is_due(NOW)
        assert allowance.is_due(NOW + timedelta(weeks=1))

    def test_naive_dates_are_utc(self):
        allowance = self._allowance(start_date=datetime(2024, 3, 1, 12, 0))
        assert allowance.start_date == NOW
        assert allowance.is_due(NOW + timedelta(weeks=1))

    def test_not_due_when_inactive_or_ended(self):
        later = NOW + timedelta(weeks=2)
        assert not self._allowance(is_active=False).is_due(later)
        assert not self._allowance(end_date=NOW + timedelta(days=8)).is_due(later)


class TestSavingsGoal:

    def test_progress_is_capped(self):
        goal = SavingsGoal(
            child_id="alice",
            account_id=uuid4(),
            name="Bike",
            target_amount=Decimal("100.00"),
            current_amount=Decimal("150.00"),
        )
        assert goal.target_reached
        assert goal.progress == 1.0

    def test_partial_progress(self):
        goal = SavingsGoal(
            child_id="alice",
            account_id=uuid4(),
            name="Bike",
            target_amount=Decimal("100.00"),
            current_amount=Decimal("25.00"),
        )
        assert not goal.target_reached
        assert goal.progress == 0.25


class TestAccessProfile:

    def test_parent_reaches_linked_children_only(self):
        parent = AccessProfile(user_id="p", role=UserRole.PARENT, child_ids=frozenset({"alice"}))
        assert parent.is_guardian
        assert parent.reaches("alice")
        assert not parent.reaches("carol")

    def test_system_reaches_nobody(self):
        assert not SYSTEM_PROFILE.is_guardian
        assert not SYSTEM_PROFILE.child_ids


class TestDomainEvents:

    def test_transaction_declined_carries_reason(self):
        tx = Transaction(
            type=TransactionType.PURCHASE,
            amount=Decimal("7.00"),
            from_account_id=uuid4(),
            status=TransactionStatus.DECLINED,
            declined_reason="Too much candy",
        )
        event = DomainEventBuilder.transaction_declined(tx, "parent-1", "alice")

        assert event.event_type == DomainEventType.TRANSACTION_DECLINED
        assert event.recipients == ("alice",)
        assert event.details["reason"] == "Too much candy"
        assert event.details["amount"] == "7.00"

    def test_created_without_destination_has_no_recipients(self):
        tx = Transaction(type=TransactionType.PURCHASE, amount=Decimal("1"), from_account_id=uuid4())
        event = DomainEventBuilder.transaction_created(tx, "alice", None)
        assert event.recipients == ()

    def test_to_log_dict_is_plain(self):
        account = Account(child_id="alice", name="Spending")
        log_dict = DomainEventBuilder.account_created(account, "parent-1").to_log_dict()
        assert log_dict["event_type"] == "account_created"
        assert log_dict["entity_id"] == str(account.id)
        assert log_dict["recipients"] == ["alice"]

    def test_events_are_immutable(self):
        account = Account(child_id="alice", name="Spending")
        event = DomainEventBuilder.account_created(account, "parent-1")
        with pytest.raises(Exception):
            event.actor_id = "someone-else"
