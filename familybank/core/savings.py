"""
Savings Goal Tracker

Goals record what a child is saving for and how far they have got. The
current amount is reported by the caller; it is never derived from, and
never changes, an account balance.

A goal completes the first time its current amount reaches the target.
Completion is a compare-and-swap in the store, so the "goal reached"
event fires once no matter how many updates cross the line.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from familybank.audit import EventBus
from familybank.clock import Clock
from familybank.config import LedgerSettings, get_settings
from familybank.core.base import CoreService, build, check_amount, require
from familybank.exceptions import ValidationFailure
from familybank.identity import IdentityProvider
from familybank.models.events import DomainEventBuilder
from familybank.models.finance import SavingsGoal, SavingsGoalUpdate
from familybank.policy import Capability, authorize
from familybank.storage import FinanceStorageInterface


class SavingsGoalTracker(CoreService):

    def __init__(
        self,
        storage: FinanceStorageInterface,
        identity: IdentityProvider,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        super().__init__(storage, identity, bus, clock)
        self._settings = settings or get_settings().ledger

    async def update_progress(
        self,
        goal_id: UUID,
        current_amount: Decimal,
        requester_id: Optional[str] = None,
    ) -> SavingsGoal:
        """
        Record a new current amount and complete the goal if it is reached.

        With a requester the usual goal permissions apply; without one the
        call is trusted (the caller keeps goals in step with balances).
        """
        if requester_id is not None:
            goal = await self._load_for_management(requester_id, goal_id)
        else:
            goal = require(await self._storage.get_goal(goal_id), "Savings goal", goal_id)

        amount = check_amount(current_amount, self._settings.max_goal_amount, allow_zero=True)
        goal = await self._storage.update_goal(
            goal.id, {"current_amount": amount, "updated_at": self._clock.now()}
        )
        return await self._complete_if_reached(goal, requester_id)

    async def _complete_if_reached(
        self,
        goal: SavingsGoal,
        actor_id: Optional[str],
    ) -> SavingsGoal:
        if goal.is_completed or not goal.target_reached:
            return goal

        completed = await self._storage.complete_goal(goal.id, self._clock.now())
        if completed is None:
            # Someone else completed it first
            return require(await self._storage.get_goal(goal.id), "Savings goal", goal.id)

        await self._publish(DomainEventBuilder.goal_reached(completed, actor_id))
        return completed

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    async def create_goal(
        self,
        requester_id: str,
        account_id: UUID,
        name: str,
        target_amount: Decimal,
        deadline: Optional[datetime] = None,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> SavingsGoal:
        profile = await self._profile(requester_id)
        account = require(await self._storage.get_account(account_id), "Account", account_id)
        authorize(profile, Capability.MANAGE_GOAL, account.child_id)

        now = self._clock.now()
        goal = build(
            SavingsGoal,
            child_id=account.child_id,
            account_id=account.id,
            name=name,
            target_amount=check_amount(target_amount, self._settings.max_goal_amount),
            deadline=deadline,
            description=description,
            image_url=image_url,
            created_at=now,
            updated_at=now,
        )
        return await self._storage.create_goal(goal)

    async def list_goals(self, requester_id: str) -> list[SavingsGoal]:
        profile = await self._profile(requester_id)
        if not profile.child_ids:
            return []
        return await self._storage.list_goals(child_ids=profile.child_ids)

    async def update_goal(
        self,
        requester_id: str,
        goal_id: UUID,
        update: SavingsGoalUpdate,
    ) -> SavingsGoal:
        """Change a goal; a new current or target amount may complete it."""
        await self._load_for_management(requester_id, goal_id)

        changes = update.model_dump(exclude_unset=True)
        for field in ("name", "target_amount", "current_amount"):
            if field in changes and changes[field] is None:
                raise ValidationFailure(f"Savings goal {field} cannot be cleared")
        if "target_amount" in changes:
            changes["target_amount"] = check_amount(
                changes["target_amount"], self._settings.max_goal_amount
            )
        if "current_amount" in changes:
            changes["current_amount"] = check_amount(
                changes["current_amount"], self._settings.max_goal_amount, allow_zero=True
            )

        changes["updated_at"] = self._clock.now()
        goal = await self._storage.update_goal(goal_id, changes)

        if "target_amount" in changes or "current_amount" in changes:
            goal = await self._complete_if_reached(goal, requester_id)
        return goal

    async def delete_goal(self, requester_id: str, goal_id: UUID) -> None:
        await self._load_for_management(requester_id, goal_id)
        await self._storage.delete_goal(goal_id)

    async def _load_for_management(self, requester_id: str, goal_id: UUID) -> SavingsGoal:
        profile = await self._profile(requester_id)
        goal = require(await self._storage.get_goal(goal_id), "Savings goal", goal_id)
        authorize(profile, Capability.MANAGE_GOAL, goal.child_id)
        return goal
