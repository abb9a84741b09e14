"""Plumbing shared by the core services."""

from decimal import Decimal
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from familybank.audit import EventBus
from familybank.clock import Clock, SystemClock
from familybank.exceptions import NotFoundError, ValidationFailure
from familybank.identity import IdentityProvider
from familybank.models.events import DomainEvent
from familybank.models.finance import quantize_money
from familybank.models.identity import AccessProfile
from familybank.storage import FinanceStorageInterface


ModelT = TypeVar("ModelT", bound=BaseModel)


def build(model: type[ModelT], **data) -> ModelT:
    """Construct a model, reporting schema violations as ValidationFailure."""
    try:
        return model(**data)
    except ValidationError as e:
        raise ValidationFailure(f"Invalid {model.__name__}: {e}") from e


def require(entity, label: str, key) -> object:
    if entity is None:
        raise NotFoundError(f"{label} not found: {key}")
    return entity


class CoreService:
    """Holds the collaborators every core service needs."""

    def __init__(
        self,
        storage: FinanceStorageInterface,
        identity: IdentityProvider,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._identity = identity
        self._bus = bus or EventBus()
        self._clock = clock or SystemClock()

    async def _profile(self, user_id: str) -> AccessProfile:
        return await self._identity.resolve_access(user_id)

    async def _publish(self, event: DomainEvent) -> None:
        await self._bus.publish(event)


def check_amount(amount, limit: Decimal, allow_zero: bool = False) -> Decimal:
    """Normalize a money amount and hold it to (0, limit], or [0, limit]."""
    try:
        value = quantize_money(amount)
    except ArithmeticError as e:
        raise ValidationFailure(f"Invalid amount: {amount!r}") from e
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationFailure("Amount must be positive")
    if value > limit:
        raise ValidationFailure(f"Amount {value} exceeds the limit of {limit}")
    return value
