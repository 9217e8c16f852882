from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..shared.exceptions import ValidationError


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription-created"
    SUBSCRIPTION_RENEWED = "subscription-renewed"
    PAYMENT_FAILED = "subscription-payment-failed"
    SUBSCRIPTION_CANCELLED = "subscription-cancelled"
    CHARGE_REFUNDED = "charge-refunded"
    CHECKOUT_COMPLETED = "checkout-completed"
    CHECKOUT_EXPIRED = "checkout-expired"
    TRIAL_WILL_END = "trial-will-end"
    CHARGE_DISPUTED = "charge-disputed"


# Events that may be the first sighting of a provider subscription.
CREATION_EVENTS = frozenset({
    EventType.SUBSCRIPTION_CREATED,
    EventType.CHECKOUT_COMPLETED,
})

# Lifecycle events whose effect a newer event supersedes. These are dropped
# when they arrive after a later one; creation and ledger events are not.
ORDERED_EVENTS = frozenset({
    EventType.SUBSCRIPTION_RENEWED,
    EventType.PAYMENT_FAILED,
    EventType.SUBSCRIPTION_CANCELLED,
    EventType.CHECKOUT_EXPIRED,
})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    amount: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None
    package_id: Optional[str] = None
    trial: bool = False
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    charge_id: Optional[str] = None
    immediate: Optional[bool] = None
    previous_subscription_id: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("period_start", "period_end")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ExternalEvent(_CamelModel):
    """A billing-provider event, normalised.

    Accepts ``eventId`` / ``event_id`` style keys alike.
    """

    event_id: str = Field(min_length=1)
    subscription_external_id: str = Field(min_length=1)
    type: EventType
    occurred_at: datetime
    payload: EventPayload = Field(default_factory=EventPayload)

    @field_validator("occurred_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_creation(self) -> bool:
        return self.type in CREATION_EVENTS

    @property
    def is_ordered(self) -> bool:
        return self.type in ORDERED_EVENTS

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "ExternalEvent":
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed billing event: {e.errors(include_url=False)}") from e

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    DEAD_LETTERED = "dead_lettered"
    IGNORED = "ignored"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    event_id: str
    subscription_id: Optional[str] = None
    detail: Optional[str] = None
