from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CancelSubscriptionRequest(_CamelModel):
    immediate: bool = False
    reason: Optional[str] = Field(default=None, max_length=500)


class CancellationResponse(_CamelModel):
    success: bool = True
    subscription_id: str
    status: str
    immediate: bool
    access_ends_at: Optional[datetime] = None
    provider_confirmed: bool
    message: str


class ReactivationResponse(_CamelModel):
    package_id: str
    can_reactivate: bool
    trial_eligible: bool
    message: str
    previous_subscription_id: Optional[str] = None
    blocking_subscription_id: Optional[str] = None


class EligibilityResponse(_CamelModel):
    package_id: str
    can_reactivate: bool
    trial_eligible: bool
    reason: Optional[str] = None
    blocking_subscription_id: Optional[str] = None
    previous_subscription_id: Optional[str] = None


class AccessStatusResponse(_CamelModel):
    status: str
    has_access: bool
    expires_at: Optional[datetime] = None
    days_remaining: int = 0
    subscription_id: Optional[str] = None


class IngestResponse(_CamelModel):
    received: bool = True
    outcome: str
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    detail: Optional[str] = None
