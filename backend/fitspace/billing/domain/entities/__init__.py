from .subscription import (
    Subscription,
    SubscriptionStatus,
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    new_id,
)
from .billing_record import BillingRecord, BillingStatus
from .package import PackageTemplate, BillingInterval
from .provider_action import ProviderAction, ProviderActionType

__all__ = [
    'Subscription',
    'SubscriptionStatus',
    'LIVE_STATUSES',
    'TERMINAL_STATUSES',
    'new_id',
    'BillingRecord',
    'BillingStatus',
    'PackageTemplate',
    'BillingInterval',
    'ProviderAction',
    'ProviderActionType',
]
