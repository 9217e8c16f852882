"""Requests the subscription state machine understands."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class RefundLine:
    """A refund to book, positive magnitude in minor units."""
    amount: int
    currency: Optional[str] = None
    external_reference: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class Activate:
    amount: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class StartTrial:
    pass


@dataclass(frozen=True)
class EnterGracePeriod:
    reason: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class ExitGracePeriod:
    renewed: bool
    amount: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class RequestCancellation:
    immediate: bool
    reason: Optional[str] = None
    refund: Optional[RefundLine] = None


@dataclass(frozen=True)
class Expire:
    pass


@dataclass(frozen=True)
class RecordRefund:
    refund: RefundLine


@dataclass(frozen=True)
class RecordDispute:
    """A chargeback opened against a collected charge. Books an audit line only."""
    amount: int = 0
    currency: Optional[str] = None
    reason: Optional[str] = None
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class Reactivate:
    reset_trial: bool = False
    external_subscription_id: Optional[str] = None


TransitionRequest = Union[
    Activate,
    StartTrial,
    EnterGracePeriod,
    ExitGracePeriod,
    RequestCancellation,
    Expire,
    RecordRefund,
    RecordDispute,
    Reactivate,
]


def transition_name(request: TransitionRequest) -> str:
    return type(request).__name__
