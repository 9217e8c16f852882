from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .subscription import _iso, _parse, new_id


class BillingStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass(frozen=True)
class BillingRecord:
    """One immutable line of a subscription's audit trail.

    ``amount`` is in minor units (cents) and negative for refunds.
    """
    id: str
    subscription_id: str
    amount: int
    currency: str
    status: BillingStatus
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    description: str
    failure_reason: Optional[str] = None
    external_reference: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        subscription_id: str,
        amount: int,
        currency: str,
        status: BillingStatus,
        description: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        failure_reason: Optional[str] = None,
        external_reference: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "BillingRecord":
        return cls(
            id=new_id(),
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            status=status,
            period_start=period_start,
            period_end=period_end,
            description=description,
            failure_reason=failure_reason,
            external_reference=external_reference,
            created_at=created_at,
        )

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    @property
    def is_collected_charge(self) -> bool:
        return self.status == BillingStatus.SUCCEEDED and self.amount > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "description": self.description,
            "failure_reason": self.failure_reason,
            "external_reference": self.external_reference,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BillingRecord":
        return cls(
            id=d["id"],
            subscription_id=d["subscription_id"],
            amount=int(d["amount"]),
            currency=d["currency"],
            status=BillingStatus(d["status"]),
            period_start=_parse(d.get("period_start")),
            period_end=_parse(d.get("period_end")),
            description=d.get("description") or "",
            failure_reason=d.get("failure_reason"),
            external_reference=d.get("external_reference"),
            created_at=_parse(d.get("created_at")),
        )
