from dataclasses import dataclass
from enum import Enum
from decimal import Decimal
from typing import Optional


class BillingInterval(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


@dataclass(frozen=True)
class PackageTemplate:
    """Reference data owned by the catalog; read-only here."""
    id: str
    name: str
    price: int
    currency: str
    duration: BillingInterval = BillingInterval.MONTHLY
    trainer_id: Optional[str] = None
    team_platform_fee_percent: Optional[Decimal] = None
