from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .subscription import _iso, _parse, new_id


class ProviderActionType(str, Enum):
    CANCEL_IMMEDIATELY = "cancel_immediately"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"


@dataclass
class ProviderAction:
    """A provider call the local state already reflects but the provider has not confirmed."""
    id: str
    subscription_id: str
    external_subscription_id: str
    action: ProviderActionType
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        subscription_id: str,
        external_subscription_id: str,
        action: ProviderActionType,
        last_error: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "ProviderAction":
        return cls(
            id=new_id(),
            subscription_id=subscription_id,
            external_subscription_id=external_subscription_id,
            action=action,
            attempts=1 if last_error else 0,
            last_error=last_error,
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "external_subscription_id": self.external_subscription_id,
            "action": self.action.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ProviderAction":
        return cls(
            id=d["id"],
            subscription_id=d["subscription_id"],
            external_subscription_id=d["external_subscription_id"],
            action=ProviderActionType(d["action"]),
            attempts=int(d.get("attempts") or 0),
            last_error=d.get("last_error"),
            created_at=_parse(d.get("created_at")),
        )
