import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED_ACTIVE = "CANCELLED_ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# At most one row per (user, package) may be in one of these.
LIVE_STATUSES = frozenset({
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELLED_ACTIVE,
})

TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
})


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Subscription:
    id: str
    user_id: str
    package_id: str
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_trial_active: bool = False
    trial_start: Optional[datetime] = None
    is_in_grace_period: bool = False
    grace_start: Optional[datetime] = None
    external_subscription_id: Optional[str] = None
    last_processed_event_id: Optional[str] = None
    trainer_id: Optional[str] = None
    currency: Optional[str] = None
    failed_payment_retries: int = 0
    next_payment_retry_at: Optional[datetime] = None
    previous_subscription_id: Optional[str] = None
    recent_event_ids: List[str] = field(default_factory=list)
    last_event_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_processed(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        return event_id == self.last_processed_event_id or event_id in self.recent_event_ids

    def remember_event(self, event_id: str, occurred_at: Optional[datetime], window: int) -> None:
        self.last_processed_event_id = event_id
        if event_id not in self.recent_event_ids:
            self.recent_event_ids.append(event_id)
        if len(self.recent_event_ids) > window:
            del self.recent_event_ids[: len(self.recent_event_ids) - window]
        self.note_event_time(occurred_at)

    def note_event_time(self, occurred_at: Optional[datetime]) -> None:
        if occurred_at and (self.last_event_at is None or occurred_at > self.last_event_at):
            self.last_event_at = occurred_at

    def is_stale(self, occurred_at: Optional[datetime]) -> bool:
        """Whether an event from ``occurred_at`` predates the newest one already applied."""
        return occurred_at is not None and self.last_event_at is not None and occurred_at < self.last_event_at

    def copy(self) -> "Subscription":
        return replace(self, recent_event_ids=list(self.recent_event_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "package_id": self.package_id,
            "status": self.status.value,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_trial_active": self.is_trial_active,
            "trial_start": _iso(self.trial_start),
            "is_in_grace_period": self.is_in_grace_period,
            "grace_start": _iso(self.grace_start),
            "external_subscription_id": self.external_subscription_id,
            "last_processed_event_id": self.last_processed_event_id,
            "trainer_id": self.trainer_id,
            "currency": self.currency,
            "failed_payment_retries": self.failed_payment_retries,
            "next_payment_retry_at": _iso(self.next_payment_retry_at),
            "previous_subscription_id": self.previous_subscription_id,
            "recent_event_ids": list(self.recent_event_ids),
            "last_event_at": _iso(self.last_event_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Subscription":
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            package_id=d["package_id"],
            status=SubscriptionStatus(d["status"]),
            start_date=_parse(d.get("start_date")),
            end_date=_parse(d.get("end_date")),
            is_trial_active=bool(d.get("is_trial_active", False)),
            trial_start=_parse(d.get("trial_start")),
            is_in_grace_period=bool(d.get("is_in_grace_period", False)),
            grace_start=_parse(d.get("grace_start")),
            external_subscription_id=d.get("external_subscription_id"),
            last_processed_event_id=d.get("last_processed_event_id"),
            trainer_id=d.get("trainer_id"),
            currency=d.get("currency"),
            failed_payment_retries=int(d.get("failed_payment_retries") or 0),
            next_payment_retry_at=_parse(d.get("next_payment_retry_at")),
            previous_subscription_id=d.get("previous_subscription_id"),
            recent_event_ids=list(d.get("recent_event_ids") or []),
            last_event_at=_parse(d.get("last_event_at")),
            cancellation_reason=d.get("cancellation_reason"),
            created_at=_parse(d.get("created_at")),
            updated_at=_parse(d.get("updated_at")),
            version=int(d.get("version") or 0),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
