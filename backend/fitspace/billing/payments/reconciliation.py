import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from fitspace.utils.logger import logger
from ..config import BillingConfig
from ..domain import windows
from ..domain.entities import ProviderActionType, Subscription
from ..domain.transitions import Expire
from ..external.interfaces import BillingProvider
from ..repo.interfaces import LedgerStore
from ..shared.exceptions import (
    InvalidTransition,
    ProviderError,
    SubscriptionNotFound,
    TransientError,
    ValidationError,
)
from ..subscriptions.state_machine import SubscriptionStateMachine, trial_used


@dataclass(frozen=True)
class EligibilityResult:
    package_id: str
    can_reactivate: bool
    trial_eligible: bool
    reason: Optional[str] = None
    blocking_subscription_id: Optional[str] = None
    previous_subscription_id: Optional[str] = None


def evaluate_eligibility(package_id: str, history: List[Subscription]) -> EligibilityResult:
    """Eligibility over the full history of one (user, package) pair, newest first."""
    trial_eligible = not trial_used(history)

    live = next((row for row in history if row.is_live), None)
    if live is not None:
        return EligibilityResult(
            package_id=package_id,
            can_reactivate=False,
            trial_eligible=trial_eligible,
            reason="active_subscription_exists",
            blocking_subscription_id=live.id,
        )

    terminal = next((row for row in history if row.is_terminal), None)
    if terminal is None:
        return EligibilityResult(
            package_id=package_id,
            can_reactivate=False,
            trial_eligible=trial_eligible,
            reason="no_previous_subscription",
        )

    return EligibilityResult(
        package_id=package_id,
        can_reactivate=True,
        trial_eligible=trial_eligible,
        previous_subscription_id=terminal.id,
    )


class ReconciliationService:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        store: LedgerStore,
        config: BillingConfig,
        provider: Optional[BillingProvider] = None,
        clock: Optional[windows.Clock] = None,
    ):
        self.state_machine = state_machine
        self.store = store
        self.config = config
        self.provider = provider
        self.clock = clock or state_machine.clock

    async def check_reactivation_eligibility(self, user_id: str, package_id: str) -> EligibilityResult:
        if not user_id or not package_id:
            raise ValidationError("user_id and package_id are required")
        history = await self.store.list_for_user_package(user_id, package_id)
        return evaluate_eligibility(package_id, history)

    async def list_reactivation_eligibility(self, user_id: str) -> List[EligibilityResult]:
        """One entry per package the user ever subscribed to, most recent package first."""
        if not user_id:
            raise ValidationError("user_id is required")
        by_package: Dict[str, List[Subscription]] = {}
        for row in await self.store.list_for_user(user_id):
            by_package.setdefault(row.package_id, []).append(row)
        return [evaluate_eligibility(package_id, rows) for package_id, rows in by_package.items()]

    async def sweep_expirations(self, now: Optional[datetime] = None) -> int:
        """Expire soft-cancelled rows past their end date and rows whose grace ran out.

        Each row goes through the state machine under its own lock, so a
        webhook that renewed a row in the meantime simply makes its Expire
        illegal. Returns the number of rows expired.
        """
        now = now or self.clock()
        candidates = await self.store.list_expirable(now, self.config.grace_period)
        expired = 0

        for sub in candidates:
            try:
                await self.state_machine.apply_transition(sub.id, Expire(), now=now)
                expired += 1
            except (InvalidTransition, SubscriptionNotFound) as e:
                logger.debug(f"[SWEEP] Skipping {sub.id}: {e}")
            except TransientError as e:
                logger.warning(f"[SWEEP] Could not expire {sub.id}, will retry next sweep: {e}")

        if candidates:
            logger.info(f"[SWEEP] Expired {expired}/{len(candidates)} subscriptions at {now.isoformat()}")
        return expired

    async def sync_pending_provider_actions(self, limit: int = 100) -> Dict[str, int]:
        """Retry provider calls whose local effect was already committed."""
        result = {"pending": 0, "synced": 0, "failed": 0}
        if self.provider is None:
            return result

        actions = await self.store.list_provider_actions(limit=limit)
        result["pending"] = len(actions)
        for action in actions:
            immediate = action.action == ProviderActionType.CANCEL_IMMEDIATELY
            try:
                await self.provider.cancel_subscription(action.external_subscription_id, cancel_immediately=immediate)
            except (TransientError, ProviderError) as e:
                result["failed"] += 1
                await self.store.record_provider_attempt(action.id, f"{type(e).__name__}: {e}")
                logger.warning(
                    f"[SWEEP] Provider action {action.action.value} for {action.subscription_id} "
                    f"still failing after {action.attempts + 1} attempts: {e}"
                )
                continue
            await self.store.complete_provider_action(action.id)
            result["synced"] += 1
            logger.info(f"[SWEEP] Provider confirmed {action.action.value} for {action.subscription_id}")

        return result

    async def get_access_status(
        self,
        user_id: str,
        package_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> windows.AccessSummary:
        if not user_id:
            raise ValidationError("user_id is required")
        now = now or self.clock()
        if package_id:
            rows = await self.store.list_for_user_package(user_id, package_id)
        else:
            rows = await self.store.list_for_user(user_id)

        grace = self.config.grace_period
        chosen = next((row for row in rows if windows.can_access(row, now, grace)), None)
        if chosen is None and rows:
            chosen = rows[0]
        return windows.describe_access(chosen, now, self.config.trial_period, grace)

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        expired = await self.sweep_expirations(now)
        provider = await self.sync_pending_provider_actions()
        return {"expired": expired, "provider_actions": provider}


class ExpirationSweeper:
    """Background task running the reconciliation sweep on a fixed interval."""

    def __init__(self, service: ReconciliationService, interval_seconds: Optional[float] = None):
        self.service = service
        self.interval = interval_seconds if interval_seconds is not None else service.config.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[SWEEP] Expiration sweeper started (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SWEEP] Expiration sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.service.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[SWEEP] Loop error: {e}")
