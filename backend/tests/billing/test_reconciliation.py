import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fitspace.billing.domain.entities import ProviderAction, ProviderActionType, SubscriptionStatus
from fitspace.billing.domain.transitions import (
    EnterGracePeriod,
    ExitGracePeriod,
    RequestCancellation,
    StartTrial,
)
from fitspace.billing.domain.windows import AccessStatus
from fitspace.billing.payments.reconciliation import ExpirationSweeper, ReconciliationService
from fitspace.billing.shared.exceptions import TransientProviderError, ValidationError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestSweep:
    @pytest.mark.asyncio
    async def test_soft_cancel_expires_after_period_end(self, state_machine, reconciliation, store, active_sub):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=False))

        assert await reconciliation.sweep_expirations(utc(2024, 1, 31)) == 0
        assert await reconciliation.sweep_expirations(utc(2024, 2, 2)) == 1

        sub = await store.get(active_sub.id)
        assert sub.status == SubscriptionStatus.EXPIRED
        assert sub.end_date == utc(2024, 2, 1, 12)

    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(self, state_machine, reconciliation, store, active_sub):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=False))
        await reconciliation.sweep_expirations(utc(2024, 2, 2))
        records = len(await store.list_records(active_sub.id))

        assert await reconciliation.sweep_expirations(utc(2024, 2, 3)) == 0
        assert len(await store.list_records(active_sub.id)) == records

    @pytest.mark.asyncio
    async def test_expires_elapsed_grace(self, state_machine, reconciliation, store, active_sub, clock):
        clock.set(utc(2024, 2, 1, 12))
        await state_machine.apply_transition(active_sub.id, EnterGracePeriod())

        assert await reconciliation.sweep_expirations(utc(2024, 2, 3)) == 0
        assert await reconciliation.sweep_expirations(utc(2024, 2, 4, 12)) == 1
        assert (await store.get(active_sub.id)).status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_provider_backed_rows_wait_for_the_provider(self, processor, reconciliation, store, make_event):
        await processor.ingest(make_event("checkout-completed", userId="user-1", packageId="pkg-strength",
                                          amount=10000, currency="USD"))

        assert await reconciliation.sweep_expirations(utc(2024, 3, 1)) == 0
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_one_time_purchase_expires_at_period_end(self, reconciliation, store, active_sub):
        assert await reconciliation.sweep_expirations(utc(2024, 2, 1, 12)) == 1
        assert (await store.get(active_sub.id)).status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_row_renewed_since_listing_is_skipped(self, state_machine, reconciliation, store, active_sub, clock):
        clock.set(utc(2024, 2, 1, 12))
        await state_machine.apply_transition(active_sub.id, EnterGracePeriod())
        stale = await store.list_expirable(utc(2024, 2, 5), reconciliation.config.grace_period)
        await state_machine.apply_transition(active_sub.id, ExitGracePeriod(renewed=True, amount=10000))

        with patch.object(store, "list_expirable", AsyncMock(return_value=stale)):
            assert await reconciliation.sweep_expirations(utc(2024, 2, 5)) == 0

        assert (await store.get(active_sub.id)).status == SubscriptionStatus.ACTIVE


class TestEligibility:
    @pytest.mark.asyncio
    async def test_cancelled_without_trial_is_eligible_with_trial(self, state_machine, reconciliation, active_sub):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=True))

        result = await reconciliation.check_reactivation_eligibility("user-1", "pkg-strength")

        assert result.can_reactivate is True
        assert result.trial_eligible is True
        assert result.previous_subscription_id == active_sub.id

    @pytest.mark.asyncio
    async def test_live_row_blocks(self, reconciliation, active_sub):
        result = await reconciliation.check_reactivation_eligibility("user-1", "pkg-strength")
        assert result.can_reactivate is False
        assert result.blocking_subscription_id == active_sub.id
        assert result.reason == "active_subscription_exists"

    @pytest.mark.asyncio
    async def test_soft_cancelled_row_still_blocks(self, state_machine, reconciliation, active_sub):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=False))
        result = await reconciliation.check_reactivation_eligibility("user-1", "pkg-strength")
        assert result.can_reactivate is False

    @pytest.mark.asyncio
    async def test_no_history(self, reconciliation):
        result = await reconciliation.check_reactivation_eligibility("user-1", "pkg-strength")
        assert result.can_reactivate is False
        assert result.trial_eligible is True
        assert result.reason == "no_previous_subscription"

    @pytest.mark.asyncio
    async def test_used_trial_is_remembered_across_rows(self, state_machine, reconciliation):
        sub = await state_machine.open_subscription("user-1", "pkg-strength")
        await state_machine.apply_transition(sub.id, StartTrial())
        await state_machine.apply_transition(sub.id, RequestCancellation(immediate=True))

        result = await reconciliation.check_reactivation_eligibility("user-1", "pkg-strength")
        assert result.can_reactivate is True
        assert result.trial_eligible is False

    @pytest.mark.asyncio
    async def test_one_entry_per_package(self, state_machine, reconciliation, active_sub):
        await state_machine.open_subscription("user-1", "pkg-yoga")
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=True))

        results = await reconciliation.list_reactivation_eligibility("user-1")

        by_package = {r.package_id: r for r in results}
        assert set(by_package) == {"pkg-strength", "pkg-yoga"}
        assert by_package["pkg-strength"].can_reactivate is True
        assert by_package["pkg-yoga"].can_reactivate is False

    @pytest.mark.asyncio
    async def test_missing_ids(self, reconciliation):
        with pytest.raises(ValidationError):
            await reconciliation.check_reactivation_eligibility("user-1", "")


class TestAccessStatus:
    @pytest.mark.asyncio
    async def test_no_subscription(self, reconciliation):
        summary = await reconciliation.get_access_status("user-1")
        assert summary.status == AccessStatus.NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_prefers_row_with_access(self, state_machine, reconciliation, active_sub):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=True))
        yoga = await state_machine.open_subscription("user-1", "pkg-yoga")
        await state_machine.apply_transition(yoga.id, StartTrial())

        summary = await reconciliation.get_access_status("user-1")
        assert summary.status == AccessStatus.TRIAL
        assert summary.subscription_id == yoga.id

        summary = await reconciliation.get_access_status("user-1", "pkg-strength")
        assert summary.status == AccessStatus.EXPIRED
        assert summary.has_access is False

    @pytest.mark.asyncio
    async def test_active(self, reconciliation, active_sub):
        summary = await reconciliation.get_access_status("user-1", "pkg-strength")
        assert summary.status == AccessStatus.ACTIVE
        assert summary.expires_at == utc(2024, 2, 1, 12)
        assert summary.days_remaining == 31


class TestProviderOutbox:
    @pytest.fixture
    def provider(self):
        return MagicMock(cancel_subscription=AsyncMock())

    @pytest.fixture
    def service(self, state_machine, store, config, clock, provider):
        return ReconciliationService(state_machine, store, config, provider=provider, clock=clock)

    @pytest.mark.asyncio
    async def test_confirmed_actions_are_removed(self, service, store, provider):
        await store.enqueue_provider_action(
            ProviderAction.create("sub-1", "sub_ext_1", ProviderActionType.CANCEL_AT_PERIOD_END, last_error="timeout")
        )

        result = await service.sync_pending_provider_actions()

        assert result == {"pending": 1, "synced": 1, "failed": 0}
        provider.cancel_subscription.assert_awaited_once_with("sub_ext_1", cancel_immediately=False)
        assert await store.list_provider_actions() == []

    @pytest.mark.asyncio
    async def test_failures_stay_queued(self, service, store, provider):
        provider.cancel_subscription.side_effect = TransientProviderError("stripe down")
        action = ProviderAction.create("sub-1", "sub_ext_1", ProviderActionType.CANCEL_IMMEDIATELY, last_error="x")
        await store.enqueue_provider_action(action)

        result = await service.sync_pending_provider_actions()

        assert result["failed"] == 1
        (pending,) = await store.list_provider_actions()
        assert pending.attempts == 2
        assert "stripe down" in pending.last_error

    @pytest.mark.asyncio
    async def test_without_provider_nothing_happens(self, reconciliation, store):
        await store.enqueue_provider_action(
            ProviderAction.create("sub-1", "sub_ext_1", ProviderActionType.CANCEL_IMMEDIATELY)
        )
        assert await reconciliation.sync_pending_provider_actions() == {"pending": 0, "synced": 0, "failed": 0}


class TestExpirationSweeper:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        service = MagicMock(run_once=AsyncMock(return_value={}))
        sweeper = ExpirationSweeper(service, interval_seconds=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert sweeper.is_running is False
        assert service.run_once.await_count >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        service = MagicMock(run_once=AsyncMock(side_effect=[RuntimeError("boom"), {}, {}, {}, {}, {}, {}, {}, {}]))
        sweeper = ExpirationSweeper(service, interval_seconds=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert service.run_once.await_count >= 2

    @pytest.mark.asyncio
    async def test_run_once_reports_both_jobs(self, reconciliation, state_machine, active_sub, clock):
        await state_machine.apply_transition(active_sub.id, RequestCancellation(immediate=False))
        clock.set(utc(2024, 3, 1))

        result = await reconciliation.run_once()

        assert result["expired"] == 1
        assert result["provider_actions"]["pending"] == 0
