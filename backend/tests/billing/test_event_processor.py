import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from fitspace.billing.domain.entities import BillingStatus, SubscriptionStatus
from fitspace.billing.events.models import ExternalEvent, IngestOutcome
from fitspace.billing.shared.exceptions import TransientStoreError, ValidationError


async def checkout(processor, make_event, external_id="sub_ext_1", **payload):
    fields = dict(userId="user-1", packageId="pkg-strength", amount=10000, currency="USD", chargeId="ch_1")
    fields.update(payload)
    return await processor.ingest(make_event("checkout-completed", external_id=external_id, **fields))


class TestCreation:
    @pytest.mark.asyncio
    async def test_checkout_completed_opens_and_activates(self, processor, store, make_event):
        result = await checkout(processor, make_event)

        assert result.outcome == IngestOutcome.APPLIED
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.id == result.subscription_id
        assert sub.status == SubscriptionStatus.ACTIVE
        records = await store.list_records(sub.id)
        assert [r.amount for r in records] == [0, 10000]

    @pytest.mark.asyncio
    async def test_checkout_with_trial_starts_trial(self, processor, store, make_event):
        await checkout(processor, make_event, trial=True, amount=0)
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.is_trial_active is True

    @pytest.mark.asyncio
    async def test_subscription_created_without_trial_stays_pending(self, processor, store, make_event):
        result = await processor.ingest(
            make_event("subscription-created", userId="user-1", packageId="pkg-strength")
        )
        assert result.outcome == IngestOutcome.APPLIED
        assert (await store.get(result.subscription_id)).status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_creation_needs_user_and_package(self, processor, make_event):
        with pytest.raises(ValidationError):
            await processor.ingest(make_event("checkout-completed", amount=100))

    @pytest.mark.asyncio
    async def test_creation_for_pair_with_live_row_is_dropped(self, processor, store, make_event):
        await checkout(processor, make_event)
        result = await checkout(processor, make_event, external_id="sub_ext_2")

        assert result.outcome == IngestOutcome.DROPPED
        assert len(await store.list_for_user_package("user-1", "pkg-strength")) == 1

    @pytest.mark.asyncio
    async def test_reactivation_links_previous_row(self, processor, state_machine, store, make_event):
        first = await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-cancelled"))

        result = await checkout(processor, make_event, external_id="sub_ext_2", chargeId="ch_2",
                                previousSubscriptionId=first.subscription_id)

        assert result.outcome == IngestOutcome.APPLIED
        new = await store.get(result.subscription_id)
        assert new.previous_subscription_id == first.subscription_id
        assert new.status == SubscriptionStatus.ACTIVE
        assert (await store.get(first.subscription_id)).status == SubscriptionStatus.CANCELLED


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_replayed_event_changes_nothing(self, processor, store, make_event):
        event = make_event("checkout-completed", userId="user-1", packageId="pkg-strength",
                           amount=10000, currency="USD", chargeId="ch_1")
        first = await processor.ingest(event)
        sub_before = await store.get(first.subscription_id)
        records_before = await store.list_records(first.subscription_id)

        second = await processor.ingest(event)

        assert second.outcome == IngestOutcome.DUPLICATE
        assert await store.get(first.subscription_id) == sub_before
        assert await store.list_records(first.subscription_id) == records_before

    @pytest.mark.asyncio
    async def test_concurrent_copies_apply_once(self, processor, store, make_event):
        await checkout(processor, make_event)
        event = make_event("subscription-payment-failed", reason="card_declined")

        results = await asyncio.gather(*[processor.ingest(event) for _ in range(4)])

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied", "duplicate", "duplicate", "duplicate"]
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.failed_payment_retries == 1

    @pytest.mark.asyncio
    async def test_duplicate_refund_books_one_negative_record(self, processor, store, make_event):
        await checkout(processor, make_event)
        refund = make_event("charge-refunded", amount=10000, currency="USD", chargeId="ch_1")

        first = await processor.ingest(refund)
        second = await processor.ingest(refund)

        assert first.outcome == IngestOutcome.APPLIED
        assert second.outcome == IngestOutcome.DUPLICATE
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.status == SubscriptionStatus.CANCELLED
        negatives = [r for r in await store.list_records(sub.id) if r.amount < 0]
        assert len(negatives) == 1
        assert negatives[0].amount == -10000


class TestMapping:
    @pytest.mark.asyncio
    async def test_payment_failed_then_renewed(self, processor, store, make_event):
        await checkout(processor, make_event)

        await processor.ingest(make_event("subscription-payment-failed", reason="card_declined"))
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.is_in_grace_period is True

        result = await processor.ingest(make_event("subscription-renewed", amount=10000, chargeId="ch_2"))
        assert result.outcome == IngestOutcome.APPLIED
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.is_in_grace_period is False
        assert sub.failed_payment_retries == 0

    @pytest.mark.asyncio
    async def test_cancelled_defaults_to_immediate(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-cancelled"))
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_at_period_end(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-cancelled", immediate=False))
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.CANCELLED_ACTIVE

    @pytest.mark.asyncio
    async def test_refund_without_charge_id_hits_only_charge(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("charge-refunded"))

        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.status == SubscriptionStatus.CANCELLED
        assert (await store.list_records(sub.id))[-1].amount == -10000

    @pytest.mark.asyncio
    async def test_refund_of_renewal_charge_keeps_access(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-renewed", amount=10000, chargeId="ch_2"))

        await processor.ingest(make_event("charge-refunded", amount=4000, chargeId="ch_2"))

        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        last = (await store.list_records(sub.id))[-1]
        assert last.amount == -4000
        assert last.status == BillingStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_checkout_expired_cancels_pending(self, processor, store, make_event):
        await processor.ingest(make_event("subscription-created", userId="user-1", packageId="pkg-strength"))
        result = await processor.ingest(make_event("checkout-expired"))

        assert result.outcome == IngestOutcome.APPLIED
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_trial_will_end_is_ignored(self, processor, store, make_event):
        await checkout(processor, make_event, trial=True, amount=0)
        before = await store.get_by_external_id("sub_ext_1")

        result = await processor.ingest(make_event("trial-will-end"))

        assert result.outcome == IngestOutcome.IGNORED
        assert await store.get_by_external_id("sub_ext_1") == before


class TestRejections:
    @pytest.mark.asyncio
    async def test_unknown_subscription_is_dropped(self, processor, make_event):
        result = await processor.ingest(make_event("subscription-renewed", external_id="sub_nobody"))
        assert result.outcome == IngestOutcome.DROPPED

    @pytest.mark.asyncio
    async def test_out_of_order_event_is_dropped(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-cancelled"))

        result = await processor.ingest(make_event("subscription-payment-failed"))

        assert result.outcome == IngestOutcome.DROPPED
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unsupported_currency(self, processor, make_event):
        with pytest.raises(ValidationError):
            await checkout(processor, make_event, currency="JPY")

    @pytest.mark.asyncio
    async def test_malformed_event(self, processor):
        with pytest.raises(ValidationError):
            await processor.ingest({"eventId": "evt_1", "type": "subscription-renewed"})

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, processor, make_event):
        with pytest.raises(ValidationError):
            await processor.ingest(make_event("subscription-paused"))

    def test_snake_case_keys_are_accepted(self):
        event = ExternalEvent.parse({
            "event_id": "evt_1",
            "subscription_external_id": "sub_ext_1",
            "type": "subscription-renewed",
            "occurred_at": "2024-01-01T00:00:00",
            "payload": {"amount": 100, "currency": "usd", "charge_id": "ch_9"},
        })
        assert event.payload.currency == "USD"
        assert event.payload.charge_id == "ch_9"
        assert event.occurred_at.tzinfo is not None


def at(event: dict, when) -> dict:
    event["occurredAt"] = when.isoformat()
    return event


class TestOrdering:
    @pytest.mark.asyncio
    async def test_late_payment_failure_after_renewal_is_dropped(
        self, processor, store, reconciliation, make_event, clock
    ):
        sent_at = clock()
        await checkout(processor, make_event)
        renewed = await processor.ingest(at(
            make_event("subscription-renewed", amount=10000, chargeId="ch_2"), sent_at + timedelta(hours=1)
        ))
        assert renewed.outcome == IngestOutcome.APPLIED
        records_before = await store.list_records(renewed.subscription_id)

        result = await processor.ingest(at(make_event("subscription-payment-failed", reason="card_declined"), sent_at))

        assert result.outcome == IngestOutcome.DROPPED
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.is_in_grace_period is False
        assert sub.failed_payment_retries == 0
        assert sub.last_event_at == sent_at + timedelta(hours=1)
        assert await store.list_records(sub.id) == records_before

        clock.advance(days=4)
        assert await reconciliation.sweep_expirations() == 0
        assert (await store.get(sub.id)).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_events_in_the_same_second_are_applied(self, processor, store, make_event):
        await checkout(processor, make_event)
        await processor.ingest(make_event("subscription-payment-failed"))

        result = await processor.ingest(make_event("subscription-renewed", amount=10000, chargeId="ch_2"))

        assert result.outcome == IngestOutcome.APPLIED
        assert (await store.get_by_external_id("sub_ext_1")).is_in_grace_period is False

    @pytest.mark.asyncio
    async def test_creation_records_event_time(self, processor, store, make_event, clock):
        await processor.ingest(make_event("subscription-created", userId="user-1", packageId="pkg-strength"))
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.last_event_at == clock()

        result = await processor.ingest(at(make_event("checkout-expired"), clock() - timedelta(minutes=5)))

        assert result.outcome == IngestOutcome.DROPPED
        assert (await store.get(sub.id)).status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_late_creation_event_still_activates(self, processor, store, make_event, clock):
        await processor.ingest(make_event("subscription-created", userId="user-1", packageId="pkg-strength"))

        result = await processor.ingest(at(
            make_event("checkout-completed", userId="user-1", packageId="pkg-strength", amount=10000),
            clock() - timedelta(seconds=30),
        ))

        assert result.outcome == IngestOutcome.APPLIED
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_late_refund_is_still_booked(self, processor, store, make_event, clock):
        await checkout(processor, make_event)
        await processor.ingest(at(
            make_event("subscription-renewed", amount=10000, chargeId="ch_2"), clock() + timedelta(hours=1)
        ))

        result = await processor.ingest(make_event("charge-refunded", amount=2000, chargeId="ch_2"))

        assert result.outcome == IngestOutcome.APPLIED
        sub = await store.get_by_external_id("sub_ext_1")
        assert (await store.list_records(sub.id))[-1].amount == -2000


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_books_pending_audit_line(self, processor, store, make_event):
        await checkout(processor, make_event)

        with patch("fitspace.billing.events.processor.logger") as log:
            result = await processor.ingest(
                make_event("charge-disputed", amount=10000, currency="USD", chargeId="ch_1", reason="fraudulent")
            )

        assert result.outcome == IngestOutcome.APPLIED
        sub = await store.get_by_external_id("sub_ext_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        last = (await store.list_records(sub.id))[-1]
        assert last.amount == 0
        assert last.status == BillingStatus.PENDING
        assert last.failure_reason == "disputed: fraudulent"
        assert last.external_reference == "ch_1"
        log.critical.assert_called_once()
        assert "[EVENTS] Dispute opened" in log.critical.call_args.args[0]

    @pytest.mark.asyncio
    async def test_replayed_dispute_is_booked_once(self, processor, store, make_event):
        await checkout(processor, make_event)
        event = make_event("charge-disputed", amount=10000, chargeId="ch_1")

        await processor.ingest(event)
        result = await processor.ingest(event)

        assert result.outcome == IngestOutcome.DUPLICATE
        records = await store.list_records(result.subscription_id)
        assert sum(1 for r in records if r.failure_reason and r.failure_reason.startswith("disputed")) == 1

    @pytest.mark.asyncio
    async def test_dispute_on_pending_subscription_is_dropped(self, processor, make_event):
        await processor.ingest(make_event("subscription-created", userId="user-1", packageId="pkg-strength"))
        result = await processor.ingest(make_event("charge-disputed", amount=100))
        assert result.outcome == IngestOutcome.DROPPED


class TestTransientFailures:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, processor, store, make_event):
        real_get = store.get_by_external_id
        calls = {"n": 0}

        async def flaky(external_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransientStoreError("connection reset")
            return await real_get(external_id)

        with patch.object(store, "get_by_external_id", side_effect=flaky):
            result = await checkout(processor, make_event)

        assert result.outcome == IngestOutcome.APPLIED
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter_then_replay(self, processor, store, dlq, make_event):
        failing = AsyncMock(side_effect=TransientStoreError("database unavailable"))
        with patch.object(store, "get_by_external_id", failing):
            result = await checkout(processor, make_event)

        assert result.outcome == IngestOutcome.DEAD_LETTERED
        assert failing.await_count == 3
        entries = await dlq.get_entries()
        assert len(entries) == 1
        assert entries[0].event_type == "checkout-completed"
        assert entries[0].attempt_count == 3
        assert "database unavailable" in entries[0].error

        summary = await processor.replay_dead_letters()

        assert summary == {"replayed": 1, "failed": 0}
        assert await dlq.get_entries() == []
        assert (await store.get_by_external_id("sub_ext_1")).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_replay_keeps_entries_that_still_fail(self, processor, store, dlq, make_event):
        failing = AsyncMock(side_effect=TransientStoreError("database unavailable"))
        with patch.object(store, "get_by_external_id", failing):
            await checkout(processor, make_event)
            summary = await processor.replay_dead_letters()

        assert summary == {"replayed": 0, "failed": 1}
        assert len(await dlq.get_entries()) == 1
