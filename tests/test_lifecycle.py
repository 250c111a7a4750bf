"""
MoMo Billing - Subscription Lifecycle Tests

State machine transitions, creation rules, renewals and cancellation.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from momo_billing.models.momo import BillingPeriod, MoMoNetwork, SubscriptionStatus
from momo_billing.services.billing_events import BillingEventType
from momo_billing.services.gateway import VerificationResult
from momo_billing.services.lifecycle import AMOUNT_MISMATCH
from momo_billing.utils.error_handling import (
    GatewayTimeout,
    GatewayUnavailable,
    InvalidAmountException,
    InvalidPhoneOrNetwork,
    MandateCancellationFailed,
    SubscriptionAlreadyExists,
    SubscriptionInactive,
    SubscriptionNotFound,
    ValidationException,
)
from tests.conftest import NOW, TIER, USER_ID


SUCCESS = VerificationResult(verified=True, amount_confirmed=Decimal("50.00"), gateway_response_code="success")
DECLINED = VerificationResult(verified=False, amount_confirmed=None, gateway_response_code="failed")


async def apply(lifecycle, subscription_id, reference, verification, now=NOW):
    """Apply a verdict the way the callback processor does."""
    events = []
    
    async def mutate(session, current):
        events.clear()
        return await lifecycle.apply_payment_result(session, current, reference, verification, now, events)
    
    result = await lifecycle.store.atomic_update(subscription_id, mutate)
    await lifecycle.events.publish_all(events)
    return result


def event_types(recorded_events):
    return [event.event_type for event in recorded_events]


# =============================================================================
# CREATION
# =============================================================================

class TestCreateSubscription:
    @pytest.mark.asyncio
    async def test_creates_pending_subscription(self, lifecycle, store, fake_gateway):
        subscription, charge = await lifecycle.create_subscription(
            USER_ID, TIER, "+233241234567", "payer@example.com", "50", "monthly",
        )
        
        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.phone == "0241234567"
        assert subscription.network == MoMoNetwork.MTN
        assert subscription.amount == Decimal("50.00")
        assert subscription.last_payment_date is None
        assert subscription.latest_reference == charge.reference
        assert charge.reference.startswith("momo_first_")
        
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.PENDING
        fake_gateway.initiate_charge.assert_awaited_once()
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone,network", [
        ("0241234567", MoMoNetwork.MTN),
        ("0551234567", MoMoNetwork.MTN),
        ("0201234567", MoMoNetwork.VODAFONE),
        ("0501234567", MoMoNetwork.VODAFONE),
        ("0271234567", MoMoNetwork.AIRTELTIGO),
        ("0571234567", MoMoNetwork.AIRTELTIGO),
    ])
    async def test_network_detected_from_prefix(self, lifecycle, phone, network):
        subscription, _ = await lifecycle.create_subscription(USER_ID, TIER, phone, "payer@example.com", "50")
        
        assert subscription.network == network
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["12345", "0141234567", "+2340241234567", "", "02412345678"])
    async def test_invalid_phone(self, lifecycle, store, fake_gateway, phone):
        with pytest.raises(InvalidPhoneOrNetwork):
            await lifecycle.create_subscription(USER_ID, TIER, phone, "payer@example.com", "50")
        
        fake_gateway.initiate_charge.assert_not_awaited()
        assert await store.find_latest(USER_ID, TIER) is None
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    async def test_invalid_amount(self, lifecycle, amount):
        with pytest.raises(InvalidAmountException):
            await lifecycle.create_subscription(USER_ID, TIER, "0241234567", "payer@example.com", amount)
    
    @pytest.mark.asyncio
    async def test_invalid_billing_period(self, lifecycle):
        with pytest.raises(ValidationException):
            await lifecycle.create_subscription(
                USER_ID, TIER, "0241234567", "payer@example.com", "50", "daily",
            )
    
    @pytest.mark.asyncio
    async def test_existing_live_subscription(self, lifecycle, make_subscription, fake_gateway):
        existing = await make_subscription(status=SubscriptionStatus.OVERDUE, last_payment_date=NOW - timedelta(days=40))
        
        with pytest.raises(SubscriptionAlreadyExists) as exc_info:
            await lifecycle.create_subscription(USER_ID, TIER, "0241234567", "payer@example.com", "50")
        
        assert exc_info.value.details["subscription_id"] == str(existing.id)
        fake_gateway.initiate_charge.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_resubscribe_after_cancel(self, lifecycle, make_subscription):
        await make_subscription(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
        
        subscription, _ = await lifecycle.create_subscription(USER_ID, TIER, "0241234567", "payer@example.com", "50")
        
        assert subscription.status == SubscriptionStatus.PENDING
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [GatewayUnavailable(), GatewayTimeout()])
    async def test_gateway_failure_leaves_no_state(self, lifecycle, store, fake_gateway, error):
        fake_gateway.initiate_charge.side_effect = error
        
        with pytest.raises(type(error)):
            await lifecycle.create_subscription(USER_ID, TIER, "0241234567", "payer@example.com", "50")
        
        assert await store.find_latest(USER_ID, TIER) is None


# =============================================================================
# PAYMENT RESULTS
# =============================================================================

class TestPaymentResults:
    @pytest.mark.asyncio
    async def test_first_success_activates(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(latest_reference="momo_first_1")
        
        result = await apply(lifecycle, subscription.id, "momo_first_1", SUCCESS)
        
        assert result.is_success
        assert result.subscription_status == "active"
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.last_payment_date == NOW
        assert stored.next_payment_date == NOW + timedelta(days=30)
        assert stored.failure_count == 0
        assert event_types(recorded_events) == [BillingEventType.ACTIVATED]
    
    @pytest.mark.asyncio
    async def test_first_failure_stays_pending(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription()
        
        result = await apply(lifecycle, subscription.id, "momo_first_1", DECLINED)
        
        assert result.attempt_status == "failed"
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.PENDING
        assert stored.failure_count == 1
        assert recorded_events == []
    
    @pytest.mark.asyncio
    async def test_renewal_extends_from_payment_time(self, lifecycle, store, make_subscription, recorded_events):
        paid = NOW - timedelta(days=20)
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=paid)
        
        await apply(lifecycle, subscription.id, "momo_renewal_1", SUCCESS)
        
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.last_payment_date == NOW
        # Already active, nothing to announce
        assert recorded_events == []
    
    @pytest.mark.asyncio
    async def test_last_payment_date_never_moves_backwards(self, lifecycle, store, make_subscription):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW)
        
        await apply(lifecycle, subscription.id, "momo_renewal_late", SUCCESS, now=NOW - timedelta(days=2))
        
        assert (await store.get(subscription.id)).last_payment_date == NOW
    
    @pytest.mark.asyncio
    async def test_failure_on_due_subscription_marks_overdue(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )
        
        result = await apply(lifecycle, subscription.id, "momo_renewal_1", DECLINED)
        
        assert result.subscription_status == "overdue"
        assert result.failure_count == 1
        assert event_types(recorded_events) == [BillingEventType.OVERDUE]
    
    @pytest.mark.asyncio
    async def test_failure_before_due_date_keeps_active(self, lifecycle, store, make_subscription):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=10),
        )
        
        await apply(lifecycle, subscription.id, "momo_renewal_early", DECLINED)
        
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failure_count == 1
    
    @pytest.mark.asyncio
    async def test_early_failures_do_not_count_once_due(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=20),
        )
        for i in range(3):
            await apply(lifecycle, subscription.id, f"momo_renewal_early_{i}", DECLINED,
                        now=NOW - timedelta(days=10) + timedelta(hours=i))
        assert (await store.get(subscription.id)).failure_count == 3

        result = await apply(lifecycle, subscription.id, "momo_renewal_due", DECLINED, now=NOW + timedelta(days=11))

        assert result.subscription_status == "overdue"
        assert result.failure_count == 1
        assert event_types(recorded_events) == [BillingEventType.OVERDUE]

    @pytest.mark.asyncio
    async def test_success_on_due_date_stays_active_silently(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )

        result = await apply(lifecycle, subscription.id, "momo_renewal_1", SUCCESS)

        assert result.subscription_status == "active"
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.next_payment_date == NOW + timedelta(days=30)
        assert recorded_events == []

    @pytest.mark.asyncio
    async def test_events_carry_reference(self, lifecycle, make_subscription, recorded_events):
        pending = await make_subscription(latest_reference="momo_first_1")
        due = await make_subscription(
            tier="basic",
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )

        await apply(lifecycle, pending.id, "momo_first_1", SUCCESS)
        await apply(lifecycle, due.id, "momo_renewal_1", DECLINED)

        assert [(e.event_type, e.reference) for e in recorded_events] == [
            (BillingEventType.ACTIVATED, "momo_first_1"),
            (BillingEventType.OVERDUE, "momo_renewal_1"),
        ]

    @pytest.mark.asyncio
    async def test_overdue_success_reactivates(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(
            status=SubscriptionStatus.OVERDUE,
            last_payment_date=NOW - timedelta(days=35),
            failure_count=2,
        )
        
        await apply(lifecycle, subscription.id, "momo_renewal_1", SUCCESS)
        
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failure_count == 0
        assert stored.next_payment_date == NOW + timedelta(days=30)
        assert event_types(recorded_events) == [BillingEventType.ACTIVATED]
    
    @pytest.mark.asyncio
    async def test_repeated_failures_fail_subscription(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )
        
        first = await apply(lifecycle, subscription.id, "momo_renewal_1", DECLINED)
        second = await apply(lifecycle, subscription.id, "momo_renewal_2", DECLINED, now=NOW + timedelta(days=1))
        third = await apply(lifecycle, subscription.id, "momo_renewal_3", DECLINED, now=NOW + timedelta(days=2))
        
        assert [r.subscription_status for r in (first, second, third)] == ["overdue", "overdue", "failed"]
        assert [r.failure_count for r in (first, second, third)] == [1, 2, 3]
        stored = await store.get(subscription.id)
        assert stored.status == SubscriptionStatus.FAILED
        assert stored.failed_at == NOW + timedelta(days=2)
        assert event_types(recorded_events) == [
            BillingEventType.OVERDUE,
            BillingEventType.OVERDUE,
            BillingEventType.FAILED,
        ]
    
    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, lifecycle, store, make_subscription):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )
        
        await apply(lifecycle, subscription.id, "momo_renewal_1", DECLINED)
        await apply(lifecycle, subscription.id, "momo_renewal_2", DECLINED)
        await apply(lifecycle, subscription.id, "momo_renewal_3", SUCCESS)
        await apply(lifecycle, subscription.id, "momo_renewal_4", DECLINED)
        
        stored = await store.get(subscription.id)
        # Payment landed, so the new period is not yet due and the count restarts
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failure_count == 1
    
    @pytest.mark.asyncio
    async def test_underpayment_counts_as_failure(self, lifecycle, store, make_subscription):
        subscription = await make_subscription()
        short = VerificationResult(verified=True, amount_confirmed=Decimal("20.00"), gateway_response_code="success")
        
        result = await apply(lifecycle, subscription.id, "momo_first_short", short)
        
        assert result.attempt_status == "failed"
        assert result.gateway_response_code == AMOUNT_MISMATCH
        assert (await store.get(subscription.id)).status == SubscriptionStatus.PENDING
    
    @pytest.mark.asyncio
    async def test_mandate_recorded_from_metadata(self, lifecycle, store, make_subscription):
        subscription = await make_subscription()
        verification = VerificationResult(
            verified=True,
            amount_confirmed=Decimal("50.00"),
            gateway_response_code="success",
            metadata={"subscription_code": "SUB_abc", "email_token": "tok_1"},
        )
        
        await apply(lifecycle, subscription.id, "momo_first_mandate", verification)
        
        stored = await store.get(subscription.id)
        assert stored.mandate_code == "SUB_abc"
        assert stored.mandate_token == "tok_1"
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SubscriptionStatus.CANCELLED, SubscriptionStatus.FAILED])
    async def test_terminal_subscription_only_logs_attempt(self, lifecycle, store, make_subscription, recorded_events, status):
        subscription = await make_subscription(status=status, failure_count=3)
        
        result = await apply(lifecycle, subscription.id, "momo_renewal_late", SUCCESS)
        
        assert result.attempt_status == "success"
        assert result.subscription_status == status.value
        stored = await store.get(subscription.id)
        assert stored.status == status
        assert stored.last_payment_date is None
        assert (await store.get_attempt("momo_renewal_late")) is not None
        assert recorded_events == []
    
    @pytest.mark.asyncio
    async def test_same_reference_applied_once(self, lifecycle, store, make_subscription):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )
        
        first = await apply(lifecycle, subscription.id, "momo_renewal_dup", DECLINED)
        second = await apply(lifecycle, subscription.id, "momo_renewal_dup", DECLINED)
        
        assert first == second
        assert second.replayed is True
        assert (await store.get(subscription.id)).failure_count == 1


# =============================================================================
# OWNER OPERATIONS
# =============================================================================

class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_renewal_charge_records_reference(self, lifecycle, store, make_subscription, fake_gateway):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW - timedelta(days=29))
        
        charge = await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW)
        
        assert charge.reference.startswith("momo_renewal_")
        assert (await store.get(subscription.id)).latest_reference == charge.reference
        assert fake_gateway.initiate_charge.await_args.kwargs["renewal"] is True
    
    @pytest.mark.asyncio
    async def test_pending_retry_is_first_payment(self, lifecycle, make_subscription, fake_gateway):
        subscription = await make_subscription()
        
        charge = await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW)
        
        assert charge.reference.startswith("momo_first_")
    
    @pytest.mark.asyncio
    async def test_due_subscription_is_relabelled(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW - timedelta(days=30))
        
        await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW)
        
        assert (await store.get(subscription.id)).status == SubscriptionStatus.OVERDUE
        assert event_types(recorded_events) == [BillingEventType.OVERDUE]
    
    @pytest.mark.asyncio
    async def test_terminal_subscription_rejected(self, lifecycle, make_subscription, fake_gateway):
        subscription = await make_subscription(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
        
        with pytest.raises(SubscriptionInactive):
            await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW)
        
        fake_gateway.initiate_charge.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_other_users_subscription_hidden(self, lifecycle, make_subscription):
        subscription = await make_subscription(user_id="someone_else")
        
        with pytest.raises(SubscriptionNotFound):
            await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW)


class TestReferenceOwnership:
    @pytest.mark.asyncio
    async def test_issuing_subscription_found(self, lifecycle, make_subscription):
        subscription = await make_subscription(latest_reference="momo_first_1")

        found = await lifecycle.get_subscription_for_reference(USER_ID, "momo_first_1")

        assert found.id == subscription.id

    @pytest.mark.asyncio
    async def test_processed_reference_found_through_attempt_log(self, lifecycle, make_subscription):
        subscription = await make_subscription(latest_reference="momo_first_1")
        await apply(lifecycle, subscription.id, "momo_first_1", SUCCESS)
        await lifecycle.initiate_payment(USER_ID, subscription.id, now=NOW + timedelta(days=29))

        found = await lifecycle.get_subscription_for_reference(USER_ID, "momo_first_1")

        assert found.id == subscription.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("processed", [False, True])
    async def test_other_users_reference_hidden(self, lifecycle, make_subscription, processed):
        subscription = await make_subscription(user_id="someone_else", latest_reference="momo_first_1")
        if processed:
            await apply(lifecycle, subscription.id, "momo_first_1", DECLINED)

        with pytest.raises(SubscriptionNotFound):
            await lifecycle.get_subscription_for_reference(USER_ID, "momo_first_1")

    @pytest.mark.asyncio
    async def test_unknown_reference_left_to_gateway(self, lifecycle):
        assert await lifecycle.get_subscription_for_reference(USER_ID, "momo_first_unknown") is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_active(self, lifecycle, store, make_subscription, recorded_events):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW - timedelta(days=3))
        
        cancelled = await lifecycle.cancel(USER_ID, subscription.id, now=NOW)
        
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert (await store.get(subscription.id)).status == SubscriptionStatus.CANCELLED
        assert event_types(recorded_events) == [BillingEventType.CANCELLED]
    
    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, lifecycle, make_subscription, recorded_events, fake_gateway):
        subscription = await make_subscription()
        
        await lifecycle.cancel(USER_ID, subscription.id, now=NOW)
        again = await lifecycle.cancel(USER_ID, subscription.id, now=NOW + timedelta(days=1))
        
        assert again.status == SubscriptionStatus.CANCELLED
        assert again.cancelled_at == NOW
        assert len(recorded_events) == 1
        assert fake_gateway.cancel_recurring_mandate.await_count == 1
    
    @pytest.mark.asyncio
    async def test_mandate_failure_does_not_block_cancel(self, lifecycle, make_subscription, fake_gateway):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW, mandate_code="SUB_x")
        fake_gateway.cancel_recurring_mandate.side_effect = MandateCancellationFailed()
        
        cancelled = await lifecycle.cancel(USER_ID, subscription.id, now=NOW)
        
        assert cancelled.status == SubscriptionStatus.CANCELLED
    
    @pytest.mark.asyncio
    async def test_cancel_wins_over_later_success(self, lifecycle, store, make_subscription):
        subscription = await make_subscription(latest_reference="momo_first_1")
        
        await lifecycle.cancel(USER_ID, subscription.id, now=NOW)
        await apply(lifecycle, subscription.id, "momo_first_1", SUCCESS, now=NOW + timedelta(minutes=5))
        
        assert (await store.get(subscription.id)).status == SubscriptionStatus.CANCELLED
    
    @pytest.mark.asyncio
    async def test_cancelled_failed_subscription_stays_failed(self, lifecycle, make_subscription):
        subscription = await make_subscription(status=SubscriptionStatus.FAILED, failed_at=NOW, failure_count=3)
        
        result = await lifecycle.cancel(USER_ID, subscription.id, now=NOW)
        
        assert result.status == SubscriptionStatus.FAILED


class TestReevaluate:
    @pytest.mark.asyncio
    async def test_relabels_due_subscription(self, lifecycle, make_subscription, recorded_events):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW - timedelta(days=30))
        
        updated = await lifecycle.reevaluate(subscription.id, now=NOW)
        
        assert updated.status == SubscriptionStatus.OVERDUE
        assert event_types(recorded_events) == [BillingEventType.OVERDUE]
    
    @pytest.mark.asyncio
    async def test_not_yet_due(self, lifecycle, make_subscription, recorded_events):
        subscription = await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW - timedelta(days=29))
        
        updated = await lifecycle.reevaluate(subscription.id, now=NOW)
        
        assert updated.status == SubscriptionStatus.ACTIVE
        assert recorded_events == []
    
    @pytest.mark.asyncio
    async def test_weekly_period(self, lifecycle, make_subscription):
        subscription = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            billing_period=BillingPeriod.WEEKLY,
            last_payment_date=NOW - timedelta(days=7),
            next_payment_date=NOW,
        )
        
        updated = await lifecycle.reevaluate(subscription.id, now=NOW)
        
        assert updated.status == SubscriptionStatus.OVERDUE
