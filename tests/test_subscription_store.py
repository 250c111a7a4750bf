"""
MoMo Billing - Subscription Store Tests

Persistence, the one-live-subscription rule and atomic update retries.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm.exc import StaleDataError

from momo_billing.models.momo import (
    AttemptStatus,
    BillingPeriod,
    MoMoNetwork,
    MoMoSubscription,
    PaymentAttempt,
    SubscriptionStatus,
)
from momo_billing.utils.error_handling import (
    SubscriptionAlreadyExists,
    SubscriptionNotFound,
    TemporarilyUnavailable,
)
from tests.conftest import NOW, TIER, USER_ID


def new_subscription(**overrides) -> MoMoSubscription:
    values = dict(
        id=uuid4(),
        user_id=USER_ID,
        tier=TIER,
        phone="0241234567",
        email="payer@example.com",
        network=MoMoNetwork.MTN,
        amount=Decimal("50.00"),
        currency="GHS",
        billing_period=BillingPeriod.MONTHLY,
        status=SubscriptionStatus.PENDING,
        failure_count=0,
    )
    values.update(overrides)
    return MoMoSubscription(**values)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        subscription = await store.create(new_subscription(latest_reference="momo_first_ref_1"))
        
        loaded = await store.get(subscription.id)
        assert loaded is not None
        assert loaded.status == SubscriptionStatus.PENDING
        assert loaded.network == MoMoNetwork.MTN
        assert loaded.amount == Decimal("50.00")
        assert loaded.version_id == 1
        assert loaded.created_at is not None
    
    @pytest.mark.asyncio
    async def test_second_live_subscription_rejected(self, store, make_subscription):
        await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW)
        
        with pytest.raises(SubscriptionAlreadyExists):
            await store.create(new_subscription())
    
    @pytest.mark.asyncio
    async def test_terminal_subscriptions_do_not_block(self, store, make_subscription):
        await make_subscription(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
        await make_subscription(status=SubscriptionStatus.FAILED, failed_at=NOW)
        
        subscription = await store.create(new_subscription())
        
        assert (await store.find_live(USER_ID, TIER)).id == subscription.id
    
    @pytest.mark.asyncio
    async def test_other_tier_is_independent(self, store, make_subscription):
        await make_subscription(status=SubscriptionStatus.ACTIVE, last_payment_date=NOW)
        
        subscription = await store.create(new_subscription(tier="business"))
        
        assert subscription.tier == "business"


class TestReads:
    @pytest.mark.asyncio
    async def test_find_live_ignores_terminal(self, store, make_subscription):
        await make_subscription(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW)
        
        assert await store.find_live(USER_ID, TIER) is None
        assert (await store.find_latest(USER_ID, TIER)).status == SubscriptionStatus.CANCELLED
    
    @pytest.mark.asyncio
    async def test_find_by_reference(self, store, make_subscription):
        subscription = await make_subscription(latest_reference="momo_first_lookup")
        
        found = await store.find_by_reference("momo_first_lookup")
        
        assert found.id == subscription.id
        assert await store.find_by_reference("momo_first_other") is None
    
    @pytest.mark.asyncio
    async def test_list_due_active(self, store, make_subscription):
        due = await make_subscription(
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=31),
        )
        await make_subscription(
            tier="business",
            status=SubscriptionStatus.ACTIVE,
            last_payment_date=NOW - timedelta(days=5),
        )
        await make_subscription(tier="starter", status=SubscriptionStatus.PENDING)
        
        assert await store.list_due_active(NOW) == [due.id]


class TestAtomicUpdate:
    @pytest.mark.asyncio
    async def test_mutation_and_added_rows_commit_together(self, store, make_subscription):
        subscription = await make_subscription()
        
        async def mutate(session, current):
            current.failure_count += 1
            session.add(PaymentAttempt(
                reference="momo_first_atomic",
                subscription_id=current.id,
                status=AttemptStatus.FAILED,
                subscription_status=current.status,
                failure_count=current.failure_count,
                processed_at=NOW,
            ))
            return current
        
        updated = await store.atomic_update(subscription.id, mutate)
        
        assert updated.failure_count == 1
        assert updated.version_id == 2
        attempt = await store.get_attempt("momo_first_atomic")
        assert attempt.status == AttemptStatus.FAILED
        assert [a.reference for a in await store.list_attempts(subscription.id)] == ["momo_first_atomic"]
    
    @pytest.mark.asyncio
    async def test_missing_subscription(self, store):
        async def mutate(session, current):
            return current
        
        with pytest.raises(SubscriptionNotFound):
            await store.atomic_update(uuid4(), mutate)
    
    @pytest.mark.asyncio
    async def test_failed_mutation_rolls_back(self, store, make_subscription):
        subscription = await make_subscription()
        
        async def mutate(session, current):
            current.failure_count = 99
            raise ValueError("boom")
        
        with pytest.raises(ValueError):
            await store.atomic_update(subscription.id, mutate)
        
        assert (await store.get(subscription.id)).failure_count == 0
    
    @pytest.mark.asyncio
    async def test_retries_after_conflict(self, store, make_subscription):
        subscription = await make_subscription()
        calls = []
        
        async def mutate(session, current):
            calls.append(current.version_id)
            if len(calls) == 1:
                raise StaleDataError("simulated concurrent write")
            current.failure_count += 1
            return current
        
        updated = await store.atomic_update(subscription.id, mutate)
        
        assert len(calls) == 2
        assert updated.failure_count == 1
    
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, store, make_subscription):
        subscription = await make_subscription()
        calls = []
        
        async def mutate(session, current):
            calls.append(1)
            raise StaleDataError("simulated concurrent write")
        
        with pytest.raises(TemporarilyUnavailable):
            await store.atomic_update(subscription.id, mutate)
        
        assert len(calls) == 3
    
    @pytest.mark.asyncio
    async def test_interleaved_writers_do_not_lose_updates(self, store, make_subscription):
        subscription = await make_subscription()
        slow_has_read = asyncio.Event()
        other_committed = asyncio.Event()
        slow_calls = []
        
        async def slow_increment(session, current):
            slow_calls.append(current.version_id)
            if len(slow_calls) == 1:
                # Hold the stale read until the other writer commits
                slow_has_read.set()
                await other_committed.wait()
            current.failure_count += 1
            return current
        
        async def fast_increment(session, current):
            current.failure_count += 1
            return current
        
        async def fast_writer():
            await slow_has_read.wait()
            result = await store.atomic_update(subscription.id, fast_increment)
            other_committed.set()
            return result
        
        await asyncio.gather(
            store.atomic_update(subscription.id, slow_increment),
            fast_writer(),
        )
        
        final = await store.get(subscription.id)
        assert final.failure_count == 2
        assert slow_calls == [1, 2]
