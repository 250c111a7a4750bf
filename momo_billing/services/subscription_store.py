"""
MoMo Billing - Subscription Store

Durable storage for subscriptions and payment attempts.

Every write runs as one atomic unit in its own session and transaction.
Lost updates are detected through the subscription version counter
(StaleDataError) and duplicate references through the unique constraint on
payment attempts (IntegrityError). Both are treated as a concurrent update
conflict: the whole read-modify-write is re-run against fresh state, up to a
bounded number of times.
"""

import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from momo_billing.config import settings
from momo_billing.models.momo import (
    LIVE_STATUSES,
    MoMoSubscription,
    PaymentAttempt,
    SubscriptionStatus,
)
from momo_billing.utils.error_handling import (
    ConcurrentUpdateConflict,
    SubscriptionAlreadyExists,
    SubscriptionNotFound,
    TemporarilyUnavailable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutator = Callable[[AsyncSession, MoMoSubscription], Awaitable[T]]


class SubscriptionStore:
    """Subscription persistence with per-subscription atomic updates."""
    
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.momo_store_max_retries
    
    # =========================================================================
    # READS
    # =========================================================================
    
    async def get(self, subscription_id: uuid.UUID) -> Optional[MoMoSubscription]:
        async with self.session_factory() as session:
            return await session.get(MoMoSubscription, subscription_id)
    
    async def find_live(self, user_id: str, tier: str) -> Optional[MoMoSubscription]:
        """The pending/active/overdue subscription for (user, tier), if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(MoMoSubscription).where(
                    MoMoSubscription.user_id == user_id,
                    MoMoSubscription.tier == tier,
                    MoMoSubscription.status.in_(LIVE_STATUSES),
                )
            )
            return result.scalars().first()
    
    async def find_latest(self, user_id: str, tier: str) -> Optional[MoMoSubscription]:
        """Most recent subscription for (user, tier) regardless of status."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(MoMoSubscription)
                .where(
                    MoMoSubscription.user_id == user_id,
                    MoMoSubscription.tier == tier,
                )
                .order_by(
                    MoMoSubscription.created_at.desc(),
                    func.coalesce(MoMoSubscription.cancelled_at, MoMoSubscription.failed_at).desc(),
                )
                .limit(1)
            )
            return result.scalars().first()
    
    async def find_by_reference(self, reference: str) -> Optional[MoMoSubscription]:
        """Subscription whose most recently issued reference is `reference`."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(MoMoSubscription).where(MoMoSubscription.latest_reference == reference)
            )
            return result.scalars().first()
    
    async def get_attempt(self, reference: str) -> Optional[PaymentAttempt]:
        async with self.session_factory() as session:
            return await self.get_attempt_in(session, reference)
    
    @staticmethod
    async def get_attempt_in(session: AsyncSession, reference: str) -> Optional[PaymentAttempt]:
        result = await session.execute(
            select(PaymentAttempt).where(PaymentAttempt.reference == reference)
        )
        return result.scalars().first()
    
    async def list_attempts(self, subscription_id: uuid.UUID) -> List[PaymentAttempt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.subscription_id == subscription_id)
                .order_by(PaymentAttempt.processed_at.desc())
            )
            return list(result.scalars().all())
    
    async def list_due_active(self, now: datetime, limit: int = 500) -> List[uuid.UUID]:
        """Ids of active subscriptions whose cached due date has passed."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(MoMoSubscription.id)
                .where(
                    MoMoSubscription.status == SubscriptionStatus.ACTIVE,
                    or_(
                        MoMoSubscription.next_payment_date.is_(None),
                        MoMoSubscription.next_payment_date <= now,
                    ),
                )
                .order_by(MoMoSubscription.next_payment_date)
                .limit(limit)
            )
            return list(result.scalars().all())
    
    # =========================================================================
    # WRITES
    # =========================================================================
    
    async def create(self, subscription: MoMoSubscription) -> MoMoSubscription:
        """
        Insert a new subscription.
        
        Raises:
            SubscriptionAlreadyExists: A live subscription for (user, tier) exists
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(subscription)
        except IntegrityError as e:
            logger.info(
                f"Live subscription already exists: user={subscription.user_id}, tier={subscription.tier}"
            )
            raise SubscriptionAlreadyExists(subscription.tier) from e
        
        logger.info(f"Subscription created: {subscription.id} (user={subscription.user_id}, tier={subscription.tier})")
        return subscription
    
    async def atomic_update(self, subscription_id: uuid.UUID, mutator: Mutator) -> T:
        """
        Run `mutator(session, subscription)` as one atomic read-modify-write.
        
        The subscription is re-read in a fresh transaction on every try. Any
        rows the mutator adds commit together with the subscription update.
        
        Raises:
            SubscriptionNotFound: No subscription with that id
            TemporarilyUnavailable: Conflicts persisted after max_attempts tries
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._run_once(subscription_id, mutator)
            except ConcurrentUpdateConflict as conflict:
                logger.info(
                    f"Concurrent update on subscription {subscription_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {type(conflict.original_error).__name__}"
                )
        
        logger.warning(
            f"Giving up on subscription {subscription_id} after {self.max_attempts} conflicting attempts"
        )
        raise TemporarilyUnavailable()
    
    async def _run_once(self, subscription_id: uuid.UUID, mutator: Mutator) -> T:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    subscription = await session.get(MoMoSubscription, subscription_id)
                    if subscription is None:
                        raise SubscriptionNotFound(subscription_id)
                    return await mutator(session, subscription)
        except (StaleDataError, IntegrityError) as e:
            raise ConcurrentUpdateConflict(subscription_id, original_error=e) from e
