"""
MoMo Billing - Subscription Lifecycle

Owns the subscription state machine:

    pending --success--> active --due--> overdue --success--> active
    pending --failure--> pending
    overdue --failure (count < max)--> overdue
    overdue --failure (count >= max)--> failed
    any live state --cancel--> cancelled

The relabel to overdue restarts failure_count, so the max-failure threshold
counts only failures of the overdue phase.

failed and cancelled are terminal: later payment results are still logged as
attempts for audit but never change the subscription.

All transitions run inside SubscriptionStore.atomic_update. Events produced
by a transition are published only after that unit commits.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from momo_billing.config import settings
from momo_billing.models.base import utcnow
from momo_billing.models.momo import (
    AttemptStatus,
    BillingPeriod,
    MoMoSubscription,
    PaymentAttempt,
    SubscriptionStatus,
)
from momo_billing.services.billing_events import (
    BillingEvent,
    BillingEventDispatcher,
    BillingEventType,
    event_for,
)
from momo_billing.services.billing_scheduler import is_due, next_payment_date
from momo_billing.services.gateway import ChargeInitiation, GatewayClient, VerificationResult
from momo_billing.services.subscription_store import SubscriptionStore
from momo_billing.utils.error_handling import (
    GatewayError,
    SubscriptionAlreadyExists,
    SubscriptionInactive,
    SubscriptionNotFound,
    ValidationException,
    detect_network,
    validate_amount,
    validate_momo_phone,
)

logger = logging.getLogger(__name__)


AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class ProcessedResult:
    """
    Outcome of applying one gateway reference.
    
    `replayed` marks results served from the stored attempt; it is excluded
    from equality so every call for one reference compares equal.
    """
    reference: str
    subscription_id: uuid.UUID
    attempt_status: str
    subscription_status: str
    failure_count: int
    gateway_response_code: Optional[str] = None
    processed_at: Optional[datetime] = None
    replayed: bool = field(default=False, compare=False)
    
    @classmethod
    def from_attempt(cls, attempt: PaymentAttempt, replayed: bool = True) -> "ProcessedResult":
        return cls(
            reference=attempt.reference,
            subscription_id=attempt.subscription_id,
            attempt_status=AttemptStatus(attempt.status).value,
            subscription_status=SubscriptionStatus(attempt.subscription_status).value,
            failure_count=attempt.failure_count,
            gateway_response_code=attempt.gateway_response_code,
            processed_at=attempt.processed_at,
            replayed=replayed,
        )
    
    @property
    def is_success(self) -> bool:
        return self.attempt_status == AttemptStatus.SUCCESS.value
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "subscription_id": str(self.subscription_id),
            "attempt_status": self.attempt_status,
            "subscription_status": self.subscription_status,
            "failure_count": self.failure_count,
            "gateway_response_code": self.gateway_response_code,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "replayed": self.replayed,
        }


class SubscriptionLifecycleManager:
    """Creates, charges, cancels and transitions MoMo subscriptions."""
    
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: GatewayClient,
        events: Optional[BillingEventDispatcher] = None,
        max_failures: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.events = events or BillingEventDispatcher()
        self.max_failures = max_failures or settings.momo_max_failures
    
    # =========================================================================
    # CREATION
    # =========================================================================
    
    async def create_subscription(
        self,
        user_id: str,
        tier: str,
        phone: str,
        email: str,
        amount: Any,
        billing_period: str = BillingPeriod.MONTHLY.value,
    ) -> Tuple[MoMoSubscription, ChargeInitiation]:
        """
        Create a pending subscription and initiate its first charge.
        
        The charge is initiated before anything is persisted, so a gateway
        failure leaves no local state behind.
        
        Raises:
            InvalidPhoneOrNetwork: Phone is not a Ghana mobile money number
            SubscriptionAlreadyExists: User already has a live subscription for tier
            GatewayUnavailable, GatewayTimeout: Charge could not be initiated
        """
        local_phone = validate_momo_phone(phone)
        network = detect_network(local_phone)
        price = validate_amount(amount)
        try:
            period = BillingPeriod(billing_period)
        except ValueError:
            raise ValidationException(
                f"Invalid billing period: {billing_period}",
                field="billing_period",
                details={"allowed": [p.value for p in BillingPeriod]},
            )
        
        existing = await self.store.find_live(user_id, tier)
        if existing is not None:
            raise SubscriptionAlreadyExists(tier, existing.id)
        
        subscription = MoMoSubscription(
            id=uuid.uuid4(),
            user_id=user_id,
            tier=tier,
            phone=local_phone,
            email=email,
            network=network,
            amount=price,
            currency=settings.momo_currency,
            billing_period=period,
            status=SubscriptionStatus.PENDING,
            failure_count=0,
        )
        
        charge = await self.gateway.initiate_charge(subscription, renewal=False)
        subscription.latest_reference = charge.reference
        
        await self.store.create(subscription)
        
        logger.info(
            f"MoMo subscription {subscription.id} pending first payment "
            f"(user={user_id}, tier={tier}, ref={charge.reference})"
        )
        return subscription, charge
    
    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================
    
    async def get_subscription(self, user_id: str, subscription_id: uuid.UUID) -> MoMoSubscription:
        """Fetch a subscription owned by user_id; others are reported as not found."""
        subscription = await self.store.get(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise SubscriptionNotFound(subscription_id)
        return subscription
    
    async def get_subscription_for_reference(self, user_id: str, reference: str) -> Optional[MoMoSubscription]:
        """
        Subscription owning `reference`, looked up from local state only.

        Uses the attempt log for processed references and the issuing
        subscription otherwise. Returns None when neither knows the
        reference (a superseded one only the gateway metadata can place).
        References held by other users are not found.
        """
        attempt = await self.store.get_attempt(reference)
        if attempt is not None:
            return await self.get_subscription(user_id, attempt.subscription_id)

        subscription = await self.store.find_by_reference(reference)
        if subscription is not None and subscription.user_id != user_id:
            raise SubscriptionNotFound(message=f"No subscription found for reference '{reference}'")
        return subscription

    async def list_attempts(self, user_id: str, subscription_id: uuid.UUID) -> List[PaymentAttempt]:
        await self.get_subscription(user_id, subscription_id)
        return await self.store.list_attempts(subscription_id)
    
    async def initiate_payment(
        self,
        user_id: str,
        subscription_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> ChargeInitiation:
        """
        Start a renewal (or first-payment retry) charge.
        
        Raises:
            SubscriptionInactive: Subscription is failed or cancelled
        """
        now = now or utcnow()
        subscription = await self.get_subscription(user_id, subscription_id)
        if subscription.is_terminal:
            raise SubscriptionInactive(subscription.id, subscription.status.value)
        
        charge = await self.gateway.initiate_charge(
            subscription,
            renewal=subscription.last_payment_date is not None,
        )
        events: List[BillingEvent] = []
        
        async def record_reference(session: AsyncSession, current: MoMoSubscription) -> MoMoSubscription:
            events.clear()
            if current.is_terminal:
                raise SubscriptionInactive(current.id, current.status.value)
            self._relabel_if_due(current, now, events, reference=charge.reference)
            current.latest_reference = charge.reference
            return current
        
        await self.store.atomic_update(subscription_id, record_reference)
        await self.events.publish_all(events)
        
        logger.info(f"Payment initiated for subscription {subscription_id}: ref={charge.reference}")
        return charge
    
    async def cancel(
        self,
        user_id: str,
        subscription_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> MoMoSubscription:
        """
        Cancel a subscription. Cancelling a terminal subscription is a no-op.
        
        Gateway mandate cancellation is best-effort: a failure is logged and
        the local cancellation still happens.
        """
        now = now or utcnow()
        subscription = await self.get_subscription(user_id, subscription_id)
        if subscription.is_terminal:
            return subscription
        
        try:
            await self.gateway.cancel_recurring_mandate(subscription)
        except GatewayError as e:
            logger.warning(f"Mandate cancellation failed for subscription {subscription_id}: {e.message}")
        
        events: List[BillingEvent] = []
        
        async def mark_cancelled(session: AsyncSession, current: MoMoSubscription) -> MoMoSubscription:
            events.clear()
            if current.is_terminal:
                return current
            current.status = SubscriptionStatus.CANCELLED
            current.cancelled_at = now
            events.append(event_for(BillingEventType.CANCELLED, current))
            return current
        
        cancelled = await self.store.atomic_update(subscription_id, mark_cancelled)
        await self.events.publish_all(events)
        
        logger.info(f"Subscription {subscription_id} cancelled by user {user_id}")
        return cancelled
    
    # =========================================================================
    # SCHEDULE RE-EVALUATION
    # =========================================================================
    
    async def reevaluate(self, subscription_id: uuid.UUID, now: Optional[datetime] = None) -> MoMoSubscription:
        """Persist the active -> overdue relabel if the subscription is due."""
        now = now or utcnow()
        events: List[BillingEvent] = []
        
        async def relabel(session: AsyncSession, current: MoMoSubscription) -> MoMoSubscription:
            events.clear()
            self._relabel_if_due(current, now, events)
            return current
        
        subscription = await self.store.atomic_update(subscription_id, relabel)
        await self.events.publish_all(events)
        return subscription
    
    def _relabel_if_due(
        self,
        subscription: MoMoSubscription,
        now: datetime,
        events: List[BillingEvent],
        reference: Optional[str] = None,
    ) -> bool:
        if not is_due(subscription, now):
            return False
        subscription.status = SubscriptionStatus.OVERDUE
        # The failure threshold counts overdue-phase failures only
        subscription.failure_count = 0
        events.append(event_for(BillingEventType.OVERDUE, subscription, reference))
        logger.info(f"Subscription {subscription.id} is now overdue")
        return True
    
    # =========================================================================
    # PAYMENT RESULTS
    # =========================================================================
    
    async def apply_payment_result(
        self,
        session: AsyncSession,
        subscription: MoMoSubscription,
        reference: str,
        verification: VerificationResult,
        now: datetime,
        events: Optional[List[BillingEvent]] = None,
    ) -> ProcessedResult:
        """
        Apply a verified payment outcome inside an atomic store update.
        
        Re-checks the attempt log first, so a reference that another writer
        already processed is replayed rather than applied twice.
        """
        events = events if events is not None else []
        
        existing = await self.store.get_attempt_in(session, reference)
        if existing is not None:
            return ProcessedResult.from_attempt(existing, replayed=True)
        
        succeeded, response_code = self._judge(subscription, verification)
        
        if subscription.is_terminal:
            logger.info(
                f"Payment {reference} for {subscription.status.value} subscription {subscription.id} "
                f"recorded without state change"
            )
        elif succeeded:
            self._apply_success(subscription, reference, verification, now, events)
        else:
            relabelled = self._relabel_if_due(subscription, now, events, reference)
            self._apply_failure(subscription, reference, now, events, relabelled)
        
        attempt = PaymentAttempt(
            reference=reference,
            subscription_id=subscription.id,
            status=AttemptStatus.SUCCESS if succeeded else AttemptStatus.FAILED,
            gateway_response_code=response_code,
            amount_confirmed=verification.amount_confirmed,
            raw_metadata=verification.metadata or None,
            subscription_status=subscription.status,
            failure_count=subscription.failure_count,
            processed_at=now,
        )
        session.add(attempt)
        
        return ProcessedResult.from_attempt(attempt, replayed=False)
    
    def _judge(self, subscription: MoMoSubscription, verification: VerificationResult) -> Tuple[bool, Optional[str]]:
        if not verification.verified:
            return False, verification.gateway_response_code
        confirmed = verification.amount_confirmed
        if confirmed is not None and Decimal(confirmed) < Decimal(subscription.amount):
            logger.warning(
                f"Underpayment on subscription {subscription.id}: "
                f"confirmed {confirmed}, expected {subscription.amount}"
            )
            return False, AMOUNT_MISMATCH
        return True, verification.gateway_response_code
    
    def _apply_success(
        self,
        subscription: MoMoSubscription,
        reference: str,
        verification: VerificationResult,
        now: datetime,
        events: List[BillingEvent],
    ) -> None:
        previous = subscription.status
        
        last = subscription.last_payment_date
        subscription.last_payment_date = now if last is None or now > last else last
        subscription.next_payment_date = next_payment_date(
            subscription.last_payment_date, subscription.billing_period
        )
        subscription.failure_count = 0
        subscription.status = SubscriptionStatus.ACTIVE
        
        mandate_code = verification.metadata.get("subscription_code")
        if mandate_code:
            subscription.mandate_code = mandate_code
            subscription.mandate_token = verification.metadata.get("email_token") or subscription.mandate_token
        
        if previous != SubscriptionStatus.ACTIVE:
            events.append(event_for(BillingEventType.ACTIVATED, subscription, reference))
        logger.info(
            f"Subscription {subscription.id}: {previous.value} -> active, "
            f"next payment {subscription.next_payment_date}"
        )
    
    def _apply_failure(
        self,
        subscription: MoMoSubscription,
        reference: str,
        now: datetime,
        events: List[BillingEvent],
        relabelled: bool,
    ) -> None:
        subscription.failure_count = (subscription.failure_count or 0) + 1
        
        if subscription.status != SubscriptionStatus.OVERDUE:
            logger.info(
                f"Payment failure on {subscription.status.value} subscription {subscription.id} "
                f"({subscription.failure_count} consecutive)"
            )
            return
        
        if subscription.failure_count >= self.max_failures:
            subscription.status = SubscriptionStatus.FAILED
            subscription.failed_at = now
            events.append(event_for(BillingEventType.FAILED, subscription, reference))
            logger.warning(
                f"Subscription {subscription.id} failed after {subscription.failure_count} consecutive failures"
            )
            return
        
        if not relabelled:
            events.append(event_for(BillingEventType.OVERDUE, subscription, reference))
        logger.info(
            f"Overdue subscription {subscription.id} payment failed "
            f"({subscription.failure_count}/{self.max_failures})"
        )
