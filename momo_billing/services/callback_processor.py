"""
MoMo Billing - Callback Processor

Applies a gateway reference to local state exactly once.

Gateway webhooks are delivered at least once and race with client status
polls, so `process(reference)` is safe to call any number of times,
concurrently, for the same reference:

1. A reference that already has a PaymentAttempt returns the stored result.
2. Otherwise the gateway is asked for the verdict (no mutation on gateway errors).
3. The subscription is resolved from the charge metadata, falling back to
   the subscription that issued the reference.
4. The transition and the attempt insert commit in one atomic store update,
   which re-checks the attempt log before applying anything.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from momo_billing.models.base import utcnow
from momo_billing.models.momo import MoMoSubscription
from momo_billing.services.billing_events import BillingEvent
from momo_billing.services.gateway import VerificationResult
from momo_billing.services.lifecycle import ProcessedResult, SubscriptionLifecycleManager
from momo_billing.utils.error_handling import ReferenceNotFound, SubscriptionNotFound

logger = logging.getLogger(__name__)


PENDING_ATTEMPT = "pending"


class CallbackProcessor:
    """Idempotent reconciliation of gateway references."""
    
    def __init__(self, lifecycle: SubscriptionLifecycleManager):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.gateway = lifecycle.gateway
    
    async def process(self, reference: str, now: Optional[datetime] = None) -> ProcessedResult:
        """
        Reconcile one gateway reference.
        
        Raises:
            GatewayTimeout, GatewayUnavailable: Verdict unavailable, nothing changed
            SubscriptionNotFound: Reference belongs to no known subscription
            TemporarilyUnavailable: Concurrency retries exhausted
        """
        existing = await self.store.get_attempt(reference)
        if existing is not None:
            logger.debug(f"Reference {reference} already processed, replaying stored result")
            return ProcessedResult.from_attempt(existing, replayed=True)
        
        try:
            verification = await self.gateway.verify(reference)
        except ReferenceNotFound:
            logger.info(f"Gateway has no transaction for {reference}; treating as failed")
            verification = VerificationResult(verified=False, gateway_response_code="reference_not_found")
        
        subscription_id = await self._resolve_subscription(reference, verification)
        
        if not verification.is_final:
            # Payer has not approved or declined yet; nothing to record
            subscription = await self.store.get(subscription_id)
            logger.info(f"Reference {reference} still {verification.gateway_response_code} at gateway")
            return ProcessedResult(
                reference=reference,
                subscription_id=subscription_id,
                attempt_status=PENDING_ATTEMPT,
                subscription_status=subscription.status.value,
                failure_count=subscription.failure_count,
                gateway_response_code=verification.gateway_response_code,
            )
        
        now = now or utcnow()
        events: List[BillingEvent] = []
        
        async def apply(session: AsyncSession, subscription: MoMoSubscription) -> ProcessedResult:
            events.clear()
            return await self.lifecycle.apply_payment_result(
                session, subscription, reference, verification, now, events
            )
        
        result = await self.store.atomic_update(subscription_id, apply)
        await self.lifecycle.events.publish_all(events)
        
        if not result.replayed:
            logger.info(
                f"Processed {reference}: attempt={result.attempt_status}, "
                f"subscription {result.subscription_id} -> {result.subscription_status}"
            )
        return result
    
    async def _resolve_subscription(self, reference: str, verification: VerificationResult) -> uuid.UUID:
        raw_id = verification.metadata.get("subscription_id")
        if raw_id:
            try:
                subscription_id = uuid.UUID(str(raw_id))
            except ValueError:
                logger.warning(f"Reference {reference} carries malformed subscription_id {raw_id!r}")
            else:
                if await self.store.get(subscription_id) is not None:
                    return subscription_id
        
        subscription = await self.store.find_by_reference(reference)
        if subscription is None:
            logger.warning(f"No subscription found for reference {reference}")
            raise SubscriptionNotFound(message=f"No subscription found for reference '{reference}'")
        return subscription.id
