"""
MoMo Billing - Status Query

Read path for client status polls. Never writes: overdue status is derived
on the fly from the schedule.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from momo_billing.models.base import utcnow
from momo_billing.models.momo import SubscriptionStatus
from momo_billing.services.billing_scheduler import compute_schedule, is_due, reminder_message
from momo_billing.services.subscription_store import SubscriptionStore
from momo_billing.utils.error_handling import SubscriptionNotFound


@dataclass
class StatusReport:
    """Billing status of a user's subscription to a tier."""
    subscription_id: uuid.UUID
    tier: str
    status: str
    needs_payment: bool
    days_overdue: int
    days_until_next_payment: Optional[int]
    next_payment_date: Optional[datetime]
    payment_initiation_handle: Optional[str]
    message: str
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": str(self.subscription_id),
            "tier": self.tier,
            "status": self.status,
            "needs_payment": self.needs_payment,
            "days_overdue": self.days_overdue,
            "days_until_next_payment": self.days_until_next_payment,
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
            "payment_initiation_handle": self.payment_initiation_handle,
            "message": self.message,
        }


class StatusQueryService:
    def __init__(self, store: SubscriptionStore):
        self.store = store
    
    async def check_status(self, user_id: str, tier: str, now: Optional[datetime] = None) -> StatusReport:
        """
        Report schedule facts for the user's live subscription to `tier`,
        falling back to the most recent one.
        """
        now = now or utcnow()
        subscription = await self.store.find_live(user_id, tier)
        if subscription is None:
            subscription = await self.store.find_latest(user_id, tier)
        if subscription is None:
            raise SubscriptionNotFound(message=f"No subscription found for tier '{tier}'")
        
        facts = compute_schedule(subscription, now)
        status = SubscriptionStatus(subscription.status)
        if is_due(subscription, now):
            status = SubscriptionStatus.OVERDUE
        
        return StatusReport(
            subscription_id=subscription.id,
            tier=subscription.tier,
            status=status.value,
            needs_payment=facts.needs_payment,
            days_overdue=facts.days_overdue,
            days_until_next_payment=facts.days_until_next_payment,
            next_payment_date=facts.next_payment_date,
            payment_initiation_handle=facts.payment_initiation_handle,
            message=reminder_message(subscription, facts),
        )
