"""
MoMo Billing - Billing Schedule

Pure schedule arithmetic for recurring mobile money subscriptions.
Nothing here touches storage or the clock; callers pass `now` in.

Period lengths:
- weekly: 7 days
- monthly: 30 days
- yearly: 365 days
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from momo_billing.models.momo import BillingPeriod, SubscriptionStatus


PERIOD_LENGTHS = {
    BillingPeriod.WEEKLY: timedelta(days=7),
    BillingPeriod.MONTHLY: timedelta(days=30),
    BillingPeriod.YEARLY: timedelta(days=365),
}

SECONDS_PER_DAY = 86400

# Statuses whose schedule is evaluated against the due date
SCHEDULED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE)


@dataclass(frozen=True)
class ScheduleFacts:
    """Billing schedule facts for one subscription at one instant."""
    next_payment_date: Optional[datetime]
    needs_payment: bool
    days_overdue: int
    days_until_next_payment: Optional[int]
    payment_initiation_handle: Optional[str]
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
            "needs_payment": self.needs_payment,
            "days_overdue": self.days_overdue,
            "days_until_next_payment": self.days_until_next_payment,
            "payment_initiation_handle": self.payment_initiation_handle,
        }


def period_length(billing_period: BillingPeriod) -> timedelta:
    return PERIOD_LENGTHS[BillingPeriod(billing_period)]


def next_payment_date(
    last_payment_date: Optional[datetime],
    billing_period: BillingPeriod,
) -> Optional[datetime]:
    """Due date of the next charge; None means due immediately."""
    if last_payment_date is None:
        return None
    return last_payment_date + period_length(billing_period)


def days_overdue(next_due: Optional[datetime], now: datetime) -> int:
    if next_due is None or now < next_due:
        return 0
    return max(0, math.floor((now - next_due).total_seconds() / SECONDS_PER_DAY))


def needs_payment(status: SubscriptionStatus, next_due: Optional[datetime], now: datetime) -> bool:
    if status == SubscriptionStatus.PENDING:
        return True
    if status in SCHEDULED_STATUSES:
        return next_due is None or now >= next_due
    return False


def days_until_next_payment(next_due: Optional[datetime], now: datetime) -> int:
    return math.ceil((next_due - now).total_seconds() / SECONDS_PER_DAY)


def payment_initiation_handle(subscription, next_due: Optional[datetime]) -> str:
    """
    Stable handle for the payment currently due.
    
    Derived only from the subscription id, billing period and due date, so
    repeated polls before the payment lands return the same value.
    """
    kind = "first" if subscription.last_payment_date is None else "renewal"
    due = next_due.strftime("%Y%m%d") if next_due else "initial"
    period = BillingPeriod(subscription.billing_period).value
    return f"momo_{kind}_{subscription.id.hex}_{period}_{due}"


def is_due(subscription, now: datetime) -> bool:
    """Whether an active subscription should be relabelled overdue."""
    if subscription.status != SubscriptionStatus.ACTIVE:
        return False
    due = next_payment_date(subscription.last_payment_date, subscription.billing_period)
    return needs_payment(subscription.status, due, now)


def compute_schedule(subscription, now: datetime) -> ScheduleFacts:
    """Derive schedule facts from (subscription, now)."""
    status = SubscriptionStatus(subscription.status)
    due = next_payment_date(subscription.last_payment_date, subscription.billing_period)
    payable = needs_payment(status, due, now)
    
    if payable:
        return ScheduleFacts(
            next_payment_date=due,
            needs_payment=True,
            days_overdue=days_overdue(due, now),
            days_until_next_payment=None,
            payment_initiation_handle=payment_initiation_handle(subscription, due),
        )
    
    return ScheduleFacts(
        next_payment_date=due,
        needs_payment=False,
        days_overdue=0,
        days_until_next_payment=days_until_next_payment(due, now) if due else None,
        payment_initiation_handle=None,
    )


def reminder_message(subscription, facts: ScheduleFacts) -> str:
    """Human readable status line shown alongside the schedule."""
    period = BillingPeriod(subscription.billing_period).value
    status = SubscriptionStatus(subscription.status)
    
    if status == SubscriptionStatus.CANCELLED:
        return f"Your {period} subscription has been cancelled."
    if status == SubscriptionStatus.FAILED:
        return f"Your {period} subscription was stopped after repeated failed payments."
    if status == SubscriptionStatus.PENDING:
        return f"Complete your first mobile money payment to activate your {period} subscription."
    if not facts.needs_payment:
        days = facts.days_until_next_payment
        return f"Your next {period} payment is due in {days} day{'s' if days != 1 else ''}."
    if facts.days_overdue == 0:
        return f"Your {period} subscription is due today."
    days = facts.days_overdue
    return f"Your {period} subscription is {days} day{'s' if days > 1 else ''} overdue."
