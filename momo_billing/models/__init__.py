"""
MoMo Billing - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from momo_billing.models.base import BaseModel, TimestampMixin, utcnow
from momo_billing.models.momo import (
    SubscriptionStatus,
    BillingPeriod,
    MoMoNetwork,
    AttemptStatus,
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    MoMoSubscription,
    PaymentAttempt,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "SubscriptionStatus",
    "BillingPeriod",
    "MoMoNetwork",
    "AttemptStatus",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "MoMoSubscription",
    "PaymentAttempt",
]
