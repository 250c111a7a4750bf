"""
MoMo Billing - Recurring Subscription Models

Persistent state for mobile-money recurring billing:
- MoMoSubscription: one recurring billing relationship per (user, tier)
- PaymentAttempt: append-only log of processed gateway references

A PaymentAttempt row is the idempotency record for its reference. The
subscription row carries a version counter so concurrent writers detect
lost updates instead of overwriting each other.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Integer, DateTime, Numeric, JSON, ForeignKey, Index, Uuid,
    Enum as SQLEnum, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from momo_billing.models.base import BaseModel, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class SubscriptionStatus(str, Enum):
    """Recurring subscription states. FAILED and CANCELLED are terminal."""
    PENDING = "pending"
    ACTIVE = "active"
    OVERDUE = "overdue"
    FAILED = "failed"
    CANCELLED = "cancelled"


LIVE_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.OVERDUE,
)
TERMINAL_STATUSES = (
    SubscriptionStatus.FAILED,
    SubscriptionStatus.CANCELLED,
)


class BillingPeriod(str, Enum):
    """Recurring billing intervals."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MoMoNetwork(str, Enum):
    """Ghana mobile money networks."""
    MTN = "mtn"
    VODAFONE = "vodafone"
    AIRTELTIGO = "airteltigo"


class AttemptStatus(str, Enum):
    """Outcome of a verified gateway reference."""
    SUCCESS = "success"
    FAILED = "failed"


def _enum_column(enum_cls) -> SQLEnum:
    # Stored as plain strings by value so partial indexes can match on them
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# MODELS
# =============================================================================

class MoMoSubscription(BaseModel):
    """
    Recurring mobile money subscription.
    
    next_payment_date is cached for indexing only; schedule facts are always
    recomputed from last_payment_date.
    """
    
    __tablename__ = "momo_subscriptions"
    __table_args__ = (
        Index(
            "uq_momo_subscriptions_live_user_tier",
            "user_id",
            "tier",
            unique=True,
            sqlite_where=text("status IN ('pending', 'active', 'overdue')"),
            postgresql_where=text("status IN ('pending', 'active', 'overdue')"),
        ),
        Index("ix_momo_subscriptions_status_next_payment", "status", "next_payment_date"),
    )
    
    user_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Owner reference from the authentication provider",
    )
    tier: Mapped[str] = mapped_column(String(50), nullable=False)
    
    # Payer details
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    network: Mapped[MoMoNetwork] = mapped_column(_enum_column(MoMoNetwork), nullable=False)
    
    # Pricing
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Charge per period in major currency units",
    )
    currency: Mapped[str] = mapped_column(String(3), default="GHS", nullable=False)
    billing_period: Mapped[BillingPeriod] = mapped_column(
        _enum_column(BillingPeriod),
        default=BillingPeriod.MONTHLY,
        nullable=False,
    )
    
    # State
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    latest_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Most recent gateway reference issued for this subscription",
    )
    
    # Gateway standing authorization, when one was issued
    mandate_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    mandate_token: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    
    __mapper_args__ = {"version_id_col": version_id, "eager_defaults": True}

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES
    
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "tier": self.tier,
            "phone": self.phone,
            "network": self.network.value,
            "amount": float(self.amount),
            "currency": self.currency,
            "billing_period": self.billing_period.value,
            "status": self.status.value,
            "last_payment_date": self.last_payment_date.isoformat() if self.last_payment_date else None,
            "next_payment_date": self.next_payment_date.isoformat() if self.next_payment_date else None,
            "failure_count": self.failure_count,
            "latest_reference": self.latest_reference,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class PaymentAttempt(BaseModel):
    """
    Processed gateway reference.
    
    Append-only. The unique reference makes a second insert for the same
    reference fail inside the same transaction as the subscription update.
    """
    
    __tablename__ = "momo_payment_attempts"
    
    reference: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        comment="Gateway transaction reference (idempotency key)",
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("momo_subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status: Mapped[AttemptStatus] = mapped_column(_enum_column(AttemptStatus), nullable=False)
    gateway_response_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount_confirmed: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    raw_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    
    # Subscription state right after this attempt was applied, replayed on duplicates
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus),
        nullable=False,
    )
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "subscription_id": str(self.subscription_id),
            "status": self.status.value,
            "gateway_response_code": self.gateway_response_code,
            "amount_confirmed": float(self.amount_confirmed) if self.amount_confirmed is not None else None,
            "subscription_status": self.subscription_status.value,
            "failure_count": self.failure_count,
            "processed_at": self.processed_at.isoformat(),
        }
