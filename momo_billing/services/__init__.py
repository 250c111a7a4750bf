"""
MoMo Billing - Services Package

Business logic services.
"""

from momo_billing.services.billing_events import (
    BillingEvent,
    BillingEventDispatcher,
    BillingEventType,
)
from momo_billing.services.billing_scheduler import ScheduleFacts, compute_schedule
from momo_billing.services.gateway import (
    ChargeInitiation,
    GatewayClient,
    PaystackMoMoGateway,
    VerificationResult,
)
from momo_billing.services.subscription_store import SubscriptionStore
from momo_billing.services.lifecycle import ProcessedResult, SubscriptionLifecycleManager
from momo_billing.services.callback_processor import CallbackProcessor
from momo_billing.services.status_query import StatusQueryService, StatusReport

__all__ = [
    "BillingEvent",
    "BillingEventDispatcher",
    "BillingEventType",
    "ScheduleFacts",
    "compute_schedule",
    "ChargeInitiation",
    "GatewayClient",
    "PaystackMoMoGateway",
    "VerificationResult",
    "SubscriptionStore",
    "ProcessedResult",
    "SubscriptionLifecycleManager",
    "CallbackProcessor",
    "StatusQueryService",
    "StatusReport",
]
