"""
MoMo Billing - Recurring Mobile Money Router

API endpoints for recurring mobile money subscriptions.
Uses Paystack mobile money charges for Ghana Cedi (GHS) payments.
"""

import json
import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from momo_billing.config import settings
from momo_billing.dependencies import (
    get_callback_processor,
    get_current_user_id,
    get_lifecycle_manager,
    get_status_query_service,
)
from momo_billing.models.momo import BillingPeriod
from momo_billing.services.callback_processor import CallbackProcessor
from momo_billing.services.gateway import verify_webhook_signature
from momo_billing.services.lifecycle import ProcessedResult, SubscriptionLifecycleManager
from momo_billing.services.status_query import StatusQueryService
from momo_billing.utils.error_handling import (
    GatewayError,
    SubscriptionNotFound,
    TemporarilyUnavailable,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing/momo", tags=["MoMo Billing"])

HANDLED_WEBHOOK_EVENTS = {"charge.success", "charge.failed"}


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request to start a recurring mobile money subscription."""
    tier: str = Field(..., min_length=1, max_length=50, description="Tier being purchased")
    phone: str = Field(..., description="Ghana mobile money number (0XXXXXXXXX or +233XXXXXXXXX)")
    email: str = Field(..., min_length=3, max_length=255, description="Receipt email for the gateway")
    amount: Decimal = Field(..., gt=0, description="Charge per period in GHS")
    billing_period: BillingPeriod = Field(BillingPeriod.MONTHLY, description="weekly, monthly or yearly")


class SubscriptionResponse(BaseModel):
    """Recurring subscription state."""
    id: str
    user_id: str
    tier: str
    phone: str
    network: str
    amount: float
    currency: str
    billing_period: str
    status: str
    last_payment_date: Optional[str] = None
    next_payment_date: Optional[str] = None
    failure_count: int
    latest_reference: Optional[str] = None
    cancelled_at: Optional[str] = None


class ChargeResponse(BaseModel):
    """Charge the payer has to approve on their phone."""
    reference: str
    redirect_or_prompt_target: Optional[str] = Field(None, description="Prompt text or checkout URL")


class CreateSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    charge: ChargeResponse


class StatusResponse(BaseModel):
    """Billing schedule facts for a tier."""
    subscription_id: str
    tier: str
    status: str
    needs_payment: bool
    days_overdue: int
    days_until_next_payment: Optional[int] = None
    next_payment_date: Optional[str] = None
    payment_initiation_handle: Optional[str] = None
    message: str


class ProcessedResultResponse(BaseModel):
    """Outcome of reconciling a gateway reference."""
    reference: str
    subscription_id: str
    attempt_status: str
    subscription_status: str
    failure_count: int
    gateway_response_code: Optional[str] = None
    processed_at: Optional[str] = None
    replayed: bool = False


class PaymentAttemptResponse(BaseModel):
    reference: str
    subscription_id: str
    status: str
    gateway_response_code: Optional[str] = None
    amount_confirmed: Optional[float] = None
    subscription_status: str
    failure_count: int
    processed_at: str


# =============================================================================
# SUBSCRIPTION ENDPOINTS
# =============================================================================

@router.post(
    "/subscriptions",
    response_model=CreateSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a recurring MoMo subscription",
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Create a pending subscription and send the first charge prompt to the
    payer's phone. The subscription becomes active once the payment is
    confirmed by webhook or by polling `/verify/{reference}`.
    """
    subscription, charge = await lifecycle.create_subscription(
        user_id=user_id,
        tier=request.tier,
        phone=request.phone,
        email=request.email,
        amount=request.amount,
        billing_period=request.billing_period.value,
    )
    return CreateSubscriptionResponse(
        subscription=SubscriptionResponse(**subscription.to_dict()),
        charge=ChargeResponse(**charge.to_dict()),
    )


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Check subscription billing status",
)
async def check_status(
    tier: str = Query(..., min_length=1, description="Tier to check"),
    user_id: str = Depends(get_current_user_id),
    service: StatusQueryService = Depends(get_status_query_service),
):
    """Read-only status poll used by clients to gate feature access."""
    report = await service.check_status(user_id, tier)
    return StatusResponse(**report.to_dict())


@router.post(
    "/subscriptions/{subscription_id}/pay",
    response_model=ChargeResponse,
    summary="Initiate a renewal payment",
)
async def initiate_payment(
    subscription_id: UUID = Path(..., description="Subscription ID"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    charge = await lifecycle.initiate_payment(user_id, subscription_id)
    return ChargeResponse(**charge.to_dict())


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel a subscription",
)
async def cancel_subscription(
    subscription_id: UUID = Path(..., description="Subscription ID"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    """Cancel immediately. Cancelling an already cancelled subscription is a no-op."""
    subscription = await lifecycle.cancel(user_id, subscription_id)
    return SubscriptionResponse(**subscription.to_dict())


@router.get(
    "/subscriptions/{subscription_id}/attempts",
    response_model=List[PaymentAttemptResponse],
    summary="Payment attempt history",
)
async def list_attempts(
    subscription_id: UUID = Path(..., description="Subscription ID"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    attempts = await lifecycle.list_attempts(user_id, subscription_id)
    return [PaymentAttemptResponse(**attempt.to_dict()) for attempt in attempts]


@router.get(
    "/verify/{reference}",
    response_model=ProcessedResultResponse,
    summary="Verify a payment reference",
)
async def verify_reference(
    reference: str = Path(..., min_length=1, max_length=100, description="Gateway reference"),
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    """
    Client-initiated reconciliation of a reference. Safe to poll repeatedly;
    a reference is only ever applied once.
    """
    # References known locally to belong to another user are a 404 before anything is reconciled
    await lifecycle.get_subscription_for_reference(user_id, reference)
    result = await processor.process(reference)
    await lifecycle.get_subscription(user_id, result.subscription_id)
    return ProcessedResultResponse(**result.to_dict())


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================

@router.post(
    "/webhook",
    summary="Paystack webhook",
    include_in_schema=False,
)
async def paystack_webhook(
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    """
    Handle Paystack charge webhooks.
    
    Security:
    - Verifies X-Paystack-Signature using HMAC-SHA512
    - Returns 400 for invalid signatures
    
    Delivery:
    - Duplicate deliveries are replayed from the attempt log
    - Gateway or concurrency trouble returns 503 so Paystack redelivers
    - Unknown references are acknowledged and ignored
    """
    body = await request.body()
    signature = request.headers.get("X-Paystack-Signature", "")
    
    if not verify_webhook_signature(body, signature, settings.webhook_signing_secret):
        logger.warning("Paystack webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )
    
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Paystack webhook body is not valid JSON")
        return {"status": "ignored", "reason": "Malformed payload"}
    if not isinstance(payload, dict):
        logger.warning("Paystack webhook body is not a JSON object")
        return {"status": "ignored", "reason": "Malformed payload"}

    event_type = payload.get("event")
    data = payload.get("data")
    reference = data.get("reference") if isinstance(data, dict) else None
    
    logger.info(f"Paystack webhook received: event={event_type}, reference={reference or 'N/A'}")
    
    if event_type not in HANDLED_WEBHOOK_EVENTS:
        return {"status": "ignored", "reason": f"Unhandled event: {event_type}"}
    if not reference:
        return {"status": "ignored", "reason": "No reference"}
    
    try:
        result: ProcessedResult = await processor.process(reference)
    except SubscriptionNotFound:
        logger.info(f"Webhook reference {reference} matches no subscription; ignoring")
        return {"status": "ignored", "reason": "Unknown reference"}
    except (GatewayError, TemporarilyUnavailable) as e:
        logger.warning(f"Webhook for {reference} deferred: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "retry", "reason": e.message},
        )
    
    return {"status": "processed", "result": result.to_dict()}
