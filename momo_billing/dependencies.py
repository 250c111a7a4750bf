"""
MoMo Billing - FastAPI Dependencies

Shared dependencies for caller identity and billing service wiring.

Authentication happens upstream; the gateway in front of this service
forwards the authenticated user's id in the X-User-Id header.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_billing.database import get_session_factory
from momo_billing.services.billing_events import BillingEventDispatcher
from momo_billing.services.callback_processor import CallbackProcessor
from momo_billing.services.gateway import GatewayClient, get_gateway
from momo_billing.services.lifecycle import SubscriptionLifecycleManager
from momo_billing.services.status_query import StatusQueryService
from momo_billing.services.subscription_store import SubscriptionStore


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """
    Get the authenticated caller's user id.
    
    Raises:
        HTTPException: If no identity was forwarded
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id.strip()


@lru_cache()
def get_event_dispatcher() -> BillingEventDispatcher:
    """Application-wide billing event dispatcher."""
    return BillingEventDispatcher()


def get_subscription_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SubscriptionStore:
    return SubscriptionStore(session_factory)


def get_lifecycle_manager(
    store: SubscriptionStore = Depends(get_subscription_store),
    gateway: GatewayClient = Depends(get_gateway),
    events: BillingEventDispatcher = Depends(get_event_dispatcher),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(store, gateway, events)


def get_callback_processor(
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> CallbackProcessor:
    return CallbackProcessor(lifecycle)


def get_status_query_service(
    store: SubscriptionStore = Depends(get_subscription_store),
) -> StatusQueryService:
    return StatusQueryService(store)
