"""
MoMo Billing - Celery Tasks

Background tasks for scheduled billing operations.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_billing.config import settings
from momo_billing.database import build_engine, build_session_factory
from momo_billing.models.base import utcnow
from momo_billing.models.momo import SubscriptionStatus
from momo_billing.services.gateway import PaystackMoMoGateway
from momo_billing.services.lifecycle import SubscriptionLifecycleManager
from momo_billing.services.subscription_store import SubscriptionStore
from momo_billing.utils.error_handling import SubscriptionNotFound, TemporarilyUnavailable

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ===========================================
# OVERDUE SWEEP
# ===========================================

@shared_task(name='momo_billing.tasks.billing_tasks.flag_overdue_subscriptions_task')
def flag_overdue_subscriptions_task() -> Dict[str, Any]:
    """Relabel active subscriptions whose payment has come due as overdue."""
    return run_async(_flag_overdue_subscriptions())


async def _flag_overdue_subscriptions() -> Dict[str, Any]:
    # Each task run owns its event loop, so it gets its own engine too
    engine = build_engine(settings.database_url_async)
    try:
        return await sweep_overdue_subscriptions(build_session_factory(engine))
    finally:
        await engine.dispose()


async def sweep_overdue_subscriptions(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    lifecycle: Optional[SubscriptionLifecycleManager] = None,
) -> Dict[str, Any]:
    """Re-evaluate every due active subscription through the lifecycle manager."""
    now = now or utcnow()
    if lifecycle is None:
        lifecycle = SubscriptionLifecycleManager(SubscriptionStore(session_factory), PaystackMoMoGateway())
    store = lifecycle.store
    
    candidates = await store.list_due_active(now)
    flagged = 0
    skipped = 0
    
    for subscription_id in candidates:
        try:
            subscription = await lifecycle.reevaluate(subscription_id, now=now)
        except (SubscriptionNotFound, TemporarilyUnavailable) as e:
            logger.warning(f"Overdue sweep skipped subscription {subscription_id}: {e.message}")
            skipped += 1
            continue
        if subscription.status == SubscriptionStatus.OVERDUE:
            flagged += 1
    
    logger.info(f"Overdue sweep: {len(candidates)} due, {flagged} flagged, {skipped} skipped")
    
    return {
        "checked": len(candidates),
        "flagged": flagged,
        "skipped": skipped,
        "run_at": now.isoformat(),
    }
