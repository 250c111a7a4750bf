"""
MoMo Billing - Billing Events

Domain events raised by subscription state changes. The billing core only
publishes them; delivering reminders (push, SMS, email) is left to
subscribed handlers.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from momo_billing.models.base import utcnow

logger = logging.getLogger(__name__)


class BillingEventType(str, Enum):
    """Subscription lifecycle events."""
    ACTIVATED = "subscription.activated"
    OVERDUE = "subscription.overdue"
    FAILED = "subscription.failed"
    CANCELLED = "subscription.cancelled"


@dataclass
class BillingEvent:
    """A subscription lifecycle event."""
    event_type: BillingEventType
    subscription_id: uuid.UUID
    user_id: str
    tier: str
    reference: Optional[str] = None
    failure_count: int = 0
    occurred_at: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "subscription_id": str(self.subscription_id),
            "user_id": self.user_id,
            "tier": self.tier,
            "reference": self.reference,
            "failure_count": self.failure_count,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


def event_for(event_type: BillingEventType, subscription, reference: Optional[str] = None, **data) -> BillingEvent:
    return BillingEvent(
        event_type=event_type,
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        tier=subscription.tier,
        reference=reference,
        failure_count=subscription.failure_count,
        data=data,
    )


EventHandler = Callable[[BillingEvent], Any]


class BillingEventDispatcher:
    """
    In-process publish/subscribe for billing events.
    
    Events are published only after the state change that produced them has
    committed. A failing handler is logged and does not affect other handlers
    or the billing operation.
    """
    
    def __init__(self, log_events: bool = True):
        self._handlers: Dict[BillingEventType, List[EventHandler]] = {}
        if log_events:
            for event_type in BillingEventType:
                self.subscribe(event_type, log_billing_event)
    
    def subscribe(self, event_type: BillingEventType, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
    
    def unsubscribe(self, event_type: BillingEventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
    
    async def publish(self, event: BillingEvent) -> None:
        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Billing event handler {getattr(handler, '__name__', handler)!r} failed "
                    f"for {event.event_type.value} (subscription={event.subscription_id})"
                )
    
    async def publish_all(self, events: List[BillingEvent]) -> None:
        for event in events:
            await self.publish(event)


def log_billing_event(event: BillingEvent) -> None:
    logger.info(
        f"Billing event {event.event_type.value}: subscription={event.subscription_id}, "
        f"user={event.user_id}, tier={event.tier}, failures={event.failure_count}"
    )
