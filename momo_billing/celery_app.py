"""
MoMo Billing - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from momo_billing.config import settings


# Create Celery app
celery_app = Celery(
    'momo_billing',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['momo_billing.tasks.billing_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    
    # Timezone
    timezone='Africa/Accra',
    enable_utc=True,
    
    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes (warning before hard limit)
    
    # Worker settings
    worker_prefetch_multiplier=1,
    
    # Result backend settings
    result_expires=86400,  # 24 hours
    
    # Beat schedule for periodic tasks
    beat_schedule={
        # Relabel due active subscriptions as overdue. Status reads derive
        # overdue on their own; this keeps stored state and reminders current.
        'flag-overdue-subscriptions': {
            'task': 'momo_billing.tasks.billing_tasks.flag_overdue_subscriptions_task',
            'schedule': (
                crontab(minute=0)
                if settings.momo_overdue_sweep_minutes >= 60
                else crontab(minute=f"*/{max(1, settings.momo_overdue_sweep_minutes)}")
            ),
        },
    },
)


celery_app.conf.task_routes = {
    'momo_billing.tasks.billing_tasks.*': {'queue': 'billing'},
}
