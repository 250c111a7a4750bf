"""
MoMo Billing - Background Tasks Package

Celery background tasks.
"""
