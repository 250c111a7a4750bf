"""
MoMo Billing - Routers Package

FastAPI route handlers.

Routers:
- momo_billing: Recurring mobile money subscriptions, status polls, gateway webhooks
"""
