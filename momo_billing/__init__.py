"""
MoMo Billing - Recurring Mobile Money Billing Engine

Tracks recurring mobile-money subscriptions, issues and verifies gateway
charges, and reconciles asynchronous payment callbacks against local state.
"""

__version__ = "0.1.0"
