"""Subscription lifecycle: trial, active, expired."""

from shopledger.subscriptions.lifecycle import (
    SubscriptionManager,
    SubscriptionStatus,
    apply_extension,
    compute_new_expiry,
    days_for_cycle,
    derive_status,
)
from shopledger.subscriptions.plans import effective_plan_slug, price_for_cycle, resolve_effective_plan

__all__ = [
    "SubscriptionManager",
    "SubscriptionStatus",
    "apply_extension",
    "compute_new_expiry",
    "days_for_cycle",
    "derive_status",
    "effective_plan_slug",
    "price_for_cycle",
    "resolve_effective_plan",
]
