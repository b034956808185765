"""Ledger Store: durable accounts, revenue, payouts and subscription history."""

from shopledger.ledger.base import (
    Account,
    LedgerSession,
    LedgerStore,
    Order,
    PayoutRequest,
    ReferralTierGrant,
    RevenueTransaction,
    Storefront,
    SubscriptionEvent,
    SubscriptionPlan,
)
from shopledger.ledger.memory import InMemoryLedgerStore
from shopledger.ledger.postgres import PostgresLedgerStore

__all__ = [
    # ABCs
    "LedgerStore",
    "LedgerSession",
    # Row schemas
    "Account",
    "Storefront",
    "SubscriptionPlan",
    "Order",
    "RevenueTransaction",
    "PayoutRequest",
    "SubscriptionEvent",
    "ReferralTierGrant",
    # Concrete stores
    "PostgresLedgerStore",
    "InMemoryLedgerStore",
]
