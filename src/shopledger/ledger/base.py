"""Ledger Store interfaces and canonical row schemas.

The Ledger Store owns every durable entity. Components never hold a mutable
copy; they open a unit of work, call narrow operations on the session it
yields, and the unit commits or rolls back as a whole.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional


# Canonical row schemas
@dataclass
class Account:
    """One principal (seller)."""

    account_id: str
    email: str
    plan_tier: str | None = None  # plan slug
    is_subscribed: bool = False  # paid vs. trial
    subscription_expires_at: datetime | None = None  # UTC
    is_reseller: bool = False
    subscription_plan_id: str | None = None
    subscription_type: str | None = None  # billing cycle of the last payment
    kyc_status: str | None = None  # 'VERIFIED' | 'PENDING' | 'FAILED'
    verified_account_name: str | None = None


@dataclass
class Storefront:
    """A seller's shop."""

    storefront_id: str
    account_id: str
    name: str
    commission_percentage: Decimal | None = None  # None = platform default
    payment_subaccount_reference: str | None = None  # set once


@dataclass
class SubscriptionPlan:
    """Operator-configured plan row."""

    plan_id: str
    slug: str
    name: str
    price_monthly: Decimal
    price_yearly: Decimal | None = None
    max_products: int | None = None  # None = unlimited
    ai_features_enabled: bool = False
    # feature_name -> monthly cap; None = unlimited, absent = not offered
    feature_limits: dict[str, int | None] = field(default_factory=dict)


@dataclass
class Order:
    """Order as far as payment reconciliation is concerned."""

    order_id: str
    storefront_id: str
    total_amount: Decimal
    payment_status: str = "pending"
    payment_reference: str | None = None
    paid_at: datetime | None = None


@dataclass
class RevenueTransaction:
    """Immutable, append-only revenue row (amount is net of commission)."""

    storefront_id: str
    order_id: str | None
    amount: Decimal
    currency: str
    payment_reference: str
    transaction_type: str
    created_at: datetime
    gross_amount: Decimal | None = None
    platform_fee: Decimal | None = None
    platform_fee_percentage: Decimal | None = None
    transaction_id: int | None = None


@dataclass
class PayoutRequest:
    """Seller withdrawal request."""

    payout_id: str
    storefront_id: str
    amount: Decimal
    bank_details: dict[str, Any]
    status: str
    requested_at: datetime
    processed_at: datetime | None = None
    admin_notes: str | None = None


@dataclass
class SubscriptionEvent:
    """Audit row written on every expiry-date mutation."""

    account_id: str
    event_type: str
    previous_expiry_at: datetime | None
    new_expiry_at: datetime
    created_at: datetime
    payment_reference: str | None = None
    plan_id: str | None = None
    amount: Decimal | None = None
    notes: str | None = None
    event_id: int | None = None


@dataclass
class ReferralTierGrant:
    """At most one per (account_id, tier)."""

    account_id: str
    tier: str
    claimed_at: datetime


class LedgerSession(ABC):
    """Narrow operations available inside one unit of work."""

    # Accounts
    @abstractmethod
    async def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        """Fetch an account; ``for_update`` locks the row until commit."""

    @abstractmethod
    async def update_account_subscription(
        self,
        account_id: str,
        *,
        expires_at: datetime,
        is_subscribed: bool,
        plan_id: str | None = None,
        plan_tier: str | None = None,
        subscription_type: str | None = None,
    ) -> None:
        """Write expiry and paid flag; plan fields are left alone when None."""

    @abstractmethod
    async def set_reseller(self, account_id: str) -> None:
        """Flag the account as a reseller."""

    @abstractmethod
    async def set_identity_verification(
        self, account_id: str, status: str, account_name: str | None
    ) -> None:
        """Record the terminal identity-verification result."""

    # Storefronts
    @abstractmethod
    async def get_storefront(self, storefront_id: str, *, for_update: bool = False) -> Optional[Storefront]:
        """Fetch a storefront."""

    @abstractmethod
    async def get_storefront_for_account(self, account_id: str) -> Optional[Storefront]:
        """Fetch the account's storefront, if it has one."""

    @abstractmethod
    async def set_payment_subaccount(
        self,
        storefront_id: str,
        reference: str,
        bank_code: str | None = None,
        account_number: str | None = None,
    ) -> bool:
        """Store the split-payment subaccount. Returns False if one was already set."""

    @abstractmethod
    async def feature_storefront(
        self, storefront_id: str, expires_at: datetime, label: str, tagline: str
    ) -> None:
        """Mark a storefront as platform-featured until ``expires_at``."""

    @abstractmethod
    async def count_products(self, storefront_id: str) -> int:
        """Number of products listed by the storefront."""

    # Plans
    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        """Fetch a plan by id."""

    @abstractmethod
    async def get_plan_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        """Fetch a plan by slug."""

    # Orders and revenue
    @abstractmethod
    async def get_order(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        """Fetch an order."""

    @abstractmethod
    async def mark_order_paid(self, order_id: str, reference: str, paid_at: datetime) -> None:
        """Set payment_status='paid' and store the reference."""

    @abstractmethod
    async def is_reference_settled(self, reference: str) -> bool:
        """True if a revenue row or subscription event carries this reference."""

    @abstractmethod
    async def insert_revenue_transaction(self, txn: RevenueTransaction) -> RevenueTransaction:
        """Append a revenue row."""

    @abstractmethod
    async def sum_revenue(self, storefront_id: str) -> Decimal:
        """Sum of net revenue for a storefront."""

    # Subscription history
    @abstractmethod
    async def insert_subscription_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        """Append a subscription audit row."""

    @abstractmethod
    async def list_subscription_events(self, account_id: str) -> list[SubscriptionEvent]:
        """Subscription history, oldest first."""

    # Payouts
    @abstractmethod
    async def sum_payouts_by_status(self, storefront_id: str) -> dict[str, Decimal]:
        """Sum of payout amounts keyed by status (missing statuses omitted)."""

    @abstractmethod
    async def insert_payout_request(
        self,
        storefront_id: str,
        amount: Decimal,
        bank_details: dict[str, Any],
        requested_at: datetime,
    ) -> PayoutRequest:
        """Create a pending payout request."""

    @abstractmethod
    async def get_payout_request(self, payout_id: str, *, for_update: bool = False) -> Optional[PayoutRequest]:
        """Fetch a payout request."""

    @abstractmethod
    async def update_payout_request(
        self,
        payout_id: str,
        status: str,
        processed_at: datetime | None,
        admin_notes: str | None,
    ) -> PayoutRequest:
        """Write a status change (notes kept when None)."""

    @abstractmethod
    async def list_payout_requests(
        self,
        *,
        storefront_id: str | None = None,
        statuses: Iterable[str] | None = None,
        newest_first: bool = False,
    ) -> list[PayoutRequest]:
        """List payout requests by requested_at."""

    # Feature usage
    @abstractmethod
    async def get_usage(self, account_id: str, feature_name: str, period: str) -> int:
        """Current counter value (0 when absent)."""

    @abstractmethod
    async def increment_usage(self, account_id: str, feature_name: str, period: str) -> int:
        """Atomically add one and return the new value."""

    # Referrals
    @abstractmethod
    async def count_referrals(self, account_id: str, status: str) -> int:
        """Referrals made by the account with the given status."""

    @abstractmethod
    async def list_tier_grants(self, account_id: str) -> list[ReferralTierGrant]:
        """Tiers already granted to the account."""

    @abstractmethod
    async def insert_tier_grant(self, grant: ReferralTierGrant) -> bool:
        """Insert a grant. Returns False if (account_id, tier) already exists."""


class LedgerStore(ABC):
    """Durable ledger; the only owner of money state."""

    @abstractmethod
    def unit_of_work(self, *lock_keys: str) -> AbstractAsyncContextManager[LedgerSession]:
        """
        Open an atomic unit of work.

        Everything done through the yielded session commits together or not
        at all. Units of work sharing a lock key are serialized against each
        other for their whole duration.

        Args:
            lock_keys: Names of critical sections to hold (e.g. ``payout:<id>``)
        """
