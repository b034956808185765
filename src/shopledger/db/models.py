"""Lightweight table-name constants and column-value enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    ACCOUNTS = "accounts"
    STOREFRONTS = "storefronts"
    SUBSCRIPTION_PLANS = "subscription_plans"
    ORDERS = "orders"
    PRODUCTS = "products"
    REVENUE_TRANSACTIONS = "revenue_transactions"
    PAYOUT_REQUESTS = "payout_requests"
    SUBSCRIPTION_EVENTS = "subscription_events"
    REFERRALS = "referrals"
    REFERRAL_TIER_GRANTS = "referral_tier_grants"
    FEATURED_STOREFRONTS = "featured_storefronts"
    FEATURE_USAGE_COUNTERS = "feature_usage_counters"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column value enums
class SubjectType(str, Enum):
    """What a payment reference pays for."""

    ORDER = "order"
    SUBSCRIPTION = "subscription"


class PaymentStatus(str, Enum):
    """Order payment status."""

    PENDING = "pending"
    PAID = "paid"


class TransactionType(str, Enum):
    """Revenue transaction type."""

    ORDER_PAYMENT = "order_payment"


class PayoutStatus(str, Enum):
    """Payout request status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionState(str, Enum):
    """Derived subscription state."""

    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


class SubscriptionEventType(str, Enum):
    """Reason an expiry date changed."""

    TRIAL_STARTED = "trial_started"
    PAYMENT = "payment"
    AMBASSADOR_REWARD = "ambassador_reward"


class ReferralTier(str, Enum):
    """Ambassador tier."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class ReferralStatus(str, Enum):
    """Referral status."""

    PENDING = "pending"
    QUALIFIED = "qualified"
    REWARDED = "rewarded"


class VerificationStatus(str, Enum):
    """Terminal identity-verification result."""

    VERIFIED = "VERIFIED"
    PENDING = "PENDING"
    FAILED = "FAILED"
