"""Payment reconciliation, subscriptions and payouts for independent storefronts."""

__version__ = "0.1.0"
