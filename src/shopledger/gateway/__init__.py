"""Payment processor (Paystack) client and bank lookups."""

from shopledger.gateway.banks import FALLBACK_BANKS, list_banks
from shopledger.gateway.cache import get_cache
from shopledger.gateway.client import (
    Bank,
    PaystackClient,
    ResolvedAccount,
    TransactionInit,
    VerifiedTransaction,
)

__all__ = [
    "PaystackClient",
    "TransactionInit",
    "VerifiedTransaction",
    "Bank",
    "ResolvedAccount",
    "list_banks",
    "FALLBACK_BANKS",
    "get_cache",
]
