"""Payout ledger: balances, withdrawal requests and subaccounts."""

from shopledger.payouts.ledger import (
    Balance,
    IdentityVerification,
    PayoutLedger,
    PayoutOutcome,
    PayoutResult,
    compute_balance,
)
from shopledger.payouts.subaccounts import SubaccountSetup, setup_subaccount

__all__ = [
    "Balance",
    "IdentityVerification",
    "PayoutLedger",
    "PayoutOutcome",
    "PayoutResult",
    "SubaccountSetup",
    "compute_balance",
    "setup_subaccount",
]
