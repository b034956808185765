"""Paystack payment reconciliation.

Handles checkout initialization, the verify and webhook confirmation paths,
and exactly-once application of each payment reference to the ledger.
"""

from shopledger.payments.checkout import CheckoutService, CheckoutSession
from shopledger.payments.reconciler import (
    PaymentEvent,
    PaymentReconciler,
    ReconcileOutcome,
    ReconcileResult,
)
from shopledger.payments.references import mint_reference, parse_reference
from shopledger.payments.signatures import compute_signature, verify_signature
from shopledger.payments.webhooks import handle_webhook

__all__ = [
    "CheckoutService",
    "CheckoutSession",
    "PaymentEvent",
    "PaymentReconciler",
    "ReconcileOutcome",
    "ReconcileResult",
    "compute_signature",
    "handle_webhook",
    "mint_reference",
    "parse_reference",
    "verify_signature",
]
