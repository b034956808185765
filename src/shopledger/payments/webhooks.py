"""Paystack webhook handler."""

import json
import logging
from typing import Optional

from aiohttp import web

from shopledger.errors import LedgerInvariantError
from shopledger.payments.reconciler import PaymentEvent, PaymentReconciler, ReconcileOutcome

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


async def handle_webhook(
    payload: bytes,
    signature: Optional[str],
    reconciler: PaymentReconciler,
) -> web.Response:
    """Verify and reconcile a Paystack webhook delivery.

    The signature is checked against the raw bytes before any JSON decoding.
    Only ``charge.success`` moves money; every other event is acknowledged
    so the processor stops redelivering it.

    Args:
        payload: Raw request body
        signature: x-paystack-signature header value
        reconciler: Payment reconciler

    Returns:
        aiohttp.web.Response (401 bad signature, 400 bad payload, 500 on a
        ledger failure so the processor redelivers, 200 otherwise)
    """
    if not reconciler.signature_valid(payload, signature):
        logger.error("Invalid webhook signature")
        return web.Response(status=401, text="Invalid signature")

    try:
        body = json.loads(payload)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.Response(status=400, text="Invalid payload")

    if not isinstance(body, dict):
        logger.error("Webhook payload is not an object")
        return web.Response(status=400, text="Invalid payload")

    event_type = body.get("event")
    logger.info(f"Received webhook: {event_type}")

    if event_type != "charge.success":
        logger.info(f"Unhandled event type: {event_type}")
        return web.Response(status=200, text="OK")

    data = body.get("data") or {}
    reference = data.get("reference")
    if not reference:
        logger.error("charge.success without a reference")
        return web.Response(status=400, text="Missing reference")

    try:
        amount = int(data.get("amount") or 0)
    except (TypeError, ValueError):
        logger.error(f"charge.success for {reference} has a non-integer amount")
        return web.Response(status=400, text="Invalid payload")

    event = PaymentEvent(
        payment_reference=reference,
        processor_status=data.get("status", ""),
        amount=amount,
        raw_metadata=data.get("metadata"),
        signature=signature,
        raw_body=payload,
        currency=data.get("currency"),
    )

    try:
        result = await reconciler.reconcile(event)
    except LedgerInvariantError as e:
        # 500 so the processor redelivers once the ledger is fixed
        logger.error(f"Webhook for {reference} not applied: {e}")
        return web.Response(status=500, text="Internal error")
    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        return web.Response(status=500, text="Internal error")

    if result.outcome == ReconcileOutcome.INVALID_SIGNATURE:
        return web.Response(status=401, text="Invalid signature")

    return web.json_response({"reference": reference, "outcome": result.outcome.value})
