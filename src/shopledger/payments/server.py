"""HTTP server: Paystack webhook plus the seller/operator JSON API."""

import asyncio
import hmac
import logging
import signal
from dataclasses import asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from aiohttp import web

from shopledger.config import get_config
from shopledger.errors import (
    AccountNotFound,
    GatewayError,
    LedgerInvariantError,
    OrderNotFound,
    PayoutNotFound,
    PlanNotFound,
    ShopLedgerError,
    StorefrontNotFound,
)
from shopledger.gateway.banks import list_banks
from shopledger.gateway.client import PaystackClient
from shopledger.ledger.base import LedgerStore, PayoutRequest
from shopledger.notifications import LoggingNotifier, Notifier
from shopledger.payments.checkout import CheckoutService
from shopledger.payments.reconciler import PaymentReconciler
from shopledger.payments.webhooks import SIGNATURE_HEADER, handle_webhook
from shopledger.payouts.ledger import IdentityVerification, PayoutLedger, PayoutOutcome
from shopledger.payouts.subaccounts import setup_subaccount
from shopledger.quota.gate import QuotaGate
from shopledger.referrals.tiers import ReferralTierEngine
from shopledger.subscriptions.lifecycle import SubscriptionManager

logger = logging.getLogger(__name__)

_NOT_FOUND = (AccountNotFound, OrderNotFound, PayoutNotFound, PlanNotFound, StorefrontNotFound)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float) and value == float("inf"):
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "value"):
        return value.value
    return value


def _payout_json(payout: PayoutRequest) -> dict[str, Any]:
    return _jsonable(asdict(payout))


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="Invalid JSON body") from None
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _require(body: dict[str, Any], key: str) -> Any:
    if body.get(key) in (None, ""):
        raise web.HTTPBadRequest(text=f"Missing field: {key}")
    return body[key]


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map domain exceptions to HTTP responses."""
    try:
        return await handler(request)
    except _NOT_FOUND as e:
        return web.json_response({"error": str(e)}, status=404)
    except LedgerInvariantError as e:
        logger.error(f"{request.method} {request.path} failed on a ledger invariant: {e}")
        return web.json_response({"error": str(e)}, status=500)
    except GatewayError as e:
        status = 502 if e.retryable else 400
        return web.json_response({"error": str(e), "retryable": e.retryable}, status=status)
    except (ShopLedgerError, ValueError) as e:
        return web.json_response({"error": str(e)}, status=409)


def _require_admin(request: web.Request) -> None:
    token = get_config().admin_api_token.get_secret_value()
    supplied = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token.encode(), supplied.encode()):
        raise web.HTTPUnauthorized(text="Admin token required")


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/paystack."""
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.error("Missing Paystack signature header")
        return web.Response(status=401, text="Missing signature")

    payload = await request.read()
    return await handle_webhook(payload, signature, request.app["reconciler"])


async def initialize_order_payment(request: web.Request) -> web.Response:
    body = await _json_body(request)
    session = await request.app["checkout"].initialize_order_payment(
        request.match_info["order_id"],
        _require(body, "email"),
        callback_url=body.get("callback_url"),
    )
    return web.json_response(_jsonable(asdict(session)))


async def initialize_subscription_payment(request: web.Request) -> web.Response:
    body = await _json_body(request)
    session = await request.app["checkout"].initialize_subscription_payment(
        _require(body, "account_id"),
        _require(body, "plan_slug"),
        billing_cycle=body.get("billing_cycle", "monthly"),
        callback_url=body.get("callback_url"),
    )
    return web.json_response(_jsonable(asdict(session)))


async def verify_payment(request: web.Request) -> web.Response:
    result = await request.app["checkout"].verify_payment(request.match_info["reference"])
    return web.json_response(
        {
            "reference": result.payment_reference,
            "outcome": result.outcome.value,
            "ok": result.ok,
            "subject_type": _jsonable(result.subject_type),
            "subject_id": result.subject_id,
        }
    )


async def storefront_balance(request: web.Request) -> web.Response:
    balance = await request.app["payouts"].balance(request.match_info["storefront_id"])
    return web.json_response(
        _jsonable(
            {
                "total_revenue": balance.total_revenue,
                "total_withdrawn": balance.total_withdrawn,
                "total_pending": balance.total_pending,
                "available": balance.available,
            }
        )
    )


async def payout_history(request: web.Request) -> web.Response:
    payouts = await request.app["payouts"].payout_history(request.match_info["storefront_id"])
    return web.json_response([_payout_json(p) for p in payouts])


async def request_payout(request: web.Request) -> web.Response:
    body = await _json_body(request)
    try:
        amount = Decimal(str(_require(body, "amount")))
    except InvalidOperation:
        raise web.HTTPBadRequest(text="amount must be a number") from None
    if not amount.is_finite():
        raise web.HTTPBadRequest(text="amount must be a finite number")

    result = await request.app["payouts"].request_payout(
        request.match_info["storefront_id"],
        amount,
        body.get("bank_details") or {},
    )
    if result.outcome == PayoutOutcome.CREATED:
        return web.json_response(
            {"outcome": result.outcome.value, "payout": _payout_json(result.payout)},
            status=201,
        )

    status = 403 if result.outcome == PayoutOutcome.VERIFICATION_REQUIRED else 400
    return web.json_response(
        _jsonable({"outcome": result.outcome.value, "available_balance": result.available_balance}),
        status=status,
    )


async def setup_storefront_subaccount(request: web.Request) -> web.Response:
    body = await _json_body(request)
    setup = await setup_subaccount(
        request.app["store"],
        request.match_info["storefront_id"],
        business_name=_require(body, "business_name"),
        bank_code=_require(body, "bank_code"),
        account_number=_require(body, "account_number"),
        email=body.get("email"),
        client=request.app["client"],
    )
    return web.json_response(asdict(setup), status=201)


async def admin_pending_payouts(request: web.Request) -> web.Response:
    _require_admin(request)
    payouts = await request.app["payouts"].list_pending_payouts()
    return web.json_response([_payout_json(p) for p in payouts])


async def admin_update_payout(request: web.Request) -> web.Response:
    _require_admin(request)
    body = await _json_body(request)
    payout = await request.app["payouts"].update_payout_status(
        request.match_info["payout_id"],
        _require(body, "status"),
        notes=body.get("notes"),
    )
    return web.json_response(_payout_json(payout))


async def admin_record_verification(request: web.Request) -> web.Response:
    _require_admin(request)
    body = await _json_body(request)
    await request.app["payouts"].record_identity_verification(
        request.match_info["account_id"],
        IdentityVerification(status=_require(body, "status"), account_name=body.get("account_name")),
    )
    return web.json_response({"status": body["status"]})


async def subscription_status(request: web.Request) -> web.Response:
    status = await request.app["subscriptions"].status(request.match_info["account_id"])
    return web.json_response(_jsonable(asdict(status)))


async def check_feature(request: web.Request) -> web.Response:
    check = await request.app["quota"].check_usage(
        request.match_info["account_id"], request.match_info["feature_name"]
    )
    return web.json_response(_jsonable(asdict(check)))


async def record_feature_use(request: web.Request) -> web.Response:
    count = await request.app["quota"].increment_usage(
        request.match_info["account_id"], request.match_info["feature_name"]
    )
    return web.json_response({"current_usage": count})


async def product_limit(request: web.Request) -> web.Response:
    check = await request.app["quota"].check_product_limit(request.match_info["account_id"])
    return web.json_response(_jsonable(asdict(check)))


async def evaluate_referrals(request: web.Request) -> web.Response:
    evaluation = await request.app["referrals"].evaluate(request.match_info["account_id"])
    return web.json_response(asdict(evaluation))


async def banks(request: web.Request) -> web.Response:
    result = await list_banks(request.app["client"], request.query.get("country"))
    return web.json_response([asdict(bank) for bank in result])


async def create_app(
    store: Optional[LedgerStore] = None,
    client: Optional[PaystackClient] = None,
    notifier: Optional[Notifier] = None,
) -> web.Application:
    """Create aiohttp application with webhook and API routes.

    Args:
        store: Ledger store (PostgreSQL store by default)
        client: Paystack client (built from config by default)
        notifier: Notification sink (logging notifier by default)

    Returns:
        Configured aiohttp Application
    """
    if store is None:
        from shopledger.ledger.postgres import PostgresLedgerStore

        store = PostgresLedgerStore()

    config = get_config()
    client = client or PaystackClient()
    notifier = notifier or LoggingNotifier()
    reconciler = PaymentReconciler(store, notifier=notifier, config=config)

    app = web.Application(middlewares=[error_middleware])
    app["store"] = store
    app["client"] = client
    app["reconciler"] = reconciler
    app["checkout"] = CheckoutService(store, client=client, reconciler=reconciler, config=config)
    app["payouts"] = PayoutLedger(store, notifier=notifier, config=config)
    app["subscriptions"] = SubscriptionManager(store, config=config)
    app["quota"] = QuotaGate(store, config=config)
    app["referrals"] = ReferralTierEngine(store, config=config)

    app.router.add_post("/webhooks/paystack", webhook_endpoint)
    app.router.add_post("/payments/orders/{order_id}/initialize", initialize_order_payment)
    app.router.add_post("/payments/subscriptions/initialize", initialize_subscription_payment)
    app.router.add_get("/payments/verify/{reference}", verify_payment)
    app.router.add_get("/storefronts/{storefront_id}/balance", storefront_balance)
    app.router.add_get("/storefronts/{storefront_id}/payouts", payout_history)
    app.router.add_post("/storefronts/{storefront_id}/payouts", request_payout)
    app.router.add_post("/storefronts/{storefront_id}/subaccount", setup_storefront_subaccount)
    app.router.add_get("/accounts/{account_id}/subscription", subscription_status)
    app.router.add_get("/accounts/{account_id}/features/{feature_name}", check_feature)
    app.router.add_post("/accounts/{account_id}/features/{feature_name}/usage", record_feature_use)
    app.router.add_get("/accounts/{account_id}/product-limit", product_limit)
    app.router.add_post("/accounts/{account_id}/referrals/evaluate", evaluate_referrals)
    app.router.add_get("/admin/payouts/pending", admin_pending_payouts)
    app.router.add_post("/admin/payouts/{payout_id}/status", admin_update_payout)
    app.router.add_post("/admin/accounts/{account_id}/verification", admin_record_verification)
    app.router.add_get("/banks", banks)

    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """Run the server until shutdown signal.

    Args:
        shutdown_event: Optional event to signal shutdown
    """
    from shopledger.db.pool import close_pool

    config = get_config()
    app = await create_app()

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", config.webhook_server_port)
    await site.start()

    logger.info(f"Server listening on port {config.webhook_server_port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down server...")
    await runner.cleanup()
    await close_pool()


def main() -> None:
    """Run the server as a standalone process.

    Blocks until SIGTERM/SIGINT received.
    """
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(run_server(shutdown_event=shutdown_event))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.close()
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
