"""Tests for payment initialization and the verify path."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from shopledger.errors import AccountNotFound, GatewayError, OrderAlreadyPaid, PlanNotFound
from shopledger.gateway.client import TransactionInit, VerifiedTransaction
from shopledger.ledger.base import Order
from shopledger.payments.checkout import CheckoutService
from shopledger.payments.reconciler import PaymentReconciler, ReconcileOutcome
from shopledger.payments.references import parse_reference


@pytest.fixture
def gateway():
    client = AsyncMock()
    client.initialize_transaction.side_effect = lambda **kw: TransactionInit(
        authorization_url="https://checkout.paystack.com/x",
        access_code="x",
        reference=kw["reference"],
    )
    return client


@pytest.fixture
def checkout(store, gateway, config):
    reconciler = PaymentReconciler(store, notifier=AsyncMock(), config=config)
    return CheckoutService(store, client=gateway, reconciler=reconciler, config=config)


@pytest.fixture
def order(store):
    return store.add_order(Order(order_id="order-1", storefront_id="store-1", total_amount=Decimal("12500.50")))


class TestInitializeOrder:
    @pytest.mark.asyncio
    async def test_direct_without_subaccount(self, checkout, gateway, order):
        session = await checkout.initialize_order_payment("order-1", "buyer@example.com")

        kwargs = gateway.initialize_transaction.call_args.kwargs
        assert session.payment_mode == "direct"
        assert session.amount_minor_units == 1250050
        assert kwargs["subaccount"] is None
        assert kwargs["metadata"]["order_id"] == "order-1"
        assert parse_reference(session.reference).subject_id == "order-1"

    @pytest.mark.asyncio
    async def test_split_with_subaccount(self, checkout, gateway, store, order):
        store.storefronts["store-1"].payment_subaccount_reference = "ACCT_store1"

        session = await checkout.initialize_order_payment("order-1", "buyer@example.com")

        assert session.payment_mode == "split"
        assert gateway.initialize_transaction.call_args.kwargs["subaccount"] == "ACCT_store1"

    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, checkout, gateway, store, order):
        store.orders["order-1"].payment_status = "paid"

        with pytest.raises(OrderAlreadyPaid):
            await checkout.initialize_order_payment("order-1", "buyer@example.com")
        gateway.initialize_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_each_attempt_gets_fresh_reference(self, checkout, order):
        first = await checkout.initialize_order_payment("order-1", "buyer@example.com")
        second = await checkout.initialize_order_payment("order-1", "buyer@example.com")

        assert first.reference != second.reference


class TestInitializeSubscription:
    @pytest.mark.asyncio
    async def test_yearly_price_and_metadata(self, checkout, gateway):
        session = await checkout.initialize_subscription_payment("acct-1", "pro", "yearly")

        kwargs = gateway.initialize_transaction.call_args.kwargs
        assert session.amount_minor_units == 5_000_000
        assert session.payment_mode == "subscription"
        assert kwargs["email"] == "seller@example.com"
        assert kwargs["metadata"]["plan_id"] == "plan-pro"
        assert kwargs["metadata"]["subscription_days"] == 365

    @pytest.mark.asyncio
    async def test_unknown_plan(self, checkout):
        with pytest.raises(PlanNotFound):
            await checkout.initialize_subscription_payment("acct-1", "platinum")

    @pytest.mark.asyncio
    async def test_unknown_account(self, checkout):
        with pytest.raises(AccountNotFound):
            await checkout.initialize_subscription_payment("ghost", "pro")

    @pytest.mark.asyncio
    async def test_cycle_not_offered(self, checkout, gateway):
        with pytest.raises(ValueError):
            await checkout.initialize_subscription_payment("acct-1", "business", "yearly")
        gateway.initialize_transaction.assert_not_awaited()


class TestVerifyPayment:
    @pytest.mark.asyncio
    async def test_verify_settles_order(self, checkout, gateway, store, order):
        gateway.verify_transaction.return_value = VerifiedTransaction(
            reference="ORDER_order-1_abc",
            status="success",
            amount=1250050,
            currency="NGN",
            metadata={"subject_type": "order", "order_id": "order-1"},
        )

        result = await checkout.verify_payment("ORDER_order-1_abc")

        assert result.outcome == ReconcileOutcome.APPLIED
        assert store.orders["order-1"].payment_status == "paid"

    @pytest.mark.asyncio
    async def test_verify_after_webhook_is_noop(self, checkout, gateway, store, order):
        gateway.verify_transaction.return_value = VerifiedTransaction(
            reference="ORDER_order-1_abc", status="success", amount=1250050, currency="NGN",
        )

        await checkout.verify_payment("ORDER_order-1_abc")
        again = await checkout.verify_payment("ORDER_order-1_abc")

        assert again.outcome == ReconcileOutcome.ALREADY_SETTLED
        assert len(store.revenue_transactions) == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_order_pending(self, checkout, gateway, store, order):
        gateway.verify_transaction.side_effect = GatewayError("timeout", retryable=True)

        with pytest.raises(GatewayError):
            await checkout.verify_payment("ORDER_order-1_abc")

        assert store.orders["order-1"].payment_status == "pending"
        assert store.revenue_transactions == []
