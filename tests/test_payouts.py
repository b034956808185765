"""Tests for balances, payout requests and the payout state machine."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import NOW
from shopledger.db.models import PayoutStatus, VerificationStatus
from shopledger.errors import (
    InvalidPayoutTransition,
    PayoutNotFound,
    StorefrontNotFound,
    SubaccountAlreadySet,
)
from shopledger.gateway.client import ResolvedAccount
from shopledger.ledger.base import PayoutRequest, RevenueTransaction
from shopledger.payouts.ledger import IdentityVerification, PayoutLedger, PayoutOutcome
from shopledger.payouts.subaccounts import setup_subaccount

BANK = {"bank_code": "058", "account_number": "0123456789", "account_name": "ADA OBI"}


def add_revenue(store, amount, reference, storefront_id="store-1"):
    store.add_revenue(
        RevenueTransaction(
            storefront_id=storefront_id,
            order_id=None,
            amount=Decimal(amount),
            currency="NGN",
            payment_reference=reference,
            transaction_type="order_payment",
            created_at=NOW,
        )
    )


def add_payout(store, payout_id, amount, status):
    return store.add_payout(
        PayoutRequest(
            payout_id=payout_id,
            storefront_id="store-1",
            amount=Decimal(amount),
            bank_details=dict(BANK),
            status=status,
            requested_at=NOW,
        )
    )


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def payouts(store, notifier, config):
    return PayoutLedger(store, notifier=notifier, config=config)


class TestBalance:
    @pytest.mark.asyncio
    async def test_scenario_fifty_twenty_ten(self, payouts, store):
        """50k revenue, 20k completed, 10k pending leaves 20k; 25k is refused."""
        add_revenue(store, "30000", "r1")
        add_revenue(store, "20000", "r2")
        add_payout(store, "p-done", "20000", "completed")
        add_payout(store, "p-open", "10000", "pending")

        balance = await payouts.balance("store-1")
        assert balance.total_revenue == Decimal("50000")
        assert balance.total_withdrawn == Decimal("20000")
        assert balance.total_pending == Decimal("10000")
        assert balance.available == Decimal("20000")

        result = await payouts.request_payout("store-1", Decimal("25000"), BANK, now=NOW)
        assert result.outcome == PayoutOutcome.INSUFFICIENT_BALANCE
        assert result.available_balance == Decimal("20000")
        assert len(store.payout_requests) == 2

    @pytest.mark.asyncio
    async def test_failed_payouts_release_funds(self, payouts, store):
        add_revenue(store, "10000", "r1")
        add_payout(store, "p1", "10000", "failed")

        assert await payouts.available_balance("store-1") == Decimal("10000")

    @pytest.mark.asyncio
    async def test_processing_is_reserved(self, payouts, store):
        add_revenue(store, "10000", "r1")
        add_payout(store, "p1", "6000", "processing")

        assert await payouts.available_balance("store-1") == Decimal("4000")

    @pytest.mark.asyncio
    async def test_unknown_storefront(self, payouts):
        with pytest.raises(StorefrontNotFound):
            await payouts.balance("nope")


class TestRequestPayout:
    @pytest.mark.asyncio
    async def test_creates_pending_request(self, payouts, store):
        add_revenue(store, "20000", "r1")

        result = await payouts.request_payout("store-1", Decimal("15000"), BANK, now=NOW)

        assert result.ok
        assert result.payout.status == PayoutStatus.PENDING.value
        assert result.payout.requested_at == NOW
        assert result.available_balance == Decimal("5000")
        assert await payouts.available_balance("store-1") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_below_minimum(self, payouts, store):
        add_revenue(store, "20000", "r1")

        result = await payouts.request_payout("store-1", Decimal("4999.99"), BANK, now=NOW)

        assert result.outcome == PayoutOutcome.BELOW_MINIMUM
        assert store.payout_requests == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", "1e40"])
    async def test_rejects_unusable_amounts(self, payouts, store, amount):
        add_revenue(store, "20000", "r1")

        with pytest.raises(ValueError):
            await payouts.request_payout("store-1", Decimal(amount), BANK, now=NOW)

        assert store.payout_requests == {}

    @pytest.mark.asyncio
    async def test_amount_rounded_to_cents_before_checks(self, payouts, store):
        add_revenue(store, "8000", "r1")

        over = await payouts.request_payout("store-1", Decimal("8000.005"), BANK, now=NOW)
        assert over.outcome == PayoutOutcome.INSUFFICIENT_BALANCE

        result = await payouts.request_payout("store-1", Decimal("8000.004"), BANK, now=NOW)
        assert result.ok
        assert result.payout.amount == Decimal("8000.00")
        assert await payouts.available_balance("store-1") == Decimal("0")

    @pytest.mark.asyncio
    async def test_minimum_checked_after_rounding(self, payouts, store):
        add_revenue(store, "20000", "r1")

        result = await payouts.request_payout("store-1", Decimal("4999.995"), BANK, now=NOW)

        assert result.ok
        assert result.payout.amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_exactly_available_is_allowed(self, payouts, store):
        add_revenue(store, "8000", "r1")

        result = await payouts.request_payout("store-1", Decimal("8000"), BANK, now=NOW)

        assert result.ok
        assert await payouts.available_balance("store-1") == Decimal("0")

    @pytest.mark.asyncio
    async def test_concurrent_requests_cannot_overspend(self, payouts, store):
        add_revenue(store, "15000", "r1")

        results = await asyncio.gather(
            payouts.request_payout("store-1", Decimal("10000"), BANK, now=NOW),
            payouts.request_payout("store-1", Decimal("10000"), BANK, now=NOW),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == [PayoutOutcome.CREATED.value, PayoutOutcome.INSUFFICIENT_BALANCE.value]
        assert len(store.payout_requests) == 1
        assert await payouts.available_balance("store-1") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_requires_verified_owner(self, payouts, store):
        add_revenue(store, "20000", "r1")
        store.accounts["acct-1"].kyc_status = VerificationStatus.PENDING.value

        result = await payouts.request_payout("store-1", Decimal("10000"), BANK, now=NOW)

        assert result.outcome == PayoutOutcome.VERIFICATION_REQUIRED
        assert store.payout_requests == {}

    @pytest.mark.asyncio
    async def test_verification_gate_can_be_disabled(self, store, config):
        add_revenue(store, "20000", "r1")
        store.accounts["acct-1"].kyc_status = None
        ledger = PayoutLedger(store, config=config.model_copy(update={"payout_requires_kyc": False}))

        result = await ledger.request_payout("store-1", Decimal("10000"), BANK, now=NOW)

        assert result.ok

    @pytest.mark.asyncio
    async def test_record_identity_verification(self, payouts, store):
        store.accounts["acct-1"].kyc_status = None

        await payouts.record_identity_verification(
            "acct-1", IdentityVerification(status=VerificationStatus.VERIFIED, account_name="ADA N OBI")
        )

        assert store.accounts["acct-1"].kyc_status == "VERIFIED"
        assert store.accounts["acct-1"].verified_account_name == "ADA N OBI"

    @pytest.mark.asyncio
    async def test_unknown_storefront(self, payouts):
        with pytest.raises(StorefrontNotFound):
            await payouts.request_payout("nope", Decimal("10000"), BANK, now=NOW)


class TestPayoutStatus:
    @pytest.mark.asyncio
    async def test_happy_path(self, payouts, store, notifier):
        add_payout(store, "p1", "10000", "pending")

        processing = await payouts.update_payout_status("p1", PayoutStatus.PROCESSING, now=NOW)
        assert processing.processed_at is None

        completed = await payouts.update_payout_status("p1", "completed", notes="Paid", now=NOW)
        assert completed.status == "completed"
        assert completed.processed_at == NOW
        assert completed.admin_notes == "Paid"
        assert notifier.payout_status_changed.await_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start", ["pending", "processing"])
    async def test_fail_from_open_states(self, payouts, store, start):
        add_payout(store, "p1", "10000", start)

        failed = await payouts.update_payout_status("p1", "failed", notes="Bank rejected", now=NOW)

        assert failed.status == "failed"
        assert failed.admin_notes == "Bank rejected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "start,target",
        [
            ("pending", "completed"),
            ("pending", "pending"),
            ("completed", "failed"),
            ("completed", "processing"),
            ("failed", "pending"),
            ("processing", "pending"),
        ],
    )
    async def test_illegal_transitions(self, payouts, store, start, target):
        add_payout(store, "p1", "10000", start)

        with pytest.raises(InvalidPayoutTransition):
            await payouts.update_payout_status("p1", target, now=NOW)

        assert store.payout_requests["p1"].status == start

    @pytest.mark.asyncio
    async def test_unknown_status(self, payouts, store):
        add_payout(store, "p1", "10000", "pending")

        with pytest.raises(InvalidPayoutTransition):
            await payouts.update_payout_status("p1", "cancelled", now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_payout(self, payouts):
        with pytest.raises(PayoutNotFound):
            await payouts.update_payout_status("missing", "processing", now=NOW)

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_transition(self, payouts, store, notifier):
        add_payout(store, "p1", "10000", "pending")
        notifier.payout_status_changed.side_effect = RuntimeError("sms gateway down")

        await payouts.update_payout_status("p1", "processing", now=NOW)

        assert store.payout_requests["p1"].status == "processing"

    @pytest.mark.asyncio
    async def test_history_and_pending_listing(self, payouts, store):
        store.add_payout(
            PayoutRequest(
                payout_id="old", storefront_id="store-1", amount=Decimal("5000"),
                bank_details={}, status="completed", requested_at=NOW - timedelta(days=2),
            )
        )
        store.add_payout(
            PayoutRequest(
                payout_id="new", storefront_id="store-1", amount=Decimal("5000"),
                bank_details={}, status="pending", requested_at=NOW,
            )
        )

        history = await payouts.payout_history("store-1")
        pending = await payouts.list_pending_payouts()

        assert [p.payout_id for p in history] == ["new", "old"]
        assert [p.payout_id for p in pending] == ["new"]


class TestSetupSubaccount:
    @pytest.fixture
    def gateway(self):
        client = AsyncMock()
        client.resolve_bank_account.return_value = ResolvedAccount(account_number="0123456789", account_name="ADA OBI")
        client.create_subaccount.return_value = "ACCT_store1"
        return client

    @pytest.mark.asyncio
    async def test_creates_and_stores_once(self, store, gateway, config):
        setup = await setup_subaccount(
            store, "store-1", "Ada's Fabrics", "058", "0123456789", client=gateway, config=config
        )

        assert setup.subaccount_code == "ACCT_store1"
        assert setup.account_name == "ADA OBI"
        assert store.storefronts["store-1"].payment_subaccount_reference == "ACCT_store1"
        assert gateway.create_subaccount.call_args.kwargs["percentage_charge"] == 3.0

    @pytest.mark.asyncio
    async def test_second_setup_rejected(self, store, gateway, config):
        await setup_subaccount(store, "store-1", "Ada's Fabrics", "058", "0123456789", client=gateway, config=config)

        with pytest.raises(SubaccountAlreadySet):
            await setup_subaccount(store, "store-1", "Ada's Fabrics", "044", "9999999999", client=gateway, config=config)

        assert store.storefronts["store-1"].payment_subaccount_reference == "ACCT_store1"
        gateway.create_subaccount.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_storefront(self, store, gateway, config):
        with pytest.raises(StorefrontNotFound):
            await setup_subaccount(store, "nope", "X", "058", "0123456789", client=gateway, config=config)
