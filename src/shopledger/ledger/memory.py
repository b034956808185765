"""In-process Ledger Store for local development and tests.

Units of work run one at a time behind a single asyncio lock, and a failed
unit restores the snapshot taken when it started, so the commit/rollback
behaviour matches the PostgreSQL store. Session reads yield to the event
loop the way a real database round-trip would.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Optional
from uuid import uuid4

from shopledger.ledger.base import (
    Account,
    LedgerSession,
    LedgerStore,
    Order,
    PayoutRequest,
    ReferralTierGrant,
    RevenueTransaction,
    Storefront,
    SubscriptionEvent,
    SubscriptionPlan,
)


@dataclass
class _State:
    accounts: dict[str, Account] = field(default_factory=dict)
    storefronts: dict[str, Storefront] = field(default_factory=dict)
    plans: dict[str, SubscriptionPlan] = field(default_factory=dict)
    orders: dict[str, Order] = field(default_factory=dict)
    products: dict[str, str] = field(default_factory=dict)  # product_id -> storefront_id
    revenue: list[RevenueTransaction] = field(default_factory=list)
    payouts: dict[str, PayoutRequest] = field(default_factory=dict)
    subscription_events: list[SubscriptionEvent] = field(default_factory=list)
    referrals: list[tuple[str, str, str]] = field(default_factory=list)  # (referrer, referred, status)
    tier_grants: dict[tuple[str, str], ReferralTierGrant] = field(default_factory=dict)
    featured: dict[str, dict[str, Any]] = field(default_factory=dict)
    usage: dict[tuple[str, str, str], int] = field(default_factory=dict)


class InMemoryLedgerSession(LedgerSession):
    """Session operating directly on the store's state."""

    def __init__(self, state: _State):
        self.state = state

    async def _io(self) -> None:
        await asyncio.sleep(0)

    async def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        await self._io()
        account = self.state.accounts.get(account_id)
        return replace(account) if account else None

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
        account = self.state.accounts[account_id]
        account.subscription_expires_at = expires_at
        account.is_subscribed = is_subscribed
        if plan_id is not None:
            account.subscription_plan_id = plan_id
        if plan_tier is not None:
            account.plan_tier = plan_tier
        if subscription_type is not None:
            account.subscription_type = subscription_type

    async def set_reseller(self, account_id: str) -> None:
        self.state.accounts[account_id].is_reseller = True

    async def set_identity_verification(
        self, account_id: str, status: str, account_name: str | None
    ) -> None:
        account = self.state.accounts[account_id]
        account.kyc_status = status
        if account_name is not None:
            account.verified_account_name = account_name

    async def get_storefront(self, storefront_id: str, *, for_update: bool = False) -> Optional[Storefront]:
        await self._io()
        storefront = self.state.storefronts.get(storefront_id)
        return replace(storefront) if storefront else None

    async def get_storefront_for_account(self, account_id: str) -> Optional[Storefront]:
        await self._io()
        for storefront in self.state.storefronts.values():
            if storefront.account_id == account_id:
                return replace(storefront)
        return None

    async def set_payment_subaccount(
        self,
        storefront_id: str,
        reference: str,
        bank_code: str | None = None,
        account_number: str | None = None,
    ) -> bool:
        storefront = self.state.storefronts.get(storefront_id)
        if storefront is None or storefront.payment_subaccount_reference is not None:
            return False
        storefront.payment_subaccount_reference = reference
        return True

    async def feature_storefront(
        self, storefront_id: str, expires_at: datetime, label: str, tagline: str
    ) -> None:
        current = self.state.featured.get(storefront_id)
        if current is not None and current["expires_at"] > expires_at:
            expires_at = current["expires_at"]
        self.state.featured[storefront_id] = {
            "label": label,
            "tagline": tagline,
            "is_active": True,
            "expires_at": expires_at,
        }

    async def count_products(self, storefront_id: str) -> int:
        await self._io()
        return sum(1 for owner in self.state.products.values() if owner == storefront_id)

    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        await self._io()
        return self.state.plans.get(plan_id)

    async def get_plan_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        await self._io()
        for plan in self.state.plans.values():
            if plan.slug == slug:
                return plan
        return None

    async def get_order(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        await self._io()
        order = self.state.orders.get(order_id)
        return replace(order) if order else None

    async def mark_order_paid(self, order_id: str, reference: str, paid_at: datetime) -> None:
        order = self.state.orders[order_id]
        order.payment_status = "paid"
        order.payment_reference = reference
        order.paid_at = paid_at

    async def is_reference_settled(self, reference: str) -> bool:
        await self._io()
        return any(t.payment_reference == reference for t in self.state.revenue) or any(
            e.payment_reference == reference for e in self.state.subscription_events
        )

    async def insert_revenue_transaction(self, txn: RevenueTransaction) -> RevenueTransaction:
        if any(t.payment_reference == txn.payment_reference for t in self.state.revenue):
            raise ValueError(f"duplicate payment_reference {txn.payment_reference}")
        txn = replace(txn, transaction_id=len(self.state.revenue) + 1)
        self.state.revenue.append(txn)
        return replace(txn)

    async def sum_revenue(self, storefront_id: str) -> Decimal:
        await self._io()
        return sum(
            (t.amount for t in self.state.revenue if t.storefront_id == storefront_id),
            Decimal("0"),
        )

    async def insert_subscription_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        if event.payment_reference is not None and any(
            e.payment_reference == event.payment_reference for e in self.state.subscription_events
        ):
            raise ValueError(f"duplicate payment_reference {event.payment_reference}")
        event = replace(event, event_id=len(self.state.subscription_events) + 1)
        self.state.subscription_events.append(event)
        return replace(event)

    async def list_subscription_events(self, account_id: str) -> list[SubscriptionEvent]:
        await self._io()
        return [replace(e) for e in self.state.subscription_events if e.account_id == account_id]

    async def sum_payouts_by_status(self, storefront_id: str) -> dict[str, Decimal]:
        await self._io()
        totals: dict[str, Decimal] = {}
        for payout in self.state.payouts.values():
            if payout.storefront_id == storefront_id:
                totals[payout.status] = totals.get(payout.status, Decimal("0")) + payout.amount
        return totals

    async def insert_payout_request(
        self,
        storefront_id: str,
        amount: Decimal,
        bank_details: dict[str, Any],
        requested_at: datetime,
    ) -> PayoutRequest:
        payout = PayoutRequest(
            payout_id=str(uuid4()),
            storefront_id=storefront_id,
            amount=amount,
            bank_details=dict(bank_details),
            status="pending",
            requested_at=requested_at,
        )
        self.state.payouts[payout.payout_id] = payout
        return replace(payout)

    async def get_payout_request(self, payout_id: str, *, for_update: bool = False) -> Optional[PayoutRequest]:
        await self._io()
        payout = self.state.payouts.get(payout_id)
        return replace(payout) if payout else None

    async def update_payout_request(
        self,
        payout_id: str,
        status: str,
        processed_at: datetime | None,
        admin_notes: str | None,
    ) -> PayoutRequest:
        payout = self.state.payouts[payout_id]
        payout.status = status
        if processed_at is not None:
            payout.processed_at = processed_at
        if admin_notes is not None:
            payout.admin_notes = admin_notes
        return replace(payout)

    async def list_payout_requests(
        self,
        *,
        storefront_id: str | None = None,
        statuses: Iterable[str] | None = None,
        newest_first: bool = False,
    ) -> list[PayoutRequest]:
        await self._io()
        wanted = set(statuses) if statuses is not None else None
        payouts = [
            replace(p)
            for p in self.state.payouts.values()
            if (storefront_id is None or p.storefront_id == storefront_id)
            and (wanted is None or p.status in wanted)
        ]
        return sorted(payouts, key=lambda p: p.requested_at, reverse=newest_first)

    async def get_usage(self, account_id: str, feature_name: str, period: str) -> int:
        await self._io()
        return self.state.usage.get((account_id, feature_name, period), 0)

    async def increment_usage(self, account_id: str, feature_name: str, period: str) -> int:
        key = (account_id, feature_name, period)
        self.state.usage[key] = self.state.usage.get(key, 0) + 1
        return self.state.usage[key]

    async def count_referrals(self, account_id: str, status: str) -> int:
        await self._io()
        return sum(
            1 for referrer, _, ref_status in self.state.referrals
            if referrer == account_id and ref_status == status
        )

    async def list_tier_grants(self, account_id: str) -> list[ReferralTierGrant]:
        await self._io()
        return [g for (owner, _), g in self.state.tier_grants.items() if owner == account_id]

    async def insert_tier_grant(self, grant: ReferralTierGrant) -> bool:
        key = (grant.account_id, grant.tier)
        if key in self.state.tier_grants:
            return False
        self.state.tier_grants[key] = grant
        return True


class InMemoryLedgerStore(LedgerStore):
    """Ledger Store kept in process memory."""

    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def unit_of_work(self, *lock_keys: str) -> AsyncIterator[LedgerSession]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryLedgerSession(self._state)
            except BaseException:
                self._state = snapshot
                raise

    # Seeding helpers; in production these rows come from the catalog and signup flows.
    def add_account(self, account: Account) -> Account:
        self._state.accounts[account.account_id] = account
        return account

    def add_storefront(self, storefront: Storefront) -> Storefront:
        self._state.storefronts[storefront.storefront_id] = storefront
        return storefront

    def add_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        self._state.plans[plan.plan_id] = plan
        return plan

    def add_order(self, order: Order) -> Order:
        self._state.orders[order.order_id] = order
        return order

    def add_product(self, storefront_id: str, product_id: str | None = None) -> str:
        product_id = product_id or str(uuid4())
        self._state.products[product_id] = storefront_id
        return product_id

    def add_referral(self, referrer_id: str, referred_id: str, status: str = "rewarded") -> None:
        self._state.referrals.append((referrer_id, referred_id, status))

    def add_revenue(self, txn: RevenueTransaction) -> None:
        self._state.revenue.append(txn)

    def add_payout(self, payout: PayoutRequest) -> PayoutRequest:
        self._state.payouts[payout.payout_id] = payout
        return payout

    # Read-only views for inspection
    @property
    def accounts(self) -> dict[str, Account]:
        return self._state.accounts

    @property
    def orders(self) -> dict[str, Order]:
        return self._state.orders

    @property
    def storefronts(self) -> dict[str, Storefront]:
        return self._state.storefronts

    @property
    def revenue_transactions(self) -> list[RevenueTransaction]:
        return self._state.revenue

    @property
    def subscription_events(self) -> list[SubscriptionEvent]:
        return self._state.subscription_events

    @property
    def payout_requests(self) -> dict[str, PayoutRequest]:
        return self._state.payouts

    @property
    def tier_grants(self) -> dict[tuple[str, str], ReferralTierGrant]:
        return self._state.tier_grants

    @property
    def featured_storefronts(self) -> dict[str, dict[str, Any]]:
        return self._state.featured

    @property
    def usage_counters(self) -> dict[tuple[str, str, str], int]:
        return self._state.usage
