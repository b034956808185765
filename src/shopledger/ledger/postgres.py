"""PostgreSQL Ledger Store on asyncpg.

Each unit of work is one transaction on one pooled connection. Lock keys
become transaction-scoped advisory locks, taken in sorted order so two units
asking for overlapping keys cannot deadlock.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Optional

import asyncpg

from shopledger.db.models import Table
from shopledger.db.pool import get_pool
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

logger = logging.getLogger(__name__)


def _row_to_account(row: asyncpg.Record) -> Account:
    return Account(
        account_id=row["account_id"],
        email=row["email"],
        plan_tier=row["plan_tier"],
        is_subscribed=row["is_subscribed"],
        subscription_expires_at=row["subscription_expires_at"],
        is_reseller=row["is_reseller"],
        subscription_plan_id=row["subscription_plan_id"],
        subscription_type=row["subscription_type"],
        kyc_status=row["kyc_status"],
        verified_account_name=row["verified_account_name"],
    )


def _row_to_storefront(row: asyncpg.Record) -> Storefront:
    return Storefront(
        storefront_id=row["storefront_id"],
        account_id=row["account_id"],
        name=row["name"],
        commission_percentage=row["commission_percentage"],
        payment_subaccount_reference=row["payment_subaccount_reference"],
    )


def _row_to_plan(row: asyncpg.Record) -> SubscriptionPlan:
    return SubscriptionPlan(
        plan_id=row["plan_id"],
        slug=row["slug"],
        name=row["name"],
        price_monthly=row["price_monthly"],
        price_yearly=row["price_yearly"],
        max_products=row["max_products"],
        ai_features_enabled=row["ai_features_enabled"],
        feature_limits=row["feature_limits"] or {},
    )


def _row_to_order(row: asyncpg.Record) -> Order:
    return Order(
        order_id=row["order_id"],
        storefront_id=row["storefront_id"],
        total_amount=row["total_amount"],
        payment_status=row["payment_status"],
        payment_reference=row["payment_reference"],
        paid_at=row["paid_at"],
    )


def _row_to_payout(row: asyncpg.Record) -> PayoutRequest:
    return PayoutRequest(
        payout_id=row["payout_id"],
        storefront_id=row["storefront_id"],
        amount=row["amount"],
        bank_details=row["bank_details"] or {},
        status=row["status"],
        requested_at=row["requested_at"],
        processed_at=row["processed_at"],
        admin_notes=row["admin_notes"],
    )


def _row_to_event(row: asyncpg.Record) -> SubscriptionEvent:
    return SubscriptionEvent(
        account_id=row["account_id"],
        event_type=row["event_type"],
        previous_expiry_at=row["previous_expiry_at"],
        new_expiry_at=row["new_expiry_at"],
        created_at=row["created_at"],
        payment_reference=row["payment_reference"],
        plan_id=row["plan_id"],
        amount=row["amount"],
        notes=row["notes"],
        event_id=row["event_id"],
    )


class PostgresLedgerSession(LedgerSession):
    """Session bound to a connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def get_account(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.ACCOUNTS} WHERE account_id = $1{lock}",
            account_id,
        )
        return _row_to_account(row) if row else None

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
        await self.conn.execute(
            f"""
            UPDATE {Table.ACCOUNTS}
            SET subscription_expires_at = $2,
                is_subscribed = $3,
                subscription_plan_id = COALESCE($4, subscription_plan_id),
                plan_tier = COALESCE($5, plan_tier),
                subscription_type = COALESCE($6, subscription_type),
                updated_at = now()
            WHERE account_id = $1
            """,
            account_id,
            expires_at,
            is_subscribed,
            plan_id,
            plan_tier,
            subscription_type,
        )

    async def set_reseller(self, account_id: str) -> None:
        await self.conn.execute(
            f"UPDATE {Table.ACCOUNTS} SET is_reseller = TRUE, updated_at = now() WHERE account_id = $1",
            account_id,
        )

    async def set_identity_verification(
        self, account_id: str, status: str, account_name: str | None
    ) -> None:
        await self.conn.execute(
            f"""
            UPDATE {Table.ACCOUNTS}
            SET kyc_status = $2,
                verified_account_name = COALESCE($3, verified_account_name),
                updated_at = now()
            WHERE account_id = $1
            """,
            account_id,
            status,
            account_name,
        )

    async def get_storefront(self, storefront_id: str, *, for_update: bool = False) -> Optional[Storefront]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.STOREFRONTS} WHERE storefront_id = $1{lock}",
            storefront_id,
        )
        return _row_to_storefront(row) if row else None

    async def get_storefront_for_account(self, account_id: str) -> Optional[Storefront]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.STOREFRONTS} WHERE account_id = $1",
            account_id,
        )
        return _row_to_storefront(row) if row else None

    async def set_payment_subaccount(
        self,
        storefront_id: str,
        reference: str,
        bank_code: str | None = None,
        account_number: str | None = None,
    ) -> bool:
        updated = await self.conn.fetchval(
            f"""
            UPDATE {Table.STOREFRONTS}
            SET payment_subaccount_reference = $2,
                settlement_bank_code = $3,
                settlement_account_number = $4
            WHERE storefront_id = $1
              AND payment_subaccount_reference IS NULL
            RETURNING storefront_id
            """,
            storefront_id,
            reference,
            bank_code,
            account_number,
        )
        return updated is not None

    async def feature_storefront(
        self, storefront_id: str, expires_at: datetime, label: str, tagline: str
    ) -> None:
        await self.conn.execute(
            f"""
            INSERT INTO {Table.FEATURED_STOREFRONTS}
                (storefront_id, label, tagline, is_active, expires_at)
            VALUES ($1, $2, $3, TRUE, $4)
            ON CONFLICT (storefront_id) DO UPDATE SET
                label = EXCLUDED.label,
                tagline = EXCLUDED.tagline,
                is_active = TRUE,
                expires_at = GREATEST({Table.FEATURED_STOREFRONTS}.expires_at, EXCLUDED.expires_at)
            """,
            storefront_id,
            label,
            tagline,
            expires_at,
        )

    async def count_products(self, storefront_id: str) -> int:
        return await self.conn.fetchval(
            f"SELECT COUNT(*) FROM {Table.PRODUCTS} WHERE storefront_id = $1",
            storefront_id,
        )

    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.SUBSCRIPTION_PLANS} WHERE plan_id = $1",
            plan_id,
        )
        return _row_to_plan(row) if row else None

    async def get_plan_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.SUBSCRIPTION_PLANS} WHERE slug = $1",
            slug,
        )
        return _row_to_plan(row) if row else None

    async def get_order(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.ORDERS} WHERE order_id = $1{lock}",
            order_id,
        )
        return _row_to_order(row) if row else None

    async def mark_order_paid(self, order_id: str, reference: str, paid_at: datetime) -> None:
        await self.conn.execute(
            f"""
            UPDATE {Table.ORDERS}
            SET payment_status = 'paid', payment_reference = $2, paid_at = $3
            WHERE order_id = $1
            """,
            order_id,
            reference,
            paid_at,
        )

    async def is_reference_settled(self, reference: str) -> bool:
        return await self.conn.fetchval(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {Table.REVENUE_TRANSACTIONS} WHERE payment_reference = $1
                UNION ALL
                SELECT 1 FROM {Table.SUBSCRIPTION_EVENTS} WHERE payment_reference = $1
            )
            """,
            reference,
        )

    async def insert_revenue_transaction(self, txn: RevenueTransaction) -> RevenueTransaction:
        txn.transaction_id = await self.conn.fetchval(
            f"""
            INSERT INTO {Table.REVENUE_TRANSACTIONS} (
                storefront_id, order_id, amount, gross_amount, platform_fee,
                platform_fee_percentage, currency, payment_reference,
                transaction_type, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING transaction_id
            """,
            txn.storefront_id,
            txn.order_id,
            txn.amount,
            txn.gross_amount,
            txn.platform_fee,
            txn.platform_fee_percentage,
            txn.currency,
            txn.payment_reference,
            txn.transaction_type,
            txn.created_at,
        )
        return txn

    async def sum_revenue(self, storefront_id: str) -> Decimal:
        return await self.conn.fetchval(
            f"""
            SELECT COALESCE(SUM(amount), 0)
            FROM {Table.REVENUE_TRANSACTIONS}
            WHERE storefront_id = $1
            """,
            storefront_id,
        )

    async def insert_subscription_event(self, event: SubscriptionEvent) -> SubscriptionEvent:
        event.event_id = await self.conn.fetchval(
            f"""
            INSERT INTO {Table.SUBSCRIPTION_EVENTS} (
                account_id, event_type, plan_id, payment_reference, amount,
                previous_expiry_at, new_expiry_at, notes, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING event_id
            """,
            event.account_id,
            event.event_type,
            event.plan_id,
            event.payment_reference,
            event.amount,
            event.previous_expiry_at,
            event.new_expiry_at,
            event.notes,
            event.created_at,
        )
        return event

    async def list_subscription_events(self, account_id: str) -> list[SubscriptionEvent]:
        rows = await self.conn.fetch(
            f"""
            SELECT * FROM {Table.SUBSCRIPTION_EVENTS}
            WHERE account_id = $1
            ORDER BY created_at, event_id
            """,
            account_id,
        )
        return [_row_to_event(row) for row in rows]

    async def sum_payouts_by_status(self, storefront_id: str) -> dict[str, Decimal]:
        rows = await self.conn.fetch(
            f"""
            SELECT status, SUM(amount) AS total
            FROM {Table.PAYOUT_REQUESTS}
            WHERE storefront_id = $1
            GROUP BY status
            """,
            storefront_id,
        )
        return {row["status"]: row["total"] for row in rows}

    async def insert_payout_request(
        self,
        storefront_id: str,
        amount: Decimal,
        bank_details: dict[str, Any],
        requested_at: datetime,
    ) -> PayoutRequest:
        row = await self.conn.fetchrow(
            f"""
            INSERT INTO {Table.PAYOUT_REQUESTS}
                (storefront_id, amount, bank_details, status, requested_at)
            VALUES ($1, $2, $3, 'pending', $4)
            RETURNING *
            """,
            storefront_id,
            amount,
            bank_details,
            requested_at,
        )
        return _row_to_payout(row)

    async def get_payout_request(self, payout_id: str, *, for_update: bool = False) -> Optional[PayoutRequest]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM {Table.PAYOUT_REQUESTS} WHERE payout_id = $1{lock}",
            payout_id,
        )
        return _row_to_payout(row) if row else None

    async def update_payout_request(
        self,
        payout_id: str,
        status: str,
        processed_at: datetime | None,
        admin_notes: str | None,
    ) -> PayoutRequest:
        row = await self.conn.fetchrow(
            f"""
            UPDATE {Table.PAYOUT_REQUESTS}
            SET status = $2,
                processed_at = COALESCE($3, processed_at),
                admin_notes = COALESCE($4, admin_notes)
            WHERE payout_id = $1
            RETURNING *
            """,
            payout_id,
            status,
            processed_at,
            admin_notes,
        )
        return _row_to_payout(row)

    async def list_payout_requests(
        self,
        *,
        storefront_id: str | None = None,
        statuses: Iterable[str] | None = None,
        newest_first: bool = False,
    ) -> list[PayoutRequest]:
        clauses = []
        args: list[Any] = []
        if storefront_id is not None:
            args.append(storefront_id)
            clauses.append(f"storefront_id = ${len(args)}")
        if statuses is not None:
            args.append(list(statuses))
            clauses.append(f"status = ANY(${len(args)}::text[])")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if newest_first else "ASC"
        rows = await self.conn.fetch(
            f"SELECT * FROM {Table.PAYOUT_REQUESTS} {where} ORDER BY requested_at {direction}",
            *args,
        )
        return [_row_to_payout(row) for row in rows]

    async def get_usage(self, account_id: str, feature_name: str, period: str) -> int:
        count = await self.conn.fetchval(
            f"""
            SELECT count FROM {Table.FEATURE_USAGE_COUNTERS}
            WHERE account_id = $1 AND feature_name = $2 AND period = $3
            """,
            account_id,
            feature_name,
            period,
        )
        return count or 0

    async def increment_usage(self, account_id: str, feature_name: str, period: str) -> int:
        # Single statement: concurrent callers serialize on the row lock
        return await self.conn.fetchval(
            f"""
            INSERT INTO {Table.FEATURE_USAGE_COUNTERS} (account_id, feature_name, period, count)
            VALUES ($1, $2, $3, 1)
            ON CONFLICT (account_id, feature_name, period) DO UPDATE SET
                count = {Table.FEATURE_USAGE_COUNTERS}.count + 1,
                updated_at = now()
            RETURNING count
            """,
            account_id,
            feature_name,
            period,
        )

    async def count_referrals(self, account_id: str, status: str) -> int:
        return await self.conn.fetchval(
            f"SELECT COUNT(*) FROM {Table.REFERRALS} WHERE referrer_id = $1 AND status = $2",
            account_id,
            status,
        )

    async def list_tier_grants(self, account_id: str) -> list[ReferralTierGrant]:
        rows = await self.conn.fetch(
            f"""
            SELECT account_id, tier, claimed_at
            FROM {Table.REFERRAL_TIER_GRANTS}
            WHERE account_id = $1
            """,
            account_id,
        )
        return [ReferralTierGrant(row["account_id"], row["tier"], row["claimed_at"]) for row in rows]

    async def insert_tier_grant(self, grant: ReferralTierGrant) -> bool:
        inserted = await self.conn.fetchval(
            f"""
            INSERT INTO {Table.REFERRAL_TIER_GRANTS} (account_id, tier, claimed_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (account_id, tier) DO NOTHING
            RETURNING tier
            """,
            grant.account_id,
            grant.tier,
            grant.claimed_at,
        )
        return inserted is not None


class PostgresLedgerStore(LedgerStore):
    """Ledger Store backed by the shared asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool | None = None):
        self._pool = pool

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await get_pool()
        return self._pool

    @asynccontextmanager
    async def unit_of_work(self, *lock_keys: str) -> AsyncIterator[LedgerSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for key in sorted(set(lock_keys)):
                    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                yield PostgresLedgerSession(conn)
