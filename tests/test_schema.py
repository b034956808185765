"""Tests for database schema and migrations."""

from decimal import Decimal

import asyncpg
import pytest

from shopledger.db.schema import migrate, schema_version
from shopledger.db.schema.migrate import MIGRATIONS_DIR, pending_migrations, split_sql_statements


class TestSplitStatements:
    """Statement splitting needs no database."""

    def test_splits_on_semicolons(self):
        sql = "CREATE TABLE a (x INT);\nCREATE TABLE b (y INT);"
        assert split_sql_statements(sql) == ["CREATE TABLE a (x INT);", "CREATE TABLE b (y INT);"]

    def test_ignores_comments(self):
        sql = "-- drop everything; not really\nSELECT 1; /* two; */ SELECT 2;"
        assert split_sql_statements(sql) == ["SELECT 1;", "SELECT 2;"]

    def test_keeps_function_bodies_whole(self):
        sql = """
        CREATE FUNCTION f() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'nope; really';
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        SELECT 1;
        """
        statements = split_sql_statements(sql)
        assert len(statements) == 2
        assert "RETURN NEW;" in statements[0]
        assert statements[1] == "SELECT 1;"

    def test_semicolon_inside_string(self):
        assert split_sql_statements("INSERT INTO t VALUES ('a;b');") == ["INSERT INTO t VALUES ('a;b');"]


class TestPendingMigrations:
    def test_orders_and_filters(self, tmp_path):
        (tmp_path / "002_second.sql").write_text("SELECT 2;")
        (tmp_path / "001_first.sql").write_text("SELECT 1;")
        (tmp_path / "notes.sql").write_text("SELECT 0;")

        pending = pending_migrations(tmp_path, applied={1})

        assert [(v, p.name) for v, p in pending] == [(2, "002_second.sql")]

    def test_shipped_migrations_are_found(self):
        versions = [v for v, _ in pending_migrations(MIGRATIONS_DIR, applied=set())]
        assert versions and versions[0] == 1


@pytest.fixture
async def clean_db(pool):
    """Drop and recreate the public schema around a test."""
    async with pool.acquire() as conn:
        await conn.execute("DROP SCHEMA public CASCADE; CREATE SCHEMA public;")
    yield
    async with pool.acquire() as conn:
        await conn.execute("DROP SCHEMA public CASCADE; CREATE SCHEMA public;")
    await migrate()


@pytest.mark.asyncio(loop_scope="session")
class TestMigrations:
    """Migration runner against a real database."""

    async def test_migrate_fresh_database(self, pool, clean_db):
        applied = await migrate()
        assert applied == 1

        assert await schema_version() == 1

    async def test_migrate_idempotent(self, pool, clean_db):
        assert await migrate() == 1
        assert await migrate() == 0
        assert await schema_version() == 1

    async def test_schema_version_before_migrations(self, pool, clean_db):
        assert await schema_version() is None


@pytest.mark.asyncio(loop_scope="session")
class TestSchema:
    """Constraints the ledger relies on."""

    @pytest.fixture(autouse=True)
    async def setup(self, pool, clean_db):
        await migrate()

    async def test_all_tables_exist(self, pool):
        expected_tables = {
            "accounts", "storefronts", "subscription_plans", "orders", "products",
            "revenue_transactions", "payout_requests", "subscription_events",
            "referrals", "referral_tier_grants", "featured_storefronts",
            "feature_usage_counters", "schema_migrations",
        }

        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
            """)

        assert {row["table_name"] for row in rows} == expected_tables

    async def _seed(self, conn):
        await conn.execute("INSERT INTO accounts (account_id, email) VALUES ('a1', 'a@x')")
        await conn.execute(
            "INSERT INTO storefronts (storefront_id, account_id, name) VALUES ('s1', 'a1', 'Shop')"
        )

    async def test_payment_reference_unique_on_revenue(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)
            insert = """
                INSERT INTO revenue_transactions
                    (storefront_id, amount, currency, payment_reference, transaction_type)
                VALUES ('s1', 100, 'NGN', 'ORDER_o1_abc', 'order_payment')
            """
            await conn.execute(insert)

            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.execute(insert)

    async def test_revenue_is_append_only(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)
            await conn.execute("""
                INSERT INTO revenue_transactions
                    (storefront_id, amount, currency, payment_reference, transaction_type)
                VALUES ('s1', 100, 'NGN', 'ORDER_o1_abc', 'order_payment')
            """)

            with pytest.raises(asyncpg.RaiseError):
                await conn.execute("UPDATE revenue_transactions SET amount = 1")
            with pytest.raises(asyncpg.RaiseError):
                await conn.execute("DELETE FROM revenue_transactions")

    async def test_subaccount_reference_set_once(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)
            await conn.execute(
                "UPDATE storefronts SET payment_subaccount_reference = 'ACCT_1' WHERE storefront_id = 's1'"
            )

            with pytest.raises(asyncpg.RaiseError):
                await conn.execute(
                    "UPDATE storefronts SET payment_subaccount_reference = 'ACCT_2' WHERE storefront_id = 's1'"
                )

    async def test_payout_status_check(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)

            with pytest.raises(asyncpg.CheckViolationError):
                await conn.execute("""
                    INSERT INTO payout_requests (storefront_id, amount, status)
                    VALUES ('s1', 5000, 'cancelled')
                """)

    async def test_tier_grant_unique(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)
            insert = "INSERT INTO referral_tier_grants (account_id, tier) VALUES ('a1', 'bronze')"
            await conn.execute(insert)

            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.execute(insert)

    async def test_money_precision(self, pool):
        async with pool.acquire() as conn:
            result = await conn.fetchrow("""
                SELECT numeric_precision, numeric_scale
                FROM information_schema.columns
                WHERE table_name = 'payout_requests' AND column_name = 'amount'
            """)

        assert result["numeric_precision"] == 14
        assert result["numeric_scale"] == 2

    async def test_bank_details_round_trip_as_json(self, pool):
        async with pool.acquire() as conn:
            await self._seed(conn)
            row = await conn.fetchrow(
                """
                INSERT INTO payout_requests (storefront_id, amount, bank_details)
                VALUES ('s1', $1, $2)
                RETURNING amount, bank_details
                """,
                Decimal("5000.50"),
                {"bank_code": "058"},
            )

        assert row["amount"] == Decimal("5000.50")
        assert row["bank_details"] == {"bank_code": "058"}
