"""Tests for the asyncpg Ledger Store with a mocked connection."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from shopledger.ledger.base import ReferralTierGrant
from shopledger.ledger.postgres import PostgresLedgerSession, PostgresLedgerStore


def _async_cm(value=None):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock()
    conn.transaction = MagicMock(return_value=_async_cm())
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_async_cm(mock_conn))
    return pool


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_advisory_locks_sorted_and_deduplicated(self, mock_pool, mock_conn):
        store = PostgresLedgerStore(mock_pool)

        async with store.unit_of_work("payment:REF", "account:a1", "payment:REF") as session:
            assert isinstance(session, PostgresLedgerSession)
            assert session.conn is mock_conn

        mock_conn.transaction.assert_called_once()
        assert mock_conn.execute.await_args_list == [
            call("SELECT pg_advisory_xact_lock(hashtext($1))", "account:a1"),
            call("SELECT pg_advisory_xact_lock(hashtext($1))", "payment:REF"),
        ]

    @pytest.mark.asyncio
    async def test_error_propagates_through_transaction(self, mock_pool, mock_conn):
        store = PostgresLedgerStore(mock_pool)
        tx = mock_conn.transaction.return_value

        with pytest.raises(RuntimeError):
            async with store.unit_of_work("payout:s1"):
                raise RuntimeError("boom")

        exc_type = tx.__aexit__.await_args.args[0]
        assert exc_type is RuntimeError


class TestSession:
    @pytest.mark.asyncio
    async def test_for_update_appends_row_lock(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)

        await session.get_account("a1", for_update=True)
        await session.get_order("o1")

        locked_sql = mock_conn.fetchrow.await_args_list[0].args[0]
        plain_sql = mock_conn.fetchrow.await_args_list[1].args[0]
        assert locked_sql.rstrip().endswith("FOR UPDATE")
        assert "FOR UPDATE" not in plain_sql

    @pytest.mark.asyncio
    async def test_missing_rows_return_none(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)

        assert await session.get_account("a1") is None
        assert await session.get_storefront("s1") is None
        assert await session.get_payout_request("p1") is None

    @pytest.mark.asyncio
    async def test_insert_tier_grant_conflict_returns_false(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)
        grant = ReferralTierGrant("a1", "bronze", datetime(2024, 6, 15, tzinfo=timezone.utc))

        mock_conn.fetchval.return_value = None
        assert await session.insert_tier_grant(grant) is False

        mock_conn.fetchval.return_value = "bronze"
        assert await session.insert_tier_grant(grant) is True

    @pytest.mark.asyncio
    async def test_set_subaccount_only_when_unset(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)

        mock_conn.fetchval.return_value = None
        assert await session.set_payment_subaccount("s1", "ACCT_x") is False

        sql = mock_conn.fetchval.await_args.args[0]
        assert "payment_subaccount_reference IS NULL" in sql

    @pytest.mark.asyncio
    async def test_increment_usage_is_single_upsert(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)
        mock_conn.fetchval.return_value = 4

        count = await session.increment_usage("a1", "poster_generation", "2024-06")

        assert count == 4
        sql, *args = mock_conn.fetchval.await_args.args
        assert "ON CONFLICT" in sql
        assert args == ["a1", "poster_generation", "2024-06"]

    @pytest.mark.asyncio
    async def test_get_usage_defaults_to_zero(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)
        mock_conn.fetchval.return_value = None

        assert await session.get_usage("a1", "poster_generation", "2024-06") == 0

    @pytest.mark.asyncio
    async def test_list_payouts_builds_filters(self, mock_conn):
        session = PostgresLedgerSession(mock_conn)

        await session.list_payout_requests(storefront_id="s1", statuses=["pending"], newest_first=True)

        sql, *args = mock_conn.fetch.await_args.args
        assert "storefront_id = $1" in sql
        assert "status = ANY($2::text[])" in sql
        assert sql.endswith("DESC")
        assert args == ["s1", ["pending"]]
