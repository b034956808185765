"""Forward-only migration runner and schema version helper."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

import asyncpg

from shopledger.db.models import Table
from shopledger.db.pool import get_pool

logger = logging.getLogger(__name__)

# Arbitrary key shared by every migration runner
MIGRATION_LOCK_ID = 720415

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    """Ensure schema_migrations table exists."""
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL DEFAULT '',
            applied_at TIMESTAMPTZ DEFAULT now()
        )
    """)


def pending_migrations(migrations_dir: Path, applied: set[int]) -> list[tuple[int, Path]]:
    """
    List migration files not yet applied, ordered by version.

    Files are named ``NNN_description.sql``; anything else is ignored.
    """
    pending = []

    for sql_file in migrations_dir.glob("*.sql"):
        try:
            version = int(sql_file.stem.split("_")[0])
        except ValueError:
            continue

        if version not in applied:
            pending.append((version, sql_file))

    return sorted(pending)


def split_sql_statements(sql: str) -> list[str]:
    """
    Split a SQL script into individual statements.

    Semicolons inside single-quoted strings and $$-quoted function bodies
    do not terminate a statement.
    """
    sql = re.sub(r"--.*$", "", sql, flags=re.MULTILINE)
    sql = re.sub(r"/\*.*?\*/", "", sql, flags=re.DOTALL)

    statements = []
    current: list[str] = []
    in_dollar_quote = False
    in_single_quote = False
    i = 0

    while i < len(sql):
        if sql.startswith("$$", i) and not in_single_quote:
            in_dollar_quote = not in_dollar_quote
            current.append("$$")
            i += 2
            continue

        char = sql[i]
        if char == "'" and not in_dollar_quote:
            in_single_quote = not in_single_quote
        elif char == ";" and not in_dollar_quote and not in_single_quote:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement + ";")
            current = []
            i += 1
            continue

        current.append(char)
        i += 1

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)

    return statements


async def _apply_migration(conn: asyncpg.Connection, version: int, sql_path: Path) -> None:
    """Apply a single migration file and record it."""
    for statement in split_sql_statements(sql_path.read_text(encoding="utf-8")):
        await conn.execute(statement)

    await conn.execute(
        f"INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename) VALUES ($1, $2)",
        version,
        sql_path.name,
    )


async def migrate(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in order.

    Holds an advisory lock so concurrent service instances cannot migrate
    at the same time. Already-applied versions are skipped.

    Returns:
        int: Number of migrations applied in this run

    Raises:
        FileNotFoundError: If migrations directory not found
        RuntimeError: If another migration run holds the lock
        asyncpg.PostgresError: On database errors
    """
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    pool = await get_pool()
    applied_count = 0

    async with pool.acquire() as conn:
        lock_acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", MIGRATION_LOCK_ID)
        if not lock_acquired:
            raise RuntimeError(
                "Another migration is currently running. "
                "Wait for it to complete and try again."
            )

        try:
            await _ensure_migrations_table(conn)
            rows = await conn.fetch(f"SELECT version FROM {Table.SCHEMA_MIGRATIONS}")
            applied = {row["version"] for row in rows}

            for version, sql_path in pending_migrations(migrations_dir, applied):
                async with conn.transaction():
                    await _apply_migration(conn, version, sql_path)
                applied_count += 1
                logger.info(f"Applied migration {version:03d}: {sql_path.name}")

            return applied_count

        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


async def schema_version() -> Optional[int]:
    """
    Get the highest applied migration version.

    Returns:
        int: Highest applied version number, or None if no migrations applied
    """
    pool = await get_pool()

    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point for running migrations."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _run():
        applied = await migrate()
        version = await schema_version()
        if applied == 0:
            logger.info(f"No pending migrations. Current schema version: {version}")
        else:
            logger.info(f"Applied {applied} migration(s). Current schema version: {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
