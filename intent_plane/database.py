"""
Intent Plane Database Layer
===========================

Opens the asyncpg pool and brings the schema up to date. Queries live
with the stores that own the tables.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List

import asyncpg

from .config import DatabaseConfig

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Held while migrating so that replicas starting together apply each file once
MIGRATION_LOCK_ID = 72_410_001


async def open_pool(db_config: DatabaseConfig) -> asyncpg.Pool:
    """Create the connection pool and apply pending migrations."""
    logger.info(
        f"Connecting to PostgreSQL (pool {db_config.min_pool_size}-{db_config.max_pool_size})"
    )
    pool = await asyncpg.create_pool(
        db_config.url,
        min_size=db_config.min_pool_size,
        max_size=db_config.max_pool_size,
    )
    try:
        applied = await apply_migrations(pool)
    except Exception:
        await pool.close()
        raise

    if applied:
        logger.info(f"Schema updated: {', '.join(applied)}")
    return pool


async def close_pool(pool: asyncpg.Pool):
    await pool.close()
    logger.info("Database pool closed")


def pending_migrations(applied: set) -> List[Path]:
    """Migration files (``NNN_name.sql``) whose version is not in ``applied``."""
    return [
        path for path in sorted(MIGRATIONS_DIR.glob("*.sql"))
        if path.stem.split("_", 1)[0] not in applied
    ]


async def apply_migrations(pool: asyncpg.Pool) -> List[str]:
    """
    Apply every pending migration, each in its own transaction.

    Returns:
        The versions applied by this call, in order.
    """
    done: List[str] = []
    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        try:
            await conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                " version TEXT PRIMARY KEY,"
                " applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW())"
            )
            rows = await conn.fetch("SELECT version FROM schema_migrations")
            applied = {row["version"] for row in rows}

            for path in pending_migrations(applied):
                version = path.stem.split("_", 1)[0]
                logger.info(f"Applying migration {path.name}")
                async with conn.transaction():
                    await conn.execute(path.read_text(encoding="utf-8"))
                    await conn.execute(
                        "INSERT INTO schema_migrations (version) VALUES ($1)", version
                    )
                done.append(version)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)
    return done


async def check_health(pool: asyncpg.Pool) -> Dict[str, Any]:
    """Connectivity plus the size of the two live queues."""
    try:
        row = await pool.fetchrow(
            "SELECT"
            " (SELECT COUNT(*) FROM intents WHERE status IN ('pending', 'resumed')) AS open_intents,"
            " (SELECT COUNT(*) FROM orders WHERE status = 'pending_confirmation') AS awaiting_payment"
        )
    except (asyncpg.PostgresError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        return {"connected": False, "error": str(e)}

    return {
        "connected": True,
        "open_intents": row["open_intents"],
        "orders_awaiting_payment": row["awaiting_payment"],
    }
