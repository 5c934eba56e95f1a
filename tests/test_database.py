"""
Tests for the Database Layer and Logging
========================================

Migration bookkeeping against a mocked connection, plus the JSON log format.
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from intent_plane.database import (
    MIGRATION_LOCK_ID,
    apply_migrations,
    check_health,
    pending_migrations,
)
from intent_plane.logging_config import JSONFormatter


def mock_pool(applied_versions):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[{"version": v} for v in applied_versions])
    conn.transaction.return_value.__aenter__ = AsyncMock()
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn


class TestMigrations:

    def test_pending_skips_applied(self):
        assert [p.name for p in pending_migrations(set())] == [
            "000_initial_schema.sql",
            "001_one_live_order_per_intent.sql",
        ]
        assert [p.name for p in pending_migrations({"000"})] == ["001_one_live_order_per_intent.sql"]
        assert pending_migrations({"000", "001"}) == []

    @pytest.mark.asyncio
    async def test_applies_initial_schema(self):
        pool, conn = mock_pool([])

        assert await apply_migrations(pool) == ["000", "001"]

        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements[0] == "SELECT pg_advisory_lock($1)"
        assert statements[-1] == "SELECT pg_advisory_unlock($1)"
        assert any("CREATE TABLE" in s and "intents" in s for s in statements)
        conn.execute.assert_any_call("INSERT INTO schema_migrations (version) VALUES ($1)", "000")

    @pytest.mark.asyncio
    async def test_up_to_date_schema(self):
        pool, conn = mock_pool(["000", "001"])
        assert await apply_migrations(pool) == []
        conn.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_released_on_failure(self):
        pool, conn = mock_pool([])

        async def execute(sql, *args):
            if "CREATE TABLE IF NOT EXISTS intents" in sql:
                raise RuntimeError("syntax error")

        conn.execute.side_effect = execute

        with pytest.raises(RuntimeError):
            await apply_migrations(pool)
        conn.execute.assert_any_call("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)


class TestHealth:

    @pytest.mark.asyncio
    async def test_connected(self):
        pool = MagicMock()
        pool.fetchrow = AsyncMock(return_value={"open_intents": 4, "awaiting_payment": 1})
        health = await check_health(pool)
        assert health == {"connected": True, "open_intents": 4, "orders_awaiting_payment": 1}

    @pytest.mark.asyncio
    async def test_unreachable(self):
        pool = MagicMock()
        pool.fetchrow = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        health = await check_health(pool)
        assert health["connected"] is False


class TestJSONFormatter:

    def test_extra_identifiers_are_top_level(self):
        record = logging.makeLogRecord({
            "name": "intent_plane.supervisor",
            "levelname": "INFO",
            "msg": "Order %s paid",
            "args": ("ord_1",),
            "order_id": "ord_1",
            "intent_id": "int_1",
        })
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Order ord_1 paid"
        assert entry["order_id"] == "ord_1"
        assert entry["intent_id"] == "int_1"
        assert "args" not in entry
