from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from tracker.errors import StoreConnectionError, WriteError
from tracker.models import Record
from tracker.store.sql import SQLStore


async def _indexes(store):
    async with store.engine.connect() as connection:
        indexes = await connection.run_sync(lambda conn: inspect(conn).get_indexes("pings"))
    return {index["name"]: list(index["column_names"]) for index in indexes}


class TestConnect:
    @pytest.mark.asyncio
    async def test_unreachable_database_raises(self, tmp_path):
        store = SQLStore(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'tracker.db'}")
        with pytest.raises(StoreConnectionError):
            await store.connect()
        await store.close()

    def test_engine_requires_connect(self):
        store = SQLStore("sqlite+aiosqlite:///unused.db")
        with pytest.raises(StoreConnectionError):
            store.engine


class TestEnsureSchema:
    @pytest.mark.asyncio
    async def test_creates_indexes(self, sql_store):
        indexes = await _indexes(sql_store)
        assert indexes["ip_index"] == ["ip_key", "playerCount"]
        assert indexes["timestamp_index"] == ["timestamp"]

    @pytest.mark.asyncio
    async def test_idempotent(self, sql_store):
        await sql_store.insert_sample("mc.example.net", 1000, 5)
        await sql_store.ensure_schema()
        await sql_store.ensure_schema()
        assert len(await sql_store.query_range(0, 2000)) == 1

    @pytest.mark.asyncio
    async def test_migrates_legacy_tables(self, database_url):
        store = SQLStore(database_url)
        await store.connect()
        async with store.engine.begin() as connection:
            await connection.execute(text("CREATE TABLE pings (timestamp BIGINT NOT NULL, ip VARCHAR(255), playerCount INTEGER)"))
            await connection.execute(text("CREATE INDEX ip_index ON pings (ip, playerCount)"))
            await connection.execute(text("INSERT INTO pings VALUES (1000, 'Mc.Example.net', 5)"))
            await connection.execute(text("INSERT INTO pings VALUES (2000, 'Mc.Example.net', 9)"))

        await store.ensure_schema()

        indexes = await _indexes(store)
        assert indexes["ip_index"] == ["ip_key", "playerCount"]
        assert "timestamp_index" in indexes
        assert await store.get_legacy_record_fallback("Mc.Example.net") == Record("Mc.Example.net", 9, 2000)
        assert await store.get_legacy_record_fallback("mc.example.net") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_failed_migration_step_is_skipped(self, database_url):
        store = SQLStore(database_url)
        await store.connect()
        failure = OperationalError("UPDATE pings", {}, Exception("database is locked"))
        with patch.object(SQLStore, "_backfill_key_column", AsyncMock(side_effect=failure)):
            await store.ensure_schema()
        await store.insert_sample("mc.example.net", 1000, 5)
        assert len(await store.query_range(0, 1000)) == 1
        await store.close()


class TestSamples:
    @pytest.mark.asyncio
    async def test_query_range_inclusive_bounds(self, sql_store):
        for timestamp in (999, 1000, 2000, 3000, 3001):
            await sql_store.insert_sample("mc.example.net", timestamp, 1)
        samples = await sql_store.query_range(1000, 3000)
        assert sorted(s.timestamp for s in samples) == [1000, 2000, 3000]

    @pytest.mark.asyncio
    async def test_samples_not_deduplicated(self, sql_store):
        await sql_store.insert_sample("mc.example.net", 1000, 5)
        await sql_store.insert_sample("mc.example.net", 1000, 5)
        assert len(await sql_store.query_range(1000, 1000)) == 2

    @pytest.mark.asyncio
    async def test_negative_value_rejected(self, sql_store):
        with pytest.raises(WriteError):
            await sql_store.insert_sample("mc.example.net", 1000, -3)
        assert await sql_store.query_range(0, 2000) == []

    @pytest.mark.asyncio
    async def test_delete_older_than_is_idempotent(self, sql_store):
        for timestamp in (1000, 2000, 3000):
            await sql_store.insert_sample("mc.example.net", timestamp, 1)
        assert await sql_store.delete_older_than(2500) == 2
        assert await sql_store.delete_older_than(2500) == 0
        remaining = await sql_store.query_range(0, 10_000)
        assert [s.timestamp for s in remaining] == [3000]

    @pytest.mark.asyncio
    async def test_delete_keeps_cutoff_boundary(self, sql_store):
        await sql_store.insert_sample("mc.example.net", 2000, 1)
        assert await sql_store.delete_older_than(2000) == 0


class TestRecords:
    @pytest.mark.asyncio
    async def test_record_lifecycle(self, sql_store):
        await sql_store.insert_sample("A", 1000, 5)
        await sql_store.insert_sample("A", 2000, 9)
        await sql_store.insert_sample("A", 3000, 3)

        assert await sql_store.get_record("A") is None
        legacy = await sql_store.get_legacy_record_fallback("A")
        assert (legacy.metric_value, legacy.timestamp) == (9, 2000)

        await sql_store.insert_record("A", legacy.metric_value, legacy.timestamp)
        await sql_store.insert_sample("A", 4000, 20)
        assert await sql_store.get_record("A") == Record("A", 9, 2000)

        await sql_store.update_record("A", 20, 4000)
        assert await sql_store.get_record("A") == Record("A", 20, 4000)

    @pytest.mark.asyncio
    async def test_legacy_fallback_matches_address_exactly(self, sql_store):
        await sql_store.insert_sample("Play.Example.net", 1000, 50)
        await sql_store.insert_sample("play.example.net", 2000, 5)
        await sql_store.insert_sample(" play.example.net", 3000, 80)

        assert await sql_store.get_legacy_record_fallback("play.example.net") == Record("play.example.net", 5, 2000)
        assert await sql_store.get_legacy_record_fallback("Play.Example.net") == Record("Play.Example.net", 50, 1000)

    @pytest.mark.asyncio
    async def test_legacy_fallback_without_samples(self, sql_store):
        assert await sql_store.get_legacy_record_fallback("unknown.example.net") is None

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_ignored(self, sql_store):
        await sql_store.insert_record("A", 9, 2000)
        await sql_store.insert_record("A", 12, 5000)
        assert await sql_store.get_record("A") == Record("A", 9, 2000)

    @pytest.mark.asyncio
    async def test_update_without_existing_row_inserts(self, sql_store):
        await sql_store.update_record("B", 7, 1000)
        assert await sql_store.get_record("B") == Record("B", 7, 1000)

    @pytest.mark.asyncio
    async def test_update_is_idempotent(self, sql_store):
        await sql_store.update_record("B", 7, 1000)
        await sql_store.update_record("B", 7, 1000)
        assert await sql_store.get_record("B") == Record("B", 7, 1000)
