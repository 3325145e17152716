"""Tests for the relational state store (SQLite)."""

from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from config.config import DatabaseSettings
from core.errors.exceptions import ConfigurationError, PermanentError, StateStoreError
from logarchive.models import EntityRef, IdentifierCacheEntry
from logarchive.state import StateStore, build_engine


def _entry(content_hash="h1", entity_id="7", status=""):
    return IdentifierCacheEntry(
        content_hash=content_hash,
        entity=EntityRef(table="content.articles", entity_id=entity_id),
        url="www.example.com/articles/hello.html",
        site="main",
        status=status,
        date_added=date(2024, 1, 2),
    )


class TestBuildEngine:
    def test_in_memory_sqlite_uses_static_pool(self):
        engine = build_engine(DatabaseSettings(url="sqlite:///:memory:"))
        try:
            assert isinstance(engine.pool, StaticPool)
        finally:
            engine.dispose()

    def test_file_sqlite(self, tmp_path):
        engine = build_engine(DatabaseSettings(url=f"sqlite:///{tmp_path / 'x.db'}"))
        try:
            assert engine.dialect.name == "sqlite"
        finally:
            engine.dispose()


class TestProcessingState:
    def test_empty_initially(self, state_store):
        assert state_store.processed_date_keys("main") == set()

    def test_record_then_query(self, state_store):
        assert state_store.record_processed("main", "20240101", "s3://archive-main/20240101.txt")

        assert state_store.processed_date_keys("main") == {"20240101"}
        with state_store.engine.connect() as conn:
            row = conn.execute(select(state_store.state_table)).one()
        assert row.group_name == "main"
        assert row.status == "downloaded"
        assert row.archive_path == "s3://archive-main/20240101.txt"

    def test_duplicate_record_returns_false(self, state_store, caplog):
        state_store.record_processed("main", "20240101", "s3://a/1")

        assert state_store.record_processed("main", "20240101", "s3://a/1") is False
        assert any("already recorded" in r.getMessage() for r in caplog.records)
        assert state_store.processed_date_keys("main") == {"20240101"}

    def test_rows_scoped_per_group(self, state_store):
        state_store.record_processed("main", "20240101", "s3://archive-main/20240101.txt")

        assert state_store.processed_date_keys("second") == set()
        assert state_store.record_processed("second", "20240101", "s3://archive-second/20240101.txt")
        assert state_store.processed_date_keys("main") == {"20240101"}
        assert state_store.processed_date_keys("second") == {"20240101"}

    def test_operational_error_is_retried_then_raised(self, tmp_path):
        store = StateStore(DatabaseSettings(url=f"sqlite:///{tmp_path / 'empty.db'}"))
        try:
            with patch("core.resilience.retry.time.sleep") as sleep:
                with pytest.raises(StateStoreError):
                    store.record_processed("main", "20240101", "s3://a/1")
            assert sleep.call_count == 2
        finally:
            store.close()

    def test_create_tables_failure_is_state_store_error(self, tmp_path):
        store = StateStore(
            DatabaseSettings(url=f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}", create_tables=True)
        )
        try:
            with pytest.raises(StateStoreError, match="create_tables failed"):
                store.create_tables()
        finally:
            store.close()

    def test_unknown_driver_is_permanent(self):
        with pytest.raises(PermanentError, match="connect failed"):
            StateStore(DatabaseSettings(url="nosuchdialect://host/db"))

    def test_unsupported_dialect_for_upsert(self, state_store):
        with patch.object(state_store.engine.dialect, "name", "oracle"):
            with pytest.raises(ConfigurationError):
                state_store.upsert_identifiers([_entry()])

    @pytest.mark.asyncio
    async def test_async_wrappers(self, state_store):
        assert await state_store.async_record_processed("main", "20240102", "s3://a/2")
        assert await state_store.async_processed_date_keys("main") == {"20240102"}


class TestIdentifierMap:
    def test_upsert_and_load(self, state_store):
        assert state_store.upsert_identifiers([_entry("h1"), _entry("h2", "8")]) == 2

        entries = state_store.load_identifiers()

        assert set(entries) == {"h1", "h2"}
        assert entries["h2"].entity == EntityRef("content.articles", "8")
        assert entries["h1"].site == "main"
        assert entries["h1"].date_added == date(2024, 1, 2)

    def test_upsert_is_idempotent_and_updates(self, state_store):
        state_store.upsert_identifiers([_entry("h1", status="active")])
        state_store.upsert_identifiers([_entry("h1", status="inactive")])

        entries = state_store.load_identifiers()
        assert len(entries) == 1
        assert entries["h1"].status == "inactive"

    def test_upsert_nothing(self, state_store):
        assert state_store.upsert_identifiers([]) == 0

    @pytest.mark.asyncio
    async def test_async_round_trip(self, state_store):
        await state_store.async_upsert_identifiers([_entry("h9")])
        entries = await state_store.async_load_identifiers()
        assert "h9" in entries


class TestEntityLookups:
    def test_lookup_entity_found(self, state_store):
        row = state_store.lookup_entity("content.articles", "slug", "hello")
        assert row["id"] == 7
        assert row["status"] == 0

    def test_lookup_entity_missing(self, state_store):
        assert state_store.lookup_entity("content.articles", "slug", "nope") is None

    def test_lookup_value_is_bound_not_interpolated(self, state_store):
        assert state_store.lookup_entity("content.articles", "slug", "x' OR '1'='1") is None

    def test_lookup_alias(self, state_store):
        assert state_store.lookup_alias("content.redirects", "destination", "origin", "hello-again") == "hello"
        assert state_store.lookup_alias("content.redirects", "destination", "origin", "nope") is None

    @pytest.mark.asyncio
    async def test_async_lookup(self, state_store):
        row = await state_store.async_lookup_entity("content.articles", "slug", "goodbye")
        assert row["id"] == 8
