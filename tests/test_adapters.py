"""Tests for the storage and query adapters."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import create_async_engine

from focal_finops.adapters.focus_queries import anomaly_input_sql, daily_costs_sql, kpi_sql
from focal_finops.adapters.kv_store import InMemoryKeyValueStore, SqlAlchemyKeyValueStore
from focal_finops.adapters.local_settings import (
    InMemorySettingsStore,
    JsonFileSettingsStore,
    load_document,
    save_document,
)
from focal_finops.adapters.query_engine import SqlAlchemyQueryEngine
from focal_finops.adapters.storage_footprint import LocalDirectoryFootprint, UnsupportedFootprint
from focal_finops.core.errors import QueryExecutionError
from focal_finops.core.interfaces import IKeyValueStore, ILocalSettingsStore, IStorageFootprint


class _CurrencySettings(BaseModel):
    currency: str = "USD"
    decimals: int = 2


# ---------------------------------------------------------------------------
# Local settings stores
# ---------------------------------------------------------------------------


class TestLocalSettings:
    """Tests for settings stores and the merge-with-defaults loader."""

    def test_in_memory_store_implements_protocol(self) -> None:
        assert isinstance(InMemorySettingsStore(), ILocalSettingsStore)

    def test_missing_document_yields_defaults(self) -> None:
        assert load_document(InMemorySettingsStore(), "currencySettings", _CurrencySettings) == _CurrencySettings()

    def test_stored_fields_override_defaults(self) -> None:
        store = InMemorySettingsStore({"currencySettings": '{"currency": "EUR"}'})

        document = load_document(store, "currencySettings", _CurrencySettings)

        assert document.currency == "EUR"
        assert document.decimals == 2

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"decimals": "many"}'])
    def test_unreadable_document_yields_defaults(self, raw: str) -> None:
        store = InMemorySettingsStore({"currencySettings": raw})

        assert load_document(store, "currencySettings", _CurrencySettings) == _CurrencySettings()

    def test_json_file_store_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "settings.json"
        store = JsonFileSettingsStore(path)
        save_document(store, "currencySettings", _CurrencySettings(currency="GBP"))
        store.set_item("other", "value")
        store.remove_item("other")

        reopened = JsonFileSettingsStore(path)

        assert reopened.keys() == ["currencySettings"]
        assert load_document(reopened, "currencySettings", _CurrencySettings).currency == "GBP"
        assert json.loads(path.read_text(encoding="utf-8"))["currencySettings"]

    def test_json_file_store_ignores_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text("{broken", encoding="utf-8")

        assert JsonFileSettingsStore(path).keys() == []


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


class TestKeyValueStores:
    """Both key-value stores behave the same way."""

    @pytest_asyncio.fixture
    async def sql_store(self, tmp_path: Path):
        store = SqlAlchemyKeyValueStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
        await store.create_schema()
        yield store
        await store.dispose()

    @pytest.mark.asyncio
    async def test_sqlalchemy_store_round_trip(self, sql_store: SqlAlchemyKeyValueStore) -> None:
        assert isinstance(sql_store, IKeyValueStore)

        await sql_store.set("focal_cache", "b", b"1")
        await sql_store.set("focal_cache", "a", b"2")
        await sql_store.set("focal_cache", "a", b"3")
        await sql_store.set("focal-metadata", "a", b"meta")

        assert await sql_store.get("focal_cache", "a") == b"3"
        assert await sql_store.list_keys("focal_cache") == ["a", "b"]

        await sql_store.delete("focal_cache", "a")
        await sql_store.delete("focal_cache", "missing")

        assert await sql_store.get("focal_cache", "a") is None
        assert await sql_store.get("focal-metadata", "a") == b"meta"

    @pytest.mark.asyncio
    async def test_in_memory_store_namespaces_are_isolated(self) -> None:
        store = InMemoryKeyValueStore()
        await store.set("one", "k", b"1")

        assert await store.get("two", "k") is None
        assert await store.list_keys("two") == []
        await store.delete("two", "k")
        assert await store.list_keys("one") == ["k"]


# ---------------------------------------------------------------------------
# Footprint
# ---------------------------------------------------------------------------


class TestLocalDirectoryFootprint:
    """Tests for the filesystem footprint adapter."""

    @pytest.mark.asyncio
    async def test_estimate_list_and_clear(self, tmp_path: Path) -> None:
        footprint = LocalDirectoryFootprint(tmp_path / "data", quota_bytes=1000)
        assert isinstance(footprint, IStorageFootprint)
        (tmp_path / "data" / "billing-data").mkdir(parents=True)
        (tmp_path / "data" / "billing-data" / "jan.parquet").write_bytes(b"a" * 40)
        (tmp_path / "data" / "notes.txt").write_bytes(b"b" * 2)

        estimate = await footprint.estimate()
        files = await footprint.list_files()

        assert estimate is not None
        assert (estimate.quota, estimate.usage) == (1000, 42)
        assert await footprint.category_size("billing-data") == 40
        assert [f.path for f in files] == ["billing-data/jan.parquet", "notes.txt"]
        assert files[0].last_modified.tzinfo is not None

        assert await footprint.clear() == 2
        assert await footprint.list_files() == []

    @pytest.mark.asyncio
    async def test_remove_file_rejects_escaping_paths(self, tmp_path: Path) -> None:
        footprint = LocalDirectoryFootprint(tmp_path / "data")
        (tmp_path / "outside.txt").write_text("keep")

        with pytest.raises(ValueError, match="escapes"):
            await footprint.remove_file("../outside.txt")
        assert (tmp_path / "outside.txt").exists()

    @pytest.mark.asyncio
    async def test_unsupported_footprint_reports_unknown(self) -> None:
        footprint = UnsupportedFootprint()

        assert await footprint.estimate() is None
        assert await footprint.list_files() == []
        with pytest.raises(NotImplementedError):
            await footprint.remove_file("x")


# ---------------------------------------------------------------------------
# Query engine
# ---------------------------------------------------------------------------


class TestSqlAlchemyQueryEngine:
    """Tests for the SQL query engine adapter."""

    @pytest.mark.asyncio
    async def test_rows_are_returned_as_dicts(self, tmp_path: Path) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'focus.db'}")
        try:
            rows = await SqlAlchemyQueryEngine(engine).query("SELECT 1 AS one, 'vm-1' AS ResourceId")
        finally:
            await engine.dispose()

        assert rows == [{"one": 1, "ResourceId": "vm-1"}]

    @pytest.mark.asyncio
    async def test_database_errors_become_query_errors(self, tmp_path: Path) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'focus.db'}")
        try:
            with pytest.raises(QueryExecutionError, match="Query failed"):
                await SqlAlchemyQueryEngine(engine).query("SELECT * FROM focus_unified")
        finally:
            await engine.dispose()


class TestFocusQueries:
    """Tests for the FOCUS SQL builders."""

    def test_anomaly_input_uses_table_and_bounds(self) -> None:
        sql = anomaly_input_sql(
            "focus_unified",
            datetime(2026, 1, 1, tzinfo=timezone.utc),
            datetime(2026, 1, 31, tzinfo=timezone.utc),
        )

        assert "FROM focus_unified" in sql
        assert "2026-01-01" in sql
        assert "2026-01-31" in sql

    def test_invalid_table_name_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid FOCUS table name"):
            kpi_sql("focus; DROP TABLE x")

    def test_daily_costs_accepts_dates(self) -> None:
        sql = daily_costs_sql("focus_unified", datetime(2026, 1, 1).date(), datetime(2026, 2, 1).date())

        assert "TIMESTAMP '2026-01-01'" in sql
