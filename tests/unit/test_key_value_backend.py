"""
Unit tests for the legacy key-value backend and its stores.

Tests cover:
- Key layout and raw JSON arrays
- Id-less and numeric-id legacy records
- Corrupt payloads
- Quota failures during writes
- JsonFileKeyValueStore persistence
"""

import json
from pathlib import Path

import pytest

from consolidator.backends import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueBackend
from consolidator.exceptions import (
    CorruptPayloadError,
    ErrorCategory,
    TransientBackendError,
)


class TestKeyLayout:
    """Tests for how entity types map onto keys."""

    @pytest.mark.asyncio
    async def test_records_live_under_prefixed_key(self) -> None:
        """Test the lawfirm_<type> layout."""
        kv = InMemoryKeyValueStore()
        legacy = KeyValueBackend(kv, enable_tracing=False)

        await legacy.create("clients", {"id": "c1", "name": "Acme"})

        assert json.loads(kv.get_item("lawfirm_clients") or "") == [{"id": "c1", "name": "Acme"}]

    @pytest.mark.asyncio
    async def test_custom_prefix(self) -> None:
        """Test a non-default key prefix."""
        kv = InMemoryKeyValueStore()
        legacy = KeyValueBackend(kv, key_prefix="app_", enable_tracing=False)

        await legacy.create("cases", {"id": "k1"})

        assert kv.keys() == ["app_cases"]

    def test_empty_prefix_is_rejected(self) -> None:
        """Test prefix validation."""
        with pytest.raises(ValueError):
            KeyValueBackend(InMemoryKeyValueStore(), key_prefix="")

    @pytest.mark.asyncio
    async def test_foreign_keys_are_ignored(self) -> None:
        """Test that metadata and backup keys are not entity types."""
        kv = InMemoryKeyValueStore(
            initial={
                "migration_metadata": "{}",
                "migration_backup_1": "{}",
                "lawfirm_clients": '[{"id": "c1"}]',
            }
        )
        legacy = KeyValueBackend(kv, enable_tracing=False)

        assert await legacy.entity_types() == ["clients"]

        await legacy.clear_all()
        assert sorted(kv.keys()) == ["migration_backup_1", "migration_metadata"]


class TestLegacyRecords:
    """Tests for legacy data the backend did not write itself."""

    @pytest.mark.asyncio
    async def test_idless_records_are_returned(self) -> None:
        """Test that get_all includes records without an id."""
        kv = InMemoryKeyValueStore(initial={"lawfirm_clients": '[{"name": "Acme"}, {"id": "c1"}]'})
        legacy = KeyValueBackend(kv, enable_tracing=False)

        assert await legacy.get_all("clients") == [{"name": "Acme"}, {"id": "c1"}]
        assert await legacy.count("clients") == 2

    @pytest.mark.asyncio
    async def test_numeric_ids_are_addressable_as_strings(self) -> None:
        """Test lookups by the string form of a numeric id."""
        kv = InMemoryKeyValueStore(initial={"lawfirm_cases": '[{"id": 42, "title": "A"}]'})
        legacy = KeyValueBackend(kv, enable_tracing=False)

        assert await legacy.get_by_id("cases", "42") == {"id": 42, "title": "A"}

    @pytest.mark.asyncio
    async def test_replace_all_keeps_idless_records(self) -> None:
        """Test that restores reproduce legacy contents verbatim."""
        kv = InMemoryKeyValueStore()
        legacy = KeyValueBackend(kv, enable_tracing=False)

        await legacy.replace_all("clients", [{"name": "Acme"}])

        assert json.loads(kv.get_item("lawfirm_clients") or "") == [{"name": "Acme"}]

    @pytest.mark.parametrize("raw", ["{not json", '{"id": "c1"}', '[1, 2]'])
    @pytest.mark.asyncio
    async def test_corrupt_payload(self, raw: str) -> None:
        """Test that unreadable arrays raise CorruptPayloadError."""
        kv = InMemoryKeyValueStore(initial={"lawfirm_clients": raw})
        legacy = KeyValueBackend(kv, enable_tracing=False)

        with pytest.raises(CorruptPayloadError) as exc_info:
            await legacy.get_all("clients")
        assert exc_info.value.entity_type == "clients"

    @pytest.mark.asyncio
    async def test_corrupt_array_is_still_listed(self) -> None:
        """Test that entity_types() does not hide unreadable arrays."""
        kv = InMemoryKeyValueStore(
            initial={"lawfirm_clients": '[{"id": "c1"}]', "lawfirm_cases": "{oops"}
        )
        legacy = KeyValueBackend(kv, enable_tracing=False)

        assert sorted(await legacy.entity_types()) == ["cases", "clients"]


class TestQuota:
    """Tests for storage quota failures."""

    def test_set_item_over_quota_is_transient(self) -> None:
        """Test the quota of the in-memory store."""
        kv = InMemoryKeyValueStore(quota_bytes=10)

        with pytest.raises(TransientBackendError) as exc_info:
            kv.set_item("k", "x" * 11)
        assert exc_info.value.category == ErrorCategory.TRANSIENT

    def test_replacing_a_value_counts_only_new_size(self) -> None:
        """Test that overwriting a key does not double count it."""
        kv = InMemoryKeyValueStore(quota_bytes=10)
        kv.set_item("k", "x" * 8)

        kv.set_item("k", "y" * 9)

        assert kv.get_item("k") == "y" * 9

    @pytest.mark.asyncio
    async def test_bulk_create_reports_quota_for_accepted_records(self) -> None:
        """Test that a failed array write fails every accepted record."""
        kv = InMemoryKeyValueStore(quota_bytes=40)
        legacy = KeyValueBackend(kv, enable_tracing=False)

        outcomes = await legacy.bulk_create(
            "clients", [{"id": "c1", "name": "A" * 20}, {"id": "c2", "name": "B" * 20}, {"x": 1}]
        )

        assert [o.succeeded for o in outcomes] == [False, False, False]
        assert outcomes[0].category == ErrorCategory.TRANSIENT
        assert outcomes[2].category == ErrorCategory.PERMANENT
        assert kv.get_item("lawfirm_clients") is None


class TestJsonFileKeyValueStore:
    """Tests for the file-backed store."""

    def test_values_survive_reopening(self, tmp_path: Path) -> None:
        """Test persistence across instances."""
        path = tmp_path / "legacy.json"
        JsonFileKeyValueStore(path).set_item("lawfirm_clients", "[]")

        reopened = JsonFileKeyValueStore(path)

        assert reopened.get_item("lawfirm_clients") == "[]"
        assert reopened.keys() == ["lawfirm_clients"]

    def test_remove_item(self, tmp_path: Path) -> None:
        """Test removal is persisted."""
        path = tmp_path / "legacy.json"
        store = JsonFileKeyValueStore(path)
        store.set_item("a", "1")

        store.remove_item("a")
        store.remove_item("missing")

        assert JsonFileKeyValueStore(path).keys() == []

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        """Test that a new path starts empty and is not created by reads."""
        store = JsonFileKeyValueStore(tmp_path / "nested" / "legacy.json")

        assert store.keys() == []
        assert not store.path.exists()

    def test_corrupt_file(self, tmp_path: Path) -> None:
        """Test that an unreadable file raises CorruptPayloadError."""
        path = tmp_path / "legacy.json"
        path.write_text("[1, 2", encoding="utf-8")

        with pytest.raises(CorruptPayloadError):
            JsonFileKeyValueStore(path)

    @pytest.mark.asyncio
    async def test_backend_over_file_store(self, tmp_path: Path) -> None:
        """Test the backend end to end over a file."""
        path = tmp_path / "legacy.json"
        await KeyValueBackend(JsonFileKeyValueStore(path), enable_tracing=False).create(
            "clients", {"id": "c1"}
        )

        legacy = KeyValueBackend(JsonFileKeyValueStore(path), enable_tracing=False)

        assert await legacy.get_by_id("clients", "c1") == {"id": "c1"}
