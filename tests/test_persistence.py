"""Tests for the persistence adapters."""

import pytest

from popguard.persistence.adapters import (
    PATTERNS_KEY,
    InMemoryPersistenceAdapter,
    SQLitePersistenceAdapter,
)


class TestInMemoryPersistenceAdapter:
    @pytest.mark.asyncio
    async def test_get_returns_only_existing_keys(self):
        adapter = InMemoryPersistenceAdapter({"a": 1})
        assert await adapter.get(["a", "b"]) == {"a": 1}

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        adapter = InMemoryPersistenceAdapter()
        value = {"nested": [1, 2]}
        await adapter.set({PATTERNS_KEY: value})
        value["nested"].append(3)

        stored = await adapter.get([PATTERNS_KEY])
        assert stored[PATTERNS_KEY] == {"nested": [1, 2]}

    @pytest.mark.asyncio
    async def test_remove_ignores_missing(self):
        adapter = InMemoryPersistenceAdapter({"a": 1})
        await adapter.remove(["a", "missing"])
        assert adapter.keys() == []


class TestSQLitePersistenceAdapter:
    def setup_method(self):
        self.adapter = SQLitePersistenceAdapter(db_path=":memory:")

    def teardown_method(self):
        self.adapter.close()

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        await self.adapter.set({PATTERNS_KEY: {"p1": {"domain": "example.com"}}})
        stored = await self.adapter.get([PATTERNS_KEY, "other"])
        assert stored == {PATTERNS_KEY: {"p1": {"domain": "example.com"}}}

    @pytest.mark.asyncio
    async def test_set_overwrites(self):
        await self.adapter.set({"k": 1})
        await self.adapter.set({"k": 2})
        assert await self.adapter.get(["k"]) == {"k": 2}
        assert self.adapter.count() == 1

    @pytest.mark.asyncio
    async def test_remove(self):
        await self.adapter.set({"k": 1, "j": 2})
        await self.adapter.remove(["k"])
        assert await self.adapter.get(["k", "j"]) == {"j": 2}

    @pytest.mark.asyncio
    async def test_durable_across_connections(self, tmp_path):
        path = str(tmp_path / "popguard.db")
        first = SQLitePersistenceAdapter(db_path=path)
        await first.set({"k": {"v": True}})
        first.close()

        second = SQLitePersistenceAdapter(db_path=path)
        try:
            assert await second.get(["k"]) == {"k": {"v": True}}
        finally:
            second.close()
