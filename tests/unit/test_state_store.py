"""
Unit tests for the registry key/value stores.
"""

import json

import pytest

from task_mesh.persistence.state_store import FileStateStore, InMemoryStateStore


class TestInMemoryStateStore:
    """Test the in-process store."""

    @pytest.mark.asyncio
    async def test_save_get_delete(self):
        store = InMemoryStateStore()

        await store.save("agent:a", {"appId": "a"})
        assert await store.get("agent:a") == {"appId": "a"}

        await store.delete("agent:a")
        assert await store.get("agent:a") is None

        await store.delete("agent:a")

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = InMemoryStateStore()
        value = {"capabilities": ["code-review"]}

        await store.save("agent:a", value)
        value["capabilities"].append("mutated")
        fetched = await store.get("agent:a")
        fetched["capabilities"].append("mutated again")

        assert await store.get("agent:a") == {"capabilities": ["code-review"]}

    @pytest.mark.asyncio
    async def test_initial_data(self):
        store = InMemoryStateStore({"agent:_index": ["a"]})

        assert await store.get("agent:_index") == ["a"]
        assert store.keys() == ["agent:_index"]


class TestFileStateStore:
    """Test the file-backed store."""

    @pytest.fixture
    def store(self, tmp_path):
        return FileStateStore(str(tmp_path / "state"))

    @pytest.mark.asyncio
    async def test_save_creates_directory_and_document(self, store, tmp_path):
        await store.save("agent:code-reviewer", {"appId": "code-reviewer"})

        [path] = list((tmp_path / "state").iterdir())
        document = json.loads(path.read_text(encoding="utf-8"))

        assert document["value"] == {"appId": "code-reviewer"}
        assert document["_metadata"]["version"] == "1.0"
        assert FileStateStore.key_for(path) == "agent:code-reviewer"

    @pytest.mark.asyncio
    async def test_round_trip_and_delete(self, store):
        await store.save("agent:_index", ["a", "b"])
        assert await store.get("agent:_index") == ["a", "b"]

        await store.save("agent:_index", ["b"])
        assert await store.get("agent:_index") == ["b"]

        await store.delete("agent:_index")
        assert await store.get("agent:_index") is None

    @pytest.mark.asyncio
    async def test_missing_key(self, store):
        assert await store.get("agent:ghost") is None
        await store.delete("agent:ghost")

    @pytest.mark.asyncio
    async def test_keys_with_path_characters_are_escaped(self, store, tmp_path):
        await store.save("agent:team/reviewer", {"appId": "team/reviewer"})

        assert await store.get("agent:team/reviewer") == {"appId": "team/reviewer"}
        assert len(list((tmp_path / "state").iterdir())) == 1

    @pytest.mark.asyncio
    async def test_no_temporary_files_left_behind(self, store, tmp_path):
        for i in range(3):
            await store.save("agent:a", {"n": i})

        assert [p.suffix for p in (tmp_path / "state").iterdir()] == [".json"]

    @pytest.mark.asyncio
    async def test_data_survives_a_new_instance(self, store, tmp_path):
        await store.save("agent:a", {"appId": "a"})

        reopened = FileStateStore(str(tmp_path / "state"))

        assert await reopened.get("agent:a") == {"appId": "a"}
