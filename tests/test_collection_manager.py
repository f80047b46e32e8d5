"""
Tests for docindex/collection_manager.py
Idempotent creation, verification of existing collections, load/release.
"""
import asyncio
from unittest.mock import patch

import pytest

from docindex.collection_manager import CollectionManager, CollectionState
from docindex.errors import CollectionNotFound, CollectionSetupError, SchemaInconsistency
from docindex.schema import chunk_model, schema_differences
from docindex.vector_store import StatusCode, VectorStoreError


@pytest.fixture
def manager(store, settings):
    return CollectionManager(store, settings)


class TestEnsureCollection:
    """Test collection creation."""

    async def test_creates_with_schema_and_indexes(self, manager, store):
        """A new collection gets the chunk layout; its indexes wait for rows."""
        with patch.object(store, "create_index", wraps=store.create_index) as create_index:
            assert await manager.ensure_collection("artifacts") is True
        assert schema_differences(manager.schema, store.describe_collection("artifacts")) == []
        assert [c.args[1] for c in create_index.call_args_list] == manager.indexes

    async def test_second_call_is_a_noop(self, manager, store):
        await manager.ensure_collection("artifacts")
        with patch.object(store, "create_collection", wraps=store.create_collection) as spy:
            assert await manager.ensure_collection("artifacts") is False
        spy.assert_not_called()

    async def test_concurrent_calls_create_once(self, manager, store):
        with patch.object(store, "create_collection", wraps=store.create_collection) as spy:
            created = await asyncio.gather(*(manager.ensure_collection("board_1") for _ in range(5)))
        assert sorted(created) == [False, False, False, False, True]
        assert spy.call_count == 1

    async def test_collection_deleted_behind_our_back_is_recreated(self, manager, store):
        """Existence is checked against the store on every call."""
        await manager.ensure_collection("artifacts")
        with patch.object(store, "has_collection", return_value=False), \
                patch.object(store, "create_collection") as create, \
                patch.object(store, "create_index") as create_index:
            assert await manager.ensure_collection("artifacts") is True
        create.assert_called_once()
        assert create_index.call_count == 3

    async def test_dimension_mismatch_is_fatal(self, manager, store):
        store.create_collection("artifacts", chunk_model(16))
        with pytest.raises(SchemaInconsistency) as exc:
            await manager.ensure_collection("artifacts")
        assert "vector" in exc.value.detail

    async def test_index_failure_after_creation(self, manager, store):
        """A failed index build on a new collection is reported, not hidden."""
        def failing(name, params):
            raise VectorStoreError(StatusCode.UNEXPECTED_ERROR, "boom")

        with patch.object(store, "create_index", side_effect=failing):
            with pytest.raises(CollectionSetupError):
                await manager.ensure_collection("artifacts")

        assert store.has_collection("artifacts")
        assert await manager.ensure_collection("artifacts") is False

    async def test_invalid_name(self, manager):
        with pytest.raises(VectorStoreError):
            await manager.ensure_collection("not a name")


class TestEnsureIndexes:
    """Test deferred index builds."""

    async def test_scalar_indexes_follow_the_first_rows(self, manager, store):
        await manager.ensure_collection("artifacts")
        assert store.list_indexes("artifacts") == []
        store.insert("artifacts", [{
            "text": "x", "vector": [0.0] * 8, "file_id": 1, "filename": "", "page_number": 0,
            "filetype": "", "category": "unknown", "user_id": [],
        }])
        assert await manager.ensure_indexes("artifacts") == ["category_index", "file_id_index"]
        assert await manager.ensure_indexes("artifacts") == []

    async def test_failed_build_is_retried_later(self, manager, store):
        await manager.ensure_collection("artifacts")
        with patch.object(store, "create_index", side_effect=VectorStoreError(StatusCode.UNEXPECTED_ERROR, "busy")):
            assert await manager.ensure_indexes("artifacts") == []
        with patch.object(store, "create_index", return_value=True) as create_index:
            assert len(await manager.ensure_indexes("artifacts")) == 3
        assert create_index.call_count == 3

    async def test_missing_collection(self, manager):
        with pytest.raises(CollectionNotFound):
            await manager.ensure_indexes("gone")


class TestLifecycle:
    """Test load, release and state reporting."""

    async def test_states(self, manager):
        assert await manager.state("artifacts") == CollectionState.ABSENT
        await manager.ensure_collection("artifacts")
        assert await manager.state("artifacts") == CollectionState.CREATED
        await manager.load("artifacts")
        assert await manager.state("artifacts") == CollectionState.LOADED
        await manager.release("artifacts")
        assert await manager.state("artifacts") == CollectionState.RELEASED
        await manager.load("artifacts")
        assert await manager.state("artifacts") == CollectionState.LOADED

    async def test_load_is_repeatable(self, manager):
        await manager.ensure_collection("artifacts")
        await manager.load("artifacts")
        await manager.load("artifacts")
        assert await manager.state("artifacts") == CollectionState.LOADED

    async def test_load_missing_collection(self, manager):
        with pytest.raises(CollectionNotFound):
            await manager.load("missing")

    async def test_release_missing_collection(self, manager):
        with pytest.raises(CollectionNotFound):
            await manager.release("missing")
