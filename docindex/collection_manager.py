"""Collection lifecycle: creation, verification, load and release.

``CollectionManager`` is the only component that moves a collection
between states::

    ABSENT -> CREATED -> LOADED -> RELEASED -> LOADED ...

Creation is idempotent and checked against the store every time.  A
collection that already exists is verified once against the expected
layout; a mismatch is fatal and never migrated.  Declared indexes are
built as soon as the table holds enough rows for them (see
``ensure_indexes``); until then the store scans exactly.  ``load`` always
asks the store to load, so callers never rely on an earlier load still
holding.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Set

from docindex.config import Settings
from docindex.errors import CollectionNotFound, CollectionSetupError, SchemaInconsistency
from docindex.locks import KeyedLocks
from docindex.schema import chunk_indexes, chunk_model, schema_differences
from docindex.vector_store import LoadState, StatusCode, VectorStore, VectorStoreError

log = logging.getLogger("docindex.collections")


class CollectionState(str, Enum):
    ABSENT = "absent"
    CREATED = "created"
    LOADED = "loaded"
    RELEASED = "released"


class CollectionManager:
    def __init__(self, store: VectorStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.model = chunk_model(settings.embed_dim)
        self.schema = self.model.to_arrow_schema()
        self.indexes = chunk_indexes(settings.hnsw_m, settings.hnsw_ef_construction)
        self._locks = KeyedLocks()
        self._released: Set[str] = set()
        self._verified: Set[str] = set()

    async def ensure_collection(self, name: str) -> bool:
        """Make sure ``name`` exists with the chunk layout.  Returns True if it was created."""
        async with self._locks.hold(name):
            if await asyncio.to_thread(self.store.has_collection, name):
                if name not in self._verified:
                    await self._verify(name)
                    self._verified.add(name)
                return False

            try:
                await asyncio.to_thread(self.store.create_collection, name, self.model)
            except VectorStoreError as exc:
                raise CollectionSetupError(name, f"create failed: {exc.message}") from exc
            for params in self.indexes:
                try:
                    await asyncio.to_thread(self.store.create_index, name, params)
                except VectorStoreError as exc:
                    log.error(f"Index '{params.index_name}' failed on new collection '{name}': {exc}")
                    raise CollectionSetupError(
                        name, f"index '{params.index_name}' failed after collection creation: {exc.message}"
                    ) from exc
            self._verified.add(name)
            self._released.discard(name)
            log.info(f"Collection '{name}' created with {len(self.indexes)} declared indexes")
            return True

    async def ensure_indexes(self, name: str) -> List[str]:
        """Build whichever declared indexes ``name`` is now ready for.

        Returns the names of the indexes built by this call.  A failed
        build is logged and retried on the next call; the rows stay
        searchable by exact scan in the meantime.
        """
        built: List[str] = []
        async with self._locks.hold(name):
            for params in self.indexes:
                try:
                    if await asyncio.to_thread(self.store.create_index, name, params):
                        built.append(params.index_name)
                except VectorStoreError as exc:
                    if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                        raise CollectionNotFound(name) from exc
                    log.warning(f"Index '{params.index_name}' on '{name}' not built: {exc}")
        return built

    async def _verify(self, name: str) -> None:
        existing = await asyncio.to_thread(self.store.describe_collection, name)
        diffs = schema_differences(self.schema, existing)
        if diffs:
            raise SchemaInconsistency(name, "; ".join(diffs))

    async def load(self, name: str) -> None:
        try:
            await asyncio.to_thread(self.store.load_collection, name)
        except VectorStoreError as exc:
            if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                raise CollectionNotFound(name) from exc
            raise
        self._released.discard(name)

    async def release(self, name: str) -> None:
        try:
            await asyncio.to_thread(self.store.release_collection, name)
        except VectorStoreError as exc:
            if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                raise CollectionNotFound(name) from exc
            raise
        self._released.add(name)

    async def state(self, name: str) -> CollectionState:
        load_state = await asyncio.to_thread(self.store.get_load_state, name)
        if load_state == LoadState.NOT_EXIST:
            return CollectionState.ABSENT
        if load_state == LoadState.LOADED:
            return CollectionState.LOADED
        return CollectionState.RELEASED if name in self._released else CollectionState.CREATED

