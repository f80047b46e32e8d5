"""Removal of a document's rows from a collection."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Union

from docindex.collection_manager import CollectionManager
from docindex.errors import CollectionNotFound
from docindex.locks import KeyedLocks
from docindex.schema import PRIMARY_FIELD
from docindex.vector_store import StatusCode, VectorStore, VectorStoreError

log = logging.getLogger("docindex.maintenance")


class IndexMaintenance:
    def __init__(self, store: VectorStore, collections: CollectionManager, locks: KeyedLocks) -> None:
        self.store = store
        self.collections = collections
        self.locks = locks

    async def remove_file_index(self, collection: str, file_id: int) -> int:
        """Delete every row of ``file_id`` from ``collection``.

        Returns the number of rows removed; zero is a successful no-op.
        Raises ``CollectionNotFound`` when the collection does not exist,
        so callers never mistake a missing collection for a deletion.
        """
        file_id = int(file_id)
        async with self.locks.hold(file_id):
            await self.collections.load(collection)
            try:
                matches = await asyncio.to_thread(
                    self.store.query, collection, {"file_id": file_id}, [PRIMARY_FIELD]
                )
                ids = [row[PRIMARY_FIELD] for row in matches]
                if not ids:
                    log.info(f"No rows for file_id={file_id} in '{collection}'; nothing to delete")
                    return 0
                removed = await asyncio.to_thread(self.store.delete, collection, {"file_id": file_id})
            except VectorStoreError as exc:
                if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                    raise CollectionNotFound(collection) from exc
                raise
        log.info(f"Removed {removed} row(s) of file_id={file_id} from '{collection}'")
        return removed

    async def remove_from_collections(
        self, collections: Iterable[str], file_id: int
    ) -> Dict[str, Union[int, Exception]]:
        """Run ``remove_file_index`` on each collection and collect every outcome."""
        names = list(dict.fromkeys(collections))
        outcomes = await asyncio.gather(
            *(self.remove_file_index(name, file_id) for name in names), return_exceptions=True
        )
        results: Dict[str, Union[int, Exception]] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                log.error(f"Removing file_id={file_id} from '{name}' failed: {outcome}")
            results[name] = outcome
        return results
