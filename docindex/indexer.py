"""Document indexing: parsed chunks in, schema-conformant rows out.

The indexer drops chunks without text, normalises metadata to the fixed
layout, makes sure the target collection exists, embeds every surviving
chunk in one batched call and writes all rows in one bulk insert.  Rows
the store rejects are reported individually; the accepted ones stay
written.

A failed embedding call leaves nothing written, so a retry of the whole
batch is safe.  An aborted request may leave rows behind (at-least-once
insertion); ``IndexMaintenance.remove_file_index`` is the compensating
action.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from docindex.collection_manager import CollectionManager
from docindex.config import Settings
from docindex.embeddings import EmbeddingProvider
from docindex.errors import ChunkValidationError, CollectionNotFound, EmbeddingProviderError, PartialInsertFailure
from docindex.locks import KeyedLocks
from docindex.models import Chunk, ChunkMetadata, ChunkText, IndexResult
from docindex.schema import TEXT_FIELD, VECTOR_FIELD
from docindex.vector_store import StatusCode, VectorStore, VectorStoreError

log = logging.getLogger("docindex.indexer")

ChunkLike = Union[Chunk, Mapping[str, Any]]

_text = TypeAdapter(ChunkText)


class DocumentIndexer:
    def __init__(
        self,
        store: VectorStore,
        collections: CollectionManager,
        embedder: EmbeddingProvider,
        settings: Settings,
        locks: KeyedLocks,
    ) -> None:
        self.store = store
        self.collections = collections
        self.embedder = embedder
        self.settings = settings
        self.locks = locks

    def prepare_rows(
        self, chunks: Sequence[ChunkLike], file_id: Optional[int] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Normalise ``chunks`` into rows (without vectors).

        Returns ``(rows, dropped)`` where ``dropped`` counts chunks skipped
        for having no text.  Every other problem is collected and raised
        together as ``ChunkValidationError``.
        """
        ignored = set(self.settings.ignored_metadata_fields)
        rows: List[Dict[str, Any]] = []
        errors: Dict[int, List[str]] = {}
        dropped = 0

        for i, raw in enumerate(chunks):
            try:
                chunk = raw if isinstance(raw, Chunk) else Chunk.model_validate(raw)
            except ValidationError as exc:
                errors[i] = _messages(exc)
                continue
            if chunk.text is None or not chunk.text.strip():
                dropped += 1
                continue

            meta = {k: v for k, v in chunk.metadata.items() if k not in ignored}
            if file_id is not None:
                if meta.get("file_id") is None:
                    meta["file_id"] = file_id
                elif str(meta["file_id"]) != str(file_id):
                    errors[i] = [f"file_id: chunk belongs to {meta['file_id']}, request is for {file_id}"]
                    continue
            problems: List[str] = []
            try:
                _text.validate_python(chunk.text)
            except ValidationError as exc:
                problems += [f"{TEXT_FIELD}: {err['msg']}" for err in exc.errors()]
            try:
                metadata = ChunkMetadata.model_validate(meta)
            except ValidationError as exc:
                problems += _messages(exc)
            if problems:
                errors[i] = problems
                continue
            rows.append({TEXT_FIELD: chunk.text, **metadata.model_dump()})

        if errors:
            raise ChunkValidationError(errors)
        if dropped:
            log.warning(f"Dropped {dropped} chunk(s) without text")
        return rows, dropped

    def _owner(self, rows: List[Dict[str, Any]], file_id: Optional[int]) -> Optional[int]:
        if file_id is not None:
            return file_id
        owners = {row["file_id"] for row in rows}
        if len(owners) > 1:
            raise ChunkValidationError({0: [f"file_id: batch mixes documents {sorted(owners)}"]})
        return owners.pop() if owners else None

    async def _embed(self, rows: List[Dict[str, Any]]) -> List[List[float]]:
        vectors = await self.embedder.embed_batch([row[TEXT_FIELD] for row in rows])
        if len(vectors) != len(rows):
            raise EmbeddingProviderError(f"Expected {len(rows)} embeddings, got {len(vectors)}")
        return vectors

    async def _insert(
        self, collection: str, rows: List[Dict[str, Any]], vectors: List[List[float]]
    ) -> List[int]:
        payload = [{**row, VECTOR_FIELD: vec} for row, vec in zip(rows, vectors)]
        try:
            result = await asyncio.to_thread(self.store.insert, collection, payload)
        except VectorStoreError as exc:
            if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                raise CollectionNotFound(collection) from exc
            raise
        if result.err_index:
            log.error(
                f"Insert into '{collection}' rejected rows {sorted(result.err_index)}; "
                f"{result.insert_count} row(s) written"
            )
            raise PartialInsertFailure(collection, result.ids, result.err_index)
        await self.collections.ensure_indexes(collection)
        return result.ids

    async def index_document(
        self, collection: str, chunks: Sequence[ChunkLike], file_id: Optional[int] = None
    ) -> IndexResult:
        """Index one document's chunks into ``collection``."""
        rows, dropped = self.prepare_rows(chunks, file_id)
        owner = self._owner(rows, file_id)
        if not rows:
            log.warning(f"No chunks with text for file_id={owner}; nothing indexed in '{collection}'")
            return IndexResult(collection=collection, file_id=owner, dropped=dropped)

        async with self.locks.hold(owner):
            await self.collections.ensure_collection(collection)
            vectors = await self._embed(rows)
            ids = await self._insert(collection, rows, vectors)

        log.info(f"Indexed {len(ids)} chunk(s) of file_id={owner} into '{collection}'")
        return IndexResult(collection=collection, file_id=owner, inserted_ids=ids, dropped=dropped)

    async def index_into_collections(
        self, collections: Iterable[str], chunks: Sequence[ChunkLike], file_id: Optional[int] = None
    ) -> Dict[str, Union[IndexResult, Exception]]:
        """Index the same chunks into several collections.

        Chunks are validated and embedded once.  Inserts run concurrently
        and every outcome, success or failure, is collected before
        returning.  Validation and embedding failures apply to all
        collections and are raised directly.
        """
        names = list(dict.fromkeys(collections))
        rows, dropped = self.prepare_rows(chunks, file_id)
        owner = self._owner(rows, file_id)
        if not rows:
            return {name: IndexResult(collection=name, file_id=owner, dropped=dropped) for name in names}

        async def index_one(name: str) -> IndexResult:
            await self.collections.ensure_collection(name)
            ids = await self._insert(name, rows, vectors)
            return IndexResult(collection=name, file_id=owner, inserted_ids=ids, dropped=dropped)

        async with self.locks.hold(owner):
            vectors = await self._embed(rows)
            outcomes = await asyncio.gather(*(index_one(name) for name in names), return_exceptions=True)

        results: Dict[str, Union[IndexResult, Exception]] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                log.error(f"Indexing file_id={owner} into '{name}' failed: {outcome}")
            results[name] = outcome
        return results


def _messages(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'chunk'}: {err['msg']}"
        for err in exc.errors()
    ]
