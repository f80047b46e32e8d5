"""Similarity search with metadata filters and provenance.

``RetrievalEngine.search`` embeds the question with the same provider
used at indexing time, runs a filtered ANN search (L2, closest first)
and maps every hit to ``{content, metadata: {filename, page_number}}``.
A store failure surfaces as ``SearchUnavailable``; an empty list means
the search ran and nothing matched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from docindex.collection_manager import CollectionManager
from docindex.config import Settings
from docindex.embeddings import EmbeddingProvider
from docindex.errors import CollectionNotFound, SearchUnavailable
from docindex.models import HitMetadata, SearchHit
from docindex.schema import TEXT_FIELD
from docindex.vector_store import Hit, StatusCode, VectorStore, VectorStoreError

log = logging.getLogger("docindex.retrieval")

OUTPUT_FIELDS = [TEXT_FIELD, "file_id", "filename", "page_number", "category"]

# Marks "use the configured default categories"; None means no category filter.
DEFAULT_CATEGORIES: Any = object()


class RetrievalEngine:
    def __init__(
        self,
        store: VectorStore,
        collections: CollectionManager,
        embedder: EmbeddingProvider,
        settings: Settings,
    ) -> None:
        self.store = store
        self.collections = collections
        self.embedder = embedder
        self.settings = settings

    async def search(
        self,
        collection: str,
        query_text: str,
        categories: Optional[Iterable[str]] = DEFAULT_CATEGORIES,
        limit: Optional[int] = None,
        file_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> List[SearchHit]:
        if not query_text or not query_text.strip():
            raise ValueError("query text must not be empty")
        if limit is None:
            limit = self.settings.search_limit
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        if categories is DEFAULT_CATEGORIES:
            categories = self.settings.search_categories

        try:
            await self.collections.load(collection)
        except VectorStoreError as exc:
            if exc.code == StatusCode.ILLEGAL_ARGUMENT:
                raise
            raise SearchUnavailable(collection, int(exc.code), exc.message) from exc

        vector = await self.embedder.embed(query_text)

        flt: Dict[str, Any] = {}
        if categories is not None:
            flt["category"] = list(categories)
        if file_id is not None:
            flt["file_id"] = int(file_id)
        if user_id is not None:
            flt["user_id"] = int(user_id)

        try:
            hits = await asyncio.to_thread(
                self.store.search, collection, vector, flt or None, limit, OUTPUT_FIELDS
            )
        except VectorStoreError as exc:
            if exc.code == StatusCode.COLLECTION_NOT_FOUND:
                raise CollectionNotFound(collection) from exc
            if exc.code == StatusCode.ILLEGAL_ARGUMENT:
                raise
            log.error(f"Search on '{collection}' failed: {exc}")
            raise SearchUnavailable(collection, int(exc.code), exc.message) from exc

        log.info(f"Search on '{collection}' returned {len(hits)} hit(s) (filter={flt})")
        return [_to_hit(h) for h in hits]


def _to_hit(hit: Hit) -> SearchHit:
    f = hit.fields
    return SearchHit(
        content=f[TEXT_FIELD],
        metadata=HitMetadata(filename=f.get("filename", ""), page_number=f.get("page_number", 0)),
        id=hit.id,
        file_id=f["file_id"],
        category=f["category"],
        distance=hit.distance,
    )


def unique_sources(hits: Iterable[SearchHit]) -> List[str]:
    """Filenames cited by ``hits``, first occurrence order, repeats collapsed."""
    seen: Dict[str, None] = {}
    for hit in hits:
        if hit.metadata.filename:
            seen.setdefault(hit.metadata.filename, None)
    return list(seen)


def format_context(hits: List[SearchHit]) -> str:
    """Serialise hits into the context block handed to the answering model."""
    body = "\n\n".join(hit.content for hit in hits)
    sources = unique_sources(hits)
    if not sources:
        return body
    return f"{body}\nSources: {','.join(sources)}"
