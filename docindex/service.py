"""Wiring of the engine components.

``IndexService`` builds the vector store, embedding provider, collection
manager, indexer, maintenance and retrieval engine from one ``Settings``
object, so every component shares the same store handle and the same
per-document locks.
"""

from __future__ import annotations

from typing import List, Optional

from docindex.collection_manager import CollectionManager
from docindex.config import Settings
from docindex.embeddings import EmbeddingProvider
from docindex.indexer import DocumentIndexer
from docindex.locks import KeyedLocks
from docindex.maintenance import IndexMaintenance
from docindex.retrieval import RetrievalEngine
from docindex.vector_store import LanceVectorStore, VectorStore


def board_collection(board_id: int) -> str:
    return f"board_{board_id}"


def user_collection(user_id: int) -> str:
    return f"user_{user_id}"


class IndexService:
    def __init__(
        self,
        settings: Settings,
        store: Optional[VectorStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ) -> None:
        self.settings = settings
        self.store = store or LanceVectorStore(
            settings.vector_store_uri, vector_index_min_rows=settings.vector_index_min_rows
        )
        self.embedder = embedder or EmbeddingProvider(settings)
        self.locks = KeyedLocks()
        self.collections = CollectionManager(self.store, settings)
        self.indexer = DocumentIndexer(self.store, self.collections, self.embedder, settings, self.locks)
        self.maintenance = IndexMaintenance(self.store, self.collections, self.locks)
        self.retrieval = RetrievalEngine(self.store, self.collections, self.embedder, settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> "IndexService":
        return cls(settings)

    def target_collections(
        self,
        board_id: Optional[int] = None,
        user_id: Optional[int] = None,
        include_artifacts: bool = True,
    ) -> List[str]:
        """Collections a document is indexed into: global, board and user scoped."""
        names = [self.settings.artifacts_collection] if include_artifacts else []
        if board_id is not None:
            names.append(board_collection(board_id))
        if user_id is not None:
            names.append(user_collection(user_id))
        return names

    async def aclose(self) -> None:
        await self.embedder.aclose()
