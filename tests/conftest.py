"""
Pytest configuration for the docindex test suite.

Provides:
- a deterministic bag-of-words embedder (no network)
- settings pointing the vector store at a temporary directory
- a fully wired IndexService
"""
import hashlib
import re

import numpy as np
import pytest

from docindex.config import Settings
from docindex.service import IndexService
from docindex.vector_store import LanceVectorStore

DIM = 8


def fake_vector(text, dim=DIM):
    vec = np.zeros(dim, dtype="float32")
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        vec[int(hashlib.md5(token.encode()).hexdigest(), 16) % dim] += 1.0
    norm = np.linalg.norm(vec)
    return (vec / norm if norm else vec).tolist()


class FakeEmbedder:
    """Stands in for EmbeddingProvider; records every batch it is asked for."""

    def __init__(self, dim=DIM):
        self.dim = dim
        self.batches = []
        self.queries = []
        self.closed = False

    async def embed(self, text):
        self.queries.append(text)
        return fake_vector(text, self.dim)

    async def embed_batch(self, texts):
        self.batches.append(list(texts))
        return [fake_vector(t, self.dim) for t in texts]

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        vector_store_uri=str(tmp_path / "store"),
        embed_dim=DIM,
        hnsw_m=4,
        hnsw_ef_construction=16,
    )


@pytest.fixture
def store(settings):
    return LanceVectorStore(settings.vector_store_uri, vector_index_min_rows=settings.vector_index_min_rows)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def service(settings, store, embedder):
    return IndexService(settings, store=store, embedder=embedder)


def chunk(text, **metadata):
    return {"text": text, "metadata": metadata}
