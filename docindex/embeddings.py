"""Embedding provider client.

Wraps ``httpx`` calls to the embedding endpoint so that the rest of the
engine does not need to know about the network details.  Two wire
dialects are supported: OpenAI-compatible ``/embeddings`` and Ollama's
``/api/embed``.  Both accept a list of inputs, so a batch of chunks costs
one request per ``embed_batch_size`` texts rather than one per chunk.

Requests are bounded by a semaphore (``embed_max_concurrency``); callers
beyond the bound wait for a slot instead of failing.  Transport errors,
429 and 5xx responses are retried per sub-batch with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import httpx

from docindex.config import Settings
from docindex.errors import EmbeddingProviderError

log = logging.getLogger("docindex.embeddings")


class _Retryable(Exception):
    pass


class EmbeddingProvider:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self.model = settings.embed_model
        self.dim = settings.embed_dim
        headers = {}
        if settings.embed_api_key:
            headers["Authorization"] = f"Bearer {settings.embed_api_key}"
        self._client = httpx.AsyncClient(
            base_url=settings.embed_base_url,
            headers=headers,
            timeout=settings.embed_timeout,
            transport=transport,
        )
        self._semaphore = asyncio.Semaphore(settings.embed_max_concurrency)

    async def __aenter__(self) -> "EmbeddingProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed ``texts`` preserving order: one vector per input."""
        if not texts:
            return []
        size = self.settings.embed_batch_size
        batches = [texts[i:i + size] for i in range(0, len(texts), size)]
        results = await asyncio.gather(*(self._embed_with_retry(b) for b in batches))
        out = [vec for batch in results for vec in batch]
        log.debug(f"Embedded {len(out)} text(s) in {len(batches)} request(s) with {self.model}")
        return out

    async def _embed_with_retry(self, batch: List[str]) -> List[List[float]]:
        attempts = 0
        while True:
            attempts += 1
            try:
                async with self._semaphore:
                    return await self._request(batch)
            except _Retryable as exc:
                if attempts > self.settings.embed_max_retries:
                    raise EmbeddingProviderError(
                        f"Embedding request failed after {attempts} attempt(s): {exc}", attempts
                    ) from exc
                delay = self.settings.embed_retry_backoff * (2 ** (attempts - 1))
                log.warning(f"Embedding attempt {attempts} failed ({exc}); retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

    async def _request(self, batch: List[str]) -> List[List[float]]:
        if self.settings.embed_provider == "ollama":
            path = "/api/embed"
        else:
            path = "/embeddings"
        payload = {"model": self.model, "input": batch}
        try:
            r = await self._client.post(path, json=payload)
        except httpx.TransportError as exc:
            raise _Retryable(f"{exc.__class__.__name__}: {exc}") from exc
        if r.status_code == 429 or r.status_code >= 500:
            raise _Retryable(f"HTTP {r.status_code}")
        if r.status_code >= 400:
            raise EmbeddingProviderError(f"Embedding request rejected: HTTP {r.status_code} {r.text[:200]}")
        try:
            data = r.json()
        except ValueError as exc:
            raise EmbeddingProviderError(f"Embedding response is not JSON: {exc}") from exc

        vectors = self._parse(data)
        if len(vectors) != len(batch):
            raise EmbeddingProviderError(
                f"Embedding count mismatch: inputs={len(batch)} embeddings={len(vectors)}"
            )
        for vec in vectors:
            if len(vec) != self.dim:
                raise EmbeddingProviderError(
                    f"Embedding width {len(vec)} does not match configured dimension {self.dim} "
                    f"(model {self.model})"
                )
        return vectors

    def _parse(self, data: Any) -> List[List[float]]:
        vectors = None
        if isinstance(data, dict):
            if isinstance(data.get("data"), list):
                items = data["data"]
                if not all(isinstance(item, dict) and "embedding" in item for item in items):
                    raise EmbeddingProviderError(f"Malformed embeddings data: {str(items)[:200]}")
                items = sorted(items, key=lambda d: d["index"] if isinstance(d.get("index"), int) else 0)
                vectors = [item["embedding"] for item in items]
            elif isinstance(data.get("embeddings"), list):
                vectors = data["embeddings"]
            elif isinstance(data.get("embedding"), list):
                vectors = [data["embedding"]]
        if vectors is None:
            raise EmbeddingProviderError(f"Unexpected embeddings response: {str(data)[:200]}")
        for vec in vectors:
            if not isinstance(vec, list) or not all(
                isinstance(x, (int, float)) and not isinstance(x, bool) for x in vec
            ):
                raise EmbeddingProviderError(f"Malformed embedding in response: {str(vec)[:200]}")
        return vectors
