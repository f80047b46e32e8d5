"""
Tests for docindex/embeddings.py
Wire dialects, batching, retries and dimension checks, against httpx.MockTransport.
"""
import asyncio
import json

import httpx
import pytest

from docindex.config import Settings
from docindex.embeddings import EmbeddingProvider
from docindex.errors import EmbeddingProviderError


def make_settings(**overrides):
    values = dict(
        _env_file=None,
        embed_base_url="http://embed.test/v1",
        embed_api_key="sk-test",
        embed_dim=3,
        embed_retry_backoff=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def vec_for(text):
    return [float(len(text)), 0.0, 1.0]


def openai_handler(calls):
    def handler(request):
        body = json.loads(request.content)
        calls.append(body)
        # answer out of order; the client must sort by index
        data = [{"index": i, "embedding": vec_for(t)} for i, t in enumerate(body["input"])]
        return httpx.Response(200, json={"data": list(reversed(data))})
    return handler


class TestOpenAIDialect:
    """Test the OpenAI-compatible /embeddings endpoint."""

    async def test_embed_batch_preserves_order(self):
        calls = []
        provider = EmbeddingProvider(make_settings(embed_batch_size=2), httpx.MockTransport(openai_handler(calls)))
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]
        async with provider:
            vectors = await provider.embed_batch(texts)
        assert vectors == [vec_for(t) for t in texts]
        assert [c["input"] for c in calls] == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]
        assert all(c["model"] == "text-embedding-3-large" for c in calls)

    async def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 2.0, 3.0]}]})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            assert await provider.embed("hello") == [1.0, 2.0, 3.0]
        assert seen["url"] == "http://embed.test/v1/embeddings"
        assert seen["auth"] == "Bearer sk-test"

    async def test_empty_batch_makes_no_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            assert await provider.embed_batch([]) == []


class TestOllamaDialect:
    """Test Ollama's /api/embed endpoint."""

    async def test_embeddings_list(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            body = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [vec_for(t) for t in body["input"]]})

        settings = make_settings(
            embed_provider="ollama", embed_base_url="http://ollama:11434", embed_api_key="", embed_model="nomic"
        )
        async with EmbeddingProvider(settings, httpx.MockTransport(handler)) as provider:
            assert await provider.embed_batch(["x", "yy"]) == [vec_for("x"), vec_for("yy")]
        assert seen["path"] == "/api/embed"


class TestFailures:
    """Test retries and response validation."""

    async def test_retries_server_errors_then_succeeds(self):
        statuses = [500, 429]

        def handler(request):
            if statuses:
                return httpx.Response(statuses.pop(0))
            return httpx.Response(200, json={"embeddings": [[0.0, 0.0, 0.0]]})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            assert await provider.embed("q") == [0.0, 0.0, 0.0]
        assert statuses == []

    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(503)

        async with EmbeddingProvider(make_settings(embed_max_retries=2), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError) as exc:
                await provider.embed("q")
        assert len(attempts) == 3
        assert exc.value.attempts == 3

    async def test_transport_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"embedding": [1.0, 1.0, 1.0]})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            assert await provider.embed("q") == [1.0, 1.0, 1.0]
        assert len(attempts) == 2

    async def test_client_error_is_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(400, json={"error": "bad model"})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError, match="HTTP 400"):
                await provider.embed("q")
        assert len(attempts) == 1

    async def test_width_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"embeddings": [[1.0, 2.0]]})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError, match="does not match configured dimension 3"):
                await provider.embed("q")

    async def test_count_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"embeddings": [[1.0, 2.0, 3.0]]})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError, match="count mismatch"):
                await provider.embed_batch(["a", "b"])

    async def test_unexpected_payload(self):
        def handler(request):
            return httpx.Response(200, json={"result": "nope"})

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError, match="Unexpected embeddings response"):
                await provider.embed("q")

    @pytest.mark.parametrize("payload, message", [
        ({"data": ["x"]}, "Malformed embeddings data"),
        ({"data": [{"index": 0}]}, "Malformed embeddings data"),
        ({"embeddings": [None]}, "Malformed embedding"),
        ({"embeddings": [["a", "b", "c"]]}, "Malformed embedding"),
        ({"embedding": [1.0, True, 0.0]}, "Malformed embedding"),
    ])
    async def test_malformed_items_are_provider_errors(self, payload, message):
        """Badly shaped items surface as provider errors, not as crashes in the parser."""
        def handler(request):
            return httpx.Response(200, json=payload)

        async with EmbeddingProvider(make_settings(), httpx.MockTransport(handler)) as provider:
            with pytest.raises(EmbeddingProviderError, match=message):
                await provider.embed("q")


class TestConcurrency:
    """Test the bound on in-flight requests."""

    async def test_requests_wait_for_a_slot(self):
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            body = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [vec_for(t) for t in body["input"]]})

        settings = make_settings(embed_batch_size=1, embed_max_concurrency=2)
        async with EmbeddingProvider(settings, httpx.MockTransport(handler)) as provider:
            vectors = await provider.embed_batch([str(i) for i in range(6)])
        assert len(vectors) == 6
        assert peak == 2
