"""Tests for retry policy and the HTTP embedding backend."""
import httpx
import numpy as np
import pytest

from autoorganize.services.embedding.backends import (
    OLLAMA_RETRY,
    OllamaBackend,
    is_transient_http_error,
)
from autoorganize.services.embedding.models import MODEL_REGISTRY
from autoorganize.utils.exceptions import EmbeddingError
from autoorganize.utils.retry import RetryConfig, with_retry


def ollama_backend(handler):
    backend = OllamaBackend(base_url="http://ollama.test")
    backend._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://ollama.test"
    )
    return backend


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(OLLAMA_RETRY, "base_delay", 0.0)


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        @with_retry(max_attempts=3, base_delay=0.0, exceptions=(ConnectionError,))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset by peer")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        calls = []

        @with_retry(max_attempts=2, base_delay=0.0, exceptions=(ConnectionError,))
        async def down():
            calls.append(1)
            raise ConnectionError(f"attempt {len(calls)}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await down()

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        @with_retry(max_attempts=3, base_delay=0.0, exceptions=(ConnectionError,))
        async def broken():
            calls.append(1)
            raise KeyError("embedding")

        with pytest.raises(KeyError):
            await broken()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_if_vetoes(self):
        calls = []
        policy = RetryConfig(base_delay=0.0, retry_if=lambda e: "transient" in str(e))

        @with_retry(policy)
        async def rejected():
            calls.append(1)
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await rejected()
        assert len(calls) == 1

    def test_delay_is_capped(self):
        policy = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestOllamaBackend:
    """Tests for OllamaBackend against a mocked server."""

    def test_transient_errors(self):
        request = httpx.Request("POST", "http://ollama.test/api/embeddings")

        def status_error(code):
            return httpx.HTTPStatusError("", request=request, response=httpx.Response(code, request=request))

        assert is_transient_http_error(status_error(503))
        assert is_transient_http_error(status_error(429))
        assert not is_transient_http_error(status_error(404))
        assert is_transient_http_error(httpx.ConnectError("refused", request=request))

    @pytest.mark.asyncio
    async def test_embed_normalizes(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"embedding": [3.0, 4.0]})

        backend = ollama_backend(handler)
        model = MODEL_REGISTRY["all-minilm"]

        vectors = await backend.embed(["graph storage"], model)

        assert np.allclose(vectors, [[0.6, 0.8]])
        assert seen[0].url.path == "/api/embeddings"
        assert backend.is_loaded(model)
        await backend.close()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, no_backoff):
        responses = [httpx.Response(503), httpx.Response(200, json={"embedding": [1.0, 0.0]})]

        backend = ollama_backend(lambda request: responses.pop(0))
        vectors = await backend.embed(["retry me"], MODEL_REGISTRY["all-minilm"])

        assert vectors.shape == (1, 2)
        assert responses == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_client_errors_fail_fast(self, no_backoff):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": "model not found"})

        backend = ollama_backend(handler)
        with pytest.raises(EmbeddingError) as exc_info:
            await backend.embed(["missing"], MODEL_REGISTRY["nomic-embed-text"])

        assert len(calls) == 1
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        await backend.close()

    @pytest.mark.asyncio
    async def test_empty_embedding(self):
        backend = ollama_backend(lambda request: httpx.Response(200, json={}))
        with pytest.raises(EmbeddingError):
            await backend.embed(["nothing"], MODEL_REGISTRY["all-minilm"])
        await backend.close()
