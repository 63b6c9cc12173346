"""
Embedding Backends.

Strategies that turn text into unit-norm vectors:

- TransformersBackend: local Hugging Face model, attention-masked mean pooling
- OllamaBackend: Ollama embedding endpoint over HTTP
- HashingBackend: deterministic vector derived from the text bytes, no model
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import numpy as np

from autoorganize.services.embedding.models import ModelConfig
from autoorganize.utils.exceptions import EmbeddingError
from autoorganize.utils.logging import get_logger
from autoorganize.utils.retry import RetryConfig, with_retry


logger = get_logger(__name__)


def mean_pool(token_embeddings: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """
    Average token vectors, ignoring padding.

    Args:
        token_embeddings: (batch, tokens, dims)
        attention_mask: (batch, tokens), 1 for real tokens

    Returns:
        (batch, dims) array
    """
    mask = attention_mask[..., np.newaxis].astype(np.float32)
    summed = (token_embeddings * mask).sum(axis=1)
    counts = np.clip(mask.sum(axis=1), 1e-9, None)
    return summed / counts


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Scale each row (or a single vector) to unit length; zero rows stay zero."""
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms = np.where(norms == 0, 1.0, norms)
    return (vectors / norms).astype(np.float32)


class EmbeddingBackend(ABC):
    """Base class for embedding strategies."""

    strategy: str = "base"

    @abstractmethod
    async def load(self, model: ModelConfig) -> None:
        """Prepare the backend to serve *model*; raise EmbeddingError on failure."""
        pass

    @abstractmethod
    def is_loaded(self, model: ModelConfig) -> bool:
        pass

    @abstractmethod
    async def embed(self, texts: list[str], model: ModelConfig) -> np.ndarray:
        """
        Embed a batch of texts.

        Returns:
            float32 array of shape (len(texts), dims) with unit-norm rows
        """
        pass

    async def close(self) -> None:
        pass


class TransformersBackend(EmbeddingBackend):
    """
    Local inference with Hugging Face ``transformers``.

    Inputs are truncated to the model's max sequence length; models that
    declare segment ids also receive ``token_type_ids``. Inference runs in
    the default executor so the event loop stays responsive.
    """

    strategy = "transformers"

    def __init__(self, device: str = "cpu", cache_dir: Optional[str] = None):
        self.device = device
        self.cache_dir = cache_dir
        self._models: dict[str, tuple[Any, Any]] = {}
        self._load_lock = asyncio.Lock()

    def is_loaded(self, model: ModelConfig) -> bool:
        return model.name in self._models

    async def load(self, model: ModelConfig) -> None:
        if self.is_loaded(model):
            return
        async with self._load_lock:
            if self.is_loaded(model):
                return
            loop = asyncio.get_running_loop()
            try:
                tokenizer, encoder = await loop.run_in_executor(
                    None, self._load_sync, model
                )
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load embedding model: {e}", model=model.name
                ) from e
            self._models[model.name] = (tokenizer, encoder)
            logger.info(f"Loaded embedding model {model.name} on {self.device}")

    def _load_sync(self, model: ModelConfig):
        try:
            from transformers import AutoModel, AutoTokenizer
        except ImportError as e:
            raise EmbeddingError(
                "transformers is not installed. Install with: pip install 'autoorganize[models]'",
                model=model.name,
            ) from e

        tokenizer = AutoTokenizer.from_pretrained(model.source, cache_dir=self.cache_dir)
        encoder = AutoModel.from_pretrained(model.source, cache_dir=self.cache_dir)
        encoder.to(self.device)
        encoder.eval()
        return tokenizer, encoder

    async def embed(self, texts: list[str], model: ModelConfig) -> np.ndarray:
        await self.load(model)
        tokenizer, encoder = self._models[model.name]
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, self._embed_sync, tokenizer, encoder, texts, model
            )
        except Exception as e:
            raise EmbeddingError(f"Embedding inference failed: {e}", model=model.name) from e

    def _embed_sync(self, tokenizer, encoder, texts: list[str], model: ModelConfig) -> np.ndarray:
        import torch

        encoded = tokenizer(
            texts,
            padding=True,
            truncation=True,
            max_length=model.max_sequence_length,
            return_tensors="pt",
            return_token_type_ids=model.requires_token_type_ids,
        )
        inputs = {
            "input_ids": encoded["input_ids"].to(self.device),
            "attention_mask": encoded["attention_mask"].to(self.device),
        }
        if model.requires_token_type_ids:
            inputs["token_type_ids"] = encoded["token_type_ids"].to(self.device)

        with torch.no_grad():
            output = encoder(**inputs)

        token_embeddings = output.last_hidden_state.cpu().numpy()
        attention_mask = encoded["attention_mask"].cpu().numpy()
        return l2_normalize(mean_pool(token_embeddings, attention_mask))


def is_transient_http_error(exc: BaseException) -> bool:
    """Transport failures, 429 and 5xx are worth another attempt; other statuses are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


OLLAMA_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    exceptions=(httpx.HTTPError,),
    retry_if=is_transient_http_error,
)


class OllamaBackend(EmbeddingBackend):
    """Embeddings from a running Ollama server."""

    strategy = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", timeout: float = 60.0):
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._loaded: set[str] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                base_url=self.base_url,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def is_loaded(self, model: ModelConfig) -> bool:
        return model.name in self._loaded

    async def load(self, model: ModelConfig) -> None:
        if self.is_loaded(model):
            return
        await self.embed(["ping"], model)

    @with_retry(OLLAMA_RETRY)
    async def _embed_single(self, text: str, model: ModelConfig) -> list[float]:
        client = await self._get_client()
        response = await client.post(
            "/api/embeddings",
            json={"model": model.source, "prompt": text},
        )
        response.raise_for_status()
        return response.json().get("embedding", [])

    async def embed(self, texts: list[str], model: ModelConfig) -> np.ndarray:
        vectors = []
        for text in texts:
            try:
                embedding = await self._embed_single(text, model)
            except httpx.HTTPError as e:
                raise EmbeddingError(f"Ollama embedding request failed: {e}", model=model.name) from e
            if not embedding:
                raise EmbeddingError("No embedding returned from Ollama", model=model.name)
            vectors.append(embedding)
        self._loaded.add(model.name)
        return l2_normalize(np.asarray(vectors, dtype=np.float32))


class HashingBackend(EmbeddingBackend):
    """
    Deterministic pseudo-random vectors.

    The text is hashed with SHAKE-256 to a byte stream of the model's
    dimensionality; identical text always yields the identical vector.
    Carries no semantics, so it is only ever used when configured.
    """

    strategy = "hash"

    def is_loaded(self, model: ModelConfig) -> bool:
        return True

    async def load(self, model: ModelConfig) -> None:
        return None

    @staticmethod
    def hash_vector(text: str, dimensions: int) -> np.ndarray:
        digest = hashlib.shake_256(text.encode("utf-8")).digest(4 * dimensions)
        raw = np.frombuffer(digest, dtype="<u4").astype(np.float64)
        centered = raw / np.float64(2 ** 32 - 1) * 2.0 - 1.0
        return l2_normalize(centered)

    async def embed(self, texts: list[str], model: ModelConfig) -> np.ndarray:
        return np.stack([self.hash_vector(text, model.dimensions) for text in texts])
