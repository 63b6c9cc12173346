"""
Embedding Service.

Turns text into unit-norm vectors with a configured backend, stores chunk
and entity vectors, and answers semantic queries by exact cosine scan over
a filtered candidate set.
"""

import time
from collections import OrderedDict
from typing import Any, Optional, Protocol

import numpy as np

from autoorganize.config import EmbeddingConfig, get_settings
from autoorganize.knowledge.entities import Entity
from autoorganize.services.embedding.backends import (
    EmbeddingBackend,
    HashingBackend,
    OllamaBackend,
    TransformersBackend,
)
from autoorganize.services.embedding.models import (
    MODEL_REGISTRY,
    EmbeddingResult,
    EmbeddingVector,
    FallbackEvent,
    ModelConfig,
    SearchFilters,
    SemanticSearchResult,
)
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import (
    DimensionMismatchError,
    EmbeddingError,
    ModelNotFoundError,
    StorageError,
    ValidationError,
)
from autoorganize.utils.logging import LogContext, get_logger


logger = get_logger(__name__)

UNIT_NORM_TOLERANCE = 1e-5


class EmbeddingObserver(Protocol):
    """Receives a signal every time the hashing fallback replaces model inference."""

    def on_fallback(self, event: FallbackEvent) -> None:
        ...


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between two vectors; 0.0 when either is zero."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def chunk_words(text: str, chunk_size: int, overlap_size: int) -> list[str]:
    """
    Split text into windows of *chunk_size* words overlapping by *overlap_size*.

    The last window ends at the final word; whitespace-only text has no chunks.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size", "must be positive")
    if overlap_size < 0 or overlap_size >= chunk_size:
        raise ValidationError("overlap_size", "must be in [0, chunk_size)")

    words = text.split()
    chunks: list[str] = []
    step = chunk_size - overlap_size
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start:start + chunk_size]))
        if start + chunk_size >= len(words):
            break
    return chunks


def create_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    """Build the backend named by ``embedding.backend``."""
    if config.backend == "transformers":
        return TransformersBackend(device=config.device)
    if config.backend == "ollama":
        return OllamaBackend(base_url=config.ollama_base_url, timeout=config.timeout)
    return HashingBackend()


class EmbeddingService:
    """
    Embedding engine over a pluggable backend.

    The backend is chosen by configuration. The hashing strategy is used
    only when it is the configured backend or ``allow_fallback`` is set and
    the primary backend fails; every such use is logged, reported to the
    observer and tagged on the result.

    Features:
    - Single and batch embedding with an LRU cache
    - Word-window chunking of long documents
    - Exact cosine search over filtered candidates
    """

    CANDIDATE_MULTIPLIER = 10

    def __init__(
        self,
        store: GraphStore,
        backend: Optional[EmbeddingBackend] = None,
        settings: Optional[EmbeddingConfig] = None,
        observer: Optional[EmbeddingObserver] = None,
    ):
        """
        Initialize embedding service.

        Args:
            store: Graph store holding embedding vectors
            backend: Inference strategy; built from settings when omitted
            settings: Embedding settings; defaults to ``get_settings().embedding``
            observer: Receives fallback events
        """
        self.settings = settings or get_settings().embedding
        self.store = store
        self.backend = backend or create_backend(self.settings)
        self.observer = observer
        self.default_model = self.settings.model
        self.max_cache_size = self.settings.max_cache_size
        self._models: dict[str, ModelConfig] = dict(MODEL_REGISTRY)
        self._fallback_backend = HashingBackend()

        self._cache: OrderedDict[str, EmbeddingResult] = OrderedDict()

        # Stats
        self._total_requests = 0
        self._cache_hits = 0
        self._fallback_count = 0
        self._total_tokens = 0

    # ==================== Models ====================

    def register_model(self, model: ModelConfig) -> None:
        self._models[model.name] = model

    def get_available_models(self) -> list[ModelConfig]:
        return list(self._models.values())

    def get_model_info(self, model: Optional[str] = None) -> ModelConfig:
        name = model or self.default_model
        try:
            return self._models[name]
        except KeyError:
            raise ModelNotFoundError(name) from None

    def is_model_loaded(self, model: Optional[str] = None) -> bool:
        return self.backend.is_loaded(self.get_model_info(model))

    async def load_model(self, model: Optional[str] = None) -> ModelConfig:
        """Load a model into the backend; falls back only when allowed."""
        config = self.get_model_info(model)
        try:
            await self.backend.load(config)
        except EmbeddingError as e:
            if not self.settings.allow_fallback:
                raise
            logger.warning(f"Model {config.name} unavailable, hashing fallback enabled: {e.message}")
        return config

    @property
    def dimensions(self) -> int:
        """Dimensions of the default model."""
        return self.get_model_info().dimensions

    # ==================== Cache ====================

    def _cache_key(self, model: str, text: str) -> str:
        return f"{model}\x00{text}"

    def _get_from_cache(self, key: str) -> Optional[EmbeddingResult]:
        result = self._cache.get(key)
        if result is not None:
            self._cache_hits += 1
            self._cache.move_to_end(key)
        return result

    def _add_to_cache(self, key: str, result: EmbeddingResult) -> None:
        self._cache[key] = result
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_cache_size:
            self._cache.popitem(last=False)

    # ==================== Inference ====================

    def _notify_fallback(self, config: ModelConfig, reason: str, count: int) -> None:
        self._fallback_count += 1
        with LogContext(model=config.name, strategy=HashingBackend.strategy):
            logger.warning(f"Hashing embedding used for {count} text(s) with {config.name}: {reason}")
        if self.observer is not None:
            self.observer.on_fallback(FallbackEvent(model=config.name, reason=reason, texts=count))

    async def _infer(self, texts: list[str], config: ModelConfig) -> tuple[np.ndarray, str, bool]:
        if isinstance(self.backend, HashingBackend):
            vectors = await self.backend.embed(texts, config)
            self._notify_fallback(config, "hashing backend configured", len(texts))
            return vectors, self.backend.strategy, True

        try:
            vectors = await self.backend.embed(texts, config)
            strategy, fallback = self.backend.strategy, False
        except EmbeddingError as e:
            if not self.settings.allow_fallback:
                raise
            vectors = await self._fallback_backend.embed(texts, config)
            self._notify_fallback(config, e.message, len(texts))
            strategy, fallback = self._fallback_backend.strategy, True
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}", model=config.name) from e

        if vectors.ndim != 2 or vectors.shape[1] != config.dimensions:
            actual = vectors.shape[-1] if vectors.ndim else 0
            raise DimensionMismatchError(config.name, config.dimensions, int(actual))
        norms = np.linalg.norm(vectors, axis=1)
        if not np.all(np.abs(norms - 1.0) <= UNIT_NORM_TOLERANCE):
            raise EmbeddingError("Backend returned vectors that are not unit norm", model=config.name)
        return vectors.astype(np.float32), strategy, fallback

    def _validate_text(self, text: Any) -> str:
        if not isinstance(text, str):
            raise EmbeddingError(f"Cannot embed {type(text).__name__}, expected str")
        text = text.strip()
        if not text:
            raise EmbeddingError("Cannot embed empty text")
        return text

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        use_cache: bool = True,
    ) -> EmbeddingResult:
        """
        Generate an embedding for a single text.

        Args:
            text: Text to embed
            model: Registered model name; defaults to the configured model
            use_cache: Whether to use/update cache

        Returns:
            EmbeddingResult with a unit-norm vector
        """
        results = await self.embed_batch([text], model=model, use_cache=use_cache)
        return results[0]

    async def embed_batch(
        self,
        texts: list[str],
        model: Optional[str] = None,
        use_cache: bool = True,
    ) -> list[EmbeddingResult]:
        """Embed several texts in one backend call, in input order."""
        config = self.get_model_info(model)
        cleaned = [self._validate_text(t) for t in texts]
        self._total_requests += len(cleaned)

        results: list[Optional[EmbeddingResult]] = [None] * len(cleaned)
        pending: dict[str, list[int]] = {}
        cached_fallbacks = 0
        for index, text in enumerate(cleaned):
            cached = self._get_from_cache(self._cache_key(config.name, text)) if use_cache else None
            if cached is not None:
                results[index] = cached
                cached_fallbacks += cached.fallback
            else:
                pending.setdefault(text, []).append(index)

        if cached_fallbacks:
            self._notify_fallback(config, "cached hashing embedding", cached_fallbacks)

        if pending:
            unique = list(pending)
            vectors, strategy, fallback = await self._infer(unique, config)
            for text, vector in zip(unique, vectors):
                result = EmbeddingResult(
                    text=text,
                    vector=vector,
                    model=config.name,
                    dimensions=config.dimensions,
                    strategy=strategy,
                    fallback=fallback,
                )
                if use_cache:
                    self._add_to_cache(self._cache_key(config.name, text), result)
                self._total_tokens += len(text.split())
                for index in pending[text]:
                    results[index] = result

        return results

    async def similarity(self, text1: str, text2: str, model: Optional[str] = None) -> float:
        """Cosine similarity between two texts."""
        first, second = await self.embed_batch([text1, text2], model=model)
        return cosine_similarity(first.vector, second.vector)

    # ==================== Storage ====================

    def _to_vector(
        self,
        result: EmbeddingResult,
        document_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EmbeddingVector:
        meta = dict(metadata or {})
        meta["strategy"] = result.strategy
        if result.fallback:
            meta["fallback"] = True
        return EmbeddingVector.create(
            text=result.text,
            vector=result.vector,
            model=result.model,
            document_id=document_id,
            entity_id=entity_id,
            metadata=meta,
        )

    async def _save(self, vectors: list[EmbeddingVector]) -> None:
        try:
            await self.store.save_embeddings(vectors)
        except StorageError as e:
            raise EmbeddingError(f"Failed to store embeddings: {e.message}", details=e.details) from e

    async def store_embedding(
        self,
        text: str,
        document_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        model: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EmbeddingVector:
        """Embed a text and persist the vector."""
        result = await self.embed(text, model=model)
        vector = self._to_vector(result, document_id, entity_id, metadata)
        await self._save([vector])
        return vector

    async def chunk_and_embed(
        self,
        document_id: str,
        content: str,
        chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
        model: Optional[str] = None,
    ) -> list[str]:
        """
        Split a document into overlapping word windows and store one vector per window.

        Returns:
            Ids of the stored embeddings, in chunk order
        """
        chunk_size = chunk_size or self.settings.chunk_size
        overlap_size = self.settings.chunk_overlap if overlap_size is None else overlap_size
        chunks = chunk_words(content, chunk_size, overlap_size)
        if not chunks:
            return []

        start = time.time()
        with LogContext(document_id=document_id):
            results = await self.embed_batch(chunks, model=model)
            vectors = [
                self._to_vector(
                    result,
                    document_id=document_id,
                    metadata={
                        "chunk_index": index,
                        "total_chunks": len(chunks),
                        "chunk_size": len(chunk),
                    },
                )
                for index, (chunk, result) in enumerate(zip(chunks, results))
            ]
            await self._save(vectors)
            logger.info(
                f"Embedded {len(chunks)} chunks of {document_id} in {time.time() - start:.2f}s"
            )
        return [v.id for v in vectors]

    async def embed_entities(
        self,
        entities: list[Entity],
        model: Optional[str] = None,
    ) -> list[str]:
        """Store one vector per entity, embedding its text with its context."""
        if not entities:
            return []
        texts = [e.context or e.text for e in entities]
        results = await self.embed_batch(texts, model=model)
        vectors = [
            self._to_vector(
                result,
                document_id=entity.document_id,
                entity_id=entity.id,
                metadata={"entity_type": entity.entity_type.value, "entity_text": entity.text},
            )
            for entity, result in zip(entities, results)
        ]
        await self._save(vectors)
        return [v.id for v in vectors]

    async def get_embeddings_by_document(self, document_id: str) -> list[EmbeddingVector]:
        try:
            return await self.store.get_embeddings_by_document(document_id)
        except StorageError as e:
            raise EmbeddingError(f"Failed to load embeddings: {e.message}", details=e.details) from e

    async def delete_embeddings(
        self,
        document_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        if document_id is None and entity_id is None:
            raise ValidationError("delete_embeddings", "document_id or entity_id is required")
        try:
            return await self.store.delete_embeddings(document_id=document_id, entity_id=entity_id)
        except StorageError as e:
            raise EmbeddingError(f"Failed to delete embeddings: {e.message}", details=e.details) from e

    # ==================== Search ====================

    async def semantic_search(
        self,
        query: str,
        model: Optional[str] = None,
        threshold: float = 0.5,
        limit: int = 10,
        filters: Optional[SearchFilters] = None,
        include_metadata: bool = True,
    ) -> list[SemanticSearchResult]:
        """
        Rank stored vectors by cosine similarity to a query.

        Candidates are narrowed by *filters* and capped at ``limit * 10``
        before scoring; this is a linear scan with no index.

        Args:
            query: Query text
            model: Model whose vectors are searched
            threshold: Minimum similarity
            limit: Maximum results
            filters: Document type, document/entity id and date filters
            include_metadata: Attach stored metadata to each hit

        Returns:
            Hits sorted by similarity, highest first
        """
        config = self.get_model_info(model)
        filters = filters or SearchFilters()
        query_result = await self.embed(query, model=config.name)

        try:
            candidates = await self.store.get_embedding_candidates(
                model=config.name,
                limit=limit * self.CANDIDATE_MULTIPLIER,
                document_types=filters.document_types or None,
                document_ids=filters.document_ids or None,
                entity_ids=filters.entity_ids or None,
                date_start=filters.date_start,
                date_end=filters.date_end,
            )
        except StorageError as e:
            raise EmbeddingError(f"Semantic search failed: {e.message}", details=e.details) from e

        if not candidates:
            return []

        matrix = np.stack([c.vector for c in candidates]).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_result.vector)
        scores = np.divide(
            matrix @ query_result.vector,
            norms,
            out=np.zeros(len(candidates), dtype=np.float32),
            where=norms > 0,
        )

        hits = [
            SemanticSearchResult(
                id=candidate.id,
                text=candidate.text,
                similarity=float(min(1.0, score)),
                document_id=candidate.document_id,
                entity_id=candidate.entity_id,
                metadata=candidate.metadata if include_metadata else None,
            )
            for candidate, score in zip(candidates, scores)
            if score >= threshold
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit]

    # ==================== Lifecycle ====================

    async def close(self):
        await self.backend.close()

    def get_stats(self) -> dict[str, Any]:
        """Get service statistics."""
        return {
            "model": self.default_model,
            "backend": self.backend.strategy,
            "dimensions": self.dimensions,
            "total_requests": self._total_requests,
            "cache_hits": self._cache_hits,
            "cache_size": len(self._cache),
            "cache_hit_rate": self._cache_hits / max(1, self._total_requests),
            "fallback_count": self._fallback_count,
            "estimated_tokens": self._total_tokens,
        }
