"""
Embedding data types and the model registry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional
import uuid

import numpy as np

from autoorganize.knowledge.entities import parse_timestamp, utcnow


@dataclass(frozen=True)
class ModelConfig:
    """Declared properties of an embedding model."""
    name: str
    dimensions: int
    max_sequence_length: int
    backend: Literal["transformers", "ollama"]
    source: str  # Hub repository or Ollama tag
    requires_token_type_ids: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "dimensions": self.dimensions,
            "max_sequence_length": self.max_sequence_length,
            "backend": self.backend,
            "source": self.source,
            "requires_token_type_ids": self.requires_token_type_ids,
        }


MODEL_REGISTRY: dict[str, ModelConfig] = {
    "sentence-transformers-all-MiniLM-L6-v2": ModelConfig(
        name="sentence-transformers-all-MiniLM-L6-v2",
        dimensions=384,
        max_sequence_length=256,
        backend="transformers",
        source="sentence-transformers/all-MiniLM-L6-v2",
    ),
    "sentence-transformers-all-mpnet-base-v2": ModelConfig(
        name="sentence-transformers-all-mpnet-base-v2",
        dimensions=768,
        max_sequence_length=384,
        backend="transformers",
        source="sentence-transformers/all-mpnet-base-v2",
    ),
    "bert-base-uncased": ModelConfig(
        name="bert-base-uncased",
        dimensions=768,
        max_sequence_length=512,
        backend="transformers",
        source="bert-base-uncased",
        requires_token_type_ids=True,
    ),
    "nomic-embed-text": ModelConfig(
        name="nomic-embed-text",
        dimensions=768,
        max_sequence_length=8192,
        backend="ollama",
        source="nomic-embed-text",
    ),
    "mxbai-embed-large": ModelConfig(
        name="mxbai-embed-large",
        dimensions=1024,
        max_sequence_length=512,
        backend="ollama",
        source="mxbai-embed-large",
    ),
    "all-minilm": ModelConfig(
        name="all-minilm",
        dimensions=384,
        max_sequence_length=256,
        backend="ollama",
        source="all-minilm",
    ),
}


@dataclass
class EmbeddingVector:
    """A stored, unit-norm vector for a document chunk or an entity."""

    id: str
    text: str
    vector: np.ndarray
    model: str
    dimensions: int
    document_id: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        text: str,
        vector: np.ndarray,
        model: str,
        **kwargs
    ) -> "EmbeddingVector":
        vector = np.asarray(vector, dtype=np.float32)
        return cls(
            id=kwargs.pop("id", None) or f"emb_{uuid.uuid4().hex[:16]}",
            text=text,
            vector=vector,
            model=model,
            dimensions=int(vector.shape[0]),
            **kwargs,
        )

    def to_dict(self, include_vector: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "text": self.text,
            "model": self.model,
            "dimensions": self.dimensions,
            "document_id": self.document_id,
            "entity_id": self.entity_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_vector:
            data["vector"] = self.vector.tolist()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EmbeddingVector":
        vector = np.asarray(data["vector"], dtype=np.float32)
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            vector=vector,
            model=data["model"],
            dimensions=data.get("dimensions", int(vector.shape[0])),
            document_id=data.get("document_id"),
            entity_id=data.get("entity_id"),
            metadata=data.get("metadata") or {},
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class EmbeddingResult:
    """Result from embedding generation."""
    text: str
    vector: np.ndarray
    model: str
    dimensions: int
    strategy: str  # backend that produced the vector
    fallback: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def embedding(self) -> list[float]:
        return self.vector.tolist()

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text[:100] + "..." if len(self.text) > 100 else self.text,
            "dimensions": self.dimensions,
            "model": self.model,
            "strategy": self.strategy,
            "fallback": self.fallback,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SearchFilters:
    """Non-similarity filters applied before scoring."""
    document_types: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)
    entity_ids: list[str] = field(default_factory=list)
    date_start: Optional[datetime] = None
    date_end: Optional[datetime] = None


@dataclass
class SemanticSearchResult:
    """One ranked hit from semantic search."""
    id: str
    text: str
    similarity: float
    document_id: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "similarity": self.similarity,
            "document_id": self.document_id,
            "entity_id": self.entity_id,
            "metadata": self.metadata,
        }


@dataclass
class FallbackEvent:
    """Emitted every time the hashing strategy stands in for model inference."""
    model: str
    reason: str
    texts: int
    timestamp: datetime = field(default_factory=utcnow)
