"""
Embedding Service Package.

Model registry, vector types and inference backends. The service itself is
in ``autoorganize.services.embedding.service``.
"""

from autoorganize.services.embedding.models import (
    MODEL_REGISTRY,
    EmbeddingResult,
    EmbeddingVector,
    FallbackEvent,
    ModelConfig,
    SearchFilters,
    SemanticSearchResult,
)
from autoorganize.services.embedding.backends import (
    EmbeddingBackend,
    HashingBackend,
    OllamaBackend,
    TransformersBackend,
)

__all__ = [
    "MODEL_REGISTRY",
    "EmbeddingResult",
    "EmbeddingVector",
    "FallbackEvent",
    "ModelConfig",
    "SearchFilters",
    "SemanticSearchResult",
    "EmbeddingBackend",
    "HashingBackend",
    "OllamaBackend",
    "TransformersBackend",
]
