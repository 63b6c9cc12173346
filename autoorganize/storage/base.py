"""
Storage Base Interfaces.

Abstract persistence interface for documents, entities, relationships
and embedding vectors.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity, EntityType
from autoorganize.knowledge.relationships import Relationship, RelationshipType
from autoorganize.services.embedding.models import EmbeddingVector


class GraphStore(ABC):
    """
    Abstract base class for the knowledge graph store.

    Implementations must express relationship upserts as a single atomic
    statement per key that keeps the higher-confidence row, and must write
    each batch inside one transaction. Failures surface as StorageError.
    """

    # ==================== Documents ====================

    @abstractmethod
    async def save_document(self, document: Document) -> None:
        """Insert or replace a document record."""
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def get_documents(
        self,
        document_ids: Optional[list[str]] = None,
        document_types: Optional[list[str]] = None,
    ) -> list[Document]:
        """
        List documents, newest first.

        Args:
            document_ids: Restrict to these ids (None for all)
            document_types: Restrict to these file types
        """
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """
        Delete a document together with its entities and embeddings.

        Relationships are left in place; their endpoints may dangle.

        Returns:
            True if the document existed
        """
        pass

    @abstractmethod
    async def delete_document_outputs(self, document_id: str) -> int:
        """
        Delete the entities and embeddings derived from a document, keeping the document.

        Returns:
            Number of entities deleted
        """
        pass

    # ==================== Entities ====================

    @abstractmethod
    async def save_entities(self, entities: list[Entity]) -> int:
        """Insert or replace entities in one transaction."""
        pass

    @abstractmethod
    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    async def get_entities(
        self,
        entity_ids: Optional[list[str]] = None,
        document_id: Optional[str] = None,
        entity_types: Optional[list[EntityType]] = None,
        limit: Optional[int] = None,
    ) -> list[Entity]:
        """List entities ordered by document position."""
        pass

    @abstractmethod
    async def find_entities_by_value(
        self,
        entity_type: EntityType,
        normalized_value: str,
        exclude_document_id: Optional[str] = None,
    ) -> list[Entity]:
        """Entities of a type whose normalized value matches exactly."""
        pass

    @abstractmethod
    async def ensure_placeholder_entities(self, entity_ids: list[str]) -> list[Entity]:
        """
        Materialize missing entities as placeholders.

        Returns:
            The placeholder entities that were created
        """
        pass

    @abstractmethod
    async def count_entities_by_type(self) -> dict[str, int]:
        pass

    @abstractmethod
    async def top_connected_entities(
        self,
        limit: int,
        entity_types: Optional[list[EntityType]] = None,
    ) -> list[tuple[Entity, int]]:
        """Entities ranked by number of incident relationships."""
        pass

    @abstractmethod
    async def merge_entities(self, source_id: str, merged_target: Entity) -> int:
        """
        Fold one entity into another in a single transaction.

        Relationships and embeddings of *source_id* are re-pointed at the
        target, the target row is replaced by *merged_target* and the source
        entity is deleted.

        Returns:
            Number of relationships re-pointed
        """
        pass

    # ==================== Relationships ====================

    @abstractmethod
    async def upsert_relationships(self, relationships: list[Relationship]) -> int:
        """
        Upsert relationships and their evidence in one transaction.

        On key conflict the stored row is replaced only when the incoming
        confidence is higher; evidence accumulates either way.
        """
        pass

    @abstractmethod
    async def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        pass

    @abstractmethod
    async def get_relationships(
        self,
        entity_id: Optional[str] = None,
        direction: str = "both",
        relationship_types: Optional[list[RelationshipType]] = None,
        node_ids: Optional[list[str]] = None,
        min_strength: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[Relationship]:
        """
        Query relationships with their evidence.

        Args:
            entity_id: Restrict to edges incident to this node
            direction: "outgoing", "incoming" or "both" relative to entity_id
            relationship_types: Restrict to these types
            node_ids: Restrict to edges whose both endpoints are in this set
            min_strength: Minimum strength
            limit: Maximum rows, strongest first
        """
        pass

    @abstractmethod
    async def update_relationship(
        self,
        relationship_id: str,
        confidence: Optional[float] = None,
        strength: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[Relationship]:
        pass

    @abstractmethod
    async def delete_relationship(self, relationship_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_relationships_by_document(self, document_id: str) -> int:
        """Remove evidence from a document and any relationship left without evidence."""
        pass

    @abstractmethod
    async def count_relationships_by_type(self) -> dict[str, int]:
        pass

    @abstractmethod
    async def expand_from(
        self,
        center_id: str,
        depth: int,
        min_strength: float = 0.0,
        relationship_types: Optional[list[RelationshipType]] = None,
        limit: Optional[int] = None,
    ) -> list[tuple[str, int]]:
        """
        Breadth expansion ignoring edge direction.

        Returns:
            (node_id, hop distance) pairs, nearest first, the center included
        """
        pass

    @abstractmethod
    async def degree_counts(
        self,
        limit: Optional[int] = None,
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[tuple[str, int]]:
        """Incident relationship counts per entity, highest first."""
        pass

    # ==================== Embeddings ====================

    @abstractmethod
    async def save_embeddings(self, vectors: list[EmbeddingVector]) -> int:
        pass

    @abstractmethod
    async def get_embedding_candidates(
        self,
        model: str,
        limit: int,
        document_types: Optional[list[str]] = None,
        document_ids: Optional[list[str]] = None,
        entity_ids: Optional[list[str]] = None,
        date_start: Optional[datetime] = None,
        date_end: Optional[datetime] = None,
    ) -> list[EmbeddingVector]:
        """Vectors for a model narrowed by non-similarity filters, capped at *limit*."""
        pass

    @abstractmethod
    async def get_embeddings_by_document(self, document_id: str) -> list[EmbeddingVector]:
        pass

    @abstractmethod
    async def delete_embeddings(
        self,
        document_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        pass

    async def close(self) -> None:
        """Release resources. Connections are per-call by default."""
        pass
