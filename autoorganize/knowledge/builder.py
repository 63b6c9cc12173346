"""
Relationship Building.

Links extracted entities to their documents, to each other (trigger
phrases and proximity) and documents to documents (semantic similarity),
then persists the ranked result in one transactional upsert.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from autoorganize.config import RelationshipConfig, get_settings
from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity, EntityType
from autoorganize.knowledge.relationships import (
    DEFAULT_TYPE_BONUS,
    RELATIONSHIP_PATTERNS,
    TYPE_BONUS,
    Evidence,
    MentionDetails,
    NodeKind,
    PatternDetails,
    ProximityDetails,
    Relationship,
    RelationshipType,
    SimilarityDetails,
    are_types_compatible,
    clamp,
)
from autoorganize.services.embedding.models import SearchFilters
from autoorganize.services.embedding.service import EmbeddingService
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import RelationshipBuildError, StorageError, ValidationError
from autoorganize.utils.logging import get_logger


logger = get_logger(__name__)

# Proximity confidence decays over this many characters
PROXIMITY_SCALE = 100.0
PROXIMITY_CAP = 0.7

# Trigger phrases never span sentence punctuation
_SEGMENT = re.compile(r"[^.!?;:\n]+")


@dataclass
class RelationshipBuildOptions:
    """Per-call relationship building options."""
    enabled_types: set[RelationshipType] = field(default_factory=lambda: set(RelationshipType))
    min_confidence: float = 0.5
    max_distance: int = 100
    use_semantic_similarity: bool = True
    context_window: int = 200
    similarity_query_chars: int = 500
    entity_types: Optional[set[EntityType]] = None
    document_types: list[str] = field(default_factory=list)
    max_entities_per_document: Optional[int] = None
    max_documents_per_cross_link: Optional[int] = None

    def __post_init__(self):
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValidationError("min_confidence", "must be within [0, 1]")
        if self.max_distance < 0:
            raise ValidationError("max_distance", "must not be negative")
        self.enabled_types = {RelationshipType.parse(t) for t in self.enabled_types}
        if self.entity_types is not None:
            self.entity_types = {EntityType.parse(t) for t in self.entity_types}

    @classmethod
    def from_settings(cls, config: RelationshipConfig, **overrides) -> "RelationshipBuildOptions":
        values = {
            "min_confidence": config.min_confidence,
            "max_distance": config.max_distance,
            "use_semantic_similarity": config.use_semantic_similarity,
            "context_window": config.context_window,
            "similarity_query_chars": config.similarity_query_chars,
            "max_entities_per_document": config.max_entities_per_document,
            "max_documents_per_cross_link": config.max_documents_per_cross_link,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class BuildResult:
    """Result of a relationship build."""
    relationships: list[Relationship]
    confidence: float
    processing_time: float
    entities_processed: int
    documents_processed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "relationships": [r.to_dict() for r in self.relationships],
            "confidence": self.confidence,
            "processing_time": self.processing_time,
            "entities_processed": self.entities_processed,
            "documents_processed": self.documents_processed,
        }


def evidence_context(text: str, position: int, window: int) -> str:
    """Text centered on *position*, *window* characters wide."""
    half = window // 2
    return text[max(0, position - half):min(len(text), position + half)].strip()


def proximity_confidence(first: Entity, second: Entity, distance: int) -> float:
    proximity = 1 - distance / PROXIMITY_SCALE
    average = (first.confidence + second.confidence) / 2
    return clamp(min(PROXIMITY_CAP, proximity * 0.4 + average * 0.3))


def pattern_confidence(
    source: Entity, target: Entity, match_text: str, relationship_type: RelationshipType
) -> float:
    confidence = 0.5
    confidence += (source.confidence + target.confidence) / 4
    confidence += TYPE_BONUS.get(relationship_type, DEFAULT_TYPE_BONUS)
    if len(match_text) > 10:
        confidence += 0.1
    if are_types_compatible(source.entity_type, target.entity_type, relationship_type):
        confidence += 0.15
    return clamp(confidence)


class RelationshipBuilder:
    """
    Builds relationships for a set of documents.

    Usage:
        builder = RelationshipBuilder(store, embeddings)
        result = await builder.build(["doc_1", "doc_2"])
        for rel in result.relationships:
            print(rel.source_id, rel.relationship_type, rel.target_id)
    """

    def __init__(
        self,
        store: GraphStore,
        embeddings: Optional[EmbeddingService] = None,
        settings: Optional[RelationshipConfig] = None,
    ):
        """
        Initialize builder.

        Args:
            store: Graph store with documents and entities
            embeddings: Embedding service for cross-document similarity
            settings: Builder defaults; defaults to ``get_settings().relationships``
        """
        self.store = store
        self.embeddings = embeddings
        self.settings = settings or get_settings().relationships

    async def build(
        self,
        document_ids: Optional[list[str]] = None,
        options: Optional[RelationshipBuildOptions] = None,
    ) -> BuildResult:
        """
        Build and persist relationships.

        Args:
            document_ids: Documents to process (None for all)
            options: Build options; defaults come from settings

        Returns:
            BuildResult with the persisted relationships, strongest first

        Raises:
            RelationshipBuildError: A storage or embedding lookup failed
        """
        options = options or RelationshipBuildOptions.from_settings(self.settings)
        start = time.time()

        try:
            documents = await self.store.get_documents(
                document_ids=document_ids,
                document_types=options.document_types or None,
            )
            if document_ids is not None and len(documents) < len(set(document_ids)):
                found = {d.id for d in documents}
                logger.warning(f"Skipping unknown documents: {sorted(set(document_ids) - found)}")

            relationships: list[Relationship] = []
            entities_processed = 0
            for document in documents:
                entities = await self.store.get_entities(
                    document_id=document.id,
                    entity_types=sorted(options.entity_types) if options.entity_types else None,
                )
                entities = self._cap_entities(entities, options)
                entities_processed += len(entities)
                relationships.extend(self.document_relationships(document, entities, options))

            if options.use_semantic_similarity:
                relationships.extend(await self.cross_document_relationships(documents, options))

            relationships = self.filter_and_rank(relationships, options)
            await self.store.upsert_relationships(relationships)
        except RelationshipBuildError:
            raise
        except Exception as e:
            raise RelationshipBuildError(
                f"Relationship building failed: {getattr(e, 'message', e)}",
                details=type(e).__name__,
            ) from e

        elapsed = time.time() - start
        avg_confidence = (
            sum(r.confidence for r in relationships) / len(relationships) if relationships else 0.0
        )
        logger.info(
            f"Built {len(relationships)} relationships from {len(documents)} documents "
            f"in {elapsed:.2f}s"
        )
        return BuildResult(
            relationships=relationships,
            confidence=avg_confidence,
            processing_time=elapsed,
            entities_processed=entities_processed,
            documents_processed=len(documents),
        )

    @staticmethod
    def _cap_entities(entities: list[Entity], options: RelationshipBuildOptions) -> list[Entity]:
        cap = options.max_entities_per_document
        if cap is None or len(entities) <= cap:
            return entities
        kept = sorted(entities, key=lambda e: (-e.confidence, e.start_pos))[:cap]
        return sorted(kept, key=lambda e: e.start_pos)

    # ==================== Per-document ====================

    def document_relationships(
        self,
        document: Document,
        entities: list[Entity],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        """Mention, pattern and proximity relationships for one document."""
        relationships = self.mention_relationships(document, entities, options)
        relationships.extend(self.pattern_relationships(document, entities, options))
        relationships.extend(self.proximity_relationships(document, entities, options))
        return relationships

    def mention_relationships(
        self,
        document: Document,
        entities: list[Entity],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        if RelationshipType.MENTIONED_IN not in options.enabled_types:
            return []
        return [
            Relationship.create(
                source_id=entity.id,
                target_id=document.id,
                relationship_type=RelationshipType.MENTIONED_IN,
                confidence=entity.confidence,
                source_type=NodeKind.ENTITY,
                target_type=NodeKind.DOCUMENT,
                evidence=[Evidence(
                    document_id=document.id,
                    context=entity.context or "",
                    position=entity.start_pos,
                    confidence=entity.confidence,
                )],
                details=MentionDetails(
                    entity_type=entity.entity_type.value,
                    document_type=document.file_type,
                ),
            )
            for entity in entities
            if entity.confidence >= options.min_confidence
        ]

    def pattern_relationships(
        self,
        document: Document,
        entities: list[Entity],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        """Entity pairs joined by a trigger phrase."""
        text = document.content
        relationships: list[Relationship] = []
        if not entities:
            return relationships

        segments = [(m.start(), m.group(0)) for m in _SEGMENT.finditer(text)]
        for relationship_type, patterns in RELATIONSHIP_PATTERNS.items():
            if relationship_type not in options.enabled_types:
                continue
            for pattern in patterns:
                for offset, segment in segments:
                    for match in pattern.finditer(segment):
                        source = self._match_entity(
                            entities, match.group(1), offset + match.start(1), offset + match.end(1),
                            nearest_end=True,
                        )
                        target = self._match_entity(
                            entities, match.group(2), offset + match.start(2), offset + match.end(2),
                            nearest_end=False,
                        )
                        if source is None or target is None or source.id == target.id:
                            continue

                        matched = match.group(0)
                        confidence = pattern_confidence(source, target, matched, relationship_type)
                        if confidence < options.min_confidence:
                            continue
                        position = offset + match.start()
                        relationships.append(Relationship.create(
                            source_id=source.id,
                            target_id=target.id,
                            relationship_type=relationship_type,
                            confidence=confidence,
                            evidence=[Evidence(
                                document_id=document.id,
                                context=evidence_context(text, position, options.context_window),
                                position=position,
                                confidence=confidence,
                            )],
                            details=PatternDetails(
                                source_entity_type=source.entity_type.value,
                                target_entity_type=target.entity_type.value,
                                pattern_match=matched,
                            ),
                        ))
        return relationships

    @staticmethod
    def _match_entity(
        entities: list[Entity],
        phrase: str,
        start: int,
        end: int,
        nearest_end: bool,
    ) -> Optional[Entity]:
        """
        Resolve a captured phrase to an entity.

        Entities positioned inside the captured span win, taking the one
        closest to the trigger phrase; otherwise the first entity whose text
        contains, or is contained in, the phrase.
        """
        inside = [e for e in entities if start <= e.start_pos and e.end_pos <= end]
        if inside:
            if nearest_end:
                return max(inside, key=lambda e: (e.end_pos, e.end_pos - e.start_pos))
            return min(inside, key=lambda e: (e.start_pos, e.start_pos - e.end_pos))

        lowered = phrase.strip().lower()
        if not lowered:
            return None
        for entity in entities:
            candidate = entity.text.lower()
            if candidate and (candidate in lowered or lowered in candidate):
                return entity
        return None

    def proximity_relationships(
        self,
        document: Document,
        entities: list[Entity],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        """RELATES_TO edges between entities within ``max_distance`` characters."""
        if RelationshipType.RELATES_TO not in options.enabled_types:
            return []
        ordered = sorted(entities, key=lambda e: (e.start_pos, e.id))
        relationships: list[Relationship] = []
        for i, first in enumerate(ordered):
            for second in ordered[i + 1:]:
                distance = second.start_pos - first.start_pos
                if distance > options.max_distance:
                    break
                confidence = proximity_confidence(first, second, distance)
                if confidence < options.min_confidence:
                    continue
                position = first.start_pos
                relationships.append(Relationship.create(
                    source_id=first.id,
                    target_id=second.id,
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=confidence,
                    evidence=[Evidence(
                        document_id=document.id,
                        context=evidence_context(document.content, position, options.context_window),
                        position=position,
                        confidence=confidence,
                    )],
                    details=ProximityDetails(
                        source_entity_type=first.entity_type.value,
                        target_entity_type=second.entity_type.value,
                        distance=distance,
                    ),
                ))
        return relationships

    # ==================== Cross-document ====================

    async def cross_document_relationships(
        self,
        documents: list[Document],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        """
        SIMILAR_TO edges between document pairs.

        The first ``similarity_query_chars`` characters of one document are
        searched against the other document's stored chunk vectors.
        """
        if RelationshipType.SIMILAR_TO not in options.enabled_types or len(documents) < 2:
            return []
        if self.embeddings is None:
            logger.debug("No embedding service configured, skipping cross-document pass")
            return []

        cap = options.max_documents_per_cross_link
        if cap is not None and len(documents) > cap:
            logger.info(f"Cross-document pass limited to {cap} of {len(documents)} documents")
            documents = documents[:cap]

        relationships: list[Relationship] = []
        for i, first in enumerate(documents):
            query = first.content[:options.similarity_query_chars]
            if not query.strip():
                continue
            for second in documents[i + 1:]:
                hits = await self.embeddings.semantic_search(
                    query,
                    threshold=options.min_confidence,
                    limit=5,
                    filters=SearchFilters(document_ids=[second.id]),
                )
                if not hits:
                    continue
                similarity = max(hit.similarity for hit in hits)
                if similarity < options.min_confidence:
                    continue
                relationships.append(Relationship.create(
                    source_id=first.id,
                    target_id=second.id,
                    relationship_type=RelationshipType.SIMILAR_TO,
                    confidence=similarity,
                    source_type=NodeKind.DOCUMENT,
                    target_type=NodeKind.DOCUMENT,
                    evidence=[Evidence(
                        document_id=first.id,
                        context="Semantic similarity detected",
                        position=0,
                        confidence=similarity,
                    )],
                    details=SimilarityDetails(
                        similarity=similarity,
                        source_document_type=first.file_type,
                        target_document_type=second.file_type,
                    ),
                ))
        return relationships

    # ==================== Post-processing ====================

    @staticmethod
    def filter_and_rank(
        relationships: list[Relationship],
        options: RelationshipBuildOptions,
    ) -> list[Relationship]:
        """
        Deduplicate by key, drop weak edges and order by strength.

        The highest-confidence instance of each key is kept and absorbs the
        evidence of the others.
        """
        unique: dict[tuple[str, str, str], Relationship] = {}
        for rel in relationships:
            existing = unique.get(rel.key)
            if existing is None:
                unique[rel.key] = rel
                continue
            keep, other = (rel, existing) if rel.confidence > existing.confidence else (existing, rel)
            seen = {(e.document_id, e.position) for e in keep.evidence}
            for ev in other.evidence:
                if (ev.document_id, ev.position) not in seen:
                    keep.evidence.append(ev)
                    seen.add((ev.document_id, ev.position))
            unique[rel.key] = keep

        ranked = [r for r in unique.values() if r.confidence >= options.min_confidence]
        ranked.sort(key=lambda r: (-r.strength, r.id))
        for rel in ranked:
            rel.metadata["evidence_count"] = rel.evidence_count
            rel.metadata["avg_evidence_confidence"] = rel.avg_evidence_confidence
        return ranked

    # ==================== Queries ====================

    async def get_relationships_by_entity(
        self,
        entity_id: str,
        direction: str = "both",
        relationship_types: Optional[list[RelationshipType]] = None,
        limit: Optional[int] = None,
    ) -> list[Relationship]:
        try:
            return await self.store.get_relationships(
                entity_id=entity_id,
                direction=direction,
                relationship_types=relationship_types,
                limit=limit,
            )
        except StorageError as e:
            raise RelationshipBuildError(e.message, details=e.details) from e

    async def get_relationships_by_type(
        self,
        relationship_type: RelationshipType | str,
        limit: Optional[int] = None,
    ) -> list[Relationship]:
        try:
            return await self.store.get_relationships(
                relationship_types=[RelationshipType.parse(relationship_type)],
                limit=limit,
            )
        except StorageError as e:
            raise RelationshipBuildError(e.message, details=e.details) from e

    async def delete_relationships_by_document(self, document_id: str) -> int:
        """Remove a document's evidence and every relationship left unsupported."""
        try:
            deleted = await self.store.delete_relationships_by_document(document_id)
        except StorageError as e:
            raise RelationshipBuildError(e.message, details=e.details) from e
        logger.info(f"Deleted {deleted} relationships supported only by {document_id}")
        return deleted
