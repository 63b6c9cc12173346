"""
Document Processing.

Runs one document through the knowledge core: store it, extract and store
its entities, embed its content, then build its relationships.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from autoorganize.knowledge.builder import BuildResult, RelationshipBuilder, RelationshipBuildOptions
from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity
from autoorganize.knowledge.extraction import EntityExtractor, ExtractionOptions
from autoorganize.services.embedding.service import EmbeddingService
from autoorganize.storage.base import GraphStore
from autoorganize.utils.logging import LogContext, get_logger


logger = get_logger(__name__)


@dataclass
class ProcessingResult:
    """Outcome of processing one document."""
    document_id: str
    entities: list[Entity]
    embedding_ids: list[str]
    build: BuildResult
    processing_time: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "entities": [e.to_dict() for e in self.entities],
            "embedding_ids": self.embedding_ids,
            "relationships": len(self.build.relationships),
            "processing_time": self.processing_time,
            "metadata": self.metadata,
        }


class DocumentProcessor:
    """
    Per-document control flow over the knowledge core.

    Documents are processed one at a time; callers wanting parallelism or
    continue-on-error semantics drive it per document.

    Usage:
        processor = DocumentProcessor(store, extractor, builder, embeddings)
        result = await processor.process(Document.create("Notes", text))
    """

    def __init__(
        self,
        store: GraphStore,
        extractor: EntityExtractor,
        builder: RelationshipBuilder,
        embeddings: Optional[EmbeddingService] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.builder = builder
        self.embeddings = embeddings

    async def process(
        self,
        document: Document,
        extraction_options: Optional[ExtractionOptions] = None,
        build_options: Optional[RelationshipBuildOptions] = None,
        embed_entities: bool = False,
    ) -> ProcessingResult:
        """
        Process a document end to end.

        Reprocessing a known document replaces its earlier output: the old
        entities, embeddings and the relationship evidence drawn from it are
        removed first.

        Failures propagate as the typed error of the failing stage; stages
        already completed are not rolled back.

        Args:
            document: Document to process
            extraction_options: Entity extraction options
            build_options: Relationship build options
            embed_entities: Also store one vector per extracted entity

        Returns:
            ProcessingResult with entities, embedding ids and build result
        """
        start = time.time()
        if await self.store.get_document(document.id) is not None:
            await self.builder.delete_relationships_by_document(document.id)
            await self.store.delete_document_outputs(document.id)
        await self.store.save_document(document)

        extraction = await self.extractor.extract(
            document.content, extraction_options, document_id=document.id
        )
        await self.store.save_entities(extraction.entities)

        embedding_ids: list[str] = []
        if self.embeddings is not None and document.content.strip():
            embedding_ids = await self.embeddings.chunk_and_embed(document.id, document.content)
            if embed_entities:
                embedding_ids.extend(await self.embeddings.embed_entities(extraction.entities))

        build = await self.builder.build([document.id], build_options)

        elapsed = time.time() - start
        with LogContext(document_id=document.id):
            logger.info(
                f"Processed '{document.title}': {len(extraction.entities)} entities, "
                f"{len(embedding_ids)} embeddings, {len(build.relationships)} relationships "
                f"in {elapsed:.2f}s"
            )

        return ProcessingResult(
            document_id=document.id,
            entities=extraction.entities,
            embedding_ids=embedding_ids,
            build=build,
            processing_time=elapsed,
            metadata={
                "extraction_confidence": extraction.confidence,
                "tokens_processed": extraction.tokens_processed,
                "language": extraction.language,
            },
        )

    async def remove(self, document_id: str, drop_relationships: bool = False) -> bool:
        """
        Delete a document with its entities and embeddings.

        Relationships stay in place unless *drop_relationships* is set, in
        which case the document's evidence is removed and relationships left
        without evidence are deleted.
        """
        if drop_relationships:
            await self.builder.delete_relationships_by_document(document_id)
        deleted = await self.store.delete_document(document_id)
        with LogContext(document_id=document_id):
            if deleted:
                logger.info("Document removed")
            else:
                logger.warning("Document not found")
        return deleted
