"""End-to-end tests for document processing."""
import pytest

from autoorganize.knowledge.builder import RelationshipBuilder, RelationshipBuildOptions
from autoorganize.knowledge.entities import EntityType
from autoorganize.knowledge.extraction import EntityExtractor, StoreKnowledgeBase
from autoorganize.knowledge.graph import GraphService
from autoorganize.knowledge.pipeline import DocumentProcessor
from autoorganize.knowledge.relationships import RelationshipType
from autoorganize.utils.exceptions import ExtractionError

from conftest import make_document


class FailingExtractor:
    async def extract(self, text, options=None, document_id=None):
        raise ExtractionError("Entity extraction failed: tokenizer crashed")


@pytest.fixture
def processor(store, embeddings, extraction_settings, relationship_settings):
    return DocumentProcessor(
        store,
        EntityExtractor(StoreKnowledgeBase(store), settings=extraction_settings),
        RelationshipBuilder(store, embeddings, settings=relationship_settings),
        embeddings,
    )


class TestDocumentProcessor:
    """Tests for DocumentProcessor."""

    @pytest.mark.asyncio
    async def test_process_contact_note(self, store, processor):
        document = make_document(
            "Contact John Doe at john.doe@example.com or call 555-123-4567", title="Contact"
        )

        result = await processor.process(document)

        assert {e.entity_type for e in result.entities} == {
            EntityType.PERSON, EntityType.EMAIL, EntityType.PHONE,
        }
        assert len(result.embedding_ids) == 1
        assert result.metadata["language"] == "en"

        stored = await store.get_entities(document_id=document.id)
        assert len(stored) == 3
        mentions = await store.get_relationships(relationship_types=[RelationshipType.MENTIONED_IN])
        assert {r.target_id for r in mentions} == {document.id}
        assert len(mentions) == 3
        assert result.to_dict()["relationships"] == len(result.build.relationships)

    @pytest.mark.asyncio
    async def test_processed_graph_is_queryable(self, store, processor, graph_settings):
        document = make_document("John Smith works for Acme Corp. He enjoys the job.")
        await processor.process(document)

        graph = GraphService(store, settings=graph_settings)
        [works_for] = await store.get_relationships(
            relationship_types=[RelationshipType.PERSON_WORKS_FOR]
        )
        [path] = await graph.find_paths(works_for.source_id, works_for.target_id)
        assert path.length == 1

        stats = await graph.get_graph_statistics()
        assert stats.entity_types == {"PERSON": 1, "ORGANIZATION": 1}

    @pytest.mark.asyncio
    async def test_embed_entities(self, store, processor):
        document = make_document("Contact John Doe at john.doe@example.com")

        result = await processor.process(document, embed_entities=True)

        assert len(result.embedding_ids) == 1 + len(result.entities)

    @pytest.mark.asyncio
    async def test_cross_document_link_after_batch_build(self, store, processor, embeddings,
                                                         relationship_settings):
        first = make_document("graph storage keeps evidence for every edge", title="First")
        second = make_document("graph storage keeps evidence for every edge", title="Second")
        await processor.process(first)
        await processor.process(second)

        builder = RelationshipBuilder(store, embeddings, settings=relationship_settings)
        result = await builder.build([first.id, second.id])

        similar = [r for r in result.relationships if r.relationship_type == RelationshipType.SIMILAR_TO]
        assert len(similar) == 1

    @pytest.mark.asyncio
    async def test_remove(self, store, processor):
        document = make_document("Contact John Doe at john.doe@example.com")
        await processor.process(document, build_options=RelationshipBuildOptions(
            enabled_types={RelationshipType.MENTIONED_IN}
        ))

        assert await processor.remove(document.id, drop_relationships=True) is True
        assert await store.get_entities(document_id=document.id) == []
        assert await store.get_relationships() == []
        assert await store.get_embeddings_by_document(document.id) == []
        assert await processor.remove(document.id) is False

    @pytest.mark.asyncio
    async def test_extraction_failure_propagates(self, store, embeddings, relationship_settings):
        processor = DocumentProcessor(
            store,
            FailingExtractor(),
            RelationshipBuilder(store, embeddings, settings=relationship_settings),
            embeddings,
        )
        document = make_document("Contact John Doe")

        with pytest.raises(ExtractionError):
            await processor.process(document)
        assert await store.get_document(document.id) is not None
        assert await store.get_entities() == []

    @pytest.mark.asyncio
    async def test_reprocessing_replaces_earlier_output(self, store, processor):
        document = make_document("Contact John Doe at john.doe@example.com or call 555-123-4567")
        await processor.process(document)

        revised = make_document("Contact John Doe at jdoe@example.org", document_id=document.id)
        result = await processor.process(revised)

        stored = await store.get_entities(document_id=document.id)
        assert {e.id for e in stored} == {e.id for e in result.entities}
        assert {e.entity_type for e in stored} == {EntityType.PERSON, EntityType.EMAIL}
        assert [e.text for e in stored if e.entity_type == EntityType.EMAIL] == ["jdoe@example.org"]
        assert len(await store.get_embeddings_by_document(document.id)) == 1

        mentions = await store.get_relationships(relationship_types=[RelationshipType.MENTIONED_IN])
        assert {r.source_id for r in mentions} == {e.id for e in stored}
