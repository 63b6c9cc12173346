"""Tests for the SQLite graph store."""
import asyncio

import pytest

from autoorganize.knowledge.entities import Entity, EntityType, merge_entities
from autoorganize.knowledge.relationships import Evidence, NodeKind, Relationship, RelationshipType
from autoorganize.storage.sqlite import SQLiteGraphStore

from conftest import make_document, make_entity


def relates(source, target, confidence, *evidence, rel_type=RelationshipType.RELATES_TO, **kwargs):
    return Relationship.create(
        source_id=source,
        target_id=target,
        relationship_type=rel_type,
        confidence=confidence,
        evidence=list(evidence),
        **kwargs,
    )


class TestDocumentsAndEntities:
    """Tests for document and entity persistence."""

    @pytest.mark.asyncio
    async def test_document_round_trip(self, store):
        document = make_document("Quarterly numbers", title="Report", file_type="pdf",
                                 metadata={"pages": 3})
        await store.save_document(document)

        loaded = await store.get_document(document.id)
        assert loaded.title == "Report"
        assert loaded.metadata == {"pages": 3}
        assert await store.get_documents(document_types=["text"]) == []
        assert await store.get_documents(document_ids=[]) == []

    @pytest.mark.asyncio
    async def test_entity_round_trip(self, store):
        entity = make_entity("Acme Corp", EntityType.ORGANIZATION, start=4, document_id="doc_1",
                             aliases=["Acme"], metadata={"strategy": "statistical"})
        await store.save_entities([entity])

        loaded = await store.get_entity(entity.id)
        assert loaded == entity
        assert await store.get_entities(entity_types=[EntityType.PERSON]) == []
        assert await store.count_entities_by_type() == {"ORGANIZATION": 1}

    @pytest.mark.asyncio
    async def test_delete_document_cascades(self, store, embeddings):
        document = make_document("alpha beta gamma")
        await store.save_document(document)
        entity = make_entity("Jane Smith", document_id=document.id)
        await store.save_entities([entity])
        await embeddings.chunk_and_embed(document.id, document.content)
        await embeddings.embed_entities([entity])

        assert await store.delete_document(document.id) is True
        assert await store.get_document(document.id) is None
        assert await store.get_entity(entity.id) is None
        assert await store.get_embedding_candidates(model=embeddings.default_model, limit=10) == []
        assert await store.delete_document(document.id) is False

    @pytest.mark.asyncio
    async def test_placeholders_do_not_overwrite(self, store):
        entity = make_entity("Jane Smith")
        await store.save_entities([entity])

        created = await store.ensure_placeholder_entities([entity.id, "ent_ghost", "ent_ghost"])

        assert [e.id for e in created] == ["ent_ghost"]
        assert (await store.get_entity(entity.id)).text == "Jane Smith"
        assert (await store.get_entity("ent_ghost")).is_placeholder

    @pytest.mark.asyncio
    async def test_wal_can_be_disabled(self, tmp_path):
        store = SQLiteGraphStore(tmp_path / "nested" / "plain.db", enable_wal=False)
        await store.save_entities([make_entity("Jane Smith")])

        assert (tmp_path / "nested" / "plain.db").exists()
        assert len(await store.get_entities()) == 1


class TestRelationshipUpsert:
    """Tests for the confidence-guarded relationship upsert."""

    @pytest.mark.asyncio
    async def test_higher_confidence_wins(self, store):
        await store.upsert_relationships([relates("ent_a", "ent_b", 0.6, Evidence("doc_1", "one", 0, 0.6))])
        await store.upsert_relationships([relates("ent_a", "ent_b", 0.9, Evidence("doc_1", "two", 10, 0.9))])
        await store.upsert_relationships([relates("ent_a", "ent_b", 0.7, Evidence("doc_2", "three", 0, 0.7))])

        [stored] = await store.get_relationships()
        assert stored.confidence == 0.9
        assert sorted(e.context for e in stored.evidence) == ["one", "three", "two"]

    @pytest.mark.asyncio
    async def test_concurrent_writers_keep_highest_confidence(self, store):
        await store.upsert_relationships([relates("ent_a", "ent_b", 0.5, Evidence("doc_0", "seed", 0, 0.5))])

        await asyncio.gather(
            store.upsert_relationships([relates("ent_a", "ent_b", 0.95, Evidence("doc_1", "strong", 0, 0.95))]),
            store.upsert_relationships([relates("ent_a", "ent_b", 0.6, Evidence("doc_2", "weak", 0, 0.6))]),
            store.upsert_relationships([relates("ent_a", "ent_b", 0.8, Evidence("doc_3", "middle", 0, 0.8))]),
        )

        [stored] = await store.get_relationships()
        assert stored.confidence == 0.95
        assert stored.evidence_count == 4

    @pytest.mark.asyncio
    async def test_evidence_is_deduplicated(self, store):
        rel = relates("ent_a", "ent_b", 0.6, Evidence("doc_1", "same place", 5, 0.6))
        await store.upsert_relationships([rel])
        await store.upsert_relationships([rel])

        stored = await store.get_relationship(rel.id)
        assert stored.evidence_count == 1

    @pytest.mark.asyncio
    async def test_manual_evidence_without_document(self, store):
        rel = relates("ent_a", "ent_b", 1.0, Evidence(None, "Created manually", 0, 1.0),
                      created_by="user")
        await store.upsert_relationships([rel])

        stored = await store.get_relationship(rel.id)
        assert stored.evidence[0].document_id is None
        assert stored.created_by == "user"

    @pytest.mark.asyncio
    async def test_relationship_filters(self, store):
        await store.upsert_relationships([
            relates("ent_a", "ent_b", 0.9, Evidence("doc_1", "x", 0, 0.9)),
            relates("ent_b", "ent_c", 0.6, Evidence("doc_1", "y", 5, 0.6),
                    rel_type=RelationshipType.CAUSES),
        ])

        assert len(await store.get_relationships(entity_id="ent_b")) == 2
        assert len(await store.get_relationships(entity_id="ent_b", direction="outgoing")) == 1
        assert len(await store.get_relationships(min_strength=0.8)) == 1
        causes = await store.get_relationships(relationship_types=[RelationshipType.CAUSES])
        assert [r.target_id for r in causes] == ["ent_c"]
        assert len(await store.get_relationships(node_ids=["ent_a", "ent_b"])) == 1
        assert await store.count_relationships_by_type() == {"RELATES_TO": 1, "CAUSES": 1}

    @pytest.mark.asyncio
    async def test_update_and_delete(self, store):
        rel = relates("ent_a", "ent_b", 0.6, Evidence("doc_1", "x", 0, 0.6))
        await store.upsert_relationships([rel])

        updated = await store.update_relationship(rel.id, strength=0.2, metadata={"note": "weak"})
        assert updated.strength == 0.2
        assert updated.metadata == {"note": "weak"}
        assert await store.update_relationship("rel_missing", strength=0.1) is None

        assert await store.delete_relationship(rel.id) is True
        assert await store.delete_relationship(rel.id) is False

    @pytest.mark.asyncio
    async def test_delete_relationships_by_document(self, store):
        await store.upsert_relationships([
            relates("ent_a", "ent_b", 0.9, Evidence("doc_1", "only one", 0, 0.9)),
            relates("ent_b", "ent_c", 0.9, Evidence("doc_1", "x", 0, 0.9), Evidence("doc_2", "y", 0, 0.9)),
            relates("ent_a", "doc_1", 0.9, Evidence("doc_9", "z", 0, 0.9),
                    rel_type=RelationshipType.MENTIONED_IN, target_type=NodeKind.DOCUMENT),
        ])

        assert await store.delete_relationships_by_document("doc_1") == 2

        [survivor] = await store.get_relationships()
        assert survivor.key == ("ent_b", "ent_c", "RELATES_TO")
        assert [e.document_id for e in survivor.evidence] == ["doc_2"]


class TestGraphQueries:
    """Tests for store-side traversal and counting."""

    @pytest.mark.asyncio
    async def test_expand_from(self, store):
        await store.upsert_relationships([
            relates("ent_a", "ent_b", 0.9, Evidence("doc_1", "x", 0, 0.9)),
            relates("ent_c", "ent_b", 0.9, Evidence("doc_1", "y", 0, 0.9)),
            relates("ent_c", "ent_d", 0.3, Evidence("doc_1", "z", 0, 0.3)),
        ])

        assert await store.expand_from("ent_a", 1) == [("ent_a", 0), ("ent_b", 1)]
        assert await store.expand_from("ent_a", 3) == [
            ("ent_a", 0), ("ent_b", 1), ("ent_c", 2), ("ent_d", 3),
        ]
        assert await store.expand_from("ent_a", 3, min_strength=0.5) == [
            ("ent_a", 0), ("ent_b", 1), ("ent_c", 2),
        ]

    @pytest.mark.asyncio
    async def test_degree_counts_and_top_connected(self, store):
        hub = make_entity("Acme Corp", EntityType.ORGANIZATION, id="ent_hub")
        spokes = [make_entity(f"Person {c}", id=f"ent_{c}") for c in "xyz"]
        await store.save_entities([hub, *spokes])
        await store.upsert_relationships([
            relates(s.id, hub.id, 0.8, Evidence("doc_1", s.text, 0, 0.8)) for s in spokes
        ])

        degrees = await store.degree_counts()
        assert degrees[0] == ("ent_hub", 3)
        assert await store.degree_counts(entity_types=[EntityType.ORGANIZATION]) == [("ent_hub", 3)]

        top = await store.top_connected_entities(1)
        assert top[0][0].id == "ent_hub"
        assert top[0][1] == 3

    @pytest.mark.asyncio
    async def test_merge_entities_repoints_relationships(self, store):
        source = make_entity("J. Doe", id="ent_src")
        target = make_entity("John Doe", id="ent_tgt")
        other = make_entity("Acme Corp", EntityType.ORGANIZATION, id="ent_org")
        await store.save_entities([source, target, other])
        await store.upsert_relationships([
            relates("ent_src", "ent_org", 0.8, Evidence("doc_1", "a", 0, 0.8)),
            relates("ent_tgt", "ent_org", 0.6, Evidence("doc_2", "b", 0, 0.6)),
            relates("ent_src", "ent_tgt", 0.7, Evidence("doc_1", "c", 9, 0.7)),
        ])

        moved = await store.merge_entities("ent_src", merge_entities(source, target))

        assert moved == 1
        assert await store.get_entity("ent_src") is None
        assert "J. Doe" in (await store.get_entity("ent_tgt")).aliases
        [rel] = await store.get_relationships()
        assert rel.key == ("ent_tgt", "ent_org", "RELATES_TO")
        assert rel.confidence == 0.8
        assert rel.evidence_count == 2
