"""Tests for graph import and export."""
import json

import pytest

from autoorganize.knowledge.entities import EntityType
from autoorganize.knowledge.exchange import GraphExchange, to_cypher
from autoorganize.knowledge.relationships import Evidence, NodeKind, Relationship, RelationshipType
from autoorganize.storage.sqlite import SQLiteGraphStore
from autoorganize.utils.exceptions import ValidationError

from conftest import make_document, make_entity


async def seed(store):
    document = make_document("Alice Moore works for Acme Corp.")
    await store.save_document(document)
    alice = make_entity("Alice Moore", EntityType.PERSON, id="ent_a", document_id=document.id,
                        aliases=["A. Moore"], metadata={"strategy": "statistical"})
    acme = make_entity("Acme Corp", EntityType.ORGANIZATION, start=21, confidence=0.8,
                       id="ent_b", document_id=document.id)
    await store.save_entities([alice, acme])
    await store.upsert_relationships([
        Relationship.create(
            "ent_a", "ent_b", RelationshipType.PERSON_WORKS_FOR, confidence=0.95,
            evidence=[Evidence(document.id, "Alice Moore works for Acme Corp", 0, 0.95)],
        ),
        Relationship.create(
            "ent_a", document.id, RelationshipType.MENTIONED_IN, confidence=0.9,
            target_type=NodeKind.DOCUMENT,
            evidence=[Evidence(document.id, "", 0, 0.9)],
        ),
    ])
    return document


@pytest.fixture
def target_store(tmp_path):
    return SQLiteGraphStore(tmp_path / "imported.db", enable_wal=False)


class TestExport:
    """Tests for GraphExchange.export_graph."""

    @pytest.mark.asyncio
    async def test_json_export_skips_document_edges(self, store):
        await seed(store)

        payload = json.loads(await GraphExchange(store).export_graph("json"))

        assert payload["version"] == 1
        assert "exported_at" in payload
        assert {e["id"] for e in payload["entities"]} == {"ent_a", "ent_b"}
        assert [r["relationship_type"] for r in payload["relationships"]] == ["PERSON_WORKS_FOR"]

    @pytest.mark.asyncio
    async def test_export_filters(self, store):
        await seed(store)
        exchange = GraphExchange(store)

        people = json.loads(await exchange.export_graph("json", entity_types=[EntityType.PERSON]))
        assert [e["id"] for e in people["entities"]] == ["ent_a"]
        assert people["relationships"] == []

        top = json.loads(await exchange.export_graph("json", max_nodes=1))
        assert [e["id"] for e in top["entities"]] == ["ent_a"]

    @pytest.mark.asyncio
    async def test_gexf_export(self, store):
        await seed(store)
        output = await GraphExchange(store).export_graph("gexf")

        assert "<gexf" in output
        assert "ent_a" in output

    @pytest.mark.asyncio
    async def test_cypher_export(self, store):
        await seed(store)
        output = await GraphExchange(store).export_graph("cypher")

        lines = output.splitlines()
        assert len(lines) == 3
        assert lines[0].startswith("CREATE (:Entity:PERSON {id: \"ent_a\"")
        assert "-[:PERSON_WORKS_FOR {" in lines[2]
        assert lines[2].endswith("]->(b);")

    def test_cypher_escapes_quotes(self):
        entity = make_entity('The "Big" Deal', EntityType.MISC, id="ent_q")
        assert '\\"Big\\"' in to_cypher([entity], [])

    @pytest.mark.asyncio
    async def test_unknown_format(self, store):
        with pytest.raises(ValidationError):
            await GraphExchange(store).export_graph("dot")


class TestImport:
    """Tests for GraphExchange.import_graph."""

    @pytest.mark.asyncio
    async def test_json_round_trip(self, store, target_store):
        await seed(store)
        exported = await GraphExchange(store).export_graph("json")

        result = await GraphExchange(target_store).import_graph(exported, "json")

        assert (result.entities, result.relationships) == (2, 1)
        imported = await target_store.get_entity("ent_a")
        assert imported.aliases == ["A. Moore"]
        [rel] = await target_store.get_relationships()
        assert rel.key == ("ent_a", "ent_b", "PERSON_WORKS_FOR")
        assert rel.evidence[0].context == "Alice Moore works for Acme Corp"

    @pytest.mark.asyncio
    async def test_graphml_round_trip(self, store, target_store):
        await seed(store)
        exported = await GraphExchange(store).export_graph("graphml")
        assert "<graphml" in exported

        result = await GraphExchange(target_store).import_graph(exported.encode("utf-8"), "graphml")

        assert (result.entities, result.relationships) == (2, 1)
        acme = await target_store.get_entity("ent_b")
        assert acme.entity_type == EntityType.ORGANIZATION
        assert acme.start_pos == 21
        assert acme.confidence == pytest.approx(0.8)
        alice = await target_store.get_entity("ent_a")
        assert alice.metadata == {"strategy": "statistical"}
        assert alice.context is None
        [rel] = await target_store.get_relationships()
        assert rel.confidence == pytest.approx(0.95)
        assert rel.evidence_count == 1

    @pytest.mark.asyncio
    async def test_import_skips_self_loops_and_adds_evidence(self, target_store):
        payload = {
            "entities": [make_entity("Alice Moore", id="ent_a").to_dict()],
            "relationships": [
                Relationship.create("ent_a", "ent_a", "RELATES_TO").to_dict(),
                Relationship.create("ent_a", "ent_z", "CAUSES", confidence=0.7).to_dict(),
            ],
        }

        result = await GraphExchange(target_store).import_graph(payload)

        assert result.relationships == 1
        assert len(result.skipped) == 1
        [rel] = await target_store.get_relationships()
        assert rel.evidence[0].context == "Imported"
        assert rel.evidence[0].confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_import_never_lowers_confidence(self, store):
        await seed(store)
        weaker = Relationship.create("ent_a", "ent_b", "PERSON_WORKS_FOR", confidence=0.3)

        await GraphExchange(store).import_graph({"relationships": [weaker.to_dict()]})

        stored = await store.get_relationship(weaker.id)
        assert stored.confidence == 0.95

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data,format", [
        ("{not json", "json"),
        ("<graphml><unclosed>", "graphml"),
        ('{"relationships": [{"source_id": "a"}]}', "json"),
    ])
    async def test_invalid_payload(self, target_store, data, format):
        with pytest.raises(ValidationError) as exc_info:
            await GraphExchange(target_store).import_graph(data, format)
        assert exc_info.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_gexf_import_is_rejected(self, target_store):
        with pytest.raises(ValidationError):
            await GraphExchange(target_store).import_graph("<gexf/>", "gexf")
