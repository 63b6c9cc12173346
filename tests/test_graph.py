"""Tests for graph queries, analytics and edits."""
import networkx as nx
import pytest

from autoorganize.knowledge.entities import EntityType
from autoorganize.knowledge.graph import (
    GraphService,
    average_degree,
    graph_density,
    node_size,
    pagerank,
)
from autoorganize.knowledge.relationships import (
    Evidence,
    ManualDetails,
    NodeKind,
    Relationship,
    RelationshipType,
)
from autoorganize.utils.exceptions import GraphQueryError, UnknownAlgorithmError, ValidationError

from conftest import make_document, make_entity


def edge(source, target, rel_type, strength, **kwargs):
    return Relationship.create(
        source_id=source,
        target_id=target,
        relationship_type=rel_type,
        confidence=strength,
        evidence=[Evidence("doc_seed", f"{source} {target}", 0, strength)],
        **kwargs,
    )


async def seed_star(store):
    """
    Alice and Brian work for Acme, which is located in Boston.

    Four entities, three relationships, plus an unconnected entity when
    requested by the test.
    """
    await store.save_entities([
        make_entity("Alice Moore", EntityType.PERSON, id="ent_a"),
        make_entity("Acme Corp", EntityType.ORGANIZATION, id="ent_b"),
        make_entity("Boston City", EntityType.LOCATION, id="ent_c"),
        make_entity("Brian Lee", EntityType.PERSON, id="ent_d"),
    ])
    await store.upsert_relationships([
        edge("ent_a", "ent_b", RelationshipType.PERSON_WORKS_FOR, 0.9),
        edge("ent_b", "ent_c", RelationshipType.ORGANIZATION_LOCATED_IN, 0.8),
        edge("ent_d", "ent_b", RelationshipType.PERSON_WORKS_FOR, 0.7),
    ])


async def seed_two_triangles(store):
    ids = [f"ent_x{i}" for i in range(3)] + [f"ent_y{i}" for i in range(3)]
    await store.save_entities([make_entity(f"Person {i}", id=i) for i in ids])
    rels = []
    for group in (ids[:3], ids[3:]):
        for i, source in enumerate(group):
            for target in group[i + 1:]:
                rels.append(edge(source, target, RelationshipType.RELATES_TO, 0.9))
    rels.append(edge("ent_x2", "ent_y0", RelationshipType.RELATES_TO, 0.1))
    await store.upsert_relationships(rels)


@pytest.fixture
def graph(store, graph_settings):
    return GraphService(store, settings=graph_settings)


class TestGraphHelpers:
    """Tests for the pure graph helpers."""

    def test_density_and_degree(self):
        assert graph_density(4, 3) == 0.5
        assert graph_density(1, 0) == 0.0
        assert graph_density(0, 0) == 0.0
        assert average_degree(4, 3) == 1.5
        assert average_degree(0, 0) == 0.0

    def test_node_size_bounds(self):
        assert node_size(0) == 20
        assert node_size(15) == 30
        assert node_size(100) == 50

    def test_pagerank_matches_symmetric_star(self):
        star = nx.star_graph(3)
        scores = pagerank(star)

        assert sum(scores.values()) == pytest.approx(1.0)
        assert max(scores, key=scores.get) == 0
        assert scores[1] == pytest.approx(scores[2])
        assert pagerank(nx.Graph()) == {}


class TestGraphReads:
    """Tests for views, neighborhoods and paths."""

    @pytest.mark.asyncio
    async def test_statistics(self, store, graph):
        await seed_star(store)
        stats = await graph.get_graph_statistics()

        assert stats.total_entities == 4
        assert stats.total_relationships == 3
        assert stats.density == 0.5
        assert stats.average_degree == 1.5
        assert stats.connected_components == 1
        assert stats.clustering_coefficient == 0.0
        assert stats.entity_types == {"PERSON": 2, "ORGANIZATION": 1, "LOCATION": 1}
        assert stats.relationship_types == {"PERSON_WORKS_FOR": 2, "ORGANIZATION_LOCATED_IN": 1}

    @pytest.mark.asyncio
    async def test_statistics_of_empty_graph(self, graph):
        stats = await graph.get_graph_statistics()

        assert stats.density == 0.0
        assert stats.connected_components == 0
        assert stats.to_dict()["total_entities"] == 0

    @pytest.mark.asyncio
    async def test_knowledge_graph_around_center(self, store, graph):
        await seed_star(store)

        view = await graph.get_knowledge_graph(center_node_id="ent_a", depth=1)
        assert {n.id for n in view.nodes} == {"ent_a", "ent_b"}
        assert [(e.source, e.target) for e in view.edges] == [("ent_a", "ent_b")]
        assert view.edges[0].label == "PERSON WORKS FOR"

        strong = await graph.get_knowledge_graph(center_node_id="ent_a", depth=2, min_weight=0.85)
        assert {n.id for n in strong.nodes} == {"ent_a", "ent_b"}

    @pytest.mark.asyncio
    async def test_knowledge_graph_without_center(self, store, graph):
        await seed_star(store)

        view = await graph.get_knowledge_graph()
        assert view.nodes[0].id == "ent_b"
        assert view.nodes[0].connections == 3
        assert len(view.edges) == 3

        people = await graph.get_knowledge_graph(entity_types=[EntityType.PERSON])
        assert {n.id for n in people.nodes} == {"ent_a", "ent_d"}
        assert people.edges == []

        payload = view.to_dict()
        assert payload["nodes"][0]["type"] == "ORGANIZATION"

    @pytest.mark.asyncio
    async def test_document_nodes_in_view(self, store, graph):
        document = make_document("Alice Moore wrote this.", title="Memo")
        await store.save_document(document)
        await store.save_entities([make_entity("Alice Moore", id="ent_a", document_id=document.id)])
        await store.upsert_relationships([
            edge("ent_a", document.id, RelationshipType.MENTIONED_IN, 0.9,
                 target_type=NodeKind.DOCUMENT),
        ])

        view = await graph.get_knowledge_graph(center_node_id="ent_a")
        doc_node = next(n for n in view.nodes if n.id == document.id)
        assert doc_node.node_type == "DOCUMENT"
        assert doc_node.label == "Memo"
        assert doc_node.connections == 1

    @pytest.mark.asyncio
    async def test_neighborhood(self, store, graph):
        await seed_star(store)

        first = await graph.get_neighborhood("ent_a", depth=1)
        assert [(e.id, e.distance) for e in first.entities] == [("ent_b", 1)]

        second = await graph.get_neighborhood("ent_a", depth=2)
        assert {(e.id, e.distance) for e in second.entities} == {
            ("ent_b", 1), ("ent_c", 2), ("ent_d", 2),
        }
        assert len(second.relationships) == 3

        outgoing = await graph.get_neighborhood("ent_b", direction="outgoing")
        assert [e.id for e in outgoing.entities] == ["ent_c"]
        incoming = await graph.get_neighborhood("ent_b", direction="incoming")
        assert {e.id for e in incoming.entities} == {"ent_a", "ent_d"}

        limited = await graph.get_neighborhood("ent_b", limit=1)
        assert len(limited.entities) == 1

    @pytest.mark.asyncio
    async def test_neighborhood_materializes_placeholders(self, store, graph):
        await store.save_entities([make_entity("Alice Moore", id="ent_a")])
        await store.upsert_relationships([edge("ent_a", "ent_ghost", RelationshipType.RELATES_TO, 0.6)])

        hood = await graph.get_neighborhood("ent_a", include_properties=False)

        [ghost] = hood.entities
        assert ghost.id == "ent_ghost"
        assert ghost.entity_type == "MISC"
        assert ghost.properties is None
        assert (await store.get_entity("ent_ghost")).is_placeholder

    @pytest.mark.asyncio
    async def test_neighborhood_rejects_direction(self, graph):
        with pytest.raises(ValidationError):
            await graph.get_neighborhood("ent_a", direction="sideways")

    @pytest.mark.asyncio
    async def test_find_paths(self, store, graph):
        await seed_star(store)
        await store.save_entities([make_entity("Carol King", id="ent_e")])

        [path] = await graph.find_paths("ent_a", "ent_c")
        assert path.entities == ["ent_a", "ent_b", "ent_c"]
        assert path.length == 2
        assert path.total_weight == pytest.approx(1.7)

        assert await graph.find_paths("ent_a", "ent_e") == []
        assert await graph.find_paths("ent_a", "ent_missing") == []
        assert await graph.find_paths("ent_a", "ent_c", max_depth=1) == []

        [reverse] = await graph.find_paths("ent_c", "ent_d", algorithm="all_shortest")
        assert reverse.entities == ["ent_c", "ent_b", "ent_d"]

    @pytest.mark.asyncio
    async def test_weighted_path_prefers_strong_edges(self, store, graph):
        await seed_star(store)
        await store.upsert_relationships([edge("ent_a", "ent_c", RelationshipType.RELATES_TO, 0.1)])

        [shortest] = await graph.find_paths("ent_a", "ent_c")
        [weighted] = await graph.find_paths("ent_a", "ent_c", algorithm="weighted")

        assert shortest.entities == ["ent_a", "ent_c"]
        assert weighted.entities == ["ent_a", "ent_b", "ent_c"]

    @pytest.mark.asyncio
    async def test_subgraph(self, store, graph):
        await seed_star(store)

        plain = await graph.get_subgraph(["ent_a", "ent_c"])
        assert {n.id for n in plain.nodes} == {"ent_a", "ent_c"}
        assert plain.edges == []

        widened = await graph.get_subgraph(["ent_a", "ent_c"], include_neighbors=True)
        assert {n.id for n in widened.nodes} == {"ent_a", "ent_b", "ent_c"}
        assert len(widened.edges) == 2

    @pytest.mark.asyncio
    async def test_relationship_types(self, store, graph):
        await seed_star(store)

        assert await graph.get_relationship_types() == [
            {"type": "PERSON_WORKS_FOR", "count": 2},
            {"type": "ORGANIZATION_LOCATED_IN", "count": 1},
        ]


class TestGraphAnalytics:
    """Tests for centrality and community detection."""

    @pytest.mark.asyncio
    async def test_degree_centrality(self, store, graph):
        await seed_star(store)

        ranked = await graph.calculate_centrality()
        assert ranked[0].entity_id == "ent_b"
        assert ranked[0].score == 3.0
        assert ranked[0].rank == 1

        people = await graph.calculate_centrality(entity_types=[EntityType.PERSON])
        assert [s.entity_id for s in people] == ["ent_a", "ent_d"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["betweenness", "closeness", "pagerank"])
    async def test_hub_ranks_first(self, store, graph, algorithm):
        await seed_star(store)

        ranked = await graph.calculate_centrality(algorithm=algorithm, limit=2)

        assert len(ranked) == 2
        assert ranked[0].entity_id == "ent_b"
        assert ranked[0].connections == 3
        assert ranked[0].to_dict()["centrality_score"] == ranked[0].score

    @pytest.mark.asyncio
    async def test_unknown_algorithms(self, graph):
        with pytest.raises(UnknownAlgorithmError):
            await graph.calculate_centrality(algorithm="katz")
        with pytest.raises(UnknownAlgorithmError):
            await graph.detect_communities(algorithm="girvan_newman")
        with pytest.raises(UnknownAlgorithmError):
            await graph.find_paths("ent_a", "ent_b", algorithm="astar")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["louvain", "greedy_modularity"])
    async def test_communities(self, store, graph, algorithm):
        await seed_two_triangles(store)

        communities = await graph.detect_communities(algorithm=algorithm)

        assert [c.entities for c in communities] == [
            ["ent_x0", "ent_x1", "ent_x2"],
            ["ent_y0", "ent_y1", "ent_y2"],
        ]
        assert [c.id for c in communities] == ["community_1", "community_2"]
        assert all(c.density == 1.0 for c in communities)
        assert all(c.modularity > 0 for c in communities)

        assert await graph.detect_communities(algorithm=algorithm, min_size=4) == []
        assert len(await graph.detect_communities(algorithm=algorithm, max_communities=1)) == 1

    @pytest.mark.asyncio
    async def test_communities_without_edges(self, store, graph):
        await store.save_entities([make_entity("Alice Moore")])
        assert await graph.detect_communities() == []


class TestGraphWrites:
    """Tests for manual relationship edits and entity merges."""

    @pytest.mark.asyncio
    async def test_create_bidirectional(self, store, graph):
        await seed_star(store)

        rel = await graph.create_relationship(
            "ent_a", "ent_d", RelationshipType.RELATES_TO, strength=0.8,
            properties={"note": "colleagues"}, bidirectional=True, created_by="tester",
        )

        assert rel.key == ("ent_a", "ent_d", "RELATES_TO")
        assert rel.metadata == {"note": "colleagues"}
        assert rel.evidence[0].context == "Created manually"
        assert rel.created_by == "tester"

        [mirror] = await store.get_relationships(entity_id="ent_d", direction="outgoing",
                                                 relationship_types=[RelationshipType.RELATES_TO])
        assert mirror.target_id == "ent_a"
        assert mirror.details == ManualDetails(bidirectional=True, reverse_of=rel.id)

    @pytest.mark.asyncio
    async def test_create_validation(self, graph):
        with pytest.raises(ValidationError):
            await graph.create_relationship("ent_a", "ent_a", "RELATES_TO")
        with pytest.raises(ValidationError):
            await graph.create_relationship("ent_a", "ent_b", "RELATES_TO", strength=1.5)

    @pytest.mark.asyncio
    async def test_update_merges_properties(self, graph):
        rel = await graph.create_relationship("ent_a", "ent_b", "CAUSES", properties={"a": 1})

        updated = await graph.update_relationship(rel.id, strength=0.4, properties={"b": 2})

        assert updated.strength == 0.4
        assert updated.confidence == 1.0
        assert updated.metadata == {"a": 1, "b": 2}
        assert await graph.update_relationship("rel_missing", strength=0.1) is None
        with pytest.raises(ValidationError):
            await graph.update_relationship(rel.id, confidence=-0.5)

    @pytest.mark.asyncio
    async def test_delete(self, graph):
        rel = await graph.create_relationship("ent_a", "ent_b", "CAUSES")

        assert await graph.delete_relationship(rel.id) is True
        assert await graph.delete_relationship(rel.id) is False

    @pytest.mark.asyncio
    async def test_merge_entities(self, store, graph):
        await seed_star(store)

        merged = await graph.merge_entities("ent_d", "ent_a")

        assert merged.id == "ent_a"
        assert "Brian Lee" in merged.aliases
        assert await store.get_entity("ent_d") is None
        works_for = await store.get_relationships(relationship_types=[RelationshipType.PERSON_WORKS_FOR])
        assert [r.key for r in works_for] == [("ent_a", "ent_b", "PERSON_WORKS_FOR")]
        assert works_for[0].confidence == 0.9

    @pytest.mark.asyncio
    async def test_merge_missing_entity(self, store, graph):
        await seed_star(store)

        with pytest.raises(GraphQueryError):
            await graph.merge_entities("ent_missing", "ent_a")
        with pytest.raises(ValidationError):
            await graph.merge_entities("ent_a", "ent_a")
