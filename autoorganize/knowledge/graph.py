"""
Knowledge Graph Service.

Read, analytics and mutation operations over the persisted graph. Traversal
filters run in the store; path finding, non-degree centrality, community
detection and structural statistics load the relevant edges into NetworkX.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np

from autoorganize.config import GraphConfig, get_settings
from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity, EntityType, MergeStrategy
from autoorganize.knowledge.entities import merge_entities as merge_entity_records
from autoorganize.knowledge.relationships import (
    Evidence,
    ManualDetails,
    NodeKind,
    Relationship,
    RelationshipType,
    clamp,
)
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import (
    GraphQueryError,
    StorageError,
    UnknownAlgorithmError,
    ValidationError,
)
from autoorganize.utils.logging import get_logger

try:
    import networkx as nx
except ImportError:
    raise ImportError("networkx required. Install with: pip install networkx")


logger = get_logger(__name__)

DOCUMENT_NODE_TYPE = "DOCUMENT"
MIN_NODE_SIZE = 20
MAX_NODE_SIZE = 50


# ==================== Result Types ====================

@dataclass
class GraphNode:
    """A node of a graph view."""
    id: str
    label: str
    node_type: str
    size: int
    connections: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.node_type,
            "size": self.size,
            "connections": self.connections,
            "metadata": self.metadata,
        }


@dataclass
class GraphEdge:
    """An edge of a graph view."""
    id: str
    source: str
    target: str
    label: str
    edge_type: str
    weight: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_relationship(cls, rel: Relationship) -> "GraphEdge":
        return cls(
            id=rel.id,
            source=rel.source_id,
            target=rel.target_id,
            label=rel.relationship_type.value.replace("_", " "),
            edge_type=rel.relationship_type.value,
            weight=rel.strength,
            metadata={
                "confidence": rel.confidence,
                "evidence_count": rel.evidence_count,
                "context": [e.context for e in rel.evidence if e.context][:3],
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "label": self.label,
            "type": self.edge_type,
            "weight": self.weight,
            "metadata": self.metadata,
        }


@dataclass
class KnowledgeGraphView:
    """Nodes plus the edges connecting them."""
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class NeighborEntity:
    """An entity reached from the center of a neighborhood."""
    id: str
    entity_type: str
    name: str
    distance: int
    properties: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.entity_type,
            "name": self.name,
            "distance": self.distance,
            "properties": self.properties,
        }


@dataclass
class Neighborhood:
    """Entities around a center entity and the relationships linking them."""
    center_entity: str
    entities: list[NeighborEntity]
    relationships: list[Relationship]
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "center_entity": self.center_entity,
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
            "depth": self.depth,
        }


@dataclass
class GraphPath:
    """A path between two nodes."""
    entities: list[str]
    relationships: list[Relationship]
    length: int
    total_weight: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": self.entities,
            "relationships": [r.to_dict() for r in self.relationships],
            "length": self.length,
            "total_weight": self.total_weight,
        }


@dataclass
class CentralityScore:
    entity_id: str
    entity_name: str
    entity_type: str
    score: float
    connections: int
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type,
            "centrality_score": self.score,
            "connections": self.connections,
            "rank": self.rank,
        }


@dataclass
class Community:
    id: str
    entities: list[str]
    size: int
    density: float
    modularity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entities": self.entities,
            "size": self.size,
            "density": self.density,
            "modularity": self.modularity,
        }


@dataclass
class GraphStatistics:
    total_entities: int
    total_relationships: int
    entity_types: dict[str, int]
    relationship_types: dict[str, int]
    density: float
    average_degree: float
    connected_components: int
    clustering_coefficient: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entities": self.total_entities,
            "total_relationships": self.total_relationships,
            "entity_types": self.entity_types,
            "relationship_types": self.relationship_types,
            "density": self.density,
            "average_degree": self.average_degree,
            "connected_components": self.connected_components,
            "clustering_coefficient": self.clustering_coefficient,
        }


# ==================== Algorithm Registries ====================

def pagerank(graph: "nx.Graph", alpha: float = 0.85, max_iter: int = 100, tol: float = 1.0e-6) -> dict[str, float]:
    """PageRank by power iteration over the weighted adjacency matrix."""
    nodes = list(graph.nodes)
    n = len(nodes)
    if n == 0:
        return {}
    adjacency = nx.to_numpy_array(graph, nodelist=nodes, weight="weight")
    out_weight = adjacency.sum(axis=1)
    dangling = out_weight == 0
    transition = np.divide(
        adjacency, out_weight[:, None], out=np.zeros_like(adjacency), where=~dangling[:, None]
    )

    rank = np.full(n, 1.0 / n)
    for _ in range(max_iter):
        previous = rank
        rank = alpha * (previous @ transition + previous[dangling].sum() / n) + (1 - alpha) / n
        if np.abs(rank - previous).sum() < n * tol:
            break
    return dict(zip(nodes, rank.tolist()))


CENTRALITY_ALGORITHMS: dict[str, Callable[["nx.Graph"], dict[str, float]]] = {
    "betweenness": lambda g: nx.betweenness_centrality(g, normalized=True),
    "closeness": nx.closeness_centrality,
    "eigenvector": lambda g: nx.eigenvector_centrality(g, max_iter=1000, weight="weight"),
    "pagerank": pagerank,
}

COMMUNITY_ALGORITHMS: dict[str, Callable[["nx.Graph", int], list[set[str]]]] = {
    "louvain": lambda g, seed: nx.community.louvain_communities(g, weight="weight", seed=seed),
    "label_propagation": lambda g, seed: list(nx.community.label_propagation_communities(g)),
    "greedy_modularity": lambda g, seed: nx.community.greedy_modularity_communities(g, weight="weight"),
}

PATH_ALGORITHMS = ("shortest", "all_shortest", "weighted")


def node_size(connections: int) -> int:
    return min(MAX_NODE_SIZE, max(MIN_NODE_SIZE, connections * 2))


def graph_density(nodes: int, edges: int) -> float:
    if nodes <= 1:
        return 0.0
    return (2 * edges) / (nodes * (nodes - 1))


def average_degree(nodes: int, edges: int) -> float:
    if nodes == 0:
        return 0.0
    return (2 * edges) / nodes


@contextmanager
def query_errors(operation: str):
    """Translate storage and graph library failures into GraphQueryError."""
    try:
        yield
    except (StorageError, nx.NetworkXException) as e:
        message = getattr(e, "message", str(e))
        raise GraphQueryError(f"{operation} failed: {message}", details=type(e).__name__) from e


class GraphService:
    """
    Graph queries, analytics and edits.

    Usage:
        graph = GraphService(store)
        view = await graph.get_knowledge_graph(center_node_id=entity.id, depth=2)
        paths = await graph.find_paths(a.id, b.id)
        stats = await graph.get_graph_statistics()
    """

    def __init__(self, store: GraphStore, settings: Optional[GraphConfig] = None):
        self.store = store
        self.settings = settings or get_settings().graph

    # ==================== Loading ====================

    async def _load_graph(
        self,
        relationship_types: Optional[list[RelationshipType]] = None,
        entities_only: bool = False,
    ) -> "nx.Graph":
        """
        Load the persisted graph as an undirected NetworkX graph.

        Every entity becomes a node. Parallel and opposite relationships
        between a pair collapse to the strongest one, kept on the edge as
        ``relationship``.
        """
        graph = nx.Graph()
        for entity in await self.store.get_entities():
            graph.add_node(
                entity.id,
                kind=NodeKind.ENTITY.value,
                label=entity.text,
                type=entity.entity_type.value,
            )

        for rel in await self.store.get_relationships(relationship_types=relationship_types):
            if rel.source_id == rel.target_id:
                continue
            if entities_only and not (rel.source_id in graph and rel.target_id in graph):
                continue
            existing = graph.get_edge_data(rel.source_id, rel.target_id)
            if existing is not None and existing["weight"] >= rel.strength:
                continue
            graph.add_edge(
                rel.source_id,
                rel.target_id,
                weight=rel.strength,
                cost=1.0 / max(rel.strength, 1e-6),
                relationship=rel,
            )
        return graph

    async def _describe_nodes(self, node_ids: list[str]) -> tuple[dict[str, Entity], dict[str, Document]]:
        entities = {e.id: e for e in await self.store.get_entities(entity_ids=node_ids)}
        missing = [nid for nid in node_ids if nid not in entities]
        documents = {d.id: d for d in await self.store.get_documents(document_ids=missing)}
        return entities, documents

    async def _build_view(
        self,
        node_ids: list[str],
        min_weight: float = 0.0,
        relationship_types: Optional[list[RelationshipType]] = None,
        entity_types: Optional[list[EntityType]] = None,
        keep: Optional[str] = None,
    ) -> KnowledgeGraphView:
        entities, documents = await self._describe_nodes(node_ids)
        degrees = dict(await self.store.degree_counts())
        allowed = {EntityType.parse(t) for t in entity_types} if entity_types else None

        nodes: list[GraphNode] = []
        for node_id in node_ids:
            if node_id in entities:
                entity = entities[node_id]
                if allowed is not None and entity.entity_type not in allowed and node_id != keep:
                    continue
                connections = degrees.get(node_id, 0)
                nodes.append(GraphNode(
                    id=node_id,
                    label=entity.text,
                    node_type=entity.entity_type.value,
                    size=node_size(connections),
                    connections=connections,
                    metadata={
                        "confidence": entity.confidence,
                        "document_id": entity.document_id,
                        "placeholder": entity.is_placeholder,
                    },
                ))
            elif node_id in documents and (allowed is None or node_id == keep):
                document = documents[node_id]
                nodes.append(GraphNode(
                    id=node_id,
                    label=document.title,
                    node_type=DOCUMENT_NODE_TYPE,
                    size=MIN_NODE_SIZE,
                    metadata={"file_type": document.file_type},
                ))

        kept = [n.id for n in nodes]
        rels = await self.store.get_relationships(
            node_ids=kept,
            relationship_types=relationship_types,
            min_strength=min_weight,
        )
        edge_counts: dict[str, int] = {}
        for rel in rels:
            edge_counts[rel.source_id] = edge_counts.get(rel.source_id, 0) + 1
            edge_counts[rel.target_id] = edge_counts.get(rel.target_id, 0) + 1
        for node in nodes:
            if node.node_type == DOCUMENT_NODE_TYPE:
                node.connections = edge_counts.get(node.id, 0)
                node.size = node_size(node.connections)

        return KnowledgeGraphView(
            nodes=nodes,
            edges=[GraphEdge.from_relationship(rel) for rel in rels],
        )

    # ==================== Read Operations ====================

    async def get_knowledge_graph(
        self,
        center_node_id: Optional[str] = None,
        depth: Optional[int] = None,
        min_weight: float = 0.0,
        max_nodes: Optional[int] = None,
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> KnowledgeGraphView:
        """
        Get a view of the graph.

        With a center node, performs a breadth expansion of up to *depth*
        hops; otherwise returns the *max_nodes* best-connected entities.
        Edges are limited to those with ``strength >= min_weight`` between
        returned nodes.
        """
        depth = self.settings.default_depth if depth is None else depth
        max_nodes = self.settings.default_max_nodes if max_nodes is None else max_nodes

        with query_errors("get_knowledge_graph"):
            if center_node_id:
                reach = await self.store.expand_from(
                    center_node_id,
                    depth=depth,
                    min_strength=min_weight,
                    relationship_types=relationship_types,
                    limit=max_nodes,
                )
                node_ids = [node_id for node_id, _ in reach]
            else:
                ranked = await self.store.top_connected_entities(max_nodes, entity_types=entity_types)
                node_ids = [entity.id for entity, _ in ranked]

            view = await self._build_view(
                node_ids,
                min_weight=min_weight,
                relationship_types=relationship_types,
                entity_types=entity_types,
                keep=center_node_id,
            )

        logger.debug(f"Graph view: {len(view.nodes)} nodes, {len(view.edges)} edges")
        return view

    async def get_neighborhood(
        self,
        entity_id: str,
        depth: int = 1,
        direction: str = "both",
        relationship_types: Optional[list[RelationshipType]] = None,
        limit: int = 50,
        include_properties: bool = True,
    ) -> Neighborhood:
        """
        Get entities reachable from *entity_id* following *direction*.

        Neighbor ids with no stored entity or document are materialized as
        placeholder entities.
        """
        if direction not in ("outgoing", "incoming", "both"):
            raise ValidationError("direction", "must be 'outgoing', 'incoming' or 'both'")

        with query_errors("get_neighborhood"):
            distances: dict[str, int] = {}
            relationships: dict[str, Relationship] = {}
            frontier = [entity_id]
            for level in range(1, max(1, depth) + 1):
                next_frontier = []
                for node_id in frontier:
                    for rel in await self.store.get_relationships(
                        entity_id=node_id,
                        direction=direction,
                        relationship_types=relationship_types,
                    ):
                        other = rel.target_id if rel.source_id == node_id else rel.source_id
                        if other == entity_id:
                            continue
                        if other not in distances:
                            if len(distances) >= limit:
                                continue
                            distances[other] = level
                            next_frontier.append(other)
                        relationships.setdefault(rel.id, rel)
                frontier = next_frontier
                if not frontier:
                    break

            neighbor_ids = list(distances)
            entities, documents = await self._describe_nodes(neighbor_ids)
            dangling = [nid for nid in neighbor_ids if nid not in entities and nid not in documents]
            if dangling:
                for placeholder in await self.store.ensure_placeholder_entities(dangling):
                    entities[placeholder.id] = placeholder
                for entity in await self.store.get_entities(entity_ids=dangling):
                    entities.setdefault(entity.id, entity)

        neighbors = []
        for node_id in neighbor_ids:
            if node_id in documents:
                document = documents[node_id]
                neighbors.append(NeighborEntity(
                    id=node_id,
                    entity_type=DOCUMENT_NODE_TYPE,
                    name=document.title,
                    distance=distances[node_id],
                    properties=document.metadata if include_properties else None,
                ))
            else:
                entity = entities[node_id]
                neighbors.append(NeighborEntity(
                    id=node_id,
                    entity_type=entity.entity_type.value,
                    name=entity.text,
                    distance=distances[node_id],
                    properties=entity.metadata if include_properties else None,
                ))

        return Neighborhood(
            center_entity=entity_id,
            entities=neighbors,
            relationships=list(relationships.values()),
            depth=depth,
        )

    async def find_paths(
        self,
        source_id: str,
        target_id: str,
        max_depth: Optional[int] = None,
        algorithm: str = "shortest",
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[GraphPath]:
        """
        Find paths between two nodes, ignoring edge direction.

        Args:
            source_id: Start node
            target_id: End node
            max_depth: Maximum hops; longer paths are dropped
            algorithm: "shortest", "all_shortest" or "weighted" (strongest edges)
            relationship_types: Restrict to these types

        Returns:
            Paths found; an empty list when the nodes are not connected
        """
        if algorithm not in PATH_ALGORITHMS:
            raise UnknownAlgorithmError("path", algorithm, list(PATH_ALGORITHMS))
        max_depth = self.settings.max_path_depth if max_depth is None else max_depth

        with query_errors("find_paths"):
            graph = await self._load_graph(relationship_types)
            if source_id not in graph or target_id not in graph or source_id == target_id:
                return []
            try:
                if algorithm == "shortest":
                    node_paths = [nx.shortest_path(graph, source_id, target_id)]
                elif algorithm == "all_shortest":
                    node_paths = list(nx.all_shortest_paths(graph, source_id, target_id))
                else:
                    node_paths = [nx.dijkstra_path(graph, source_id, target_id, weight="cost")]
            except nx.NetworkXNoPath:
                return []

        paths = []
        for node_path in node_paths:
            if len(node_path) - 1 > max_depth:
                continue
            rels = [
                graph.edges[node_path[i], node_path[i + 1]]["relationship"]
                for i in range(len(node_path) - 1)
            ]
            paths.append(GraphPath(
                entities=node_path,
                relationships=rels,
                length=len(rels),
                total_weight=sum(r.strength for r in rels),
            ))
        return paths

    async def calculate_centrality(
        self,
        algorithm: str = "degree",
        limit: int = 10,
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[CentralityScore]:
        """
        Rank entities by centrality.

        "degree" counts incident relationships. Other algorithms are looked
        up in CENTRALITY_ALGORITHMS and run over the undirected graph.
        """
        if algorithm != "degree" and algorithm not in CENTRALITY_ALGORITHMS:
            raise UnknownAlgorithmError(
                "centrality", algorithm, ["degree", *CENTRALITY_ALGORITHMS]
            )

        with query_errors("calculate_centrality"):
            if algorithm == "degree":
                ranked = await self.store.degree_counts(
                    limit=limit,
                    entity_types=entity_types,
                    relationship_types=relationship_types,
                )
                entities = {
                    e.id: e for e in await self.store.get_entities(entity_ids=[i for i, _ in ranked])
                }
                return [
                    CentralityScore(
                        entity_id=entity_id,
                        entity_name=entities[entity_id].text,
                        entity_type=entities[entity_id].entity_type.value,
                        score=float(degree),
                        connections=degree,
                        rank=rank,
                    )
                    for rank, (entity_id, degree) in enumerate(ranked, start=1)
                    if entity_id in entities
                ]

            graph = await self._load_graph(relationship_types)
            scores = CENTRALITY_ALGORITHMS[algorithm](graph) if graph.number_of_nodes() else {}

        allowed = {EntityType.parse(t) for t in entity_types} if entity_types else None
        candidates = [
            (node_id, score) for node_id, score in scores.items()
            if graph.nodes[node_id].get("kind") == NodeKind.ENTITY.value
            and (allowed is None or EntityType(graph.nodes[node_id]["type"]) in allowed)
        ]
        candidates.sort(key=lambda item: (-item[1], item[0]))

        return [
            CentralityScore(
                entity_id=node_id,
                entity_name=graph.nodes[node_id]["label"],
                entity_type=graph.nodes[node_id]["type"],
                score=float(score),
                connections=graph.degree(node_id),
                rank=rank,
            )
            for rank, (node_id, score) in enumerate(candidates[:limit], start=1)
        ]

    async def detect_communities(
        self,
        algorithm: str = "louvain",
        min_size: int = 2,
        max_communities: int = 10,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[Community]:
        """
        Partition entities into densely connected groups.

        Communities smaller than *min_size* are dropped; the rest are
        returned largest first.
        """
        if algorithm not in COMMUNITY_ALGORITHMS:
            raise UnknownAlgorithmError("community", algorithm, list(COMMUNITY_ALGORITHMS))

        with query_errors("detect_communities"):
            graph = await self._load_graph(relationship_types, entities_only=True)
            if graph.number_of_edges() == 0:
                return []
            partition = COMMUNITY_ALGORITHMS[algorithm](graph, self.settings.community_seed)

        total_weight = graph.size(weight="weight")
        communities = []
        for members in sorted(partition, key=lambda c: (-len(c), min(c))):
            if len(members) < min_size:
                continue
            subgraph = graph.subgraph(members)
            internal = subgraph.size(weight="weight")
            degree_sum = sum(d for _, d in graph.degree(members, weight="weight"))
            modularity = 0.0
            if total_weight > 0:
                modularity = internal / total_weight - (degree_sum / (2 * total_weight)) ** 2
            communities.append(Community(
                id=f"community_{len(communities) + 1}",
                entities=sorted(members),
                size=len(members),
                density=nx.density(subgraph),
                modularity=modularity,
            ))
            if len(communities) >= max_communities:
                break

        logger.info(f"Detected {len(communities)} communities with {algorithm}")
        return communities

    async def get_graph_statistics(self) -> GraphStatistics:
        """Type histograms, totals, density, degree and structural measures."""
        with query_errors("get_graph_statistics"):
            entity_types = await self.store.count_entities_by_type()
            relationship_types = await self.store.count_relationships_by_type()
            graph = await self._load_graph(entities_only=True)

        total_entities = sum(entity_types.values())
        total_relationships = sum(relationship_types.values())
        has_nodes = graph.number_of_nodes() > 0

        return GraphStatistics(
            total_entities=total_entities,
            total_relationships=total_relationships,
            entity_types=entity_types,
            relationship_types=relationship_types,
            density=graph_density(total_entities, total_relationships),
            average_degree=average_degree(total_entities, total_relationships),
            connected_components=nx.number_connected_components(graph) if has_nodes else 0,
            clustering_coefficient=nx.average_clustering(graph) if has_nodes else 0.0,
        )

    async def get_subgraph(
        self,
        entity_ids: list[str],
        include_neighbors: bool = False,
        max_depth: int = 1,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> KnowledgeGraphView:
        """Graph view of the given entities, optionally widened by their neighbors."""
        with query_errors("get_subgraph"):
            node_ids = list(dict.fromkeys(entity_ids))
            if include_neighbors:
                for entity_id in entity_ids:
                    reach = await self.store.expand_from(
                        entity_id, depth=max_depth, relationship_types=relationship_types
                    )
                    node_ids.extend(node_id for node_id, _ in reach)
                node_ids = list(dict.fromkeys(node_ids))
            return await self._build_view(node_ids, relationship_types=relationship_types)

    async def get_relationship_types(self) -> list[dict[str, Any]]:
        with query_errors("get_relationship_types"):
            counts = await self.store.count_relationships_by_type()
        return [
            {"type": rel_type, "count": count}
            for rel_type, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    # ==================== Write Operations ====================

    async def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType | str,
        strength: float = 1.0,
        confidence: float = 1.0,
        properties: Optional[dict[str, Any]] = None,
        bidirectional: bool = False,
        source_type: NodeKind = NodeKind.ENTITY,
        target_type: NodeKind = NodeKind.ENTITY,
        created_by: Optional[str] = None,
    ) -> Relationship:
        """
        Create a relationship by hand.

        With *bidirectional*, the mirrored edge is stored as a second,
        independent row. An existing row with the same key is replaced only
        if the new confidence is higher.

        Returns:
            The stored relationship for (source_id, target_id, type)
        """
        if source_id == target_id:
            raise ValidationError("target_id", "must differ from source_id")
        for name, value in (("strength", strength), ("confidence", confidence)):
            if not 0.0 <= value <= 1.0:
                raise ValidationError(name, "must be within [0, 1]")

        rel = Relationship.create(
            source_id=source_id,
            target_id=target_id,
            relationship_type=relationship_type,
            confidence=confidence,
            strength=strength,
            source_type=source_type,
            target_type=target_type,
            evidence=[Evidence(
                document_id=None,
                context="Created manually",
                position=0,
                confidence=confidence,
            )],
            details=ManualDetails(bidirectional=bidirectional),
            metadata=dict(properties or {}),
            created_by=created_by,
        )
        rows = [rel, rel.reverse()] if bidirectional else [rel]

        with query_errors("create_relationship"):
            await self.store.upsert_relationships(rows)
            stored = await self.store.get_relationship(rel.id)

        logger.info(f"Created relationship {rel.id} ({rel.relationship_type.value})")
        return stored or rel

    async def update_relationship(
        self,
        relationship_id: str,
        strength: Optional[float] = None,
        confidence: Optional[float] = None,
        properties: Optional[dict[str, Any]] = None,
    ) -> Optional[Relationship]:
        """
        Update strength, confidence or properties of a relationship.

        Properties are merged into the existing metadata.

        Returns:
            The updated relationship, or None if it does not exist
        """
        for name, value in (("strength", strength), ("confidence", confidence)):
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValidationError(name, "must be within [0, 1]")

        with query_errors("update_relationship"):
            existing = await self.store.get_relationship(relationship_id)
            if existing is None:
                return None
            metadata = None
            if properties is not None:
                metadata = {**existing.metadata, **properties}
            return await self.store.update_relationship(
                relationship_id,
                confidence=None if confidence is None else clamp(confidence),
                strength=None if strength is None else clamp(strength),
                metadata=metadata,
            )

    async def delete_relationship(self, relationship_id: str) -> bool:
        with query_errors("delete_relationship"):
            deleted = await self.store.delete_relationship(relationship_id)
        if deleted:
            logger.info(f"Deleted relationship {relationship_id}")
        return deleted

    async def merge_entities(
        self,
        source_id: str,
        target_id: str,
        strategy: MergeStrategy | str = MergeStrategy.MERGE_PROPERTIES,
    ) -> Entity:
        """
        Fold *source_id* into *target_id*.

        The target keeps its id and gains the source text as an alias;
        relationships and embeddings follow. Relationships that would become
        self-loops are dropped.
        """
        if source_id == target_id:
            raise ValidationError("target_id", "must differ from source_id")

        with query_errors("merge_entities"):
            source = await self.store.get_entity(source_id)
            target = await self.store.get_entity(target_id)
            if source is None or target is None:
                missing = source_id if source is None else target_id
                raise GraphQueryError(f"Entity not found: {missing}", details="merge_entities")
            merged = merge_entity_records(source, target, strategy)
            await self.store.merge_entities(source_id, merged)

        return merged
