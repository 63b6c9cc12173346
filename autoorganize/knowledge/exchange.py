"""
Graph Import/Export.

Re-serializes entities and the relationships between them to interchange
formats: JSON, GraphML, GEXF and Cypher. JSON and GraphML can be imported
back.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional
from xml.etree.ElementTree import ParseError

import networkx as nx

from autoorganize.knowledge.entities import Entity, EntityType, utcnow
from autoorganize.knowledge.graph import query_errors
from autoorganize.knowledge.relationships import Evidence, Relationship, RelationshipType
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import ValidationError
from autoorganize.utils.logging import get_logger


logger = get_logger(__name__)

EXPORT_FORMATS = ("json", "graphml", "gexf", "cypher")
IMPORT_FORMATS = ("json", "graphml")
EXCHANGE_VERSION = 1


@dataclass
class ImportResult:
    """Counts from a graph import."""
    format: str
    entities: int = 0
    relationships: int = 0
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "entities": self.entities,
            "relationships": self.relationships,
            "skipped": self.skipped,
        }


# ==================== Attribute Mapping ====================

def _entity_attributes(entity: Entity) -> dict[str, Any]:
    # GraphML and GEXF attributes must be scalars with a stable type per key
    return {
        "text": entity.text,
        "entity_type": entity.entity_type.value,
        "start_pos": int(entity.start_pos),
        "end_pos": int(entity.end_pos),
        "confidence": float(entity.confidence),
        "context": entity.context or "",
        "normalized_value": entity.normalized_value or "",
        "document_id": entity.document_id or "",
        "mentions": int(entity.mentions),
        "aliases": json.dumps(entity.aliases),
        "metadata": json.dumps(entity.metadata),
        "created_at": entity.created_at.isoformat(),
        "updated_at": entity.updated_at.isoformat(),
    }


def _entity_from_attributes(node_id: str, attrs: dict[str, Any]) -> Entity:
    return Entity.from_dict({
        "id": node_id,
        "text": attrs.get("text", node_id),
        "entity_type": attrs.get("entity_type", EntityType.MISC.value),
        "start_pos": attrs.get("start_pos", 0),
        "end_pos": attrs.get("end_pos", 0),
        "confidence": attrs.get("confidence", 0.0),
        "context": attrs.get("context") or None,
        "normalized_value": attrs.get("normalized_value") or None,
        "document_id": attrs.get("document_id") or None,
        "mentions": attrs.get("mentions", 1),
        "aliases": json.loads(attrs.get("aliases") or "[]"),
        "metadata": json.loads(attrs.get("metadata") or "{}"),
        "created_at": attrs.get("created_at"),
        "updated_at": attrs.get("updated_at"),
    })


def _relationship_attributes(rel: Relationship) -> dict[str, Any]:
    data = rel.to_dict()
    return {
        "relationship_id": rel.id,
        "relationship_type": rel.relationship_type.value,
        "source_type": rel.source_type.value,
        "target_type": rel.target_type.value,
        "confidence": float(rel.confidence),
        "strength": float(rel.strength),
        "created_by": rel.created_by or "",
        "evidence": json.dumps(data["evidence"]),
        "details": json.dumps(data["details"]),
        "metadata": json.dumps(rel.metadata),
        "created_at": data["created_at"],
        "updated_at": data["updated_at"],
    }


def _relationship_from_attributes(source: str, target: str, attrs: dict[str, Any]) -> Relationship:
    return Relationship.from_dict({
        "id": attrs.get("relationship_id"),
        "source_id": source,
        "target_id": target,
        "relationship_type": attrs["relationship_type"],
        "source_type": attrs.get("source_type", "entity"),
        "target_type": attrs.get("target_type", "entity"),
        "confidence": attrs.get("confidence", 1.0),
        "strength": attrs.get("strength", attrs.get("confidence", 1.0)),
        "created_by": attrs.get("created_by") or None,
        "evidence": json.loads(attrs.get("evidence") or "[]"),
        "details": json.loads(attrs.get("details") or "null"),
        "metadata": json.loads(attrs.get("metadata") or "{}"),
        "created_at": attrs.get("created_at"),
        "updated_at": attrs.get("updated_at"),
    })


def to_networkx(entities: list[Entity], relationships: list[Relationship]) -> "nx.MultiDiGraph":
    """Directed multigraph keyed by relationship id."""
    graph = nx.MultiDiGraph()
    for entity in entities:
        graph.add_node(entity.id, **_entity_attributes(entity))
    for rel in relationships:
        graph.add_edge(rel.source_id, rel.target_id, key=rel.id, **_relationship_attributes(rel))
    return graph


def _cypher_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(str(value))


def _cypher_map(values: dict[str, Any]) -> str:
    return "{" + ", ".join(f"{key}: {_cypher_literal(value)}" for key, value in values.items()) + "}"


def to_cypher(entities: list[Entity], relationships: list[Relationship]) -> str:
    """Cypher CREATE statements, one per line."""
    lines = []
    for entity in entities:
        props = {
            "id": entity.id,
            "text": entity.text,
            "confidence": entity.confidence,
            "mentions": entity.mentions,
        }
        if entity.normalized_value:
            props["normalized_value"] = entity.normalized_value
        if entity.document_id:
            props["document_id"] = entity.document_id
        lines.append(f"CREATE (:Entity:{entity.entity_type.value} {_cypher_map(props)});")

    for rel in relationships:
        props = {
            "id": rel.id,
            "confidence": rel.confidence,
            "strength": rel.strength,
            "evidence_count": rel.evidence_count,
        }
        lines.append(
            f"MATCH (a:Entity {{id: {_cypher_literal(rel.source_id)}}}), "
            f"(b:Entity {{id: {_cypher_literal(rel.target_id)}}}) "
            f"CREATE (a)-[:{rel.relationship_type.value} {_cypher_map(props)}]->(b);"
        )
    return "\n".join(lines)


class GraphExchange:
    """
    Export and import the stored graph.

    Only entities and relationships between exported entities are written;
    documents and document-anchored edges stay behind.
    """

    def __init__(self, store: GraphStore):
        self.store = store

    async def _collect(
        self,
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
        max_nodes: Optional[int] = None,
    ) -> tuple[list[Entity], list[Relationship]]:
        with query_errors("export_graph"):
            if max_nodes is not None:
                ranked = await self.store.top_connected_entities(max_nodes, entity_types=entity_types)
                entities = sorted((e for e, _ in ranked), key=lambda e: e.id)
            else:
                entities = await self.store.get_entities(entity_types=entity_types)
            relationships = await self.store.get_relationships(
                node_ids=[e.id for e in entities],
                relationship_types=relationship_types,
            )
        return entities, relationships

    async def export_graph(
        self,
        format: str = "json",
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
        max_nodes: Optional[int] = None,
    ) -> str:
        """
        Serialize the graph.

        Args:
            format: "json", "graphml", "gexf" or "cypher"
            entity_types: Restrict to these entity types
            relationship_types: Restrict to these relationship types
            max_nodes: Keep only the best-connected entities

        Returns:
            Serialized graph text
        """
        if format not in EXPORT_FORMATS:
            raise ValidationError("format", f"must be one of {', '.join(EXPORT_FORMATS)}")

        entities, relationships = await self._collect(entity_types, relationship_types, max_nodes)

        if format == "json":
            output = json.dumps({
                "version": EXCHANGE_VERSION,
                "exported_at": utcnow().isoformat(),
                "entities": [e.to_dict() for e in entities],
                "relationships": [r.to_dict() for r in relationships],
            }, indent=2)
        elif format == "graphml":
            output = "\n".join(nx.generate_graphml(to_networkx(entities, relationships)))
        elif format == "gexf":
            output = "\n".join(nx.generate_gexf(to_networkx(entities, relationships)))
        else:
            output = to_cypher(entities, relationships)

        logger.info(
            f"Exported {len(entities)} entities and {len(relationships)} relationships as {format}"
        )
        return output

    def _parse(self, data: str | bytes | dict, format: str) -> tuple[list[Entity], list[Relationship]]:
        try:
            if format == "json":
                payload = data if isinstance(data, dict) else json.loads(data)
                entities = [Entity.from_dict(e) for e in payload.get("entities", [])]
                relationships = [Relationship.from_dict(r) for r in payload.get("relationships", [])]
            else:
                text = data.decode("utf-8") if isinstance(data, bytes) else data
                graph = nx.parse_graphml(text, force_multigraph=True)
                entities = [
                    _entity_from_attributes(str(node_id), attrs)
                    for node_id, attrs in graph.nodes(data=True)
                ]
                relationships = [
                    _relationship_from_attributes(str(source), str(target), attrs)
                    for source, target, attrs in graph.edges(data=True)
                ]
        except (ValueError, KeyError, TypeError, AttributeError, ParseError, nx.NetworkXError) as e:
            raise ValidationError("data", f"not a valid {format} graph: {e}") from e
        return entities, relationships

    async def import_graph(self, data: str | bytes | dict, format: str = "json") -> ImportResult:
        """
        Load entities and relationships into the store.

        Relationships go through the usual upsert, so an import never
        lowers the confidence of an existing edge. Imported relationships
        without evidence get an "Imported" evidence record.
        """
        if format not in IMPORT_FORMATS:
            raise ValidationError("format", f"must be one of {', '.join(IMPORT_FORMATS)}")

        entities, relationships = self._parse(data, format)
        result = ImportResult(format=format)

        valid = []
        for rel in relationships:
            if rel.source_id == rel.target_id:
                result.skipped.append(rel.id)
                continue
            if not rel.evidence:
                rel.evidence.append(Evidence(
                    document_id=None,
                    context="Imported",
                    position=0,
                    confidence=rel.confidence,
                ))
            valid.append(rel)

        with query_errors("import_graph"):
            result.entities = await self.store.save_entities(entities)
            result.relationships = await self.store.upsert_relationships(valid)

        logger.info(
            f"Imported {result.entities} entities and {result.relationships} relationships "
            f"from {format} ({len(result.skipped)} skipped)"
        )
        return result
