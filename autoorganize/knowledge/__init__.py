"""
Knowledge Graph Package.

Data model for entities, relationships and documents. Services live in
their own modules (extraction, builder, graph, exchange, pipeline).
"""

from autoorganize.knowledge.entities import Entity, EntityType, MergeStrategy
from autoorganize.knowledge.relationships import (
    Evidence,
    NodeKind,
    Relationship,
    RelationshipType,
)
from autoorganize.knowledge.documents import Document

__all__ = [
    "Entity",
    "EntityType",
    "MergeStrategy",
    "Evidence",
    "NodeKind",
    "Relationship",
    "RelationshipType",
    "Document",
]
