"""
Relationship Types and Models.

Defines the typed, evidence-backed edges that connect entities and documents,
together with the trigger phrases the builder uses to detect them.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional, Union
import hashlib
import re

from autoorganize.knowledge.entities import EntityType, parse_timestamp, utcnow


class RelationshipType(str, Enum):
    """Types of relationships in the knowledge graph."""

    # People & organizations
    PERSON_WORKS_FOR = "PERSON_WORKS_FOR"
    PERSON_LIVES_IN = "PERSON_LIVES_IN"
    PERSON_KNOWS = "PERSON_KNOWS"
    ORGANIZATION_LOCATED_IN = "ORGANIZATION_LOCATED_IN"
    ORGANIZATION_OWNS = "ORGANIZATION_OWNS"
    ORGANIZATION_PARTNERS_WITH = "ORGANIZATION_PARTNERS_WITH"

    # Documents
    MENTIONED_IN = "MENTIONED_IN"
    AUTHORED_BY = "AUTHORED_BY"
    CONTAINS = "CONTAINS"
    REFERENCES = "REFERENCES"
    SIMILAR_TO = "SIMILAR_TO"
    CITES = "CITES"
    VERSION_OF = "VERSION_OF"
    DERIVED_FROM = "DERIVED_FROM"

    # Conceptual
    IS_A = "IS_A"
    PART_OF = "PART_OF"
    HAS_PROPERTY = "HAS_PROPERTY"
    CAUSES = "CAUSES"
    RELATES_TO = "RELATES_TO"

    # Temporal
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    DURING = "DURING"

    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value: "RelationshipType | str") -> "RelationshipType":
        if isinstance(value, cls):
            return value
        return cls(str(value).upper())


class NodeKind(str, Enum):
    """What a relationship endpoint refers to."""
    ENTITY = "entity"
    DOCUMENT = "document"


# ==================== Detail Variants ====================

@dataclass
class MentionDetails:
    """An entity mentioned in a document."""
    entity_type: str
    document_type: Optional[str] = None
    kind: Literal["mention"] = "mention"


@dataclass
class PatternDetails:
    """Two entities joined by a trigger phrase."""
    source_entity_type: str
    target_entity_type: str
    pattern_match: str
    kind: Literal["pattern"] = "pattern"


@dataclass
class ProximityDetails:
    """Two entities close together in the same document."""
    source_entity_type: str
    target_entity_type: str
    distance: int
    kind: Literal["proximity"] = "proximity"


@dataclass
class SimilarityDetails:
    """Two documents with similar content."""
    similarity: float
    source_document_type: Optional[str] = None
    target_document_type: Optional[str] = None
    kind: Literal["similarity"] = "similarity"


@dataclass
class ManualDetails:
    """An edge created through the graph mutation API."""
    bidirectional: bool = False
    reverse_of: Optional[str] = None
    kind: Literal["manual"] = "manual"


RelationshipDetails = Union[
    MentionDetails, PatternDetails, ProximityDetails, SimilarityDetails, ManualDetails
]

_DETAIL_CLASSES: dict[str, type] = {
    "mention": MentionDetails,
    "pattern": PatternDetails,
    "proximity": ProximityDetails,
    "similarity": SimilarityDetails,
    "manual": ManualDetails,
}


def details_to_dict(details: Optional[RelationshipDetails]) -> Optional[dict[str, Any]]:
    if details is None:
        return None
    return dict(details.__dict__)


def details_from_dict(data: Optional[dict[str, Any]]) -> Optional[RelationshipDetails]:
    """Rebuild a detail variant from its ``kind`` tag; unknown kinds yield None."""
    if not data:
        return None
    detail_cls = _DETAIL_CLASSES.get(data.get("kind", ""))
    if detail_cls is None:
        return None
    fields = {k: v for k, v in data.items() if k in detail_cls.__dataclass_fields__}
    return detail_cls(**fields)


# ==================== Relationship ====================

def relationship_key(
    source_id: str, target_id: str, relationship_type: RelationshipType | str
) -> tuple[str, str, str]:
    return source_id, target_id, RelationshipType.parse(relationship_type).value


def relationship_id(
    source_id: str, target_id: str, relationship_type: RelationshipType | str
) -> str:
    """Stable id for a (source, target, type) key."""
    digest = hashlib.sha1(
        "|".join(relationship_key(source_id, target_id, relationship_type)).encode("utf-8")
    ).hexdigest()
    return f"rel_{digest[:20]}"


@dataclass
class Evidence:
    """An occurrence in a document that supports a relationship."""

    document_id: Optional[str]
    context: str
    position: int
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "context": self.context,
            "position": self.position,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Evidence":
        return cls(
            document_id=data.get("document_id") or None,
            context=data.get("context", ""),
            position=int(data.get("position", 0)),
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass
class Relationship:
    """
    A typed edge between two graph nodes.

    Endpoints are entities or documents. At most one relationship is stored
    per (source_id, target_id, relationship_type); a stored relationship
    always carries at least one piece of evidence.
    """

    id: str
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    source_type: NodeKind = NodeKind.ENTITY
    target_type: NodeKind = NodeKind.ENTITY
    confidence: float = 1.0
    strength: float = 1.0
    evidence: list[Evidence] = field(default_factory=list)
    details: Optional[RelationshipDetails] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType | str,
        confidence: float = 1.0,
        strength: Optional[float] = None,
        **kwargs
    ) -> "Relationship":
        """
        Factory method to create a relationship keyed by its endpoints.

        Args:
            source_id: Source node ID
            target_id: Target node ID
            relationship_type: Type of relationship
            confidence: Confidence in [0, 1]
            strength: Edge weight in [0, 1], defaults to the confidence
            **kwargs: Remaining dataclass fields

        Returns:
            New Relationship instance
        """
        relationship_type = RelationshipType.parse(relationship_type)
        confidence = clamp(confidence)
        return cls(
            id=relationship_id(source_id, target_id, relationship_type),
            source_id=source_id,
            target_id=target_id,
            relationship_type=relationship_type,
            source_type=NodeKind(kwargs.pop("source_type", NodeKind.ENTITY)),
            target_type=NodeKind(kwargs.pop("target_type", NodeKind.ENTITY)),
            confidence=confidence,
            strength=clamp(confidence if strength is None else strength),
            **kwargs,
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return relationship_key(self.source_id, self.target_id, self.relationship_type)

    @property
    def evidence_count(self) -> int:
        return len(self.evidence)

    @property
    def avg_evidence_confidence(self) -> float:
        if not self.evidence:
            return 0.0
        return sum(e.confidence for e in self.evidence) / len(self.evidence)

    def reverse(self) -> "Relationship":
        """Mirror this relationship as an independent row (source and target swapped)."""
        return Relationship.create(
            source_id=self.target_id,
            target_id=self.source_id,
            relationship_type=self.relationship_type,
            confidence=self.confidence,
            strength=self.strength,
            source_type=self.target_type,
            target_type=self.source_type,
            evidence=[Evidence(**e.__dict__) for e in self.evidence],
            details=ManualDetails(bidirectional=True, reverse_of=self.id),
            metadata=dict(self.metadata),
            created_by=self.created_by,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "source_type": self.source_type.value,
            "target_type": self.target_type.value,
            "relationship_type": self.relationship_type.value,
            "confidence": self.confidence,
            "strength": self.strength,
            "evidence": [e.to_dict() for e in self.evidence],
            "details": details_to_dict(self.details),
            "metadata": self.metadata,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Relationship":
        """Create from dictionary."""
        relationship_type = RelationshipType.parse(data["relationship_type"])
        return cls(
            id=data.get("id") or relationship_id(
                data["source_id"], data["target_id"], relationship_type
            ),
            source_id=data["source_id"],
            target_id=data["target_id"],
            relationship_type=relationship_type,
            source_type=NodeKind(data.get("source_type", NodeKind.ENTITY.value)),
            target_type=NodeKind(data.get("target_type", NodeKind.ENTITY.value)),
            confidence=clamp(float(data.get("confidence", 1.0))),
            strength=clamp(float(data.get("strength", data.get("confidence", 1.0)))),
            evidence=[Evidence.from_dict(e) for e in data.get("evidence") or []],
            details=details_from_dict(data.get("details")),
            metadata=data.get("metadata") or {},
            created_by=data.get("created_by"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


# ==================== Trigger Patterns ====================

# Words captured on each side of a trigger phrase
MAX_SPAN_WORDS = 6

_SPAN = rf"(\w+(?:\s+\w+){{0,{MAX_SPAN_WORDS - 1}}})"


def _trigger(phrase: str) -> re.Pattern:
    return re.compile(rf"\b{_SPAN}\s+{phrase}\s+{_SPAN}", re.IGNORECASE)


RELATIONSHIP_PATTERNS: dict[RelationshipType, list[re.Pattern]] = {
    RelationshipType.PERSON_WORKS_FOR: [
        _trigger(r"(?:works?\s+(?:for|at)|employed?\s+(?:by|at)|job\s+at)"),
        _trigger(r"(?:is\s+(?:a|an)|serves?\s+as)\s+(?:\w+\s+){0,3}?(?:at|of)"),
    ],
    RelationshipType.PERSON_LIVES_IN: [
        _trigger(r"(?:lives?\s+in|resides?\s+in|from)"),
        _trigger(r"(?:is\s+(?:a|an)\s+)?(?:resident\s+of|citizen\s+of)"),
    ],
    RelationshipType.ORGANIZATION_LOCATED_IN: [
        _trigger(r"(?:is\s+)?(?:located\s+in|based\s+in|headquartered\s+in)"),
        _trigger(r"has\s+(?:offices?|headquarters?)\s+in"),
    ],
    RelationshipType.ORGANIZATION_OWNS: [
        _trigger(r"(?:owns?|acquired?|purchased?)"),
        _trigger(r"is\s+(?:a\s+)?(?:subsidiary|division)\s+of"),
    ],
}

# Keyword triggers for conceptual relationships
SEMANTIC_KEYWORDS: dict[RelationshipType, list[str]] = {
    RelationshipType.SIMILAR_TO: [
        "similar", "alike", "comparable", "equivalent", "analogous", "related",
    ],
    RelationshipType.CAUSES: [
        "causes", "leads to", "results in", "triggers", "brings about", "produces",
    ],
    RelationshipType.IS_A: [
        "is a", "is an", "type of", "kind of", "category of", "instance of",
    ],
    RelationshipType.PART_OF: [
        "part of", "component of", "element of", "member of", "belongs to", "within",
    ],
}

for _rel_type, _keywords in SEMANTIC_KEYWORDS.items():
    RELATIONSHIP_PATTERNS[_rel_type] = [
        _trigger("(?:" + "|".join(r"\s+".join(map(re.escape, k.split())) for k in _keywords) + ")")
    ]

# Specificity bonus added to pattern confidence
TYPE_BONUS: dict[RelationshipType, float] = {
    RelationshipType.PERSON_WORKS_FOR: 0.2,
    RelationshipType.PERSON_LIVES_IN: 0.2,
    RelationshipType.ORGANIZATION_LOCATED_IN: 0.2,
    RelationshipType.ORGANIZATION_OWNS: 0.15,
    RelationshipType.RELATES_TO: 0.05,
}
DEFAULT_TYPE_BONUS = 0.1

COMPATIBLE_TYPES: dict[RelationshipType, set[tuple[EntityType, EntityType]]] = {
    RelationshipType.PERSON_WORKS_FOR: {(EntityType.PERSON, EntityType.ORGANIZATION)},
    RelationshipType.PERSON_LIVES_IN: {(EntityType.PERSON, EntityType.LOCATION)},
    RelationshipType.ORGANIZATION_LOCATED_IN: {(EntityType.ORGANIZATION, EntityType.LOCATION)},
    RelationshipType.ORGANIZATION_OWNS: {
        (EntityType.ORGANIZATION, EntityType.ORGANIZATION),
        (EntityType.ORGANIZATION, EntityType.PRODUCT),
    },
}


def are_types_compatible(
    source_type: EntityType, target_type: EntityType, relationship_type: RelationshipType
) -> bool:
    """Whether two entity types fit a relationship type; unconstrained types accept any pair."""
    allowed = COMPATIBLE_TYPES.get(relationship_type)
    if allowed is None:
        return True
    return (source_type, target_type) in allowed
