"""
Entity Types and Models.

Defines the typed mentions that the extractor detects and the graph stores.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import re
import uuid


class EntityType(str, Enum):
    """Types of entities in the knowledge graph."""
    # People, organizations & places
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"

    # Pattern-detected values
    DATE = "DATE"
    TIME = "TIME"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    URL = "URL"
    MONEY = "MONEY"
    PERCENT = "PERCENT"
    NUMBER = "NUMBER"

    # Other named things
    MISC = "MISC"
    PRODUCT = "PRODUCT"
    EVENT = "EVENT"
    WORK_OF_ART = "WORK_OF_ART"
    LAW = "LAW"
    LANGUAGE = "LANGUAGE"
    NATIONALITY = "NATIONALITY"
    RELIGION = "RELIGION"
    TITLE = "TITLE"
    SKILL = "SKILL"
    CONCEPT = "CONCEPT"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        if isinstance(value, cls):
            return value
        return cls(str(value).upper())


_NON_DIGITS = re.compile(r"\D")


def normalize_value(entity_type: EntityType, text: str) -> str:
    """
    Normalize entity text per type.

    Email and URL are lowercased, phone numbers reduced to digits and
    person names title-cased token by token. Every branch is idempotent.
    """
    if entity_type in (EntityType.EMAIL, EntityType.URL):
        return text.lower()
    if entity_type == EntityType.PHONE:
        return _NON_DIGITS.sub("", text)
    if entity_type == EntityType.PERSON:
        return " ".join(
            token[:1].upper() + token[1:].lower() for token in text.split(" ")
        )
    return text


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if not value:
        return utcnow()
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Entity:
    """
    A typed mention detected in a document.

    Entities are the nodes of the knowledge graph. An entity belongs to the
    document that produced it; the same real-world thing seen in two
    documents stays two entities until they are merged explicitly.
    """

    id: str
    text: str
    entity_type: EntityType
    start_pos: int = 0
    end_pos: int = 0
    confidence: float = 1.0
    context: Optional[str] = None
    normalized_value: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    document_id: Optional[str] = None
    mentions: int = 1
    aliases: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        text: str,
        entity_type: EntityType | str,
        start_pos: int = 0,
        end_pos: Optional[int] = None,
        **kwargs
    ) -> "Entity":
        """
        Factory method to create an entity with auto-generated ID.

        Args:
            text: Matched text
            entity_type: Type of entity
            start_pos: Offset of the first character in the document
            end_pos: Offset one past the last character (defaults to start + len)
            **kwargs: Remaining dataclass fields

        Returns:
            New Entity instance
        """
        return cls(
            id=kwargs.pop("id", None) or f"ent_{uuid.uuid4().hex[:16]}",
            text=text,
            entity_type=EntityType.parse(entity_type),
            start_pos=start_pos,
            end_pos=end_pos if end_pos is not None else start_pos + len(text),
            **kwargs,
        )

    @classmethod
    def placeholder(cls, entity_id: str) -> "Entity":
        """Stand-in for a relationship endpoint with no stored entity."""
        return cls(
            id=entity_id,
            text=entity_id,
            entity_type=EntityType.MISC,
            confidence=0.0,
            metadata={"placeholder": True},
            mentions=0,
        )

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("placeholder"))

    @property
    def span(self) -> tuple[int, int]:
        return self.start_pos, self.end_pos

    def overlaps(self, other: "Entity") -> bool:
        return self.start_pos < other.end_pos and other.start_pos < self.end_pos

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "text": self.text,
            "entity_type": self.entity_type.value,
            "start_pos": self.start_pos,
            "end_pos": self.end_pos,
            "confidence": self.confidence,
            "context": self.context,
            "normalized_value": self.normalized_value,
            "metadata": self.metadata,
            "document_id": self.document_id,
            "mentions": self.mentions,
            "aliases": self.aliases,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Entity":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            text=data["text"],
            entity_type=EntityType.parse(data["entity_type"]),
            start_pos=data.get("start_pos", 0),
            end_pos=data.get("end_pos", 0),
            confidence=data.get("confidence", 1.0),
            context=data.get("context"),
            normalized_value=data.get("normalized_value"),
            metadata=data.get("metadata") or {},
            document_id=data.get("document_id"),
            mentions=data.get("mentions", 1),
            aliases=list(data.get("aliases") or []),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Entity):
            return False
        return self.id == other.id


class MergeStrategy(str, Enum):
    """How conflicting metadata is resolved when two entities are merged."""
    PREFER_SOURCE = "prefer_source"
    PREFER_TARGET = "prefer_target"
    MERGE_PROPERTIES = "merge_properties"


def merge_metadata(
    source: dict[str, Any],
    target: dict[str, Any],
    strategy: MergeStrategy | str = MergeStrategy.MERGE_PROPERTIES,
) -> dict[str, Any]:
    """
    Combine two metadata maps.

    ``merge_properties`` unions lists, shallow-merges nested dicts and keeps
    the target's scalar values.
    """
    strategy = MergeStrategy(strategy)
    if strategy == MergeStrategy.PREFER_SOURCE:
        return {**target, **source}
    if strategy == MergeStrategy.PREFER_TARGET:
        return {**source, **target}

    merged = dict(target)
    for key, value in source.items():
        if key not in merged:
            merged[key] = value
            continue
        existing = merged[key]
        if isinstance(existing, list) and isinstance(value, list):
            merged[key] = existing + [v for v in value if v not in existing]
        elif isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = {**existing, **value}
    return merged


def merge_entities(
    source: Entity,
    target: Entity,
    strategy: MergeStrategy | str = MergeStrategy.MERGE_PROPERTIES,
) -> Entity:
    """
    Fold *source* into *target*, returning the updated target.

    The target keeps its id; the source text becomes an alias and mention
    counts are summed.
    """
    aliases = list(target.aliases)
    for alias in [source.text, *source.aliases]:
        if alias != target.text and alias not in aliases:
            aliases.append(alias)

    metadata = merge_metadata(source.metadata, target.metadata, strategy)
    metadata.pop("placeholder", None)
    merged_from = list(metadata.get("merged_from", []))
    merged_from.append(source.id)
    metadata["merged_from"] = merged_from

    return Entity(
        id=target.id,
        text=target.text,
        entity_type=target.entity_type,
        start_pos=target.start_pos,
        end_pos=target.end_pos,
        confidence=max(source.confidence, target.confidence),
        context=target.context or source.context,
        normalized_value=target.normalized_value or source.normalized_value,
        metadata=metadata,
        document_id=target.document_id,
        mentions=target.mentions + source.mentions,
        aliases=aliases,
        created_at=min(source.created_at, target.created_at),
        updated_at=utcnow(),
    )
