"""
Entity Extraction from Text.

Detects typed mentions with three independent strategies (regular
expression patterns, capitalization heuristics and a concept vocabulary)
and merges their output into one position-ordered entity list.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from autoorganize.config import ExtractionConfig, get_settings
from autoorganize.knowledge.entities import Entity, EntityType, normalize_value
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import ExtractionError, ValidationError
from autoorganize.utils.logging import LogContext, get_logger


logger = get_logger(__name__)


STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "being", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "may", "might", "can", "this", "that", "these", "those", "i", "you", "he",
    "she", "it", "we", "they", "me", "him", "her", "us", "them",
})

# Capitalized words that open a sentence or salutation rather than a name
LEADING_NOISE = frozenset({
    "contact", "call", "email", "dear", "hello", "hi", "hey", "meet", "ask",
    "thanks", "thank", "please", "visit", "welcome", "from", "to", "cc", "attn",
    "today", "yesterday", "tomorrow", "monday", "tuesday", "wednesday",
    "thursday", "friday", "saturday", "sunday", "january", "february", "march",
    "april", "june", "july", "august", "september", "october", "november",
    "december",
})

ORGANIZATION_SUFFIXES = ["Inc", "LLC", "Corp", "Company", "Corporation", "Ltd", "Limited", "Group"]
LOCATION_SUFFIXES = ["Street", "St", "Avenue", "Ave", "Road", "Rd", "Boulevard", "Blvd", "City", "State", "Country"]

CONCEPT_KEYWORDS: dict[str, list[str]] = {
    "technology": [
        "artificial intelligence", "machine learning", "deep learning",
        "neural network", "blockchain", "cryptocurrency", "cloud computing",
        "big data", "internet of things", "virtual reality", "augmented reality",
        "cybersecurity", "software engineering", "data science",
        "natural language processing", "computer vision", "robotics",
    ],
    "business": [
        "marketing", "sales", "finance", "accounting", "human resources",
        "operations", "strategy", "management", "leadership",
        "entrepreneurship", "innovation", "supply chain", "customer service",
        "quality assurance", "project management",
    ],
}

_MONTHS = (
    "January|February|March|April|May|June|July|August|September|October|November|December"
    "|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec"
)

PATTERNS: dict[EntityType, list[re.Pattern]] = {
    EntityType.EMAIL: [
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    ],
    EntityType.PHONE: [
        re.compile(r"(?:\+?1[-.\s]?)?\(?\b([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b"),
        re.compile(r"(?:\+?1[-.\s]?)?\b([0-9]{3})[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b"),
    ],
    EntityType.URL: [
        re.compile(
            r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
            r"[-a-zA-Z0-9()@:%_+.~#?&/=]*"
        ),
        re.compile(
            r"\bwww\.[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
            r"[-a-zA-Z0-9()@:%_+.~#?&/=]*"
        ),
    ],
    EntityType.DATE: [
        re.compile(rf"\b(?:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b", re.IGNORECASE),
        re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b"),
        re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
        re.compile(r"\b\d{1,2}-\d{1,2}-\d{4}\b"),
    ],
    EntityType.TIME: [
        re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\s?(?:AM|PM|am|pm)\b"),
        re.compile(r"\b(?:[01]?\d|2[0-3]):[0-5]\d(?::[0-5]\d)?\b"),
    ],
    EntityType.MONEY: [
        re.compile(r"\$\s?\d[\d,]*(?:\.\d{2})?\b"),
        re.compile(r"\b\d+(?:\.\d{2})?\s?(?:USD|EUR|GBP|CAD|AUD)\b"),
    ],
    EntityType.PERCENT: [
        re.compile(r"\b\d+(?:\.\d+)?%"),
        re.compile(r"\b\d+(?:\.\d+)?\s?percent\b", re.IGNORECASE),
    ],
    EntityType.NUMBER: [
        re.compile(r"\b\d{1,3}(?:,\d{3})*(?:\.\d+)?\b"),
    ],
}

PERSON_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+\b")
_CAPITALIZED_WORD = re.compile(r"^[A-Z][a-z]+$")
_TOKEN_SPLIT = re.compile(r"[^\w\s]")


def _suffix_pattern(suffixes: list[str]) -> re.Pattern:
    alternatives = "|".join(sorted(suffixes, key=len, reverse=True))
    return re.compile(rf"\b(?:[A-Z][\w&'-]*[ \t]+)+(?:{alternatives})\b\.?")


ORGANIZATION_PATTERN = _suffix_pattern(ORGANIZATION_SUFFIXES)
LOCATION_PATTERN = _suffix_pattern(LOCATION_SUFFIXES)
_NAME_BLOCKERS = frozenset(ORGANIZATION_SUFFIXES + LOCATION_SUFFIXES)


def keyword_pattern(phrase: str) -> re.Pattern:
    """Whole-word, case-insensitive pattern tolerating any whitespace between words."""
    body = r"\s+".join(re.escape(word) for word in phrase.split())
    return re.compile(r"\b" + body + r"\b", re.IGNORECASE)


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens with punctuation and stop words removed."""
    return [t for t in _TOKEN_SPLIT.sub(" ", text.lower()).split() if t not in STOP_WORDS]


def pattern_confidence(entity_type: EntityType, text: str) -> float:
    """Base confidence of a regular-expression match."""
    if entity_type == EntityType.EMAIL:
        return 0.95 if "@" in text and "." in text else 0.7
    if entity_type == EntityType.URL:
        return 0.95 if text.startswith("http") else 0.8
    if entity_type == EntityType.PHONE:
        digits = re.sub(r"\D", "", text)
        return 0.9 if len(digits) >= 10 else 0.6
    if entity_type == EntityType.DATE:
        return 0.85
    if entity_type == EntityType.TIME:
        return 0.8
    if entity_type in (EntityType.MONEY, EntityType.PERCENT):
        return 0.9
    return 0.7


def person_confidence(name: str) -> float:
    """Score a capitalized word sequence as a personal name."""
    words = name.split()
    confidence = 0.5
    if len(words) >= 2 and all(_CAPITALIZED_WORD.match(w) for w in words):
        confidence += 0.3
    if len(words) == 2:
        confidence += 0.1
    if len(name) < 4 or len(name) > 50:
        confidence -= 0.2
    return min(1.0, max(0.0, confidence))


class KnowledgeBase(Protocol):
    """Enrichment hook backed by previously extracted entities."""

    async def enrich(self, entities: list[Entity]) -> list[Entity]:
        ...


class StoreKnowledgeBase:
    """
    Enriches entities from the graph store.

    Mentions count this occurrence plus every stored entity of the same
    type and normalized value in other documents; their surface forms
    become aliases.
    """

    def __init__(self, store: GraphStore):
        self.store = store

    async def enrich(self, entities: list[Entity]) -> list[Entity]:
        for entity in entities:
            if entity.normalized_value is None:
                continue
            known = await self.store.find_entities_by_value(
                entity.entity_type,
                entity.normalized_value,
                exclude_document_id=entity.document_id,
            )
            if not known:
                continue
            entity.mentions = 1 + sum(k.mentions for k in known)
            aliases = list(entity.aliases)
            for k in known:
                for alias in [k.text, *k.aliases]:
                    if alias != entity.text and alias not in aliases:
                        aliases.append(alias)
            entity.aliases = aliases
        return entities


@dataclass
class ExtractionOptions:
    """Per-call extraction options."""
    enabled_types: set[EntityType] = field(default_factory=lambda: set(EntityType))
    min_confidence: float = 0.5
    context_window: int = 50
    merge_overlapping: bool = True
    extract_concepts: bool = True
    language: str = "en"

    def __post_init__(self):
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValidationError("min_confidence", "must be within [0, 1]")
        if self.context_window < 0:
            raise ValidationError("context_window", "must not be negative")
        self.enabled_types = {EntityType.parse(t) for t in self.enabled_types}

    @classmethod
    def from_settings(cls, config: ExtractionConfig, **overrides) -> "ExtractionOptions":
        values = {
            "min_confidence": config.min_confidence,
            "context_window": config.context_window,
            "merge_overlapping": config.merge_overlapping,
            "extract_concepts": config.extract_concepts,
            "language": config.language,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class ExtractionResult:
    """Result of entity extraction."""
    entities: list[Entity]
    confidence: float
    processing_time: float
    tokens_processed: int
    language: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "confidence": self.confidence,
            "processing_time": self.processing_time,
            "tokens_processed": self.tokens_processed,
            "language": self.language,
        }


class EntityExtractor:
    """
    Extracts typed entities from text.

    Usage:
        extractor = EntityExtractor()
        result = await extractor.extract("Contact John Doe at john@example.com")
        for entity in result.entities:
            print(entity.entity_type, entity.text)
    """

    def __init__(
        self,
        knowledge_base: Optional[KnowledgeBase] = None,
        settings: Optional[ExtractionConfig] = None,
    ):
        """
        Initialize extractor.

        Args:
            knowledge_base: Optional enrichment hook; failures are logged and ignored
            settings: Extraction defaults; defaults to ``get_settings().extraction``
        """
        self.knowledge_base = knowledge_base
        self.settings = settings or get_settings().extraction
        self._concepts = [
            (keyword, keyword_pattern(keyword))
            for keywords in CONCEPT_KEYWORDS.values()
            for keyword in keywords
        ]

    async def extract(
        self,
        text: str,
        options: Optional[ExtractionOptions] = None,
        document_id: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract entities from text.

        Args:
            text: Text to analyze
            options: Extraction options; defaults come from settings
            document_id: Owning document stamped on every entity

        Returns:
            ExtractionResult with entities sorted by start position

        Raises:
            ExtractionError: Input is not text or a pipeline stage failed
        """
        if not isinstance(text, str):
            raise ExtractionError(
                "Extraction input must be text",
                details=f"Got {type(text).__name__}",
            )
        options = options or ExtractionOptions.from_settings(self.settings)
        start = time.time()

        try:
            with LogContext(document_id=document_id):
                tokens = tokenize(text)

                entities = self._extract_patterns(text, options)
                entities.extend(self._extract_statistical(text, options))
                if options.extract_concepts:
                    entities.extend(self._extract_concepts(text, options))

                for entity in entities:
                    entity.document_id = document_id
                self._attach_context(text, entities, options.context_window)
                entities = [e for e in entities if e.confidence >= options.min_confidence]
                if options.merge_overlapping:
                    entities = self._merge_overlapping(text, entities, options.context_window)
                for entity in entities:
                    entity.normalized_value = normalize_value(entity.entity_type, entity.text)
                entities = await self._enrich(entities)
                entities.sort(key=lambda e: (e.start_pos, e.end_pos, e.entity_type.value))

                elapsed = time.time() - start
                logger.debug(f"Extracted {len(entities)} entities in {elapsed:.3f}s")
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Entity extraction failed: {e}", details=type(e).__name__) from e

        avg_confidence = (
            sum(e.confidence for e in entities) / len(entities) if entities else 0.0
        )
        return ExtractionResult(
            entities=entities,
            confidence=avg_confidence,
            processing_time=elapsed,
            tokens_processed=len(tokens),
            language=options.language,
        )

    async def extract_batch(
        self,
        texts: list[str],
        options: Optional[ExtractionOptions] = None,
    ) -> list[ExtractionResult]:
        """Extract from several texts in order; the first failure propagates."""
        return [await self.extract(text, options) for text in texts]

    # ==================== Strategies ====================

    def _extract_patterns(self, text: str, options: ExtractionOptions) -> list[Entity]:
        entities: list[Entity] = []
        for entity_type, patterns in PATTERNS.items():
            if entity_type not in options.enabled_types:
                continue
            for pattern in patterns:
                for match in pattern.finditer(text):
                    entities.append(Entity.create(
                        text=match.group(0),
                        entity_type=entity_type,
                        start_pos=match.start(),
                        end_pos=match.end(),
                        confidence=pattern_confidence(entity_type, match.group(0)),
                        metadata={"strategy": "pattern"},
                    ))

        # Digits inside a phone number, date or amount are not standalone numbers
        structured = [e for e in entities if e.entity_type != EntityType.NUMBER]
        return [
            e for e in entities
            if e.entity_type != EntityType.NUMBER
            or not any(s.start_pos <= e.start_pos and e.end_pos <= s.end_pos for s in structured)
        ]

    def _extract_statistical(self, text: str, options: ExtractionOptions) -> list[Entity]:
        entities: list[Entity] = []

        if EntityType.PERSON in options.enabled_types:
            for match in PERSON_PATTERN.finditer(text):
                candidate = self._trim_name(match)
                if candidate is None:
                    continue
                name, start = candidate
                entities.append(Entity.create(
                    text=name,
                    entity_type=EntityType.PERSON,
                    start_pos=start,
                    confidence=person_confidence(name),
                    metadata={"strategy": "statistical"},
                ))

        for entity_type, pattern, confidence in (
            (EntityType.ORGANIZATION, ORGANIZATION_PATTERN, 0.8),
            (EntityType.LOCATION, LOCATION_PATTERN, 0.7),
        ):
            if entity_type not in options.enabled_types:
                continue
            for match in pattern.finditer(text):
                phrase = match.group(0).rstrip(".")
                entities.append(Entity.create(
                    text=phrase,
                    entity_type=entity_type,
                    start_pos=match.start(),
                    confidence=confidence,
                    metadata={"strategy": "statistical"},
                ))

        return entities

    @staticmethod
    def _trim_name(match: re.Match) -> Optional[tuple[str, int]]:
        """Drop leading non-name words; reject phrases ending in an org or place suffix."""
        words = list(re.finditer(r"[A-Z][a-z]+", match.group(0)))
        while words and (
            words[0].group(0).lower() in LEADING_NOISE or words[0].group(0).lower() in STOP_WORDS
        ):
            words.pop(0)
        if len(words) < 2 or words[-1].group(0) in _NAME_BLOCKERS:
            return None
        start = match.start() + words[0].start()
        end = match.start() + words[-1].end()
        return match.string[start:end], start

    def _extract_concepts(self, text: str, options: ExtractionOptions) -> list[Entity]:
        if EntityType.CONCEPT not in options.enabled_types:
            return []
        entities: list[Entity] = []
        for keyword, pattern in self._concepts:
            for match in pattern.finditer(text):
                entities.append(Entity.create(
                    text=match.group(0),
                    entity_type=EntityType.CONCEPT,
                    start_pos=match.start(),
                    end_pos=match.end(),
                    confidence=0.9,
                    metadata={"strategy": "concept", "keyword": keyword},
                ))
        return entities

    # ==================== Post-processing ====================

    @staticmethod
    def _context(text: str, start: int, end: int, window: int) -> str:
        return text[max(0, start - window):min(len(text), end + window)].strip()

    def _attach_context(self, text: str, entities: list[Entity], window: int) -> None:
        for entity in entities:
            entity.context = self._context(text, entity.start_pos, entity.end_pos, window)

    def _merge_overlapping(self, text: str, entities: list[Entity], window: int) -> list[Entity]:
        """Collapse same-type entities whose spans overlap into one; adjacent spans stay apart."""
        by_type: dict[EntityType, list[Entity]] = {}
        for entity in entities:
            by_type.setdefault(entity.entity_type, []).append(entity)

        merged: list[Entity] = []
        for group in by_type.values():
            group.sort(key=lambda e: (e.start_pos, -e.end_pos))
            current: list[Entity] = []
            for entity in group:
                last = current[-1] if current else None
                if last is not None and last.overlaps(entity):
                    if len(entity.text) > len(last.text):
                        last.text = entity.text
                    last.end_pos = max(last.end_pos, entity.end_pos)
                    last.confidence = max(last.confidence, entity.confidence)
                    last.context = self._context(text, last.start_pos, last.end_pos, window)
                else:
                    current.append(entity)
            merged.extend(current)
        return merged

    async def _enrich(self, entities: list[Entity]) -> list[Entity]:
        if self.knowledge_base is None:
            return entities
        try:
            return await self.knowledge_base.enrich(entities)
        except Exception as e:
            logger.warning(f"Knowledge base enrichment failed, continuing without it: {e}")
            return entities
