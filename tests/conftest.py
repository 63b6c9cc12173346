"""Shared fixtures for the knowledge core tests."""
import pytest

from autoorganize.config import (
    EmbeddingConfig,
    ExtractionConfig,
    GraphConfig,
    RelationshipConfig,
    clear_settings_cache,
)
from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity, EntityType
from autoorganize.services.embedding.service import EmbeddingService
from autoorganize.storage.sqlite import SQLiteGraphStore


class FallbackRecorder:
    """Observer that keeps every fallback event."""

    def __init__(self):
        self.events = []

    def on_fallback(self, event):
        self.events.append(event)


@pytest.fixture(autouse=True)
def fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def store(tmp_path):
    return SQLiteGraphStore(tmp_path / "graph.db", enable_wal=True)


@pytest.fixture
def embedding_settings():
    return EmbeddingConfig(backend="hash", chunk_size=50, chunk_overlap=10)


@pytest.fixture
def recorder():
    return FallbackRecorder()


@pytest.fixture
def embeddings(store, embedding_settings, recorder):
    return EmbeddingService(store, settings=embedding_settings, observer=recorder)


@pytest.fixture
def extraction_settings():
    return ExtractionConfig()


@pytest.fixture
def relationship_settings():
    return RelationshipConfig()


@pytest.fixture
def graph_settings():
    return GraphConfig()


def make_entity(text, entity_type=EntityType.PERSON, start=0, confidence=0.9, document_id=None, **kwargs):
    """Entity at a fixed position, the way the extractor would emit it."""
    return Entity.create(
        text=text,
        entity_type=entity_type,
        start_pos=start,
        confidence=confidence,
        document_id=document_id,
        **kwargs,
    )


def make_document(content, title="Notes", file_type="text", **kwargs):
    return Document.create(title=title, content=content, file_type=file_type, **kwargs)
