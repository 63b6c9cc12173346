"""Tests for settings loading and overrides."""
import json
import logging

import pytest

from autoorganize.config import (
    EmbeddingConfig,
    LoggingConfig,
    Settings,
    apply_runtime_overrides,
    get_settings,
    load_config,
)
from autoorganize.utils.logging import JSONFormatter, LogContext, setup_logging


class TestSettings:
    """Tests for Settings defaults and YAML loading."""

    def test_defaults(self):
        settings = Settings()

        assert settings.relationships.min_confidence == 0.5
        assert settings.relationships.max_distance == 100
        assert settings.embedding.backend == "transformers"
        assert settings.embedding.allow_fallback is False
        assert settings.graph.default_depth == 2

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "embedding:\n"
            "  backend: hash\n"
            "  chunk_size: 64\n"
            "  chunk_overlap: 8\n"
            "graph:\n"
            "  community_seed: 7\n"
        )

        settings = load_config(str(path))

        assert settings.embedding.backend == "hash"
        assert settings.embedding.chunk_size == 64
        assert settings.graph.community_seed == 7
        assert settings.relationships.max_distance == 100

    def test_missing_yaml_gives_defaults(self, tmp_path):
        settings = load_config(str(tmp_path / "absent.yaml"))
        assert settings.storage.enable_wal is True

    def test_section_env_override(self, monkeypatch):
        monkeypatch.setenv("AUTOORGANIZE_EMBEDDING_BACKEND", "hash")
        assert EmbeddingConfig().backend == "hash"

    def test_chunk_overlap_must_be_smaller(self):
        with pytest.raises(ValueError):
            EmbeddingConfig(chunk_size=10, chunk_overlap=10)

    def test_log_level_is_case_insensitive(self):
        assert LoggingConfig(level="debug").level == "DEBUG"


class TestRuntimeOverrides:
    """Tests for the cached settings accessor."""

    def test_settings_are_cached(self):
        assert get_settings() is get_settings()

    def test_override_invalidates_cache(self):
        before = get_settings()
        apply_runtime_overrides("graph", {"max_path_depth": 3})
        after = get_settings()

        assert after is not before
        assert after.graph.max_path_depth == 3

    def test_unknown_section_is_ignored(self):
        apply_runtime_overrides("nonexistent", {"x": 1})
        assert get_settings().graph.max_path_depth == 6


class TestLogging:
    """Tests for the JSON formatter and log context."""

    def test_json_formatter_includes_context(self):
        logger = logging.getLogger("autoorganize.test")
        with LogContext(document_id="doc_1", model="all-minilm"):
            record = logger.makeRecord(
                logger.name, logging.INFO, __file__, 1, "Embedding %d chunks", (3,), None
            )
        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Embedding 3 chunks"
        assert payload["level"] == "INFO"
        assert payload["document_id"] == "doc_1"
        assert payload["model"] == "all-minilm"
        assert "relationship_id" not in payload

    def test_context_is_restored(self):
        factory = logging.getLogRecordFactory()
        with LogContext(entity_id="ent_1"):
            assert logging.getLogRecordFactory() is not factory
        assert logging.getLogRecordFactory() is factory

    def test_unknown_context_attribute(self):
        with pytest.raises(ValueError):
            LogContext(user="alice")

    def test_setup_logging_writes_json_file(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        log_file = tmp_path / "logs" / "autoorganize.log"
        try:
            handlers = setup_logging(LoggingConfig(level="debug", json_format=True, file=str(log_file)))
            with LogContext(document_id="doc_9"):
                logging.getLogger("autoorganize.test").debug("Saved document")
            for handler in handlers:
                handler.flush()
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)

        entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
        assert entry["message"] == "Saved document"
        assert entry["level"] == "DEBUG"
        assert entry["document_id"] == "doc_9"
        assert logging.getLogger("httpx").level == logging.WARNING
