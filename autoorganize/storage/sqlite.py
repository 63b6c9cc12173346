"""
SQLite-based Graph Store.

Persists documents, entities, relationships with their evidence, and
embedding vectors in a single SQLite database.
"""

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite
import numpy as np

from autoorganize.knowledge.documents import Document
from autoorganize.knowledge.entities import Entity, EntityType, parse_timestamp, utcnow
from autoorganize.knowledge.relationships import (
    Evidence,
    NodeKind,
    Relationship,
    RelationshipType,
    details_from_dict,
    details_to_dict,
    relationship_id,
)
from autoorganize.services.embedding.models import EmbeddingVector
from autoorganize.storage.base import GraphStore
from autoorganize.utils.exceptions import StorageError
from autoorganize.utils.logging import get_logger


logger = get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        file_type TEXT NOT NULL DEFAULT 'text',
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        text TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        start_pos INTEGER NOT NULL DEFAULT 0,
        end_pos INTEGER NOT NULL DEFAULT 0,
        confidence REAL NOT NULL,
        context TEXT,
        normalized_value TEXT,
        metadata TEXT,
        document_id TEXT,
        mentions INTEGER NOT NULL DEFAULT 1,
        aliases TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entities_document ON entities(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_entities_value ON entities(entity_type, normalized_value)",
    """
    CREATE TABLE IF NOT EXISTS relationships (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        source_type TEXT NOT NULL DEFAULT 'entity',
        target_type TEXT NOT NULL DEFAULT 'entity',
        relationship_type TEXT NOT NULL,
        confidence REAL NOT NULL,
        strength REAL NOT NULL,
        details TEXT,
        metadata TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(source_id, target_id, relationship_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_id)",
    """
    CREATE TABLE IF NOT EXISTS relationship_evidence (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        relationship_id TEXT NOT NULL,
        document_id TEXT NOT NULL DEFAULT '',
        context TEXT NOT NULL DEFAULT '',
        position INTEGER NOT NULL DEFAULT 0,
        confidence REAL NOT NULL,
        UNIQUE(relationship_id, document_id, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_evidence_document ON relationship_evidence(document_id)",
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        id TEXT PRIMARY KEY,
        document_id TEXT,
        entity_id TEXT,
        text TEXT NOT NULL,
        vector BLOB NOT NULL,
        model TEXT NOT NULL,
        dimensions INTEGER NOT NULL,
        metadata TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_embeddings_document ON embeddings(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_embeddings_entity ON embeddings(entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model, created_at)",
]

UPSERT_RELATIONSHIP = """
    INSERT INTO relationships (
        id, source_id, target_id, source_type, target_type, relationship_type,
        confidence, strength, details, metadata, created_by, created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(source_id, target_id, relationship_type) DO UPDATE SET
        source_type = excluded.source_type,
        target_type = excluded.target_type,
        confidence = excluded.confidence,
        strength = excluded.strength,
        details = excluded.details,
        metadata = excluded.metadata,
        updated_at = excluded.updated_at
    WHERE excluded.confidence > relationships.confidence
"""

INSERT_EVIDENCE = """
    INSERT OR IGNORE INTO relationship_evidence (
        relationship_id, document_id, context, position, confidence
    )
    SELECT id, ?, ?, ?, ? FROM relationships
    WHERE source_id = ? AND target_id = ? AND relationship_type = ?
"""


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _placeholders(values: Iterable) -> str:
    return ",".join("?" for _ in values)


def _type_values(types: Optional[Iterable]) -> list[str]:
    return [getattr(t, "value", t) for t in types or []]


class SQLiteGraphStore(GraphStore):
    """
    SQLite-backed graph store.

    Opens a connection per operation; WAL mode lets graph reads proceed
    while the builder writes.
    """

    def __init__(self, db_path: str | Path | None = None, enable_wal: Optional[bool] = None):
        """
        Initialize SQLite graph store.

        Args:
            db_path: Path to SQLite database file.
                     Defaults to ``settings.storage.database``.
            enable_wal: Use write-ahead logging. Defaults to the storage setting.
        """
        if db_path is None or enable_wal is None:
            from autoorganize.config import get_settings
            storage = get_settings().storage
            db_path = db_path if db_path is not None else storage.database
            enable_wal = storage.enable_wal if enable_wal is None else enable_wal
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.enable_wal = enable_wal
        self._initialized = False
        self._lock = asyncio.Lock()

    async def _ensure_initialized(self):
        """Ensure database schema exists."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                if self.enable_wal:
                    await db.execute("PRAGMA journal_mode=WAL")
                for statement in SCHEMA:
                    await db.execute(statement)
                await db.commit()

            self._initialized = True
            logger.info(f"SQLite graph store initialized at {self.db_path}")

    @asynccontextmanager
    async def _get_db(self, operation: str):
        """Get a database connection; sqlite failures become StorageError."""
        try:
            await self._ensure_initialized()
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA busy_timeout=5000")
                yield db
        except sqlite3.Error as e:
            raise StorageError(operation, details=str(e)) from e

    @asynccontextmanager
    async def _transaction(self, operation: str):
        """Connection whose writes commit together or not at all."""
        async with self._get_db(operation) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    # ==================== Row Mapping ====================

    @staticmethod
    def _row_to_document(row) -> Document:
        return Document(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            file_type=row["file_type"],
            metadata=_loads(row["metadata"], {}),
            created_at=parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_entity(row) -> Entity:
        return Entity(
            id=row["id"],
            text=row["text"],
            entity_type=EntityType.parse(row["entity_type"]),
            start_pos=row["start_pos"],
            end_pos=row["end_pos"],
            confidence=row["confidence"],
            context=row["context"],
            normalized_value=row["normalized_value"],
            metadata=_loads(row["metadata"], {}),
            document_id=row["document_id"],
            mentions=row["mentions"],
            aliases=_loads(row["aliases"], []),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _entity_params(entity: Entity) -> tuple:
        return (
            entity.id,
            entity.text,
            entity.entity_type.value,
            entity.start_pos,
            entity.end_pos,
            entity.confidence,
            entity.context,
            entity.normalized_value,
            _dumps(entity.metadata),
            entity.document_id,
            entity.mentions,
            _dumps(entity.aliases),
            _timestamp(entity.created_at),
            _timestamp(entity.updated_at),
        )

    @staticmethod
    def _row_to_relationship(row, evidence: list[Evidence]) -> Relationship:
        return Relationship(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relationship_type=RelationshipType.parse(row["relationship_type"]),
            source_type=NodeKind(row["source_type"]),
            target_type=NodeKind(row["target_type"]),
            confidence=row["confidence"],
            strength=row["strength"],
            evidence=evidence,
            details=details_from_dict(_loads(row["details"])),
            metadata=_loads(row["metadata"], {}),
            created_by=row["created_by"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_embedding(row) -> EmbeddingVector:
        return EmbeddingVector(
            id=row["id"],
            text=row["text"],
            vector=np.frombuffer(row["vector"], dtype="<f4").copy(),
            model=row["model"],
            dimensions=row["dimensions"],
            document_id=row["document_id"],
            entity_id=row["entity_id"],
            metadata=_loads(row["metadata"], {}),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    async def _load_evidence(self, db, relationship_ids: list[str]) -> dict[str, list[Evidence]]:
        evidence: dict[str, list[Evidence]] = {rid: [] for rid in relationship_ids}
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(relationship_ids), 500):
            chunk = relationship_ids[start:start + 500]
            cursor = await db.execute(
                f"""
                SELECT relationship_id, document_id, context, position, confidence
                FROM relationship_evidence
                WHERE relationship_id IN ({_placeholders(chunk)})
                ORDER BY id
                """,
                chunk,
            )
            for row in await cursor.fetchall():
                evidence[row["relationship_id"]].append(Evidence(
                    document_id=row["document_id"] or None,
                    context=row["context"],
                    position=row["position"],
                    confidence=row["confidence"],
                ))
        return evidence

    async def _fetch_relationships(self, db, query: str, params: list) -> list[Relationship]:
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        evidence = await self._load_evidence(db, [row["id"] for row in rows])
        return [self._row_to_relationship(row, evidence[row["id"]]) for row in rows]

    # ==================== Documents ====================

    async def save_document(self, document: Document) -> None:
        async with self._transaction("save_document") as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO documents (id, title, content, file_type, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.title,
                    document.content,
                    document.file_type,
                    _dumps(document.metadata),
                    _timestamp(document.created_at),
                ),
            )

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self._get_db("get_document") as db:
            cursor = await db.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
            row = await cursor.fetchone()
            return self._row_to_document(row) if row else None

    async def get_documents(
        self,
        document_ids: Optional[list[str]] = None,
        document_types: Optional[list[str]] = None,
    ) -> list[Document]:
        query = "SELECT * FROM documents WHERE 1=1"
        params: list = []
        if document_ids is not None:
            if not document_ids:
                return []
            query += f" AND id IN ({_placeholders(document_ids)})"
            params.extend(document_ids)
        if document_types:
            query += f" AND file_type IN ({_placeholders(document_types)})"
            params.extend(document_types)
        query += " ORDER BY created_at DESC, id"

        async with self._get_db("get_documents") as db:
            cursor = await db.execute(query, params)
            return [self._row_to_document(row) for row in await cursor.fetchall()]

    @staticmethod
    async def _delete_outputs(db: aiosqlite.Connection, document_id: str) -> int:
        await db.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
        await db.execute(
            """
            DELETE FROM embeddings
            WHERE entity_id IN (SELECT id FROM entities WHERE document_id = ?)
            """,
            (document_id,),
        )
        cursor = await db.execute("DELETE FROM entities WHERE document_id = ?", (document_id,))
        return cursor.rowcount

    async def delete_document(self, document_id: str) -> bool:
        async with self._transaction("delete_document") as db:
            await self._delete_outputs(db, document_id)
            cursor = await db.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted document {document_id} with its entities and embeddings")
        return deleted

    async def delete_document_outputs(self, document_id: str) -> int:
        async with self._transaction("delete_document_outputs") as db:
            deleted = await self._delete_outputs(db, document_id)
        logger.debug(f"Cleared {deleted} entities and their embeddings for {document_id}")
        return deleted

    # ==================== Entities ====================

    async def save_entities(self, entities: list[Entity]) -> int:
        if not entities:
            return 0
        async with self._transaction("save_entities") as db:
            await db.executemany(
                """
                INSERT OR REPLACE INTO entities (
                    id, text, entity_type, start_pos, end_pos, confidence, context,
                    normalized_value, metadata, document_id, mentions, aliases,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [self._entity_params(e) for e in entities],
            )
        return len(entities)

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        async with self._get_db("get_entity") as db:
            cursor = await db.execute("SELECT * FROM entities WHERE id = ?", (entity_id,))
            row = await cursor.fetchone()
            return self._row_to_entity(row) if row else None

    async def get_entities(
        self,
        entity_ids: Optional[list[str]] = None,
        document_id: Optional[str] = None,
        entity_types: Optional[list[EntityType]] = None,
        limit: Optional[int] = None,
    ) -> list[Entity]:
        query = "SELECT * FROM entities WHERE 1=1"
        params: list = []
        if entity_ids is not None:
            if not entity_ids:
                return []
            query += f" AND id IN ({_placeholders(entity_ids)})"
            params.extend(entity_ids)
        if document_id is not None:
            query += " AND document_id = ?"
            params.append(document_id)
        if entity_types:
            types = _type_values(entity_types)
            query += f" AND entity_type IN ({_placeholders(types)})"
            params.extend(types)
        query += " ORDER BY document_id, start_pos, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self._get_db("get_entities") as db:
            cursor = await db.execute(query, params)
            return [self._row_to_entity(row) for row in await cursor.fetchall()]

    async def find_entities_by_value(
        self,
        entity_type: EntityType,
        normalized_value: str,
        exclude_document_id: Optional[str] = None,
    ) -> list[Entity]:
        query = "SELECT * FROM entities WHERE entity_type = ? AND normalized_value = ?"
        params: list = [EntityType.parse(entity_type).value, normalized_value]
        if exclude_document_id is not None:
            query += " AND (document_id IS NULL OR document_id != ?)"
            params.append(exclude_document_id)

        async with self._get_db("find_entities_by_value") as db:
            cursor = await db.execute(query, params)
            return [self._row_to_entity(row) for row in await cursor.fetchall()]

    async def ensure_placeholder_entities(self, entity_ids: list[str]) -> list[Entity]:
        if not entity_ids:
            return []
        placeholders = [Entity.placeholder(eid) for eid in dict.fromkeys(entity_ids)]
        async with self._transaction("ensure_placeholder_entities") as db:
            created = []
            for entity in placeholders:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO entities (
                        id, text, entity_type, start_pos, end_pos, confidence, context,
                        normalized_value, metadata, document_id, mentions, aliases,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._entity_params(entity),
                )
                if cursor.rowcount > 0:
                    created.append(entity)
        if created:
            logger.debug(f"Materialized {len(created)} placeholder entities")
        return created

    async def count_entities_by_type(self) -> dict[str, int]:
        async with self._get_db("count_entities_by_type") as db:
            cursor = await db.execute(
                "SELECT entity_type, COUNT(*) AS n FROM entities GROUP BY entity_type"
            )
            return {row["entity_type"]: row["n"] for row in await cursor.fetchall()}

    async def top_connected_entities(
        self,
        limit: int,
        entity_types: Optional[list[EntityType]] = None,
    ) -> list[tuple[Entity, int]]:
        query = """
            SELECT e.*, (
                SELECT COUNT(*) FROM relationships r
                WHERE r.source_id = e.id OR r.target_id = e.id
            ) AS connection_count
            FROM entities e WHERE 1=1
        """
        params: list = []
        if entity_types:
            types = _type_values(entity_types)
            query += f" AND e.entity_type IN ({_placeholders(types)})"
            params.extend(types)
        query += " ORDER BY connection_count DESC, e.id LIMIT ?"
        params.append(limit)

        async with self._get_db("top_connected_entities") as db:
            cursor = await db.execute(query, params)
            return [
                (self._row_to_entity(row), row["connection_count"])
                for row in await cursor.fetchall()
            ]

    async def merge_entities(self, source_id: str, merged_target: Entity) -> int:
        target_id = merged_target.id
        async with self._transaction("merge_entities") as db:
            moved = await self._fetch_relationships(
                db,
                "SELECT * FROM relationships WHERE source_id = ? OR target_id = ?",
                [source_id, source_id],
            )
            await self._delete_relationship_rows(db, [rel.id for rel in moved])

            repointed = []
            for rel in moved:
                new_source = target_id if rel.source_id == source_id else rel.source_id
                new_target = target_id if rel.target_id == source_id else rel.target_id
                if new_source == new_target:
                    continue
                rel.source_id, rel.target_id = new_source, new_target
                rel.id = relationship_id(new_source, new_target, rel.relationship_type)
                repointed.append(rel)
            await self._upsert_rows(db, repointed)

            await db.execute(
                "UPDATE embeddings SET entity_id = ?, updated_at = ? WHERE entity_id = ?",
                (target_id, _timestamp(utcnow()), source_id),
            )
            await db.execute(
                """
                INSERT OR REPLACE INTO entities (
                    id, text, entity_type, start_pos, end_pos, confidence, context,
                    normalized_value, metadata, document_id, mentions, aliases,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._entity_params(merged_target),
            )
            await db.execute("DELETE FROM entities WHERE id = ?", (source_id,))

        logger.info(f"Merged entity {source_id} into {target_id} ({len(repointed)} relationships)")
        return len(repointed)

    # ==================== Relationships ====================

    async def _upsert_rows(self, db, relationships: list[Relationship]) -> None:
        for rel in relationships:
            source, target, rel_type = rel.key
            await db.execute(
                UPSERT_RELATIONSHIP,
                (
                    rel.id,
                    source,
                    target,
                    rel.source_type.value,
                    rel.target_type.value,
                    rel_type,
                    rel.confidence,
                    rel.strength,
                    _dumps(details_to_dict(rel.details)),
                    _dumps(rel.metadata),
                    rel.created_by,
                    _timestamp(rel.created_at),
                    _timestamp(rel.updated_at),
                ),
            )
            await db.executemany(
                INSERT_EVIDENCE,
                [
                    (
                        ev.document_id or "",
                        ev.context,
                        ev.position,
                        ev.confidence,
                        source,
                        target,
                        rel_type,
                    )
                    for ev in rel.evidence
                ],
            )

    async def _delete_relationship_rows(self, db, relationship_ids: list[str]) -> int:
        if not relationship_ids:
            return 0
        marks = _placeholders(relationship_ids)
        await db.execute(
            f"DELETE FROM relationship_evidence WHERE relationship_id IN ({marks})",
            relationship_ids,
        )
        cursor = await db.execute(
            f"DELETE FROM relationships WHERE id IN ({marks})", relationship_ids
        )
        return cursor.rowcount

    async def upsert_relationships(self, relationships: list[Relationship]) -> int:
        if not relationships:
            return 0
        async with self._transaction("upsert_relationships") as db:
            await self._upsert_rows(db, relationships)
        logger.debug(f"Upserted {len(relationships)} relationships")
        return len(relationships)

    async def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        async with self._get_db("get_relationship") as db:
            found = await self._fetch_relationships(
                db, "SELECT * FROM relationships WHERE id = ?", [relationship_id]
            )
            return found[0] if found else None

    async def get_relationships(
        self,
        entity_id: Optional[str] = None,
        direction: str = "both",
        relationship_types: Optional[list[RelationshipType]] = None,
        node_ids: Optional[list[str]] = None,
        min_strength: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[Relationship]:
        query = "SELECT * FROM relationships WHERE 1=1"
        params: list = []
        if entity_id is not None:
            if direction == "outgoing":
                query += " AND source_id = ?"
                params.append(entity_id)
            elif direction == "incoming":
                query += " AND target_id = ?"
                params.append(entity_id)
            else:
                query += " AND (source_id = ? OR target_id = ?)"
                params.extend([entity_id, entity_id])
        if relationship_types:
            types = _type_values(relationship_types)
            query += f" AND relationship_type IN ({_placeholders(types)})"
            params.extend(types)
        if node_ids is not None:
            if not node_ids:
                return []
            marks = _placeholders(node_ids)
            query += f" AND source_id IN ({marks}) AND target_id IN ({marks})"
            params.extend(node_ids)
            params.extend(node_ids)
        if min_strength is not None:
            query += " AND strength >= ?"
            params.append(min_strength)
        query += " ORDER BY strength DESC, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self._get_db("get_relationships") as db:
            return await self._fetch_relationships(db, query, params)

    async def update_relationship(
        self,
        relationship_id: str,
        confidence: Optional[float] = None,
        strength: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[Relationship]:
        assignments = ["updated_at = ?"]
        params: list = [_timestamp(utcnow())]
        if confidence is not None:
            assignments.append("confidence = ?")
            params.append(confidence)
        if strength is not None:
            assignments.append("strength = ?")
            params.append(strength)
        if metadata is not None:
            assignments.append("metadata = ?")
            params.append(_dumps(metadata))
        params.append(relationship_id)

        async with self._transaction("update_relationship") as db:
            cursor = await db.execute(
                f"UPDATE relationships SET {', '.join(assignments)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                return None
            found = await self._fetch_relationships(
                db, "SELECT * FROM relationships WHERE id = ?", [relationship_id]
            )
        return found[0]

    async def delete_relationship(self, relationship_id: str) -> bool:
        async with self._transaction("delete_relationship") as db:
            return await self._delete_relationship_rows(db, [relationship_id]) > 0

    async def delete_relationships_by_document(self, document_id: str) -> int:
        async with self._transaction("delete_relationships_by_document") as db:
            await db.execute(
                "DELETE FROM relationship_evidence WHERE document_id = ?", (document_id,)
            )
            cursor = await db.execute(
                """
                SELECT id FROM relationships r
                WHERE r.source_id = ? OR r.target_id = ?
                   OR NOT EXISTS (
                        SELECT 1 FROM relationship_evidence ev WHERE ev.relationship_id = r.id
                   )
                """,
                (document_id, document_id),
            )
            orphaned = [row["id"] for row in await cursor.fetchall()]
            return await self._delete_relationship_rows(db, orphaned)

    async def count_relationships_by_type(self) -> dict[str, int]:
        async with self._get_db("count_relationships_by_type") as db:
            cursor = await db.execute(
                "SELECT relationship_type, COUNT(*) AS n FROM relationships GROUP BY relationship_type"
            )
            return {row["relationship_type"]: row["n"] for row in await cursor.fetchall()}

    async def expand_from(
        self,
        center_id: str,
        depth: int,
        min_strength: float = 0.0,
        relationship_types: Optional[list[RelationshipType]] = None,
        limit: Optional[int] = None,
    ) -> list[tuple[str, int]]:
        type_clause = ""
        params: list = [center_id, depth, min_strength]
        if relationship_types:
            types = _type_values(relationship_types)
            type_clause = f" AND r.relationship_type IN ({_placeholders(types)})"
            params.extend(types)
        query = f"""
            WITH RECURSIVE reach(node_id, depth) AS (
                SELECT ?, 0
                UNION
                SELECT CASE WHEN r.source_id = reach.node_id THEN r.target_id ELSE r.source_id END,
                       reach.depth + 1
                FROM relationships r
                JOIN reach ON r.source_id = reach.node_id OR r.target_id = reach.node_id
                WHERE reach.depth < ? AND r.strength >= ?{type_clause}
            )
            SELECT node_id, MIN(depth) AS depth FROM reach
            GROUP BY node_id ORDER BY depth, node_id
        """
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self._get_db("expand_from") as db:
            cursor = await db.execute(query, params)
            return [(row["node_id"], row["depth"]) for row in await cursor.fetchall()]

    async def degree_counts(
        self,
        limit: Optional[int] = None,
        entity_types: Optional[list[EntityType]] = None,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[tuple[str, int]]:
        rel_clause = ""
        params: list = []
        if relationship_types:
            types = _type_values(relationship_types)
            rel_clause = f" WHERE relationship_type IN ({_placeholders(types)})"
            params.extend(types + types)
        query = f"""
            SELECT e.id AS entity_id, COUNT(ends.node_id) AS degree
            FROM entities e
            JOIN (
                SELECT source_id AS node_id FROM relationships{rel_clause}
                UNION ALL
                SELECT target_id AS node_id FROM relationships{rel_clause}
            ) ends ON ends.node_id = e.id
            WHERE 1=1
        """
        if entity_types:
            types = _type_values(entity_types)
            query += f" AND e.entity_type IN ({_placeholders(types)})"
            params.extend(types)
        query += " GROUP BY e.id ORDER BY degree DESC, e.id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self._get_db("degree_counts") as db:
            cursor = await db.execute(query, params)
            return [(row["entity_id"], row["degree"]) for row in await cursor.fetchall()]

    # ==================== Embeddings ====================

    async def save_embeddings(self, vectors: list[EmbeddingVector]) -> int:
        if not vectors:
            return 0
        async with self._transaction("save_embeddings") as db:
            await db.executemany(
                """
                INSERT OR REPLACE INTO embeddings (
                    id, document_id, entity_id, text, vector, model, dimensions,
                    metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        v.id,
                        v.document_id,
                        v.entity_id,
                        v.text,
                        np.asarray(v.vector, dtype="<f4").tobytes(),
                        v.model,
                        v.dimensions,
                        _dumps(v.metadata),
                        _timestamp(v.created_at),
                        _timestamp(v.updated_at),
                    )
                    for v in vectors
                ],
            )
        return len(vectors)

    async def get_embedding_candidates(
        self,
        model: str,
        limit: int,
        document_types: Optional[list[str]] = None,
        document_ids: Optional[list[str]] = None,
        entity_ids: Optional[list[str]] = None,
        date_start: Optional[datetime] = None,
        date_end: Optional[datetime] = None,
    ) -> list[EmbeddingVector]:
        query = """
            SELECT emb.* FROM embeddings emb
            LEFT JOIN documents d ON d.id = emb.document_id
            WHERE emb.model = ?
        """
        params: list = [model]
        if document_types:
            query += f" AND d.file_type IN ({_placeholders(document_types)})"
            params.extend(document_types)
        if document_ids:
            query += f" AND emb.document_id IN ({_placeholders(document_ids)})"
            params.extend(document_ids)
        if entity_ids:
            query += f" AND emb.entity_id IN ({_placeholders(entity_ids)})"
            params.extend(entity_ids)
        if date_start is not None:
            query += " AND emb.created_at >= ?"
            params.append(_timestamp(date_start))
        if date_end is not None:
            query += " AND emb.created_at <= ?"
            params.append(_timestamp(date_end))
        query += " ORDER BY emb.created_at DESC, emb.id LIMIT ?"
        params.append(limit)

        async with self._get_db("get_embedding_candidates") as db:
            cursor = await db.execute(query, params)
            return [self._row_to_embedding(row) for row in await cursor.fetchall()]

    async def get_embeddings_by_document(self, document_id: str) -> list[EmbeddingVector]:
        async with self._get_db("get_embeddings_by_document") as db:
            cursor = await db.execute(
                "SELECT * FROM embeddings WHERE document_id = ? ORDER BY created_at, id",
                (document_id,),
            )
            embeddings = [self._row_to_embedding(row) for row in await cursor.fetchall()]
        embeddings.sort(key=lambda e: e.metadata.get("chunk_index", 0))
        return embeddings

    async def delete_embeddings(
        self,
        document_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        if document_id is None and entity_id is None:
            return 0
        clauses, params = [], []
        if document_id is not None:
            clauses.append("document_id = ?")
            params.append(document_id)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        async with self._transaction("delete_embeddings") as db:
            cursor = await db.execute(
                f"DELETE FROM embeddings WHERE {' AND '.join(clauses)}", params
            )
            return cursor.rowcount
