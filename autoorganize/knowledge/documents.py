"""
Document records.

Documents are produced by the ingestion layer; this package only reads
their id, title, content and file type.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import uuid

from autoorganize.knowledge.entities import parse_timestamp, utcnow


@dataclass
class Document:
    """A source document whose text feeds extraction and embedding."""

    id: str
    title: str
    content: str
    file_type: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        title: str,
        content: str,
        file_type: str = "text",
        document_id: Optional[str] = None,
        **kwargs
    ) -> "Document":
        return cls(
            id=document_id or f"doc_{uuid.uuid4().hex[:16]}",
            title=title,
            content=content,
            file_type=file_type,
            metadata=kwargs.get("metadata", {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "file_type": self.file_type,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Document":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            file_type=data.get("file_type", "text"),
            metadata=data.get("metadata") or {},
            created_at=parse_timestamp(data.get("created_at")),
        )
