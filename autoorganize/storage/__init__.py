"""
Storage Package.

Persistence for documents, entities, relationships and embedding vectors.
"""

from autoorganize.storage.base import GraphStore
from autoorganize.storage.sqlite import SQLiteGraphStore

__all__ = [
    "GraphStore",
    "SQLiteGraphStore",
]
