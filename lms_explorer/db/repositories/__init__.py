"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .index_state import (
    SqliteIndexedFileRepository,
    SqliteMetadataRepository,
)

__all__ = [
    "SqliteSessionRepository",
    "SqliteIndexedFileRepository",
    "SqliteMetadataRepository",
]
