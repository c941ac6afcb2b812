"""
Genomic Mesh Database Layer

Neo4j client and the document store contract built on it.
"""

from genomic_mesh.database.client import Neo4jClient
from genomic_mesh.database.documents import (
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    DuplicateKeyError,
    InMemoryDocumentStore,
    Neo4jDocumentStore,
    PreconditionFailed,
    validate_identifier,
)

__all__ = [
    "Neo4jClient",
    "DocumentStore",
    "DocumentStoreError",
    "DuplicateKeyError",
    "DocumentNotFoundError",
    "PreconditionFailed",
    "InMemoryDocumentStore",
    "Neo4jDocumentStore",
    "validate_identifier",
]
