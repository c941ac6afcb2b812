"""
Genomic Mesh Repositories

Persistence for anchored resources and incentive entries.
"""

from genomic_mesh.repositories.base import BaseRepository
from genomic_mesh.repositories.incentive_repository import (
    DuplicateIncentiveEntry,
    IncentiveRepository,
)
from genomic_mesh.repositories.resource_repository import (
    ALLOWED_TRANSITIONS,
    DuplicateResourceId,
    InvalidTransition,
    ResourceNotFound,
    ResourceRepository,
    ResourceStoreError,
    StaleTransition,
)

# The store that owns persisted resource state
ResourceStore = ResourceRepository

__all__ = [
    "BaseRepository",
    "ResourceRepository",
    "ResourceStore",
    "IncentiveRepository",
    "ResourceStoreError",
    "DuplicateResourceId",
    "ResourceNotFound",
    "StaleTransition",
    "InvalidTransition",
    "DuplicateIncentiveEntry",
    "ALLOWED_TRANSITIONS",
]
