"""
Base Repository

Abstract base class for repositories over the document store: model
conversion, id lookup, insert and compare-and-swap helpers.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel

from genomic_mesh.database.documents import DocumentStore, validate_identifier
from genomic_mesh.models.base import utc_now

logger = structlog.get_logger(__name__)

# Type variable for the persisted model
T = TypeVar("T", bound=BaseModel)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base repository.

    Entities are stored as whole JSON documents keyed by ``id_field``.
    Subclasses own the state transition rules; this class only moves
    documents in and out of the store.
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize repository with a document store.

        Args:
            store: Document store instance
            clock: Source of the current UTC time
        """
        self.store = store
        self.clock = clock
        self.logger = structlog.get_logger(self.__class__.__name__)
        validate_identifier(self.collection, "collection")

    @property
    @abstractmethod
    def collection(self) -> str:
        """The store collection (Neo4j label) for this entity."""
        pass

    @property
    @abstractmethod
    def model_class(self) -> type[T]:
        """The Pydantic model class for this entity."""
        pass

    @property
    @abstractmethod
    def id_field(self) -> str:
        pass

    def _now(self) -> datetime:
        return self.clock()

    def _to_document(self, model: T) -> dict[str, Any]:
        return model.model_dump(mode="json")

    def _to_model(self, document: Mapping[str, Any] | None) -> T | None:
        """
        Convert a stored document to a Pydantic model.

        Returns None (and logs) if the document does not validate.
        """
        if not document:
            return None
        try:
            return self.model_class.model_validate(dict(document))
        except Exception as e:
            self.logger.error(
                "document_to_model_failed",
                error=str(e),
                document_keys=list(document.keys()),
            )
            return None

    def _to_models(self, documents: Iterable[Mapping[str, Any]]) -> list[T]:
        return [m for m in (self._to_model(d) for d in documents) if m is not None]

    async def get_by_id(self, entity_id: str) -> T | None:
        document = await self.store.get(self.collection, entity_id)
        return self._to_model(document)

    async def _insert(self, model: T) -> T:
        """
        Persist a new entity.

        Raises:
            DuplicateKeyError: an entity with the same id exists
        """
        document = self._to_document(model)
        await self.store.create(self.collection, document[self.id_field], document)
        return model

    async def _swap(
        self,
        entity_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> T:
        document = await self.store.compare_and_swap(
            self.collection, entity_id, expected, updates
        )
        model = self._to_model(document)
        if model is None:
            raise ValueError(f"{self.collection}/{entity_id} failed validation after update")
        return model

    async def _find(
        self,
        filters: Mapping[str, Any] | None = None,
        any_of: Mapping[str, Iterable[Any]] | None = None,
        before: datetime | None = None,
        limit: int = 100,
    ) -> list[T]:
        limit = min(max(1, limit), 1000)
        documents = await self.store.find(
            self.collection,
            filters=filters,
            any_of=any_of,
            before=before,
            limit=limit,
        )
        return self._to_models(documents)
