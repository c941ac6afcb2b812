"""
Document Store

The storage collaborator the repositories build on: whole-document get and
create, an atomic compare-and-swap, and an append-only array field whose
entries get a store-assigned sequence and timestamp.

Two implementations:
- Neo4jDocumentStore keeps each document as a JSON property on a node and
  appended entries as linked entry nodes.
- InMemoryDocumentStore keeps plain dicts behind an asyncio lock, for tests
  and single-process tooling.

Documents are JSON-compatible dicts. Timestamps are stored in the fixed
width format from ``models.base`` so they order correctly as strings.
"""

import asyncio
import copy
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import structlog
from neo4j.exceptions import ConstraintError

from genomic_mesh.database.client import Neo4jClient
from genomic_mesh.models.base import format_timestamp

logger = structlog.get_logger(__name__)

_MISSING = object()

# Labels, property names and filter keys are interpolated into Cypher
VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_identifier(name: str, param_name: str = "identifier") -> str:
    """
    Validate that a string is a safe Cypher identifier.

    Raises:
        ValueError: If the identifier is invalid
    """
    if not name:
        raise ValueError(f"{param_name} cannot be empty")
    if not VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid {param_name}: must be alphanumeric with underscores, "
            "starting with letter or underscore"
        )
    if len(name) > 64:
        raise ValueError(f"{param_name} too long (max 64 characters)")
    return name


class DocumentStoreError(Exception):
    """Base exception for document store errors."""
    pass


class DuplicateKeyError(DocumentStoreError):
    """A document with this id already exists in the collection."""
    pass


class DocumentNotFoundError(DocumentStoreError):
    pass


class PreconditionFailed(DocumentStoreError):
    """
    The compare-and-swap expectation did not hold.

    ``actual`` maps each mismatched path to the value found in the store.
    """

    def __init__(self, message: str, actual: dict[str, Any] | None = None):
        super().__init__(message)
        self.actual = actual or {}


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Read a dotted path; a missing segment reads as None."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            raise DocumentStoreError(f"Cannot set {path!r}: {part!r} is not an object")
        current = nxt
    current[parts[-1]] = value


def check_expected(document: Mapping[str, Any], expected: Mapping[str, Any]) -> None:
    """Raise PreconditionFailed unless every expected path holds its value."""
    mismatches = {
        path: get_path(document, path)
        for path, value in expected.items()
        if get_path(document, path) != value
    }
    if mismatches:
        raise PreconditionFailed(
            f"Precondition failed on {sorted(mismatches)}", actual=mismatches
        )


def _matches(
    document: Mapping[str, Any],
    filters: Mapping[str, Any],
    any_of: Mapping[str, Iterable[Any]],
) -> bool:
    for path, value in filters.items():
        if get_path(document, path) != value:
            return False
    for path, values in any_of.items():
        if get_path(document, path) not in set(values):
            return False
    return True


class DocumentStore(ABC):
    """Storage collaborator contract."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return a copy of the document, or None."""

    @abstractmethod
    async def create(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None:
        """
        Insert a new document.

        Raises:
            DuplicateKeyError: ``doc_id`` already exists in ``collection``
        """

    @abstractmethod
    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        Atomically apply ``updates`` if every ``expected`` path matches.

        Paths may be dotted (``revocation.reason``). Returns the updated
        document.

        Raises:
            DocumentNotFoundError: no such document
            PreconditionFailed: an expected value did not match
        """

    @abstractmethod
    async def append_to_array_field(
        self,
        collection: str,
        doc_id: str,
        field: str,
        entry: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        """
        Append ``entry`` to an array field.

        The store assigns ``sequence`` (strictly increasing per document) and
        ``timestamp`` (``now``, but never earlier than the previous entry)
        and returns the stored entry. Concurrent appends never interleave
        out of sequence order.

        Raises:
            DocumentNotFoundError: no such document
        """

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        any_of: Mapping[str, Iterable[Any]] | None = None,
        before: datetime | None = None,
        before_field: str = "last_transition_at",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """
        Query documents by top-level equality and membership filters.

        When ``before`` is given only documents whose ``before_field`` is
        strictly earlier are returned, oldest first.
        """


# ═══════════════════════════════════════════════════════════════
# IN-MEMORY STORE
# ═══════════════════════════════════════════════════════════════


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store; a single asyncio lock makes each call atomic."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._entry_state: dict[tuple[str, str], tuple[int, str | None]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with self._lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    async def create(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DuplicateKeyError(f"{collection}/{doc_id} already exists")
            docs[doc_id] = copy.deepcopy(dict(document))

    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> dict[str, Any]:
        async with self._lock:
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
            check_expected(document, expected)
            updated = copy.deepcopy(document)
            for path, value in updates.items():
                set_path(updated, path, copy.deepcopy(value))
            self._collection(collection)[doc_id] = updated
            return copy.deepcopy(updated)

    async def append_to_array_field(
        self,
        collection: str,
        doc_id: str,
        field: str,
        entry: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        async with self._lock:
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise DocumentNotFoundError(f"{collection}/{doc_id} not found")

            sequence, last_at = self._entry_state.get((collection, doc_id), (0, None))
            timestamp = format_timestamp(now)
            if last_at is not None and last_at > timestamp:
                timestamp = last_at
            sequence += 1
            self._entry_state[(collection, doc_id)] = (sequence, timestamp)

            stored = {**copy.deepcopy(dict(entry)), "sequence": sequence, "timestamp": timestamp}
            document.setdefault(field, []).append(stored)
            return copy.deepcopy(stored)

    async def find(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        any_of: Mapping[str, Iterable[Any]] | None = None,
        before: datetime | None = None,
        before_field: str = "last_transition_at",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        filters = filters or {}
        any_of = any_of or {}
        cutoff = format_timestamp(before) if before is not None else None

        async with self._lock:
            matched = []
            for doc_id, document in self._collection(collection).items():
                if not _matches(document, filters, any_of):
                    continue
                if cutoff is not None:
                    value = get_path(document, before_field)
                    if value is None or value >= cutoff:
                        continue
                matched.append((get_path(document, before_field) or "", doc_id, document))

        matched.sort(key=lambda item: (item[0], item[1]))
        return [copy.deepcopy(doc) for _, _, doc in matched[:limit]]


# ═══════════════════════════════════════════════════════════════
# NEO4J STORE
# ═══════════════════════════════════════════════════════════════


def _scalar_properties(document: Mapping[str, Any]) -> dict[str, Any]:
    """Top-level scalars mirrored as node properties so they can be queried."""
    return {
        key: value
        for key, value in document.items()
        if key not in _RESERVED_PROPERTIES
        and (value is None or isinstance(value, (str, int, float, bool)))
    }


_RESERVED_PROPERTIES = frozenset({"id", "doc", "entry_seq", "last_entry_at", "lock_version"})

_RETURN_DOCUMENT = """
OPTIONAL MATCH (n)-[:HAS_ENTRY]->(e:DocumentEntry)
WITH n, e ORDER BY e.sequence
WITH n, collect(e {.field, .sequence, .timestamp, .data}) AS entries
RETURN n.doc AS doc, entries
"""


def _assemble(record: Mapping[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = json.loads(record["doc"])
    grouped: dict[str, list[dict[str, Any]]] = {}
    for entry in record.get("entries") or []:
        if entry is None or entry.get("field") is None:
            continue
        data = json.loads(entry["data"])
        data["sequence"] = entry["sequence"]
        data["timestamp"] = entry["timestamp"]
        grouped.setdefault(entry["field"], []).append(data)
    for field, entries in grouped.items():
        entries.sort(key=lambda item: item["sequence"])
        document[field] = list(document.get(field) or []) + entries
    return document


class Neo4jDocumentStore(DocumentStore):
    """
    Document store on Neo4j.

    Each collection is a node label. The document body is the JSON ``doc``
    property; top-level scalars are also written as properties for
    filtering. Appended entries are ``(:DocumentEntry)`` nodes linked by
    ``HAS_ENTRY``, numbered from the parent's ``entry_seq`` counter.
    """

    def __init__(self, client: Neo4jClient):
        self.client = client

    async def ensure_schema(self, collections: Iterable[str]) -> None:
        """Create the uniqueness constraint that backs DuplicateKeyError."""
        for collection in collections:
            label = validate_identifier(collection, "collection")
            await self.client.execute(
                f"CREATE CONSTRAINT {label.lower()}_id_unique IF NOT EXISTS "
                f"FOR (n:{label}) REQUIRE n.id IS UNIQUE"
            )
            logger.info("document_constraint_ensured", collection=label)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        label = validate_identifier(collection, "collection")
        record = await self.client.execute_single(
            f"MATCH (n:{label} {{id: $id}})" + _RETURN_DOCUMENT,
            {"id": doc_id},
        )
        if not record or record.get("doc") is None:
            return None
        return _assemble(record)

    async def create(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None:
        label = validate_identifier(collection, "collection")
        try:
            await self.client.execute(
                f"CREATE (n:{label} {{id: $id}}) "
                "SET n.doc = $doc, n.entry_seq = 0, n.lock_version = 0, n += $props",
                {
                    "id": doc_id,
                    "doc": json.dumps(dict(document)),
                    "props": _scalar_properties(document),
                },
            )
        except ConstraintError as e:
            raise DuplicateKeyError(f"{collection}/{doc_id} already exists") from e

    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> dict[str, Any]:
        label = validate_identifier(collection, "collection")
        async with self.client.transaction() as tx:
            # Writing lock_version takes the node's write lock for the rest of the transaction
            result = await tx.run(
                f"MATCH (n:{label} {{id: $id}}) "
                "SET n.lock_version = coalesce(n.lock_version, 0) + 1 "
                "RETURN n.doc AS doc",
                {"id": doc_id},
            )
            record = await result.single()
            if record is None or record["doc"] is None:
                raise DocumentNotFoundError(f"{collection}/{doc_id} not found")

            document: dict[str, Any] = json.loads(record["doc"])
            check_expected(document, expected)
            for path, value in updates.items():
                set_path(document, path, value)

            result = await tx.run(
                f"MATCH (n:{label} {{id: $id}}) SET n.doc = $doc, n += $props WITH n"
                + _RETURN_DOCUMENT,
                {
                    "id": doc_id,
                    "doc": json.dumps(document),
                    "props": _scalar_properties(document),
                },
            )
            updated = await result.single()
        return _assemble(updated) if updated else document

    async def append_to_array_field(
        self,
        collection: str,
        doc_id: str,
        field: str,
        entry: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        label = validate_identifier(collection, "collection")
        field = validate_identifier(field, "field")
        record = await self.client.execute_single(
            f"""
            MATCH (n:{label} {{id: $id}})
            SET n.entry_seq = coalesce(n.entry_seq, 0) + 1
            WITH n, n.entry_seq AS seq,
                 CASE WHEN n.last_entry_at IS NULL OR n.last_entry_at < $now
                      THEN $now ELSE n.last_entry_at END AS ts
            SET n.last_entry_at = ts
            CREATE (n)-[:HAS_ENTRY]->(e:DocumentEntry {{
                field: $field, sequence: seq, timestamp: ts, data: $data
            }})
            RETURN seq AS sequence, ts AS timestamp
            """,
            {
                "id": doc_id,
                "now": format_timestamp(now),
                "field": field,
                "data": json.dumps(dict(entry)),
            },
        )
        if not record:
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        return {**dict(entry), "sequence": record["sequence"], "timestamp": record["timestamp"]}

    async def find(
        self,
        collection: str,
        filters: Mapping[str, Any] | None = None,
        any_of: Mapping[str, Iterable[Any]] | None = None,
        before: datetime | None = None,
        before_field: str = "last_transition_at",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        label = validate_identifier(collection, "collection")
        before_field = validate_identifier(before_field, "before_field")
        limit = min(max(1, limit), 1000)

        conditions: list[str] = []
        params: dict[str, Any] = {"limit": limit}
        for i, (key, value) in enumerate((filters or {}).items()):
            key = validate_identifier(key, "filter")
            if value is None:
                conditions.append(f"n.{key} IS NULL")
            else:
                conditions.append(f"n.{key} = $f{i}")
                params[f"f{i}"] = value
        for i, (key, values) in enumerate((any_of or {}).items()):
            key = validate_identifier(key, "filter")
            conditions.append(f"n.{key} IN $a{i}")
            params[f"a{i}"] = list(values)
        if before is not None:
            conditions.append(f"n.{before_field} < $before")
            params["before"] = format_timestamp(before)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        records = await self.client.execute(
            f"""
            MATCH (n:{label})
            {where}
            WITH n ORDER BY n.{before_field} ASC, n.id ASC LIMIT $limit
            """ + _RETURN_DOCUMENT,
            params,
        )
        documents = [_assemble(r) for r in records if r.get("doc") is not None]
        # Aggregation in the RETURN clause drops the ORDER BY
        documents.sort(key=lambda doc: get_path(doc, before_field) or "")
        return documents
