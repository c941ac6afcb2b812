"""
Resource Repository

Persistence for anchored resources (consents and genomic data records).

Every anchor-state change goes through ``transition_anchor_state``, a
compare-and-swap on the persisted state. Two workers racing on the same
resource can never both win the same transition: the loser gets
StaleTransition and has to re-read. Access-log appends bypass the CAS and
never conflict with state transitions.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from genomic_mesh.database.documents import (
    DocumentNotFoundError,
    DuplicateKeyError,
    PreconditionFailed,
)
from genomic_mesh.models.base import (
    NON_TERMINAL_STATES,
    AnchorState,
    ResourceKind,
    format_timestamp,
)
from genomic_mesh.models.resource import (
    AccessLogEntry,
    AnchoredResource,
    AuthorizedEntity,
)
from genomic_mesh.repositories.base import BaseRepository


class ResourceStoreError(Exception):
    """Base exception for resource store errors."""
    pass


class DuplicateResourceId(ResourceStoreError):
    pass


class ResourceNotFound(ResourceStoreError):
    pass


class StaleTransition(ResourceStoreError):
    """The persisted state no longer matches what the caller expected."""

    def __init__(self, message: str, actual_state: AnchorState | None = None):
        super().__init__(message)
        self.actual_state = actual_state


class InvalidTransition(ResourceStoreError):
    """The requested transition is not an edge of the anchoring state machine."""
    pass


# Self-edges on the pending states record a transaction id on an existing claim.
# Pending -> previous state releases a claim whose submission never went out.
ALLOWED_TRANSITIONS: dict[AnchorState, frozenset[AnchorState]] = {
    AnchorState.UNANCHORED: frozenset({
        AnchorState.LOG_PENDING,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.LOG_PENDING: frozenset({
        AnchorState.LOG_PENDING,
        AnchorState.LOG_CONFIRMED,
        AnchorState.UNANCHORED,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.LOG_CONFIRMED: frozenset({
        AnchorState.TOKEN_PENDING,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.TOKEN_PENDING: frozenset({
        AnchorState.TOKEN_PENDING,
        AnchorState.ANCHORED,
        AnchorState.LOG_CONFIRMED,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.ANCHORED: frozenset(),
    AnchorState.ANCHOR_FAILED: frozenset(),
}

# Edges where a receipt confirmed a phase; the staleness clock restarts here
PROGRESS_EDGES: frozenset[tuple[AnchorState, AnchorState]] = frozenset({
    (AnchorState.LOG_PENDING, AnchorState.LOG_CONFIRMED),
    (AnchorState.TOKEN_PENDING, AnchorState.ANCHORED),
})

PROOF_FIELDS = frozenset({
    "log_submission_key",
    "log_transaction_id",
    "log_sequence_number",
    "token_submission_key",
    "token_id",
    "token_serial_number",
    "token_transaction_id",
    "failure_reason",
    "failure_detail",
})

ACCESS_LOG_FIELD = "access_log"


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


class ResourceRepository(BaseRepository[AnchoredResource]):
    """Repository for AnchoredResource documents."""

    @property
    def collection(self) -> str:
        return "AnchoredResource"

    @property
    def model_class(self) -> type[AnchoredResource]:
        return AnchoredResource

    @property
    def id_field(self) -> str:
        return "resource_id"

    # ==================== Create / Read ====================

    async def create_pending(self, resource: AnchoredResource) -> AnchoredResource:
        """
        Persist a new, not yet anchored resource.

        Raises:
            DuplicateResourceId: the resource id is already taken
        """
        if resource.anchor_state != AnchorState.UNANCHORED:
            raise InvalidTransition("New resources must start unanchored")
        try:
            await self._insert(resource)
        except DuplicateKeyError as e:
            raise DuplicateResourceId(f"Resource {resource.resource_id} already exists") from e

        self.logger.info(
            "resource_created",
            resource_id=resource.resource_id,
            kind=resource.kind.value,
            content_hash=resource.content_hash,
        )
        return resource

    async def get(self, resource_id: str) -> AnchoredResource:
        resource = await self.get_by_id(resource_id)
        if resource is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        return resource

    # ==================== Anchor State ====================

    async def transition_anchor_state(
        self,
        resource_id: str,
        expected_state: AnchorState,
        next_state: AnchorState,
        proof_fields: Mapping[str, Any] | None = None,
        expected_fields: Mapping[str, Any] | None = None,
    ) -> AnchoredResource:
        """
        Compare-and-swap the anchor state.

        Args:
            resource_id: Resource to transition
            expected_state: State the caller last observed
            next_state: State to move to
            proof_fields: Proof identifiers to record alongside
            expected_fields: Extra values that must also still hold

        Raises:
            InvalidTransition: not an allowed edge, or the result would
                violate a resource invariant
            StaleTransition: persisted state differs from what was expected
            ResourceNotFound: no such resource
        """
        if next_state not in ALLOWED_TRANSITIONS[expected_state]:
            raise InvalidTransition(
                f"{expected_state.value} -> {next_state.value} is not allowed"
            )
        proof_fields = dict(proof_fields or {})
        unknown = set(proof_fields) - PROOF_FIELDS
        if unknown:
            raise InvalidTransition(f"Not proof fields: {sorted(unknown)}")

        current = await self.store.get(self.collection, resource_id)
        if current is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        if current.get("anchor_state") != expected_state.value:
            raise StaleTransition(
                f"Resource {resource_id} is {current.get('anchor_state')}, "
                f"expected {expected_state.value}",
                actual_state=AnchorState(current["anchor_state"]),
            )

        updates: dict[str, Any] = {
            key: _plain(value) for key, value in proof_fields.items()
        }
        now = format_timestamp(self._now())
        updates["anchor_state"] = next_state.value
        updates["last_transition_at"] = now
        if (expected_state, next_state) in PROGRESS_EDGES:
            updates["last_progress_at"] = now

        # Reject the update before it lands if the result would be invalid
        try:
            AnchoredResource.model_validate({**current, **updates})
        except ValidationError as e:
            raise InvalidTransition(str(e)) from e

        expected = {"anchor_state": expected_state.value}
        expected.update({k: _plain(v) for k, v in (expected_fields or {}).items()})

        try:
            updated = await self._swap(resource_id, expected, updates)
        except PreconditionFailed as e:
            actual = e.actual.get("anchor_state", expected_state.value)
            raise StaleTransition(
                f"Resource {resource_id} changed concurrently: {e}",
                actual_state=AnchorState(actual) if actual else None,
            ) from e
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Resource {resource_id} not found") from e

        self.logger.info(
            "anchor_state_transitioned",
            resource_id=resource_id,
            from_state=expected_state.value,
            to_state=next_state.value,
        )
        return updated

    # ==================== Access Log ====================

    async def append_access_log(
        self,
        resource_id: str,
        entry: Mapping[str, Any],
        now: datetime | None = None,
    ) -> AccessLogEntry:
        """
        Append an audit entry; the store assigns sequence and timestamp.

        Raises:
            ResourceNotFound: no such resource
        """
        payload = {k: v for k, v in entry.items() if k not in ("sequence", "timestamp")}
        try:
            stored = await self.store.append_to_array_field(
                self.collection,
                resource_id,
                ACCESS_LOG_FIELD,
                payload,
                now or self._now(),
            )
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Resource {resource_id} not found") from e
        return AccessLogEntry.model_validate(stored)

    # ==================== Revocation ====================

    async def record_revocation(
        self,
        resource_id: str,
        reason: str,
        revoked_by: str,
        revoked_at: datetime,
    ) -> AnchoredResource:
        """
        Record a revocation locally; the ledger entry follows separately.

        Raises:
            StaleTransition: not anchored, or already revoked
            ResourceNotFound: no such resource
        """
        try:
            updated = await self._swap(
                resource_id,
                expected={"anchor_state": AnchorState.ANCHORED.value, "revocation": None},
                updates={
                    "revocation": {
                        "reason": reason,
                        "revoked_by": revoked_by,
                        "revoked_at": format_timestamp(revoked_at),
                        "revocation_log_transaction_id": None,
                    },
                    "revocation_pending": True,
                },
            )
        except PreconditionFailed as e:
            raise StaleTransition(f"Resource {resource_id} cannot be revoked: {e}") from e
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Resource {resource_id} not found") from e

        self.logger.info("revocation_recorded", resource_id=resource_id, revoked_by=revoked_by)
        return updated

    async def stamp_revocation_transaction(
        self,
        resource_id: str,
        transaction_id: str,
    ) -> AnchoredResource:
        """
        Record the ledger transaction for a pending revocation.

        Raises:
            StaleTransition: no pending revocation (already stamped)
        """
        try:
            updated = await self._swap(
                resource_id,
                expected={
                    "revocation_pending": True,
                    "revocation.revocation_log_transaction_id": None,
                },
                updates={
                    "revocation.revocation_log_transaction_id": transaction_id,
                    "revocation_pending": False,
                },
            )
        except PreconditionFailed as e:
            raise StaleTransition(f"Revocation of {resource_id} already stamped") from e
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Resource {resource_id} not found") from e

        self.logger.info(
            "revocation_stamped",
            resource_id=resource_id,
            transaction_id=transaction_id,
        )
        return updated

    # ==================== Access Grants ====================

    async def replace_authorized_entities(
        self,
        resource_id: str,
        expected: Iterable[AuthorizedEntity],
        entities: Iterable[AuthorizedEntity],
    ) -> AnchoredResource:
        """
        Swap the authorized entity list if it still equals ``expected``.

        Raises:
            StaleTransition: the list changed since it was read
        """
        def dump(items: Iterable[AuthorizedEntity]) -> list[dict[str, Any]]:
            return [item.model_dump(mode="json") for item in items]

        try:
            return await self._swap(
                resource_id,
                expected={"authorized_entities": dump(expected)},
                updates={"authorized_entities": dump(entities)},
            )
        except PreconditionFailed as e:
            raise StaleTransition(f"Authorized entities of {resource_id} changed") from e
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Resource {resource_id} not found") from e

    # ==================== Queries ====================

    async def find_reconcilable(
        self,
        older_than: datetime,
        limit: int = 100,
    ) -> list[AnchoredResource]:
        """Non-terminal resources whose last transition is before ``older_than``."""
        return await self._find(
            any_of={"anchor_state": sorted(s.value for s in NON_TERMINAL_STATES)},
            before=older_than,
            limit=limit,
        )

    async def find_pending_revocations(self, limit: int = 100) -> list[AnchoredResource]:
        return await self._find(filters={"revocation_pending": True}, limit=limit)

    async def list_by_owner(
        self,
        owner_id: str,
        kind: ResourceKind | None = None,
        limit: int = 100,
    ) -> list[AnchoredResource]:
        filters: dict[str, Any] = {"owner_id": owner_id}
        if kind is not None:
            filters["kind"] = kind.value
        return await self._find(filters=filters, limit=limit)

    async def find_by_token(self, token_id: str, serial_number: int) -> AnchoredResource | None:
        results = await self._find(
            filters={"token_id": token_id, "token_serial_number": serial_number},
            limit=1,
        )
        return results[0] if results else None

    async def find_by_log_transaction(self, transaction_id: str) -> AnchoredResource | None:
        results = await self._find(filters={"log_transaction_id": transaction_id}, limit=1)
        return results[0] if results else None
