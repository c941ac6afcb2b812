"""
Incentive Repository

Persistence for incentive ledger entries. State changes are
compare-and-swap guarded on the entry's current state and attempt count,
so two reconcilers can never both pay or both confirm an entry.
"""

from collections.abc import Mapping
from typing import Any

from genomic_mesh.database.documents import (
    DocumentNotFoundError,
    DuplicateKeyError,
    PreconditionFailed,
)
from genomic_mesh.models.base import format_timestamp
from genomic_mesh.models.incentive import IncentiveLedgerEntry, IncentiveState
from genomic_mesh.repositories.base import BaseRepository
from genomic_mesh.repositories.resource_repository import (
    ResourceNotFound,
    ResourceStoreError,
    StaleTransition,
)


class DuplicateIncentiveEntry(ResourceStoreError):
    pass


class IncentiveRepository(BaseRepository[IncentiveLedgerEntry]):
    """Repository for IncentiveLedgerEntry documents."""

    @property
    def collection(self) -> str:
        return "IncentiveLedgerEntry"

    @property
    def model_class(self) -> type[IncentiveLedgerEntry]:
        return IncentiveLedgerEntry

    @property
    def id_field(self) -> str:
        return "entry_id"

    async def create(self, entry: IncentiveLedgerEntry) -> IncentiveLedgerEntry:
        try:
            await self._insert(entry)
        except DuplicateKeyError as e:
            raise DuplicateIncentiveEntry(f"Incentive entry {entry.entry_id} exists") from e
        self.logger.info(
            "incentive_entry_created",
            entry_id=entry.entry_id,
            owner_id=entry.owner_id,
            amount=entry.amount,
        )
        return entry

    async def get(self, entry_id: str) -> IncentiveLedgerEntry:
        entry = await self.get_by_id(entry_id)
        if entry is None:
            raise ResourceNotFound(f"Incentive entry {entry_id} not found")
        return entry

    async def transition(
        self,
        entry: IncentiveLedgerEntry,
        next_state: IncentiveState,
        updates: Mapping[str, Any] | None = None,
    ) -> IncentiveLedgerEntry:
        """
        Move ``entry`` to ``next_state`` if nobody else touched it.

        Pending entries may stay pending (recording a transfer attempt).
        Confirmed and failed entries never change again.

        Raises:
            StaleTransition: the entry's state or attempt count changed
        """
        if entry.is_terminal:
            raise StaleTransition(f"Incentive entry {entry.entry_id} is {entry.state.value}")

        changes: dict[str, Any] = dict(updates or {})
        changes["state"] = next_state.value
        changes["last_transition_at"] = format_timestamp(self._now())

        try:
            updated = await self._swap(
                entry.entry_id,
                expected={"state": entry.state.value, "attempts": entry.attempts},
                updates=changes,
            )
        except PreconditionFailed as e:
            raise StaleTransition(f"Incentive entry {entry.entry_id} changed concurrently") from e
        except DocumentNotFoundError as e:
            raise ResourceNotFound(f"Incentive entry {entry.entry_id} not found") from e

        self.logger.info(
            "incentive_entry_transitioned",
            entry_id=entry.entry_id,
            from_state=entry.state.value,
            to_state=next_state.value,
        )
        return updated

    async def find_pending(self, limit: int = 100) -> list[IncentiveLedgerEntry]:
        return await self._find(filters={"state": IncentiveState.PENDING.value}, limit=limit)

    async def list_by_owner(
        self,
        owner_id: str,
        state: IncentiveState | None = None,
        limit: int = 100,
    ) -> list[IncentiveLedgerEntry]:
        filters: dict[str, Any] = {"owner_id": owner_id}
        if state is not None:
            filters["state"] = state.value
        return await self._find(filters=filters, limit=limit)
