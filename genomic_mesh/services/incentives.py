"""
Incentive Service

Calculates token rewards for patient activities, pays them through the
ledger gateway and confirms the transfers.

Lifecycle of an entry:
- created ``pending`` when an eligible activity is recorded
- each payment attempt is claimed (attempt counter CAS) before the
  transfer is sent, so concurrent reconcilers never pay twice
- ``confirmed`` once the transfer receipt is observed
- ``failed`` after ``incentive_retry_budget`` attempts or a permanent
  rejection; only an explicit re-issue (a new entry) pays it again
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import PermanentLedgerError, TransientLedgerError
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.models.base import DataType, utc_now
from genomic_mesh.models.incentive import ActivityType, IncentiveLedgerEntry, IncentiveState
from genomic_mesh.models.ledger import ReceiptStatus
from genomic_mesh.models.resource import AnchoredResource, GenomicDataFields
from genomic_mesh.repositories.incentive_repository import (
    DuplicateIncentiveEntry,
    IncentiveRepository,
)
from genomic_mesh.repositories.resource_repository import StaleTransition

logger = structlog.get_logger(__name__)

# Smallest token units per activity
RATES: dict[ActivityType, int] = {
    ActivityType.CONSENT_PROVIDED: 100,
    ActivityType.DATA_UPLOADED: 500,
    ActivityType.DATA_ACCESSED: 50,
    ActivityType.AI_ANALYSIS_COMPLETED: 200,
    ActivityType.RESEARCH_PARTICIPATION: 1000,
    ActivityType.DATA_QUALITY_HIGH: 100,
    ActivityType.CONSENT_RENEWED: 75,
    ActivityType.FEEDBACK_PROVIDED: 25,
}

DATA_TYPE_MULTIPLIERS: dict[DataType, Decimal] = {
    DataType.WHOLE_GENOME: Decimal("1.5"),
    DataType.EXOME: Decimal("1.2"),
    DataType.TARGETED_PANEL: Decimal("1.0"),
    DataType.SNP_ARRAY: Decimal("0.8"),
    DataType.RNA_SEQ: Decimal("1.3"),
    DataType.METHYLATION: Decimal("1.1"),
}


class IncentiveError(Exception):
    """Base exception for incentive errors."""
    pass


class NotReissuable(IncentiveError):
    pass


def entry_id_for(activity_id: str) -> str:
    return f"inc_{activity_id}"


class IncentiveService:
    """Issues, pays and confirms incentive ledger entries."""

    def __init__(
        self,
        entries: IncentiveRepository,
        gateway: LedgerGateway,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.entries = entries
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock

    # ==================== Calculation ====================

    @staticmethod
    def calculate(activity_type: ActivityType, data_type: DataType | None = None) -> int:
        """Reward for an activity, scaled by data type and rounded half up."""
        base = Decimal(RATES[activity_type])
        multiplier = Decimal("1.0")
        if data_type is not None:
            multiplier = DATA_TYPE_MULTIPLIERS.get(data_type, multiplier)
        return int((base * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def rates() -> dict[str, int]:
        return {activity.value: amount for activity, amount in RATES.items()}

    # ==================== Issuance ====================

    async def record_activity(
        self,
        owner_id: str,
        recipient_account_id: str,
        activity_type: ActivityType,
        activity_id: str,
        data_type: DataType | None = None,
    ) -> IncentiveLedgerEntry:
        """
        Create the pending entry for an activity.

        Idempotent on ``activity_id``: recording the same activity twice
        returns the existing entry.
        """
        entry_id = entry_id_for(activity_id)
        existing = await self.entries.get_by_id(entry_id)
        if existing is not None:
            return existing

        now = self.clock()
        entry = IncentiveLedgerEntry(
            entry_id=entry_id,
            owner_id=owner_id,
            recipient_account_id=recipient_account_id,
            amount=self.calculate(activity_type, data_type),
            reason_activity_id=activity_id,
            activity_type=activity_type,
            created_at=now,
            last_transition_at=now,
        )
        try:
            return await self.entries.create(entry)
        except DuplicateIncentiveEntry:
            return await self.entries.get(entry_id)

    async def reward_anchored(self, resource: AnchoredResource) -> IncentiveLedgerEntry | None:
        """Issue the reward earned by a newly anchored resource."""
        if not self.settings.incentives_enabled:
            return None

        fields = resource.content_fields
        if isinstance(fields, GenomicDataFields):
            activity, data_type = ActivityType.DATA_UPLOADED, fields.data_type
        else:
            activity, data_type = ActivityType.CONSENT_PROVIDED, None

        return await self.record_activity(
            owner_id=resource.owner_id,
            recipient_account_id=fields.ledger_account_id,
            activity_type=activity,
            activity_id=f"{resource.resource_id}:anchored",
            data_type=data_type,
        )

    async def reissue(self, entry_id: str) -> IncentiveLedgerEntry:
        """
        Re-issue a failed entry as a new pending entry.

        Raises:
            NotReissuable: the entry is not failed
        """
        failed = await self.entries.get(entry_id)
        if failed.state != IncentiveState.FAILED:
            raise NotReissuable(f"Entry {entry_id} is {failed.state.value}, not failed")

        now = self.clock()
        entry = IncentiveLedgerEntry(
            entry_id=f"inc_{uuid.uuid4().hex}",
            owner_id=failed.owner_id,
            recipient_account_id=failed.recipient_account_id,
            amount=failed.amount,
            reason_activity_id=failed.reason_activity_id,
            activity_type=failed.activity_type,
            reissued_from=failed.entry_id,
            created_at=now,
            last_transition_at=now,
        )
        created = await self.entries.create(entry)
        logger.info("incentive_reissued", entry_id=created.entry_id, reissued_from=entry_id)
        return created

    # ==================== Payment ====================

    async def pay(self, entry: IncentiveLedgerEntry) -> IncentiveLedgerEntry:
        """
        Send the transfer for a pending entry that has none in flight.

        Raises:
            StaleTransition: another worker claimed this attempt
        """
        if entry.state != IncentiveState.PENDING or entry.transfer_transaction_id:
            return entry

        claimed = await self.entries.transition(
            entry, IncentiveState.PENDING, {"attempts": entry.attempts + 1}
        )
        try:
            transfer = await self.gateway.transfer_incentive(
                claimed.recipient_account_id,
                claimed.amount,
                idempotency_key=claimed.entry_id,
            )
        except TransientLedgerError as e:
            if claimed.attempts >= self.settings.incentive_retry_budget:
                return await self._fail(claimed, f"retry budget exhausted: {e}")
            logger.warning(
                "incentive_transfer_deferred",
                entry_id=claimed.entry_id,
                attempts=claimed.attempts,
                error=str(e),
            )
            return claimed
        except PermanentLedgerError as e:
            return await self._fail(claimed, str(e))

        return await self.entries.transition(
            claimed,
            IncentiveState.PENDING,
            {"transfer_transaction_id": transfer.transaction_id},
        )

    async def confirm(self, entry: IncentiveLedgerEntry) -> IncentiveLedgerEntry:
        """Settle an entry whose transfer is in flight."""
        if entry.state != IncentiveState.PENDING or not entry.transfer_transaction_id:
            return entry

        receipt = await self.gateway.query_receipt(entry.transfer_transaction_id)
        if receipt.status == ReceiptStatus.UNKNOWN:
            return entry
        if receipt.status == ReceiptStatus.SUCCESS:
            confirmed = await self.entries.transition(entry, IncentiveState.CONFIRMED)
            logger.info(
                "incentive_confirmed",
                entry_id=entry.entry_id,
                amount=entry.amount,
                transaction_id=entry.transfer_transaction_id,
            )
            return confirmed

        if entry.attempts >= self.settings.incentive_retry_budget:
            return await self._fail(entry, f"transfer failed: {receipt.details}")
        # Rejected on-ledger, nothing was paid; the next pass tries again
        return await self.entries.transition(
            entry, IncentiveState.PENDING, {"transfer_transaction_id": None}
        )

    async def reconcile(self, entry: IncentiveLedgerEntry) -> IncentiveLedgerEntry:
        if entry.transfer_transaction_id:
            return await self.confirm(entry)
        return await self.pay(entry)

    async def reconcile_pending(self, limit: int = 100) -> dict[str, int]:
        """Pay or confirm every pending entry once."""
        counts = {"checked": 0, "confirmed": 0, "failed": 0, "deferred": 0}
        for entry in await self.entries.find_pending(limit=limit):
            counts["checked"] += 1
            try:
                result = await self.reconcile(entry)
            except (TransientLedgerError, StaleTransition) as e:
                counts["deferred"] += 1
                logger.info("incentive_reconcile_deferred", entry_id=entry.entry_id, error=str(e))
                continue
            if result.state == IncentiveState.CONFIRMED:
                counts["confirmed"] += 1
            elif result.state == IncentiveState.FAILED:
                counts["failed"] += 1
        return counts

    async def _fail(self, entry: IncentiveLedgerEntry, reason: str) -> IncentiveLedgerEntry:
        failed = await self.entries.transition(
            entry, IncentiveState.FAILED, {"failure_reason": reason}
        )
        logger.error(
            "incentive_failed",
            entry_id=entry.entry_id,
            attempts=entry.attempts,
            reason=reason,
        )
        return failed

    # ==================== Reporting ====================

    async def balance(self, owner_id: str) -> int:
        confirmed = await self.entries.list_by_owner(
            owner_id, state=IncentiveState.CONFIRMED, limit=1000
        )
        return sum(entry.amount for entry in confirmed)

    async def history(self, owner_id: str) -> list[IncentiveLedgerEntry]:
        entries = await self.entries.list_by_owner(owner_id, limit=1000)
        return sorted(entries, key=lambda entry: entry.created_at)
