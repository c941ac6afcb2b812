"""
Reconciliation Poller

Periodically resolves resources left in a pending anchor state:

- resources older than ``reconciliation_min_age_seconds`` are re-driven
  through the orchestrator with a single receipt poll per step, so they
  advance if consensus has settled and stay put otherwise
- resources that have not confirmed a phase for
  ``reconciliation_max_staleness_hours`` are escalated to anchor_failed with
  reason ``timeout``; a claim released after a failed submission does not
  restart that clock
- revocations recorded locally but not yet on the ledger are resubmitted
- pending incentive transfers are paid or confirmed

Every change goes through the same compare-and-swap as the synchronous
path, so the poller may run alongside any number of orchestrators.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import LedgerError
from genomic_mesh.models.base import AnchorState, utc_now
from genomic_mesh.monitoring.logging import correlation_scope
from genomic_mesh.repositories.resource_repository import (
    ResourceNotFound,
    ResourceRepository,
    StaleTransition,
)
from genomic_mesh.services.anchoring import AnchoringOrchestrator
from genomic_mesh.services.incentives import IncentiveService
from genomic_mesh.services.scheduler import BackgroundScheduler

logger = structlog.get_logger(__name__)

TASK_NAME = "anchor_reconciliation"


@dataclass
class ReconciliationReport:
    """Counts from one reconciliation pass."""

    checked: int = 0
    anchored: int = 0
    failed: int = 0
    timed_out: int = 0
    still_pending: int = 0
    errors: int = 0
    revocations_stamped: int = 0
    revocations_pending: int = 0
    incentives: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "checked": self.checked,
            "anchored": self.anchored,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "still_pending": self.still_pending,
            "errors": self.errors,
            "revocations_stamped": self.revocations_stamped,
            "revocations_pending": self.revocations_pending,
            "incentives": dict(self.incentives),
        }


class ReconciliationPoller:
    """Resolves pending anchors, revocations and incentive transfers."""

    def __init__(
        self,
        orchestrator: AnchoringOrchestrator,
        resources: ResourceRepository,
        incentives: IncentiveService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.orchestrator = orchestrator
        self.resources = resources
        self.incentives = incentives
        self.settings = settings or get_settings()
        self.clock = clock

    def register(self, scheduler: BackgroundScheduler) -> None:
        """Register the periodic pass with a background scheduler."""
        scheduler.register(
            TASK_NAME,
            self.run_once,
            interval_seconds=self.settings.reconciliation_interval_seconds,
            enabled=self.settings.reconciliation_enabled,
        )

    async def run_once(self, now: datetime | None = None) -> ReconciliationReport:
        """Run one full reconciliation pass."""
        now = now or self.clock()
        report = ReconciliationReport()

        with correlation_scope(task=TASK_NAME):
            await self._reconcile_anchors(now, report)
            await self._reconcile_revocations(report)
            if self.incentives is not None and self.settings.incentives_enabled:
                report.incentives = await self.incentives.reconcile_pending(
                    limit=self.settings.reconciliation_batch_size
                )

            logger.info("reconciliation_completed", **report.to_dict())
        return report

    async def _reconcile_anchors(self, now: datetime, report: ReconciliationReport) -> None:
        older_than = now - timedelta(seconds=self.settings.reconciliation_min_age_seconds)
        max_staleness = timedelta(hours=self.settings.reconciliation_max_staleness_hours)

        candidates = await self.resources.find_reconcilable(
            older_than, limit=self.settings.reconciliation_batch_size
        )
        for resource in candidates:
            report.checked += 1
            age = now - resource.progress_since
            try:
                if age > max_staleness:
                    await self.orchestrator.fail_with_timeout(
                        resource,
                        f"no progress from {resource.anchor_state.value} for {age}",
                    )
                    report.timed_out += 1
                    continue

                result = await self.orchestrator.drive(
                    resource.resource_id,
                    resubmit_claimed=True,
                    receipt_attempts=1,
                )
            except (StaleTransition, ResourceNotFound, LedgerError) as e:
                # Moved or vanished under us; next pass sees the current state
                report.errors += 1
                logger.info(
                    "reconciliation_skipped",
                    resource_id=resource.resource_id,
                    error=str(e),
                )
                continue

            if result.anchor_state == AnchorState.ANCHORED:
                report.anchored += 1
            elif result.anchor_state == AnchorState.ANCHOR_FAILED:
                report.failed += 1
            else:
                report.still_pending += 1

    async def _reconcile_revocations(self, report: ReconciliationReport) -> None:
        pending = await self.resources.find_pending_revocations(
            limit=self.settings.reconciliation_batch_size
        )
        for resource in pending:
            result = await self.orchestrator.submit_revocation_log(resource)
            if result.revocation_pending:
                report.revocations_pending += 1
            else:
                report.revocations_stamped += 1
