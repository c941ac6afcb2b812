"""
Genomic Mesh Engine

Application container: builds every component from an injected document
store and ledger client, and owns their startup and shutdown.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.database.client import Neo4jClient
from genomic_mesh.database.documents import DocumentStore, Neo4jDocumentStore
from genomic_mesh.ledger.base_client import BaseLedgerClient
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.ledger.hedera_client import HederaLedgerClient, TransactionSubmitter
from genomic_mesh.models.base import utc_now
from genomic_mesh.monitoring.logging import configure_logging
from genomic_mesh.repositories.incentive_repository import IncentiveRepository
from genomic_mesh.repositories.resource_repository import ResourceRepository
from genomic_mesh.services.access_control import AccessControlAuditor
from genomic_mesh.services.anchoring import AnchoringOrchestrator
from genomic_mesh.services.consent_service import ConsentService
from genomic_mesh.services.hasher import CanonicalHasher
from genomic_mesh.services.incentives import IncentiveService
from genomic_mesh.services.reconciliation import ReconciliationPoller
from genomic_mesh.services.scheduler import BackgroundScheduler

logger = structlog.get_logger(__name__)


class GenomicMeshEngine:
    """
    Holds references to all core components.

    Several engines may run against the same store; they coordinate only
    through its compare-and-swap.
    """

    def __init__(
        self,
        store: DocumentStore,
        ledger_client: BaseLedgerClient,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        db_client: Neo4jClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.ledger_client = ledger_client
        self.db_client = db_client

        self.hasher = CanonicalHasher()
        self.gateway = LedgerGateway(ledger_client, self.settings)
        self.resources = ResourceRepository(store, clock=clock)
        self.incentive_entries = IncentiveRepository(store, clock=clock)
        self.incentives = IncentiveService(
            self.incentive_entries, self.gateway, self.settings, clock=clock
        )
        self.orchestrator = AnchoringOrchestrator(
            self.resources,
            self.gateway,
            hasher=self.hasher,
            settings=self.settings,
            incentives=self.incentives,
            clock=clock,
        )
        self.auditor = AccessControlAuditor(
            self.resources, self.gateway, self.settings, clock=clock
        )
        self.consents = ConsentService(
            self.resources,
            self.orchestrator,
            self.auditor,
            self.gateway,
            hasher=self.hasher,
            settings=self.settings,
            clock=clock,
        )
        self.poller = ReconciliationPoller(
            self.orchestrator,
            self.resources,
            incentives=self.incentives,
            settings=self.settings,
            clock=clock,
        )
        self.scheduler = BackgroundScheduler()
        self.poller.register(self.scheduler)

        self.started_at: datetime | None = None
        self.is_ready = False

    @classmethod
    def from_settings(
        cls,
        submitter: TransactionSubmitter,
        settings: Settings | None = None,
    ) -> "GenomicMeshEngine":
        """Production wiring: Neo4j store and the Hedera ledger client."""
        settings = settings or get_settings()
        db_client = Neo4jClient(settings)
        return cls(
            Neo4jDocumentStore(db_client),
            HederaLedgerClient.from_settings(settings, submitter),
            settings=settings,
            db_client=db_client,
        )

    async def initialize(self, start_scheduler: bool = True) -> None:
        """Connect storage and ledger, then start the poller."""
        configure_logging(
            level=self.settings.log_level,
            json_output=self.settings.log_json,
        )
        logger.info("engine_initializing", app_env=self.settings.app_env)

        if self.db_client is not None:
            await self.db_client.connect()
        if isinstance(self.store, Neo4jDocumentStore):
            await self.store.ensure_schema(
                [self.resources.collection, self.incentive_entries.collection]
            )

        try:
            await self.ledger_client.initialize()
        except Exception:
            if self.db_client is not None:
                await self.db_client.close()
            raise

        if start_scheduler:
            await self.scheduler.start()

        self.started_at = datetime.now(UTC)
        self.is_ready = True
        logger.info("engine_initialized", scheduler=self.scheduler.is_running)

    async def shutdown(self) -> None:
        """Stop the poller, drain in-flight ledger work, then disconnect."""
        logger.info("engine_shutting_down")
        self.is_ready = False

        await self.scheduler.stop()
        await self.orchestrator.drain()
        await self.auditor.drain()
        await self.ledger_client.close()
        if self.db_client is not None:
            await self.db_client.close()

        logger.info("engine_shutdown_complete")

    def get_status(self) -> dict[str, Any]:
        return {
            "status": "ready" if self.is_ready else "starting",
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "database": (
                "connected" if self.db_client and self.db_client.is_connected else "n/a"
            ),
            "scheduler": self.scheduler.get_stats(),
        }
