"""
Tests for the GenomicMeshEngine

Tests cover:
- Component wiring
- Startup and shutdown ordering
- Status reporting
- Production wiring from settings
"""

from unittest.mock import AsyncMock, patch

import pytest

from genomic_mesh.database.documents import Neo4jDocumentStore
from genomic_mesh.engine import GenomicMeshEngine
from genomic_mesh.ledger.hedera_client import HederaLedgerClient
from genomic_mesh.models.base import AnchorState
from genomic_mesh.services.reconciliation import TASK_NAME


class TestWiring:
    """Tests for component construction."""

    def test_components_share_store_and_gateway(self, engine, store):
        """Test services are built over the same store and gateway."""
        assert engine.resources.store is store
        assert engine.orchestrator.gateway is engine.gateway
        assert engine.consents.orchestrator is engine.orchestrator
        assert TASK_NAME in engine.scheduler.get_stats()["tasks"]

    def test_from_settings(self, settings):
        """Test production wiring uses Neo4j and Hedera."""
        engine = GenomicMeshEngine.from_settings(AsyncMock(), settings=settings)

        assert isinstance(engine.store, Neo4jDocumentStore)
        assert isinstance(engine.ledger_client, HederaLedgerClient)
        assert engine.db_client is not None


class TestLifecycle:
    """Tests for initialize and shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_without_scheduler(self, engine):
        """Test the engine is ready without starting the poller."""
        with patch("genomic_mesh.engine.configure_logging"):
            await engine.initialize(start_scheduler=False)

        status = engine.get_status()
        assert status["status"] == "ready"
        assert status["database"] == "n/a"
        assert status["started_at"] is not None
        assert status["scheduler"]["is_running"] is False

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self, engine):
        """Test the scheduler is started and stopped with the engine."""
        with patch("genomic_mesh.engine.configure_logging"):
            await engine.initialize()
        assert engine.scheduler.is_running is True

        await engine.shutdown()

        assert engine.scheduler.is_running is False
        assert engine.get_status()["status"] == "starting"

    @pytest.mark.asyncio
    async def test_ledger_failure_closes_database(self, store, settings):
        """Test a ledger that fails to initialize releases the database."""
        ledger = AsyncMock()
        ledger.initialize.side_effect = ConnectionError("mirror unreachable")
        db_client = AsyncMock()
        engine = GenomicMeshEngine(store, ledger, settings=settings, db_client=db_client)

        with patch("genomic_mesh.engine.configure_logging"):
            with pytest.raises(ConnectionError):
                await engine.initialize(start_scheduler=False)

        db_client.connect.assert_awaited_once()
        db_client.close.assert_awaited_once()
        assert engine.is_ready is False

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_anchor_runs(self, engine, ledger, settings, consent_fields):
        """Test shutdown drains anchor runs that outlived their callers."""
        engine.orchestrator.settings = settings.model_copy(
            update={"anchor_sync_timeout_seconds": 0.01}
        )
        ledger.delay = 0.03
        await engine.orchestrator.create(consent_fields, resource_id="res-1")
        await engine.orchestrator.anchor("res-1")

        await engine.shutdown()

        resource = await engine.resources.get("res-1")
        assert resource.anchor_state == AnchorState.ANCHORED
