"""
Genomic Mesh - Test Fixtures

Shared pytest fixtures: settings, an in-memory store, a scripted ledger
client, a controllable clock and content-field factories.
"""

import os

import pytest

# =============================================================================
# TEST ENVIRONMENT SETUP
# =============================================================================

if os.environ.get("APP_ENV", "") == "production":
    raise RuntimeError("Test fixtures cannot be loaded in a production environment")

os.environ["APP_ENV"] = "testing"
os.environ.setdefault("NEO4J_URI", "bolt://localhost:7687")
os.environ.setdefault("NEO4J_USER", "neo4j")
os.environ.setdefault("NEO4J_PASSWORD", "testpassword")  # TEST ONLY

from genomic_mesh.config import Settings  # noqa: E402
from genomic_mesh.database.documents import InMemoryDocumentStore  # noqa: E402
from genomic_mesh.models.resource import ConsentFields, GenomicDataFields  # noqa: E402

from tests.support import (  # noqa: E402
    CONSENT_TOKEN,
    CONSENT_TOPIC,
    GENOMIC_TOKEN,
    GENOMIC_TOPIC,
    INCENTIVE_TOKEN,
    FakeClock,
    FakeLedgerClient,
    consent_data,
    genomic_data,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings():
    """Settings with configured ledger ids and no waiting between retries."""
    return Settings(
        app_env="testing",
        consent_topic_id=CONSENT_TOPIC,
        genomic_topic_id=GENOMIC_TOPIC,
        consent_token_id=CONSENT_TOKEN,
        genomic_token_id=GENOMIC_TOKEN,
        incentive_token_id=INCENTIVE_TOKEN,
        anchor_backoff_min_seconds=0,
        anchor_backoff_max_seconds=0,
        anchor_receipt_interval_seconds=0,
        anchor_receipt_attempts=3,
        anchor_sync_timeout_seconds=5,
        reconciliation_min_age_seconds=60,
        reconciliation_max_staleness_hours=24,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def gateway(ledger, settings):
    from genomic_mesh.ledger.gateway import LedgerGateway

    return LedgerGateway(ledger, settings)


@pytest.fixture
def resources(store, clock):
    from genomic_mesh.repositories.resource_repository import ResourceRepository

    return ResourceRepository(store, clock=clock)


@pytest.fixture
def engine(store, ledger, settings, clock):
    """Fully wired engine over the in-memory store and fake ledger."""
    from genomic_mesh.engine import GenomicMeshEngine

    return GenomicMeshEngine(store, ledger, settings=settings, clock=clock)


@pytest.fixture
def consent_fields():
    return ConsentFields(**consent_data())


@pytest.fixture
def genomic_fields():
    return GenomicDataFields(**genomic_data())
