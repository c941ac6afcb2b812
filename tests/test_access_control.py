"""
Tests for the AccessControlAuditor

Tests cover:
- Pure access decisions (grant, scope, expiry, revocation, unknown action)
- Every decision appends an access-log entry
- Audit-trail reads after revocation
- Ledger publication of granted accesses, bounded by a timeout
- Audit entries written even when the caller is cancelled
- Ordering under concurrent checks
"""

import asyncio
import json
from datetime import timedelta

import pytest

from genomic_mesh.ledger.base_client import LedgerUnavailable
from genomic_mesh.models.base import AnchorState, EntityType
from genomic_mesh.models.resource import AuthorizedEntity, Revocation
from genomic_mesh.services.access_control import (
    AccessControlAuditor,
    UnauthorizedAccess,
    evaluate_access,
)
from genomic_mesh.services.anchoring import AnchoringOrchestrator
from tests.support import FIXED_NOW, GENOMIC_TOPIC


def grant(entity_id="lab-1", scope=("read",), expires_at=None):
    return AuthorizedEntity(
        entity_id=entity_id,
        entity_type=EntityType.RESEARCHER,
        access_scope=frozenset(scope),
        granted_at=FIXED_NOW,
        expires_at=expires_at,
    )


@pytest.fixture
def orchestrator(resources, gateway, settings, clock):
    return AnchoringOrchestrator(resources, gateway, settings=settings, clock=clock)


@pytest.fixture
def auditor(resources, gateway, settings, clock):
    return AccessControlAuditor(resources, gateway, settings=settings, clock=clock)


async def anchored_with(orchestrator, resources, fields, *grants):
    await orchestrator.create(fields, resource_id="res-1")
    await orchestrator.anchor("res-1")
    return await resources.replace_authorized_entities("res-1", [], list(grants))


class TestEvaluateAccess:
    """Tests for the pure decision function."""

    def test_granted(self, orchestrator, consent_fields):
        """Test a scoped, unexpired grant allows its capability."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={"authorized_entities": [grant()]}
        )

        assert evaluate_access(resource, "lab-1", "read", FIXED_NOW) == (True, None)
        assert evaluate_access(resource, "lab-1", "VIEW", FIXED_NOW) == (True, None)

    def test_no_grant(self, orchestrator, consent_fields):
        """Test an entity without a grant is denied, owner included."""
        resource = orchestrator.build_resource(consent_fields)

        assert evaluate_access(resource, "patient-001", "read", FIXED_NOW) == (
            False,
            "entity_not_authorized",
        )

    def test_scope_excludes_action(self, orchestrator, consent_fields):
        """Test a capability outside the scope is denied."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={"authorized_entities": [grant()]}
        )

        assert evaluate_access(resource, "lab-1", "download", FIXED_NOW) == (
            False,
            "scope_excludes_action",
        )

    def test_expired_grant(self, orchestrator, consent_fields):
        """Test a grant at or past expires_at is denied."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={"authorized_entities": [grant(expires_at=FIXED_NOW)]}
        )

        assert evaluate_access(resource, "lab-1", "read", FIXED_NOW) == (False, "access_expired")
        assert evaluate_access(resource, "lab-1", "read", FIXED_NOW - timedelta(seconds=1))[0]

    def test_unknown_action(self, orchestrator, consent_fields):
        """Test actions outside the vocabulary are denied."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={"authorized_entities": [grant(scope=("read", "write"))]}
        )

        assert evaluate_access(resource, "lab-1", "delete", FIXED_NOW) == (False, "unknown_action")

    def test_consent_window_expired(self, orchestrator, consent_fields):
        """Test data access is denied once the consent window has closed."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={"authorized_entities": [grant()]}
        )

        assert evaluate_access(resource, "lab-1", "read", consent_fields.valid_until) == (
            False,
            "consent_expired",
        )

    def test_revoked_denies_data_but_allows_audit(self, orchestrator, consent_fields):
        """Test revocation blocks data access while the audit trail stays readable."""
        resource = orchestrator.build_resource(consent_fields).model_copy(
            update={
                "anchor_state": AnchorState.ANCHORED,
                "log_transaction_id": "tx-1",
                "token_transaction_id": "tx-2",
                "authorized_entities": [grant(scope=("read", "audit"))],
                "revocation": Revocation(
                    reason="withdrawn", revoked_by="patient-001", revoked_at=FIXED_NOW
                ),
            }
        )

        assert evaluate_access(resource, "lab-1", "read", FIXED_NOW) == (False, "consent_revoked")
        assert evaluate_access(resource, "lab-1", "view_access_log", FIXED_NOW) == (True, None)


class TestCheckAndLog:
    """Tests for logged access checks."""

    @pytest.mark.asyncio
    async def test_granted_access_logged(self, auditor, orchestrator, resources, consent_fields):
        """Test an allowed access appends an entry."""
        await anchored_with(orchestrator, resources, consent_fields, grant())

        allowed = await auditor.check_and_log("res-1", "lab-1", "read", "research", "variants.vcf")

        resource = await resources.get("res-1")
        assert allowed is True
        assert len(resource.access_log) == 1
        entry = resource.access_log[0]
        assert entry.allowed is True
        assert entry.data_accessed == "variants.vcf"
        assert entry.sequence == 1

    @pytest.mark.asyncio
    async def test_expired_entity_denied_and_logged(
        self, auditor, orchestrator, resources, clock, consent_fields
    ):
        """Test an expired grant is denied and the denial is still recorded."""
        await anchored_with(
            orchestrator, resources, consent_fields,
            grant(expires_at=FIXED_NOW + timedelta(hours=1)),
        )
        clock.advance(hours=2)

        allowed = await auditor.check_and_log("res-1", "lab-1", "read", "research")

        resource = await resources.get("res-1")
        assert allowed is False
        assert resource.access_log[-1].allowed is False
        assert resource.access_log[-1].reason == "access_expired"

    @pytest.mark.asyncio
    async def test_require_raises_after_logging(self, auditor, orchestrator, resources, consent_fields):
        """Test require raises UnauthorizedAccess with the denial already on record."""
        await anchored_with(orchestrator, resources, consent_fields)

        with pytest.raises(UnauthorizedAccess) as exc_info:
            await auditor.require("res-1", "lab-9", "read", "research")

        assert exc_info.value.reason == "entity_not_authorized"
        assert len((await resources.get("res-1")).access_log) == 1

    @pytest.mark.asyncio
    async def test_revoked_consent_audit_still_allowed(
        self, auditor, orchestrator, resources, consent_fields
    ):
        """Test the access log stays reviewable after revocation."""
        anchored = await anchored_with(
            orchestrator, resources, consent_fields, grant(scope=("read", "audit"))
        )
        await orchestrator.revoke(anchored, "withdrawn", "patient-001")

        read = await auditor.check_and_log("res-1", "lab-1", "read", "research")
        audit = await auditor.check_and_log("res-1", "lab-1", "audit", "compliance_review")

        assert read is False
        assert audit is True
        assert [e.allowed for e in (await resources.get("res-1")).access_log] == [False, True]

    @pytest.mark.asyncio
    async def test_concurrent_checks_all_logged_in_order(
        self, auditor, orchestrator, resources, consent_fields
    ):
        """Test concurrent checks never lose or reorder log entries."""
        await anchored_with(orchestrator, resources, consent_fields, grant())

        await asyncio.gather(
            *(auditor.check_and_log("res-1", "lab-1", "read", f"p{i}") for i in range(20))
        )

        log = (await resources.get("res-1")).access_log
        assert [e.sequence for e in log] == list(range(1, 21))
        assert all(a.timestamp <= b.timestamp for a, b in zip(log, log[1:], strict=False))


class TestPublication:
    """Tests for publishing granted accesses to the ledger."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, auditor, orchestrator, resources, ledger, consent_fields):
        """Test nothing is published unless enabled."""
        await anchored_with(orchestrator, resources, consent_fields, grant())
        messages = len(ledger.messages)

        await auditor.check_and_log("res-1", "lab-1", "read", "research")

        assert len(ledger.messages) == messages

    @pytest.mark.asyncio
    async def test_granted_access_published(
        self, resources, gateway, settings, clock, orchestrator, ledger, consent_fields
    ):
        """Test a granted data access is written to the genomic topic."""
        enabled = settings.model_copy(update={"access_log_anchoring_enabled": True})
        auditor = AccessControlAuditor(resources, gateway, settings=enabled, clock=clock)
        await anchored_with(orchestrator, resources, consent_fields, grant())

        await auditor.check_and_log("res-1", "lab-1", "read", "research")

        entry = (await resources.get("res-1")).access_log[-1]
        message = ledger.messages[-1]
        assert message["topic_id"] == GENOMIC_TOPIC
        assert json.loads(message["message"])["type"] == "data_access_log"
        assert entry.resulting_log_transaction_id == message["transaction_id"]

    @pytest.mark.asyncio
    async def test_publish_failure_still_logs(
        self, resources, gateway, settings, clock, orchestrator, ledger, consent_fields
    ):
        """Test a ledger outage does not block the local audit entry."""
        enabled = settings.model_copy(update={"access_log_anchoring_enabled": True})
        auditor = AccessControlAuditor(resources, gateway, settings=enabled, clock=clock)
        await anchored_with(orchestrator, resources, consent_fields, grant())
        ledger.fail_next("submit_message", LedgerUnavailable("BUSY"))

        allowed = await auditor.check_and_log("res-1", "lab-1", "read", "research")

        entry = (await resources.get("res-1")).access_log[-1]
        assert allowed is True
        assert entry.resulting_log_transaction_id is None

    @pytest.mark.asyncio
    async def test_slow_publish_bounded_by_timeout(
        self, resources, gateway, settings, clock, orchestrator, ledger, consent_fields
    ):
        """Test a slow ledger only delays the audit entry up to the publish timeout."""
        enabled = settings.model_copy(update={
            "access_log_anchoring_enabled": True,
            "access_log_publish_timeout_seconds": 0.05,
        })
        auditor = AccessControlAuditor(resources, gateway, settings=enabled, clock=clock)
        await anchored_with(orchestrator, resources, consent_fields, grant())
        ledger.delay = 0.3

        allowed = await auditor.check_and_log("res-1", "lab-1", "read", "research")

        entry = (await resources.get("res-1")).access_log[-1]
        assert allowed is True
        assert entry.resulting_log_transaction_id is None
        await auditor.drain()
        assert json.loads(ledger.messages[-1]["message"])["type"] == "data_access_log"

    @pytest.mark.asyncio
    async def test_cancelled_check_still_logged(
        self, resources, gateway, settings, clock, orchestrator, ledger, consent_fields
    ):
        """Test a caller cancelled mid-publish still leaves an audit entry."""
        enabled = settings.model_copy(update={"access_log_anchoring_enabled": True})
        auditor = AccessControlAuditor(resources, gateway, settings=enabled, clock=clock)
        await anchored_with(orchestrator, resources, consent_fields, grant())
        before = len((await resources.get("res-1")).access_log)
        ledger.delay = 0.5

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(
                auditor.check_and_log("res-1", "lab-1", "read", "research"), 0.1
            )

        log = (await resources.get("res-1")).access_log
        assert len(log) == before + 1
        assert log[-1].allowed is True
        assert log[-1].resulting_log_transaction_id is None
        await auditor.drain()
