"""
Tests for Genomic Mesh models

Tests cover:
- Content field validation (consent and genomic data)
- AnchoredResource invariants
- Derived consent status and validity
- Authorized entity expiry
- Incentive entries
"""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import TypeAdapter, ValidationError

from genomic_mesh.models import (
    AnchoredResource,
    AnchorState,
    AuthorizedEntity,
    ConsentFields,
    ConsentStatus,
    ContentFields,
    EntityType,
    GenomicDataFields,
    IncentiveLedgerEntry,
    IncentiveState,
    ResourceKind,
    Revocation,
)
from genomic_mesh.models.incentive import ActivityType
from genomic_mesh.services.hasher import CanonicalHasher
from tests.support import FIXED_NOW, consent_data, genomic_data


def make_resource(fields, **overrides) -> AnchoredResource:
    data = {
        "resource_id": "res-1",
        "kind": ResourceKind(fields.kind),
        "owner_id": fields.owner_id,
        "content_fields": fields,
        "content_hash": CanonicalHasher().hash(fields),
        "created_at": FIXED_NOW,
        "last_transition_at": FIXED_NOW,
    }
    data.update(overrides)
    return AnchoredResource(**data)


def anchored(fields, **overrides) -> AnchoredResource:
    return make_resource(
        fields,
        anchor_state=AnchorState.ANCHORED,
        log_transaction_id="tx-1",
        token_transaction_id="tx-2",
        **overrides,
    )


class TestConsentFields:
    """Tests for ConsentFields validation."""

    def test_valid_consent(self):
        """Test a complete consent validates."""
        fields = ConsentFields(**consent_data())

        assert fields.kind == "consent"
        assert fields.owner_id == "patient-001"

    def test_requires_data_types(self):
        """Test at least one data type is required."""
        with pytest.raises(ValidationError):
            ConsentFields(**consent_data(data_types=[]))

    def test_rejects_duplicate_purposes(self):
        """Test purposes must be unique."""
        with pytest.raises(ValidationError):
            ConsentFields(**consent_data(purposes=["research", "research"]))

    def test_rejects_unknown_data_type(self):
        """Test data types come from the fixed vocabulary."""
        with pytest.raises(ValidationError):
            ConsentFields(**consent_data(data_types=["tarot_reading"]))

    def test_window_must_be_ordered(self):
        """Test valid_until must be after valid_from."""
        with pytest.raises(ValidationError):
            ConsentFields(
                **consent_data(
                    valid_from=datetime(2026, 6, 1, tzinfo=UTC),
                    valid_until=datetime(2026, 1, 1, tzinfo=UTC),
                )
            )

    def test_ledger_account_format(self):
        """Test ledger accounts must look like shard.realm.num."""
        with pytest.raises(ValidationError):
            ConsentFields(**consent_data(ledger_account_id="not-an-account"))

    def test_naive_datetimes_taken_as_utc(self):
        """Test naive timestamps are normalized to aware UTC."""
        fields = ConsentFields(**consent_data(valid_from=datetime(2026, 1, 1)))

        assert fields.valid_from.tzinfo is not None
        assert fields.valid_from == datetime(2026, 1, 1, tzinfo=UTC)

    def test_fields_are_immutable(self):
        """Test content fields cannot be mutated in place."""
        fields = ConsentFields(**consent_data())

        with pytest.raises(ValidationError):
            fields.patient_id = "someone-else"

    def test_recipients_dump_sorted(self):
        """Test named recipients serialize in sorted order."""
        fields = ConsentFields(**consent_data(named_recipients=["z-lab", "a-lab"]))

        assert fields.model_dump(mode="json")["named_recipients"] == ["a-lab", "z-lab"]


class TestGenomicDataFields:
    """Tests for GenomicDataFields validation."""

    def test_valid_record(self):
        """Test a complete genomic data record validates."""
        fields = GenomicDataFields(**genomic_data())

        assert fields.kind == "genomic_data"
        assert fields.is_encrypted is True

    def test_file_hash_must_be_hex(self):
        """Test the file hash must be a hex digest."""
        with pytest.raises(ValidationError):
            GenomicDataFields(**genomic_data(file_hash="not-hex"))

    def test_negative_size_rejected(self):
        """Test file size cannot be negative."""
        with pytest.raises(ValidationError):
            GenomicDataFields(**genomic_data(file_size=-1))

    def test_discriminated_union(self):
        """Test the kind tag selects the content field variant."""
        adapter = TypeAdapter(ContentFields)

        parsed = adapter.validate_python({"kind": "genomic_data", **genomic_data()})

        assert isinstance(parsed, GenomicDataFields)


class TestAnchoredResource:
    """Tests for AnchoredResource invariants."""

    def test_starts_unanchored(self, consent_fields):
        """Test a new resource has no proof identifiers."""
        resource = make_resource(consent_fields)

        assert resource.anchor_state == AnchorState.UNANCHORED
        assert resource.log_transaction_id is None
        assert resource.token_transaction_id is None
        assert not resource.is_terminal

    def test_anchored_requires_both_transactions(self, consent_fields):
        """Test anchored is impossible without log and token transactions."""
        with pytest.raises(ValidationError):
            make_resource(
                consent_fields,
                anchor_state=AnchorState.ANCHORED,
                log_transaction_id="tx-1",
            )

    def test_revocation_requires_anchored(self, consent_fields):
        """Test only anchored resources can carry a revocation."""
        with pytest.raises(ValidationError):
            make_resource(
                consent_fields,
                revocation=Revocation(reason="r", revoked_by="p", revoked_at=FIXED_NOW),
            )

    def test_content_hash_format(self, consent_fields):
        """Test content hash must be 64 lowercase hex characters."""
        with pytest.raises(ValidationError):
            make_resource(consent_fields, content_hash="ABC")

    def test_kind_must_match_fields(self, consent_fields):
        """Test the kind must agree with the content field variant."""
        with pytest.raises(ValidationError):
            make_resource(consent_fields, kind=ResourceKind.GENOMIC_DATA)

    def test_owner_must_match_fields(self, consent_fields):
        """Test the owner must be the patient in the content fields."""
        with pytest.raises(ValidationError):
            make_resource(consent_fields, owner_id="patient-999")

    def test_json_round_trip(self, consent_fields):
        """Test a stored document validates back to an equal resource."""
        resource = anchored(consent_fields)

        restored = AnchoredResource.model_validate(resource.model_dump(mode="json"))

        assert restored == resource

    def test_authorization_for(self, consent_fields):
        """Test finding an entity's grant."""
        grant = AuthorizedEntity(
            entity_id="lab-1",
            entity_type=EntityType.RESEARCHER,
            access_scope=frozenset({"read"}),
        )
        resource = make_resource(consent_fields, authorized_entities=[grant])

        assert resource.authorization_for("lab-1") == grant
        assert resource.authorization_for("lab-2") is None


class TestConsentStatus:
    """Tests for derived business status."""

    def test_pending_until_anchored(self, consent_fields):
        """Test non-anchored resources are pending."""
        assert make_resource(consent_fields).status(FIXED_NOW) == ConsentStatus.PENDING

    def test_failed(self, consent_fields):
        """Test anchor_failed resources report failed."""
        resource = make_resource(consent_fields, anchor_state=AnchorState.ANCHOR_FAILED)

        assert resource.status(FIXED_NOW) == ConsentStatus.FAILED

    def test_granted_inside_window(self, consent_fields):
        """Test an anchored consent inside its window is granted and valid."""
        resource = anchored(consent_fields)

        assert resource.status(FIXED_NOW) == ConsentStatus.GRANTED
        assert resource.is_valid(FIXED_NOW)

    def test_not_yet_valid_is_pending(self, consent_fields):
        """Test an anchored consent before valid_from is pending."""
        resource = anchored(consent_fields)

        assert resource.status(datetime(2025, 12, 1, tzinfo=UTC)) == ConsentStatus.PENDING

    def test_expired(self, consent_fields):
        """Test an anchored consent at valid_until is expired."""
        resource = anchored(consent_fields)

        assert resource.status(consent_fields.valid_until) == ConsentStatus.EXPIRED
        assert not resource.is_valid(consent_fields.valid_until)

    def test_revoked_stays_anchored(self, consent_fields):
        """Test revocation changes status but not anchor state."""
        resource = anchored(
            consent_fields,
            revocation=Revocation(reason="withdrawn", revoked_by="patient-001", revoked_at=FIXED_NOW),
        )

        assert resource.anchor_state == AnchorState.ANCHORED
        assert resource.status(FIXED_NOW) == ConsentStatus.REVOKED
        assert not resource.is_valid(FIXED_NOW)

    def test_genomic_data_has_no_window(self, genomic_fields):
        """Test anchored genomic records never expire."""
        resource = anchored(genomic_fields)

        assert not resource.is_expired(FIXED_NOW + timedelta(days=3650))
        assert resource.status(FIXED_NOW) == ConsentStatus.GRANTED


class TestAuthorizedEntity:
    """Tests for access grants."""

    def test_scope_required(self):
        """Test an empty access scope is rejected."""
        with pytest.raises(ValidationError):
            AuthorizedEntity(
                entity_id="lab-1",
                entity_type=EntityType.RESEARCHER,
                access_scope=frozenset(),
            )

    def test_expiry(self):
        """Test a grant expires at expires_at."""
        grant = AuthorizedEntity(
            entity_id="lab-1",
            entity_type=EntityType.CLINICIAN,
            access_scope=frozenset({"read"}),
            expires_at=FIXED_NOW,
        )

        assert not grant.is_expired(FIXED_NOW - timedelta(seconds=1))
        assert grant.is_expired(FIXED_NOW)

    def test_no_expiry(self):
        """Test a grant without expires_at never expires."""
        grant = AuthorizedEntity(
            entity_id="lab-1",
            entity_type=EntityType.AI_SYSTEM,
            access_scope=frozenset({"analyze"}),
        )

        assert not grant.is_expired(FIXED_NOW + timedelta(days=10000))


class TestIncentiveLedgerEntry:
    """Tests for incentive entries."""

    def test_defaults(self):
        """Test a new entry is pending with no attempts."""
        entry = IncentiveLedgerEntry(
            entry_id="inc_1",
            owner_id="patient-001",
            recipient_account_id="0.0.4242",
            amount=100,
            reason_activity_id="act-1",
            activity_type=ActivityType.CONSENT_PROVIDED,
        )

        assert entry.state == IncentiveState.PENDING
        assert entry.attempts == 0
        assert not entry.is_terminal

    def test_negative_amount_rejected(self):
        """Test amounts are non-negative."""
        with pytest.raises(ValidationError):
            IncentiveLedgerEntry(
                entry_id="inc_1",
                owner_id="patient-001",
                recipient_account_id="0.0.4242",
                amount=-1,
                reason_activity_id="act-1",
                activity_type=ActivityType.CONSENT_PROVIDED,
            )
