"""
Tests for the Canonical Hasher

Tests cover:
- Canonical form (explicit nulls, schema version, key ordering)
- Determinism and sensitivity of the content hash
- List order vs set order
- Timestamp and enum rendering
- Token metadata bytes
- A fixed known-answer encoding and digest
"""

import hashlib
import json
from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from genomic_mesh.models.base import DataType, Purpose
from genomic_mesh.models.resource import ConsentFields, GenomicDataFields
from genomic_mesh.services.hasher import (
    DIGEST_SIZE,
    SCHEMA_VERSION,
    CanonicalHasher,
    CanonicalizationError,
)
from tests.support import consent_data, genomic_data


@pytest.fixture
def hasher():
    return CanonicalHasher()


class TestCanonicalForm:
    """Tests for the canonical mapping."""

    def test_includes_kind_and_schema_version(self, hasher, consent_fields):
        """Test the canonical form carries the kind tag and schema version."""
        form = hasher.canonical_form(consent_fields)

        assert form["kind"] == "consent"
        assert form["schema_version"] == SCHEMA_VERSION

    def test_unset_optional_fields_are_explicit_null(self, hasher):
        """Test an unset optional field appears as null rather than missing."""
        fields = ConsentFields(**consent_data(valid_until=None))

        form = hasher.canonical_form(fields)

        assert "valid_until" in form
        assert form["valid_until"] is None

    def test_keys_are_sorted_in_bytes(self, hasher, consent_fields):
        """Test serialized keys are in lexicographic order."""
        decoded = json.loads(hasher.canonical_bytes(consent_fields))

        assert list(decoded.keys()) == sorted(decoded.keys())

    def test_compact_separators(self, hasher, consent_fields):
        """Test no whitespace between tokens."""
        raw = hasher.canonical_bytes(consent_fields).decode("utf-8")

        assert ", " not in raw
        assert '": ' not in raw

    def test_non_ascii_kept_as_utf8(self, hasher):
        """Test non-ASCII text is not escaped."""
        fields = ConsentFields(**consent_data(consent_text="Je consens à l'étude"))

        raw = hasher.canonical_bytes(fields)

        assert "à l'étude".encode() in raw
        assert b"\\u00e0" not in raw

    def test_datetime_rendered_with_milliseconds_utc(self, hasher):
        """Test datetimes become UTC with millisecond precision and a Z suffix."""
        offset = timezone(timedelta(hours=2))
        fields = ConsentFields(
            **consent_data(valid_from=datetime(2026, 1, 1, 2, 0, 0, 123456, tzinfo=offset))
        )

        form = hasher.canonical_form(fields)

        assert form["valid_from"] == "2026-01-01T00:00:00.123Z"

    def test_enums_by_value(self, hasher, consent_fields):
        """Test enum members serialize as their values."""
        form = hasher.canonical_form(consent_fields)

        assert form["data_types"] == ["whole_genome"]
        assert form["purposes"] == ["research"]

    def test_mapping_input(self, hasher):
        """Test plain mappings are accepted and dates use ISO format."""
        form = hasher.canonical_form({"b": 1, "a": date(2026, 5, 1)})

        assert form == {"a": "2026-05-01", "b": 1, "schema_version": SCHEMA_VERSION}

    def test_floats_rejected(self, hasher):
        """Test floating point values cannot be hashed."""
        with pytest.raises(CanonicalizationError):
            hasher.canonical_form({"amount": 1.5})

    def test_unsupported_input_rejected(self, hasher):
        """Test non-model, non-mapping input is rejected."""
        with pytest.raises(CanonicalizationError):
            hasher.canonical_form(["not", "a", "mapping"])


class TestContentHash:
    """Tests for the content hash."""

    def test_hash_is_sha256_of_canonical_bytes(self, hasher, consent_fields):
        """Test the hash is the hex SHA-256 of the canonical bytes."""
        expected = hashlib.sha256(hasher.canonical_bytes(consent_fields)).hexdigest()

        assert hasher.hash(consent_fields) == expected
        assert len(hasher.digest(consent_fields)) == DIGEST_SIZE

    def test_hash_is_deterministic(self, hasher):
        """Test independently built equal fields hash identically."""
        first = ConsentFields(**consent_data())
        second = ConsentFields(**consent_data())

        assert hasher.hash(first) == hasher.hash(second)
        assert CanonicalHasher().hash(first) == hasher.hash(first)

    def test_hash_independent_of_mapping_key_order(self, hasher):
        """Test re-ordered input keys produce the same hash."""
        data = consent_data()
        reordered = dict(reversed(list(data.items())))

        assert hasher.hash(ConsentFields(**data)) == hasher.hash(ConsentFields(**reordered))

    def test_list_order_is_significant(self, hasher):
        """Test semantically ordered lists change the hash when reordered."""
        first = ConsentFields(
            **consent_data(data_types=[DataType.WHOLE_GENOME, DataType.EXOME])
        )
        second = ConsentFields(
            **consent_data(data_types=[DataType.EXOME, DataType.WHOLE_GENOME])
        )

        assert hasher.hash(first) != hasher.hash(second)

    def test_set_order_is_not_significant(self, hasher):
        """Test named recipients hash the same regardless of input order."""
        first = ConsentFields(**consent_data(named_recipients=["lab-b", "lab-a"]))
        second = ConsentFields(**consent_data(named_recipients=["lab-a", "lab-b"]))

        assert hasher.hash(first) == hasher.hash(second)

    def test_null_differs_from_empty(self, hasher):
        """Test an unset optional hashes differently from an empty value."""
        with_null = hasher.hash({"note": None})
        with_empty = hasher.hash({"note": ""})

        assert with_null != with_empty

    def test_any_field_change_changes_hash(self, hasher):
        """Test a single field change yields a different hash."""
        base = ConsentFields(**consent_data())
        changed = ConsentFields(**consent_data(purposes=[Purpose.RESEARCH, Purpose.CLINICAL_CARE]))

        assert hasher.hash(base) != hasher.hash(changed)

    def test_same_instant_in_other_zone_hashes_identically(self, hasher):
        """Test timestamps are normalized to UTC before hashing."""
        utc = ConsentFields(**consent_data(valid_from=datetime(2026, 1, 1, 0, 0, tzinfo=UTC)))
        shifted = ConsentFields(
            **consent_data(
                valid_from=datetime(2025, 12, 31, 19, 0, tzinfo=timezone(timedelta(hours=-5)))
            )
        )

        assert hasher.hash(utc) == hasher.hash(shifted)

    def test_kinds_do_not_collide(self, hasher, genomic_fields):
        """Test genomic data fields carry their own kind tag."""
        assert hasher.canonical_form(genomic_fields)["kind"] == "genomic_data"

    def test_file_hash_normalized_before_hashing(self, hasher):
        """Test upper and lower case file digests hash identically."""
        upper = GenomicDataFields(**genomic_data(file_hash="AB" * 32))
        lower = GenomicDataFields(**genomic_data(file_hash="ab" * 32))

        assert hasher.hash(upper) == hasher.hash(lower)

    def test_matches(self, hasher, consent_fields):
        """Test matches accepts the hash in either case."""
        content_hash = hasher.hash(consent_fields)

        assert hasher.matches(consent_fields, content_hash.upper())
        assert not hasher.matches(consent_fields, "0" * 64)


class TestTokenMetadata:
    """Tests for proof-token metadata."""

    def test_metadata_is_raw_digest(self, hasher, consent_fields):
        """Test metadata is exactly the digest bytes behind the hex hash."""
        content_hash = hasher.hash(consent_fields)

        metadata = CanonicalHasher.token_metadata(content_hash)

        assert metadata == hasher.digest(consent_fields)
        assert len(metadata) == DIGEST_SIZE

    def test_metadata_rejects_wrong_length(self):
        """Test a short hash cannot become token metadata."""
        with pytest.raises(CanonicalizationError):
            CanonicalHasher.token_metadata("abcd")


# Fixed consent and its expected encoding. Other implementations verify proofs
# against these exact bytes, so any change here is a breaking format change.
KNOWN_CONSENT = {
    "patient_id": "patient-001",
    "consent_type": "research_participation",
    "data_types": ["whole_genome", "exome"],
    "purposes": ["research"],
    "valid_from": datetime(2026, 1, 1, 2, 30, 0, 123456, tzinfo=timezone(timedelta(hours=2))),
    "valid_until": None,
    "consent_text": "Consentement à la recherche",
    "consent_version": "2.1",
    "language": "fr",
    "patient_signature": "sig-abc123",
    "signature_method": "digital",
    "ledger_account_id": "0.0.4242",
    "named_recipients": frozenset({"lab-b", "lab-a"}),
}

KNOWN_CANONICAL_JSON = (
    '{"consent_text":"Consentement à la recherche",'
    '"consent_type":"research_participation",'
    '"consent_version":"2.1",'
    '"data_types":["whole_genome","exome"],'
    '"kind":"consent",'
    '"language":"fr",'
    '"ledger_account_id":"0.0.4242",'
    '"named_recipients":["lab-a","lab-b"],'
    '"patient_id":"patient-001",'
    '"patient_signature":"sig-abc123",'
    '"purposes":["research"],'
    '"schema_version":1,'
    '"signature_method":"digital",'
    '"valid_from":"2026-01-01T00:30:00.123Z",'
    '"valid_until":null}'
)

KNOWN_CONTENT_HASH = "e70a43cb3d7668465577e863a42f0c5c7ec1cb8e574d100ec6d606f0ee8e9919"


class TestKnownVector:
    """Tests pinning the canonical encoding to fixed bytes and digest."""

    def test_canonical_bytes(self, hasher):
        """Test the exact canonical bytes of a fixed consent."""
        fields = ConsentFields(**KNOWN_CONSENT)

        assert hasher.canonical_bytes(fields) == KNOWN_CANONICAL_JSON.encode("utf-8")

    def test_content_hash(self, hasher):
        """Test the exact content hash of a fixed consent."""
        fields = ConsentFields(**KNOWN_CONSENT)

        assert hasher.hash(fields) == KNOWN_CONTENT_HASH
        assert CanonicalHasher.token_metadata(KNOWN_CONTENT_HASH).hex() == KNOWN_CONTENT_HASH

    def test_digest_of_literal_json(self):
        """Test the pinned digest is plain SHA-256 of the pinned JSON."""
        digest = hashlib.sha256(KNOWN_CANONICAL_JSON.encode("utf-8")).hexdigest()

        assert digest == KNOWN_CONTENT_HASH
