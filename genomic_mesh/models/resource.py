"""
Anchored Resource Models

A single AnchoredResource shape covers consents and genomic data records.
The semantic payload that gets hashed lives in a tagged ``content_fields``
variant (ConsentFields | GenomicDataFields); everything else on the resource
is anchoring bookkeeping, access grants, or the append-only access log.
"""

import re
from datetime import datetime
from typing import Annotated, Literal

from pydantic import Field, field_serializer, field_validator, model_validator

from .base import (
    AccessLevel,
    AnchorState,
    ConsentStatus,
    ConsentType,
    DataType,
    EntityType,
    FailureReason,
    FileFormat,
    ImmutableModel,
    Purpose,
    ResourceKind,
    SignatureMethod,
    UTCDateTime,
    utc_now,
)

HEX_DIGEST_PATTERN = re.compile(r"^[0-9a-f]{64}$")
ACCOUNT_ID_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


def _no_duplicates(values: list) -> list:
    if len(set(values)) != len(values):
        raise ValueError("Duplicate entries are not allowed")
    return values


# ═══════════════════════════════════════════════════════════════
# CONTENT FIELDS
# ═══════════════════════════════════════════════════════════════


class ConsentFields(ImmutableModel):
    """
    Semantic payload of a consent grant.

    ``data_types`` and ``purposes`` keep the order the patient gave them;
    ``named_recipients`` is a set and has no meaningful order.
    """

    kind: Literal["consent"] = "consent"
    patient_id: str = Field(min_length=1, max_length=128)
    consent_type: ConsentType
    data_types: list[DataType] = Field(min_length=1)
    purposes: list[Purpose] = Field(min_length=1)
    valid_from: UTCDateTime
    valid_until: UTCDateTime | None = None
    consent_text: str = Field(min_length=1)
    consent_version: str = Field(min_length=1, max_length=32)
    language: str = Field(default="en", min_length=2, max_length=16)
    patient_signature: str = Field(min_length=1)
    signature_method: SignatureMethod
    ledger_account_id: str
    named_recipients: frozenset[str] = Field(default_factory=frozenset)

    @field_serializer("named_recipients")
    def serialize_recipients(self, v: frozenset[str]) -> list[str]:
        return sorted(v)

    @field_validator("data_types", "purposes")
    @classmethod
    def validate_unique(cls, v: list) -> list:
        return _no_duplicates(v)

    @field_validator("ledger_account_id")
    @classmethod
    def validate_account(cls, v: str) -> str:
        if not ACCOUNT_ID_PATTERN.match(v):
            raise ValueError("ledger_account_id must look like shard.realm.num")
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "ConsentFields":
        if self.valid_until is not None and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    @property
    def owner_id(self) -> str:
        return self.patient_id


class GenomicDataFields(ImmutableModel):
    """Semantic payload of a registered genomic data artifact."""

    kind: Literal["genomic_data"] = "genomic_data"
    patient_id: str = Field(min_length=1, max_length=128)
    data_type: DataType
    sequencing_platform: str = Field(min_length=1)
    sequencing_date: UTCDateTime
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0, description="Size in bytes")
    file_format: FileFormat
    file_hash: str = Field(description="Hex digest of the stored file")
    storage_location: str = Field(min_length=1)
    access_level: AccessLevel = AccessLevel.PRIVATE
    is_encrypted: bool = True
    ledger_account_id: str

    @field_validator("file_hash")
    @classmethod
    def validate_file_hash(cls, v: str) -> str:
        v = v.lower()
        if not re.fullmatch(r"[0-9a-f]{32,128}", v):
            raise ValueError("file_hash must be a hex digest")
        return v

    @field_validator("ledger_account_id")
    @classmethod
    def validate_account(cls, v: str) -> str:
        if not ACCOUNT_ID_PATTERN.match(v):
            raise ValueError("ledger_account_id must look like shard.realm.num")
        return v

    @property
    def owner_id(self) -> str:
        return self.patient_id


ContentFields = Annotated[ConsentFields | GenomicDataFields, Field(discriminator="kind")]


# ═══════════════════════════════════════════════════════════════
# ACCESS CONTROL & AUDIT
# ═══════════════════════════════════════════════════════════════


class AuthorizedEntity(ImmutableModel):
    """A scoped, optionally time-bounded access grant."""

    entity_id: str = Field(min_length=1)
    entity_type: EntityType
    access_scope: frozenset[str] = Field(min_length=1)
    granted_at: UTCDateTime = Field(default_factory=utc_now)
    expires_at: UTCDateTime | None = None

    @field_serializer("access_scope")
    def serialize_scope(self, v: frozenset[str]) -> list[str]:
        return sorted(v)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AccessLogEntry(ImmutableModel):
    """
    One audited access attempt, granted or denied.

    ``sequence`` and ``timestamp`` are assigned by the store at append time.
    """

    sequence: int = Field(ge=1)
    timestamp: UTCDateTime
    entity_id: str
    action: str
    purpose: str
    allowed: bool
    reason: str | None = None
    data_accessed: str | None = None
    resulting_log_transaction_id: str | None = None


class Revocation(ImmutableModel):
    reason: str = Field(min_length=1)
    revoked_by: str = Field(min_length=1)
    revoked_at: UTCDateTime
    revocation_log_transaction_id: str | None = None


# ═══════════════════════════════════════════════════════════════
# ANCHORED RESOURCE
# ═══════════════════════════════════════════════════════════════


class AnchoredResource(ImmutableModel):
    """
    A consent or genomic data record and its ledger anchoring state.

    Instances are snapshots read from the store; state changes go through
    the ResourceStore's compare-and-swap, never through the instance.
    """

    resource_id: str = Field(min_length=1, max_length=128)
    kind: ResourceKind
    owner_id: str
    content_fields: ContentFields
    content_hash: str

    anchor_state: AnchorState = AnchorState.UNANCHORED
    log_submission_key: str | None = None
    log_transaction_id: str | None = None
    log_sequence_number: int | None = None
    token_submission_key: str | None = None
    token_id: str | None = None
    token_serial_number: int | None = None
    token_transaction_id: str | None = None
    failure_reason: FailureReason | None = None
    failure_detail: str | None = None
    supersedes: str | None = None

    created_at: UTCDateTime = Field(default_factory=utc_now)
    last_transition_at: UTCDateTime = Field(default_factory=utc_now)
    # Moves only when a receipt confirms a phase; claims and releases leave it
    last_progress_at: UTCDateTime | None = None

    revocation: Revocation | None = None
    revocation_pending: bool = False
    authorized_entities: list[AuthorizedEntity] = Field(default_factory=list)
    access_log: list[AccessLogEntry] = Field(default_factory=list)

    @field_validator("content_hash")
    @classmethod
    def validate_content_hash(cls, v: str) -> str:
        if not HEX_DIGEST_PATTERN.match(v):
            raise ValueError("content_hash must be 64 lowercase hex characters")
        return v

    @model_validator(mode="after")
    def validate_invariants(self) -> "AnchoredResource":
        if self.kind.value != self.content_fields.kind:
            raise ValueError("kind does not match content_fields")
        if self.owner_id != self.content_fields.owner_id:
            raise ValueError("owner_id does not match content_fields")
        if self.anchor_state == AnchorState.ANCHORED and (
            self.log_transaction_id is None or self.token_transaction_id is None
        ):
            raise ValueError("anchored resources need both log and token transaction ids")
        if self.revocation is not None and self.anchor_state != AnchorState.ANCHORED:
            raise ValueError("only anchored resources can carry a revocation")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.anchor_state in (AnchorState.ANCHORED, AnchorState.ANCHOR_FAILED)

    @property
    def progress_since(self) -> datetime:
        """When the resource last confirmed a phase, or was created."""
        return self.last_progress_at or self.created_at

    @property
    def is_revoked(self) -> bool:
        return self.revocation is not None

    def is_expired(self, now: datetime) -> bool:
        valid_until = getattr(self.content_fields, "valid_until", None)
        return valid_until is not None and now >= valid_until

    def status(self, now: datetime) -> ConsentStatus:
        """Business status derived from anchoring, revocation and validity window."""
        if self.anchor_state == AnchorState.ANCHOR_FAILED:
            return ConsentStatus.FAILED
        if self.anchor_state != AnchorState.ANCHORED:
            return ConsentStatus.PENDING
        if self.is_revoked:
            return ConsentStatus.REVOKED
        if self.is_expired(now):
            return ConsentStatus.EXPIRED
        valid_from = getattr(self.content_fields, "valid_from", None)
        if valid_from is not None and now < valid_from:
            return ConsentStatus.PENDING
        return ConsentStatus.GRANTED

    def is_valid(self, now: datetime) -> bool:
        """Effective validity: anchored, not revoked, inside its window."""
        return self.status(now) == ConsentStatus.GRANTED

    def authorization_for(self, entity_id: str) -> AuthorizedEntity | None:
        for entity in self.authorized_entities:
            if entity.entity_id == entity_id:
                return entity
        return None
