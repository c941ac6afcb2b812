"""
Base Models and Common Types

Foundation classes for all Genomic Mesh models including enums,
the UTC timestamp type, and base model configuration.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer

# Fixed-width so stored timestamps compare correctly as strings
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Current timezone-aware UTC time."""
    return datetime.now(UTC)


def ensure_utc(value: Any) -> Any:
    """
    Normalize datetimes to timezone-aware UTC.

    Naive datetimes are taken to be UTC already. Strings are parsed as
    ISO-8601 (a trailing ``Z`` is accepted).
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the fixed storage format."""
    return ensure_utc(value).strftime(TIMESTAMP_FORMAT)


UTCDateTime = Annotated[
    datetime,
    BeforeValidator(ensure_utc),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]


class MeshModel(BaseModel):
    """Base model for all Genomic Mesh entities with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        validate_assignment=True,
    )


class ImmutableModel(MeshModel):
    """Base for values that are never mutated in place."""

    model_config = ConfigDict(frozen=True)


# ═══════════════════════════════════════════════════════════════
# ANCHORING
# ═══════════════════════════════════════════════════════════════


class AnchorState(str, Enum):
    """
    Anchoring lifecycle of a resource.

    UNANCHORED -> LOG_PENDING -> LOG_CONFIRMED -> TOKEN_PENDING -> ANCHORED,
    with ANCHOR_FAILED reachable from every non-terminal state.
    """

    UNANCHORED = "unanchored"
    LOG_PENDING = "log_pending"
    LOG_CONFIRMED = "log_confirmed"
    TOKEN_PENDING = "token_pending"
    ANCHORED = "anchored"
    ANCHOR_FAILED = "anchor_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({AnchorState.ANCHORED, AnchorState.ANCHOR_FAILED})
NON_TERMINAL_STATES = frozenset(set(AnchorState) - TERMINAL_STATES)


class FailureReason(str, Enum):
    """Reason codes reported for anchor_failed resources."""

    TIMEOUT = "timeout"
    LOG_REJECTED = "log_rejected"
    LOG_RECEIPT_FAILED = "log_receipt_failed"
    MINT_REJECTED = "mint_rejected"
    SUPPLY_EXHAUSTED = "supply_exhausted"
    MINT_RECEIPT_FAILED = "mint_receipt_failed"


class ResourceKind(str, Enum):
    """Kinds of anchored resources."""

    CONSENT = "consent"
    GENOMIC_DATA = "genomic_data"


class ConsentStatus(str, Enum):
    """Business status of a resource, derived from anchoring and revocation."""

    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════
# CONSENT VOCABULARY
# ═══════════════════════════════════════════════════════════════


class ConsentType(str, Enum):
    GENOMIC_ANALYSIS = "genomic_analysis"
    DATA_SHARING = "data_sharing"
    RESEARCH_PARTICIPATION = "research_participation"
    CLINICAL_TRIAL = "clinical_trial"
    DATA_STORAGE = "data_storage"
    AI_ANALYSIS = "ai_analysis"
    COMMERCIAL_USE = "commercial_use"
    GENOMIC_PASSPORT = "genomic_passport"
    DATA_SYNC = "data_sync"


class DataType(str, Enum):
    WHOLE_GENOME = "whole_genome"
    EXOME = "exome"
    TARGETED_PANEL = "targeted_panel"
    SNP_ARRAY = "snp_array"
    RNA_SEQ = "rna_seq"
    METHYLATION = "methylation"
    GENOMIC_PASSPORT = "genomic_passport"


class Purpose(str, Enum):
    RESEARCH = "research"
    CLINICAL_CARE = "clinical_care"
    DRUG_DEVELOPMENT = "drug_development"
    POPULATION_STUDIES = "population_studies"
    DISEASE_PREDICTION = "disease_prediction"
    ANCESTRY_ANALYSIS = "ancestry_analysis"
    PHARMACOGENOMICS = "pharmacogenomics"
    DATA_OWNERSHIP_PROOF = "data_ownership_proof"
    DATA_SYNCHRONIZATION = "data_synchronization"


class SignatureMethod(str, Enum):
    DIGITAL = "digital"
    BIOMETRIC = "biometric"
    WALLET_SIGNATURE = "wallet_signature"


class FileFormat(str, Enum):
    FASTQ = "fastq"
    BAM = "bam"
    VCF = "vcf"
    GFF = "gff"
    BED = "bed"


class AccessLevel(str, Enum):
    PUBLIC = "public"
    RESTRICTED = "restricted"
    PRIVATE = "private"


class EntityType(str, Enum):
    """Kinds of parties that can be granted access."""

    RESEARCHER = "researcher"
    CLINICIAN = "clinician"
    INSTITUTION = "institution"
    PHARMA_COMPANY = "pharma_company"
    AI_SYSTEM = "ai_system"
