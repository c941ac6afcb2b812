"""
Genomic Mesh Models

Pydantic models for anchored resources, incentives and ledger results.
"""

from genomic_mesh.models.base import (
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    AccessLevel,
    AnchorState,
    ConsentStatus,
    ConsentType,
    DataType,
    EntityType,
    FailureReason,
    FileFormat,
    ImmutableModel,
    MeshModel,
    Purpose,
    ResourceKind,
    SignatureMethod,
    UTCDateTime,
    ensure_utc,
    format_timestamp,
    utc_now,
)
from genomic_mesh.models.incentive import (
    ActivityType,
    IncentiveLedgerEntry,
    IncentiveState,
)
from genomic_mesh.models.ledger import (
    LogSubmission,
    NftInfo,
    ProofVerification,
    Receipt,
    ReceiptStatus,
    TokenMint,
    TokenTransfer,
)
from genomic_mesh.models.resource import (
    AccessLogEntry,
    AnchoredResource,
    AuthorizedEntity,
    ConsentFields,
    ContentFields,
    GenomicDataFields,
    Revocation,
)

__all__ = [
    # Base
    "MeshModel",
    "ImmutableModel",
    "UTCDateTime",
    "utc_now",
    "ensure_utc",
    "format_timestamp",
    "AnchorState",
    "TERMINAL_STATES",
    "NON_TERMINAL_STATES",
    "FailureReason",
    "ResourceKind",
    "ConsentStatus",
    "ConsentType",
    "DataType",
    "Purpose",
    "SignatureMethod",
    "FileFormat",
    "AccessLevel",
    "EntityType",
    # Resource
    "ConsentFields",
    "GenomicDataFields",
    "ContentFields",
    "AuthorizedEntity",
    "AccessLogEntry",
    "Revocation",
    "AnchoredResource",
    # Incentive
    "ActivityType",
    "IncentiveState",
    "IncentiveLedgerEntry",
    # Ledger
    "ReceiptStatus",
    "LogSubmission",
    "TokenMint",
    "TokenTransfer",
    "Receipt",
    "NftInfo",
    "ProofVerification",
]
