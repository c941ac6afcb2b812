"""
Ledger Result Models

Values returned by the ledger layer. None of these are persisted by the
ledger layer itself; the repositories copy the identifiers they need.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field

from .base import ImmutableModel


class ReceiptStatus(str, Enum):
    """Consensus outcome of a submitted transaction."""

    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"    # Not yet reached consensus, poll again


class LogSubmission(ImmutableModel):
    """Result of an append-log (topic message) submission."""

    transaction_id: str
    topic_id: str
    sequence_number: int | None = None


class TokenMint(ImmutableModel):
    """Result of a proof-token mint."""

    transaction_id: str
    token_id: str
    serial_number: int | None = None


class TokenTransfer(ImmutableModel):
    transaction_id: str
    token_id: str
    recipient_account_id: str
    amount: int = Field(ge=0)


class Receipt(ImmutableModel):
    """
    Receipt for a previously submitted transaction.

    ``sequence_number`` is filled for topic messages, ``serial_numbers``
    for NFT mints. Both stay empty while the status is UNKNOWN.
    """

    transaction_id: str
    status: ReceiptStatus
    details: str | None = None
    sequence_number: int | None = None
    serial_numbers: list[int] = Field(default_factory=list)
    consensus_timestamp: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status != ReceiptStatus.UNKNOWN


class NftInfo(ImmutableModel):
    """On-chain view of a single minted proof token."""

    token_id: str
    serial_number: int
    metadata: bytes
    account_id: str | None = None
    created_timestamp: str | None = None
    deleted: bool = False


class ProofVerification(ImmutableModel):
    """Outcome of verifying a proof token against the local record."""

    valid: bool
    resource_id: str | None = None
    reason: str | None = None
    revoked: bool = False
    expired: bool = False
    verified_at: datetime | None = None
