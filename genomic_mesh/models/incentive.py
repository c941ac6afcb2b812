"""
Incentive Ledger Models

Entries track a single token payout from creation through ledger
confirmation. A failed entry is terminal; re-issuing creates a new entry
that points back at it.
"""

from enum import Enum

from pydantic import Field

from .base import ImmutableModel, UTCDateTime, utc_now


class IncentiveState(str, Enum):
    PENDING = "pending"        # Created, transfer not yet confirmed
    CONFIRMED = "confirmed"    # Transfer receipt observed
    FAILED = "failed"          # Retry budget exhausted or rejected


class ActivityType(str, Enum):
    """Activities that earn incentive tokens."""

    CONSENT_PROVIDED = "consent_provided"
    DATA_UPLOADED = "data_uploaded"
    DATA_ACCESSED = "data_accessed"
    AI_ANALYSIS_COMPLETED = "ai_analysis_completed"
    RESEARCH_PARTICIPATION = "research_participation"
    DATA_QUALITY_HIGH = "data_quality_high"
    CONSENT_RENEWED = "consent_renewed"
    FEEDBACK_PROVIDED = "feedback_provided"


class IncentiveLedgerEntry(ImmutableModel):
    """A single incentive payout and its transfer state."""

    entry_id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    recipient_account_id: str
    amount: int = Field(ge=0, description="Smallest token unit")
    reason_activity_id: str = Field(min_length=1)
    activity_type: ActivityType
    transfer_transaction_id: str | None = None
    state: IncentiveState = IncentiveState.PENDING
    attempts: int = Field(default=0, ge=0)
    failure_reason: str | None = None
    reissued_from: str | None = None
    created_at: UTCDateTime = Field(default_factory=utc_now)
    last_transition_at: UTCDateTime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in (IncentiveState.CONFIRMED, IncentiveState.FAILED)
