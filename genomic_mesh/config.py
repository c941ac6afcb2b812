"""
Genomic Mesh Configuration Management

Centralized configuration using Pydantic Settings for type-safe environment
variable loading with validation.

SECURITY NOTE: The ledger operator key is never read here. Transaction signing
lives in the submitter handed to the ledger client, which should pull its key
from a secrets manager in production.
"""

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Hedera entity ids: shard.realm.num
ENTITY_ID_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

MIRROR_NODE_URLS = {
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "testnet": "https://testnet.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # APPLICATION
    # ═══════════════════════════════════════════════════════════════
    app_name: str = Field(default="genomic-mesh", description="Application name")
    app_env: Literal["development", "staging", "production", "testing"] = Field(
        default="development", description="Environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # ═══════════════════════════════════════════════════════════════
    # NEO4J DOCUMENT STORE
    # ═══════════════════════════════════════════════════════════════
    neo4j_uri: str = Field(default="bolt://localhost:7687", description="Neo4j connection URI")
    neo4j_user: str = Field(default="neo4j", description="Neo4j username")
    neo4j_password: str = Field(default="", description="Neo4j password")
    neo4j_database: str = Field(default="neo4j", description="Neo4j database name")
    neo4j_max_connection_lifetime: int = Field(
        default=3600, description="Max connection lifetime in seconds"
    )
    neo4j_max_connection_pool_size: int = Field(
        default=50, ge=1, description="Max connection pool size"
    )
    neo4j_connection_timeout: int = Field(
        default=30, ge=1, description="Connection timeout in seconds"
    )

    # ═══════════════════════════════════════════════════════════════
    # LEDGER NETWORK
    # ═══════════════════════════════════════════════════════════════
    ledger_network: Literal["mainnet", "testnet", "previewnet"] = Field(
        default="testnet", description="Ledger network"
    )
    mirror_node_url: str | None = Field(
        default=None, description="Mirror node REST base URL (defaults per network)"
    )
    mirror_node_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Mirror node request timeout"
    )
    ledger_operator_id: str | None = Field(
        default=None, description="Operator account paying for submissions"
    )

    consent_topic_id: str = Field(default="0.0.0", description="Append-log topic for consents")
    genomic_topic_id: str = Field(
        default="0.0.0", description="Append-log topic for genomic data and access events"
    )
    consent_token_id: str = Field(default="0.0.0", description="Consent proof token")
    genomic_token_id: str = Field(default="0.0.0", description="Genomic data proof token")
    incentive_token_id: str = Field(default="0.0.0", description="Fungible incentive token")
    incentive_token_decimals: int = Field(default=2, ge=0, le=18)

    # Hedera limits: one HCS chunk, NFT metadata field
    max_log_payload_bytes: int = Field(default=1024, ge=64)
    max_token_metadata_bytes: int = Field(default=100, ge=32)

    @field_validator(
        "consent_topic_id",
        "genomic_topic_id",
        "consent_token_id",
        "genomic_token_id",
        "incentive_token_id",
    )
    @classmethod
    def validate_entity_id(cls, v: str) -> str:
        if not ENTITY_ID_PATTERN.match(v):
            raise ValueError(f"Invalid ledger entity id: {v!r} (expected shard.realm.num)")
        return v

    @field_validator("ledger_operator_id")
    @classmethod
    def validate_operator_id(cls, v: str | None) -> str | None:
        if v is not None and not ENTITY_ID_PATTERN.match(v):
            raise ValueError(f"Invalid operator account id: {v!r}")
        return v

    @model_validator(mode="after")
    def check_production_ledger(self) -> "Settings":
        if self.app_env == "production" and self.ledger_operator_id is None:
            logger.critical(
                "LEDGER_OPERATOR_ID is not set in production; ledger submissions will be refused"
            )
        return self

    @property
    def mirror_node_base_url(self) -> str:
        """Resolved mirror node URL."""
        return (self.mirror_node_url or MIRROR_NODE_URLS[self.ledger_network]).rstrip("/")

    # ═══════════════════════════════════════════════════════════════
    # ANCHORING
    # ═══════════════════════════════════════════════════════════════
    anchor_submit_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts per ledger submission before releasing"
    )
    anchor_backoff_min_seconds: float = Field(default=0.5, ge=0)
    anchor_backoff_max_seconds: float = Field(default=8.0, ge=0)
    anchor_receipt_attempts: int = Field(
        default=5, ge=1, description="Receipt polls during a synchronous anchor run"
    )
    anchor_receipt_interval_seconds: float = Field(default=1.0, ge=0)
    anchor_sync_timeout_seconds: float = Field(
        default=30.0, gt=0, description="How long a caller waits before returning pending"
    )
    stale_transition_retries: int = Field(
        default=3, ge=1, description="Re-read/re-evaluate rounds after a StaleTransition"
    )

    # ═══════════════════════════════════════════════════════════════
    # RECONCILIATION
    # ═══════════════════════════════════════════════════════════════
    reconciliation_enabled: bool = Field(default=True)
    reconciliation_interval_seconds: float = Field(default=30.0, gt=0)
    reconciliation_min_age_seconds: float = Field(
        default=60.0, ge=0, description="Skip resources touched more recently than this"
    )
    reconciliation_max_staleness_hours: float = Field(
        default=24.0, gt=0, description="Escalate to anchor_failed after this long"
    )
    reconciliation_batch_size: int = Field(default=100, ge=1, le=1000)

    # ═══════════════════════════════════════════════════════════════
    # INCENTIVES & AUDIT
    # ═══════════════════════════════════════════════════════════════
    incentives_enabled: bool = Field(default=True)
    incentive_retry_budget: int = Field(
        default=5, ge=1, description="Transfer attempts before an entry fails"
    )
    access_log_anchoring_enabled: bool = Field(
        default=False, description="Publish granted data accesses to the genomic topic"
    )
    access_log_publish_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Wait for an access publication before logging without it"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
