"""
Ledger Gateway

Stateless bridge between the anchoring services and a ledger client.
Resolves logical references (resource kind -> topic/token id), builds the
JSON messages written to the append log, enforces size limits and times
every ledger call. It never persists anything and never retries; retry
policy belongs to the orchestrator and poller.
"""

import json
from datetime import datetime
from typing import Any

import structlog

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import (
    BaseLedgerClient,
    LedgerConfigurationError,
    LedgerRejected,
)
from genomic_mesh.models.base import ResourceKind, format_timestamp
from genomic_mesh.models.ledger import (
    LogSubmission,
    NftInfo,
    Receipt,
    TokenMint,
    TokenTransfer,
)
from genomic_mesh.monitoring.logging import log_duration

logger = structlog.get_logger(__name__)

UNSET_ENTITY_ID = "0.0.0"

# Append-log message types
MESSAGE_CONSENT_HASH = "consent_hash"
MESSAGE_GENOMIC_DATA_HASH = "genomic_data_hash"
MESSAGE_CONSENT_REVOCATION = "consent_revocation"
MESSAGE_DATA_ACCESS_LOG = "data_access_log"

_HASH_MESSAGE_TYPES = {
    ResourceKind.CONSENT: MESSAGE_CONSENT_HASH,
    ResourceKind.GENOMIC_DATA: MESSAGE_GENOMIC_DATA_HASH,
}


class LedgerGateway:
    """
    Append-log submission, proof-token mint/transfer and receipt queries.

    Safe to share between any number of concurrent orchestrators.
    """

    def __init__(self, client: BaseLedgerClient, settings: Settings | None = None):
        self.client = client
        self.settings = settings or get_settings()

    # ==================== Reference Resolution ====================

    def _require(self, entity_id: str, name: str) -> str:
        if entity_id == UNSET_ENTITY_ID:
            raise LedgerConfigurationError(f"{name} is not configured")
        return entity_id

    def topic_for(self, kind: ResourceKind) -> str:
        if kind == ResourceKind.CONSENT:
            return self._require(self.settings.consent_topic_id, "consent_topic_id")
        return self._require(self.settings.genomic_topic_id, "genomic_topic_id")

    def token_for(self, kind: ResourceKind) -> str:
        if kind == ResourceKind.CONSENT:
            return self._require(self.settings.consent_token_id, "consent_token_id")
        return self._require(self.settings.genomic_token_id, "genomic_token_id")

    # ==================== Message Formats ====================

    @staticmethod
    def encode_message(payload: dict[str, Any]) -> bytes:
        """Compact, key-sorted UTF-8 JSON."""
        return json.dumps(
            payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    def anchor_message(
        self,
        kind: ResourceKind,
        resource_id: str,
        owner_id: str,
        content_hash: str,
        idempotency_key: str,
    ) -> bytes:
        return self.encode_message({
            "type": _HASH_MESSAGE_TYPES[kind],
            "resource_id": resource_id,
            "owner_id": owner_id,
            "hash": content_hash,
            "idempotency_key": idempotency_key,
        })

    def revocation_message(
        self,
        resource_id: str,
        content_hash: str,
        reason: str,
        revoked_by: str,
        revoked_at: datetime,
        idempotency_key: str,
    ) -> bytes:
        return self.encode_message({
            "type": MESSAGE_CONSENT_REVOCATION,
            "resource_id": resource_id,
            "hash": content_hash,
            "reason": reason,
            "revoked_by": revoked_by,
            "revoked_at": format_timestamp(revoked_at),
            "idempotency_key": idempotency_key,
        })

    def access_message(
        self,
        resource_id: str,
        entity_id: str,
        action: str,
        purpose: str,
        timestamp: datetime,
    ) -> bytes:
        return self.encode_message({
            "type": MESSAGE_DATA_ACCESS_LOG,
            "resource_id": resource_id,
            "entity_id": entity_id,
            "action": action,
            "purpose": purpose,
            "timestamp": format_timestamp(timestamp),
        })

    # ==================== Ledger Operations ====================

    async def submit_log(
        self,
        topic_id: str,
        payload: bytes,
        idempotency_key: str | None = None,
    ) -> LogSubmission:
        """
        Submit a payload to an append-log topic.

        Raises:
            LedgerUnavailable: transient, retry with the same idempotency key
            LedgerRejected: payload too large or reference malformed
        """
        if len(payload) > self.settings.max_log_payload_bytes:
            raise LedgerRejected(
                f"Log payload of {len(payload)} bytes exceeds "
                f"{self.settings.max_log_payload_bytes}"
            )
        with log_duration(
            logger, "ledger_submit_log", topic_id=topic_id, idempotency_key=idempotency_key
        ):
            return await self.client.submit_message(topic_id, payload, memo=idempotency_key)

    async def mint_proof_token(
        self,
        token_id: str,
        metadata: bytes,
        idempotency_key: str | None = None,
    ) -> TokenMint:
        """
        Mint a proof token whose metadata is the raw content digest.

        Raises:
            LedgerUnavailable: transient
            SupplyExhausted: token supply used up
            LedgerRejected: any other rejection
        """
        if len(metadata) > self.settings.max_token_metadata_bytes:
            raise LedgerRejected(
                f"Token metadata of {len(metadata)} bytes exceeds "
                f"{self.settings.max_token_metadata_bytes}"
            )
        with log_duration(
            logger, "ledger_mint_proof_token", token_id=token_id, idempotency_key=idempotency_key
        ):
            return await self.client.mint_nft(token_id, metadata, memo=idempotency_key)

    async def transfer_incentive(
        self,
        recipient_account_id: str,
        amount: int,
        idempotency_key: str | None = None,
    ) -> TokenTransfer:
        token_id = self._require(self.settings.incentive_token_id, "incentive_token_id")
        with log_duration(logger, "ledger_transfer_incentive", token_id=token_id, amount=amount):
            return await self.client.transfer_token(
                token_id, recipient_account_id, amount, memo=idempotency_key
            )

    async def query_receipt(self, transaction_id: str) -> Receipt:
        """Receipt for a transaction; UNKNOWN while consensus is pending."""
        with log_duration(logger, "ledger_query_receipt", transaction_id=transaction_id):
            return await self.client.get_receipt(transaction_id)

    async def get_nft_info(self, token_id: str, serial_number: int) -> NftInfo | None:
        with log_duration(logger, "ledger_get_nft_info", token_id=token_id, serial=serial_number):
            return await self.client.get_nft_info(token_id, serial_number)
