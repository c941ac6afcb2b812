"""
Hedera Ledger Client

Implements BaseLedgerClient for Hedera: consensus-service topics for the
append log, token-service NFTs for proof tokens and a fungible token for
incentives.

Signing and gRPC transport are not done here. They belong to a
TransactionSubmitter handed in by the caller (typically a thin wrapper over
the Hedera SDK holding the operator key). This class enforces network
limits, classifies the submitter's status codes into the transient or
permanent taxonomy and answers queries through the mirror node.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog

from genomic_mesh.config import Settings
from genomic_mesh.ledger.base_client import (
    BaseLedgerClient,
    LedgerConfigurationError,
    PermanentLedgerError,
    SupplyExhausted,
    TransientLedgerError,
)
from genomic_mesh.ledger.mirror_node import MirrorNodeClient, to_mirror_transaction_id
from genomic_mesh.models.ledger import (
    LogSubmission,
    NftInfo,
    Receipt,
    TokenMint,
    TokenTransfer,
)

logger = structlog.get_logger(__name__)

MAX_MEMO_BYTES = 100

ACCEPTED_STATUSES = frozenset({"OK", "SUCCESS"})

# Precheck codes after which the network has not processed the transaction
TRANSIENT_STATUSES = frozenset({
    "BUSY",
    "PLATFORM_TRANSACTION_NOT_CREATED",
    "PLATFORM_NOT_ACTIVE",
    "TRANSACTION_EXPIRED",
    "INSUFFICIENT_TX_FEE",
    "UNKNOWN",
})

SUPPLY_EXHAUSTED_STATUSES = frozenset({
    "MAX_SUPPLY_REACHED",
    "TOKEN_MAX_SUPPLY_REACHED",
})


@dataclass(frozen=True)
class SubmitResult:
    """What a submitter reports back for one signed transaction."""

    transaction_id: str
    status: str
    serial_number: int | None = None
    sequence_number: int | None = None


class TransactionSubmitter(Protocol):
    """Signs and sends transactions to the Hedera network."""

    async def submit_topic_message(
        self, topic_id: str, message: bytes, memo: str | None
    ) -> SubmitResult: ...

    async def mint_nft(
        self, token_id: str, metadata: bytes, memo: str | None
    ) -> SubmitResult: ...

    async def transfer_token(
        self, token_id: str, recipient_account_id: str, amount: int, memo: str | None
    ) -> SubmitResult: ...


def classify_status(status: str, operation: str) -> None:
    """Raise the ledger error matching a non-accepted status code."""
    status = status.upper()
    if status in ACCEPTED_STATUSES:
        return
    if status in TRANSIENT_STATUSES:
        raise TransientLedgerError(f"{operation} not processed: {status}")
    if status in SUPPLY_EXHAUSTED_STATUSES:
        raise SupplyExhausted(f"{operation} rejected: {status}")
    raise PermanentLedgerError(f"{operation} rejected: {status}")


class HederaLedgerClient(BaseLedgerClient):
    """Ledger client backed by a transaction submitter and the mirror node."""

    def __init__(
        self,
        submitter: TransactionSubmitter,
        mirror: MirrorNodeClient,
        max_message_bytes: int = 1024,
        max_metadata_bytes: int = 100,
    ):
        self._submitter = submitter
        self._mirror = mirror
        self.max_message_bytes = max_message_bytes
        self.max_metadata_bytes = max_metadata_bytes

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        submitter: TransactionSubmitter,
        mirror: MirrorNodeClient | None = None,
    ) -> "HederaLedgerClient":
        if settings.app_env == "production" and settings.ledger_operator_id is None:
            raise LedgerConfigurationError("ledger_operator_id is required in production")
        mirror = mirror or MirrorNodeClient(
            settings.mirror_node_base_url,
            timeout=settings.mirror_node_timeout_seconds,
        )
        return cls(
            submitter,
            mirror,
            max_message_bytes=settings.max_log_payload_bytes,
            max_metadata_bytes=settings.max_token_metadata_bytes,
        )

    async def initialize(self) -> None:
        await self._mirror.initialize()

    async def close(self) -> None:
        await self._mirror.close()

    def _check_memo(self, memo: str | None) -> None:
        if memo is not None and len(memo.encode("utf-8")) > MAX_MEMO_BYTES:
            raise PermanentLedgerError(f"Memo exceeds {MAX_MEMO_BYTES} bytes")

    async def _send(self, operation: str, call) -> SubmitResult:
        try:
            result: SubmitResult = await call
        except (TimeoutError, ConnectionError, OSError) as e:
            logger.warning("hedera_submit_unreachable", operation=operation, error=str(e))
            raise TransientLedgerError(f"{operation} could not reach the network: {e}") from e

        classify_status(result.status, operation)
        # Validates the shape; receipts are looked up by this id later
        to_mirror_transaction_id(result.transaction_id)
        return result

    # ==================== Submission ====================

    async def submit_message(
        self,
        topic_id: str,
        message: bytes,
        memo: str | None = None,
    ) -> LogSubmission:
        if len(message) > self.max_message_bytes:
            raise PermanentLedgerError(
                f"Message of {len(message)} bytes exceeds the {self.max_message_bytes} byte limit"
            )
        self._check_memo(memo)

        result = await self._send(
            "topic_message_submit",
            self._submitter.submit_topic_message(topic_id, message, memo),
        )
        logger.info(
            "hedera_message_submitted",
            topic_id=topic_id,
            transaction_id=result.transaction_id,
        )
        return LogSubmission(
            transaction_id=result.transaction_id,
            topic_id=topic_id,
            sequence_number=result.sequence_number,
        )

    async def mint_nft(
        self,
        token_id: str,
        metadata: bytes,
        memo: str | None = None,
    ) -> TokenMint:
        if len(metadata) > self.max_metadata_bytes:
            raise PermanentLedgerError(
                f"Metadata of {len(metadata)} bytes exceeds "
                f"the {self.max_metadata_bytes} byte limit"
            )
        self._check_memo(memo)

        result = await self._send(
            "nft_mint",
            self._submitter.mint_nft(token_id, metadata, memo),
        )
        logger.info("hedera_nft_minted", token_id=token_id, transaction_id=result.transaction_id)
        return TokenMint(
            transaction_id=result.transaction_id,
            token_id=token_id,
            serial_number=result.serial_number,
        )

    async def transfer_token(
        self,
        token_id: str,
        recipient_account_id: str,
        amount: int,
        memo: str | None = None,
    ) -> TokenTransfer:
        if amount < 0:
            raise PermanentLedgerError("Transfer amount must be non-negative")
        self._check_memo(memo)

        result = await self._send(
            "token_transfer",
            self._submitter.transfer_token(token_id, recipient_account_id, amount, memo),
        )
        logger.info(
            "hedera_token_transferred",
            token_id=token_id,
            recipient=recipient_account_id,
            amount=amount,
            transaction_id=result.transaction_id,
        )
        return TokenTransfer(
            transaction_id=result.transaction_id,
            token_id=token_id,
            recipient_account_id=recipient_account_id,
            amount=amount,
        )

    # ==================== Queries ====================

    async def get_receipt(self, transaction_id: str) -> Receipt:
        return await self._mirror.get_receipt(transaction_id)

    async def get_nft_info(self, token_id: str, serial_number: int) -> NftInfo | None:
        return await self._mirror.get_nft_info(token_id, serial_number)
