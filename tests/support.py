"""
Test support: a scripted in-process ledger, a controllable clock and
content-field factories.
"""

import asyncio
from collections import defaultdict, deque
from datetime import UTC, datetime, timedelta
from typing import Any

from genomic_mesh.ledger.base_client import BaseLedgerClient
from genomic_mesh.models.base import (
    ConsentType,
    DataType,
    FileFormat,
    Purpose,
    SignatureMethod,
)
from genomic_mesh.models.ledger import (
    LogSubmission,
    NftInfo,
    Receipt,
    ReceiptStatus,
    TokenMint,
    TokenTransfer,
)

CONSENT_TOPIC = "0.0.1001"
GENOMIC_TOPIC = "0.0.1002"
CONSENT_TOKEN = "0.0.2001"
GENOMIC_TOKEN = "0.0.2002"
INCENTIVE_TOKEN = "0.0.3001"
PATIENT_ACCOUNT = "0.0.4242"

FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Scripted Ledger Client
# =============================================================================


class FakeLedgerClient(BaseLedgerClient):
    """
    In-process ledger.

    Transaction ids are ``tx-1``, ``tx-2``, ... in acceptance order.
    ``fail_next`` queues exceptions per operation; ``set_receipt`` pins the
    receipt status for a transaction (default SUCCESS).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.messages: list[dict[str, Any]] = []
        self.mints: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []
        self.receipt_queries: list[str] = []
        self.delay = 0.0

        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self._receipts: dict[str, ReceiptStatus] = {}
        self._receipt_details: dict[str, str] = {}
        self._counter = 0
        self._topic_sequences: dict[str, int] = defaultdict(int)
        self._serials: dict[str, int] = defaultdict(int)
        self._by_tx: dict[str, dict[str, Any]] = {}
        self.nfts: dict[tuple[str, int], NftInfo] = {}

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self._failures[operation].extend(errors)

    def set_receipt(self, transaction_id: str, status: ReceiptStatus, details: str | None = None) -> None:
        self._receipts[transaction_id] = status
        if details:
            self._receipt_details[transaction_id] = details

    async def _enter(self, operation: str, detail: Any) -> None:
        self.calls.append((operation, detail))
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    def _next_tx(self) -> str:
        self._counter += 1
        return f"tx-{self._counter}"

    async def submit_message(
        self,
        topic_id: str,
        message: bytes,
        memo: str | None = None,
    ) -> LogSubmission:
        await self._enter("submit_message", memo)
        tx = self._next_tx()
        self._topic_sequences[topic_id] += 1
        sequence = self._topic_sequences[topic_id]
        self.messages.append(
            {"transaction_id": tx, "topic_id": topic_id, "message": message, "memo": memo}
        )
        self._by_tx[tx] = {"sequence_number": sequence}
        return LogSubmission(transaction_id=tx, topic_id=topic_id, sequence_number=sequence)

    async def mint_nft(
        self,
        token_id: str,
        metadata: bytes,
        memo: str | None = None,
    ) -> TokenMint:
        await self._enter("mint_nft", memo)
        tx = self._next_tx()
        self._serials[token_id] += 1
        serial = self._serials[token_id]
        self.mints.append(
            {"transaction_id": tx, "token_id": token_id, "metadata": metadata, "memo": memo}
        )
        self.nfts[(token_id, serial)] = NftInfo(
            token_id=token_id, serial_number=serial, metadata=metadata
        )
        self._by_tx[tx] = {"serial_numbers": [serial]}
        return TokenMint(transaction_id=tx, token_id=token_id, serial_number=serial)

    async def transfer_token(
        self,
        token_id: str,
        recipient_account_id: str,
        amount: int,
        memo: str | None = None,
    ) -> TokenTransfer:
        await self._enter("transfer_token", memo)
        tx = self._next_tx()
        self.transfers.append(
            {
                "transaction_id": tx,
                "token_id": token_id,
                "recipient": recipient_account_id,
                "amount": amount,
                "memo": memo,
            }
        )
        self._by_tx[tx] = {}
        return TokenTransfer(
            transaction_id=tx,
            token_id=token_id,
            recipient_account_id=recipient_account_id,
            amount=amount,
        )

    async def get_receipt(self, transaction_id: str) -> Receipt:
        self.receipt_queries.append(transaction_id)
        await self._enter("get_receipt", transaction_id)
        if transaction_id not in self._by_tx:
            return Receipt(transaction_id=transaction_id, status=ReceiptStatus.UNKNOWN)
        status = self._receipts.get(transaction_id, ReceiptStatus.SUCCESS)
        if status != ReceiptStatus.SUCCESS:
            return Receipt(
                transaction_id=transaction_id,
                status=status,
                details=self._receipt_details.get(transaction_id),
            )
        return Receipt(transaction_id=transaction_id, status=status, **self._by_tx[transaction_id])

    async def get_nft_info(self, token_id: str, serial_number: int) -> NftInfo | None:
        await self._enter("get_nft_info", (token_id, serial_number))
        return self.nfts.get((token_id, serial_number))


# =============================================================================
# Content Field Factories
# =============================================================================


def consent_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "patient_id": "patient-001",
        "consent_type": ConsentType.RESEARCH_PARTICIPATION,
        "data_types": [DataType.WHOLE_GENOME],
        "purposes": [Purpose.RESEARCH],
        "valid_from": datetime(2026, 1, 1, tzinfo=UTC),
        "valid_until": datetime(2027, 1, 1, tzinfo=UTC),
        "consent_text": "I consent to research use of my genome.",
        "consent_version": "2.1",
        "language": "en",
        "patient_signature": "sig-abc123",
        "signature_method": SignatureMethod.DIGITAL,
        "ledger_account_id": PATIENT_ACCOUNT,
    }
    data.update(overrides)
    return data


def genomic_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "patient_id": "patient-001",
        "data_type": DataType.EXOME,
        "sequencing_platform": "Illumina NovaSeq 6000",
        "sequencing_date": datetime(2026, 2, 1, tzinfo=UTC),
        "file_name": "patient-001.vcf.gz",
        "file_size": 1048576,
        "file_format": FileFormat.VCF,
        "file_hash": "ab" * 32,
        "storage_location": "s3://genomes/patient-001.vcf.gz",
        "ledger_account_id": PATIENT_ACCOUNT,
    }
    data.update(overrides)
    return data
