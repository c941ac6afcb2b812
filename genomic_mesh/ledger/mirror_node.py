"""
Hedera Mirror Node Client

Read side of the ledger: transaction receipts, topic message sequence
numbers and NFT metadata, queried over the mirror node REST API.

The mirror node lags consensus by a few seconds, so a transaction it has
never heard of is reported as UNKNOWN rather than as an error.
"""

import base64
import re
from typing import Any

import httpx
import structlog

from genomic_mesh.ledger.base_client import (
    LedgerConfigurationError,
    PermanentLedgerError,
    TransientLedgerError,
)
from genomic_mesh.models.ledger import NftInfo, Receipt, ReceiptStatus

logger = structlog.get_logger(__name__)

# 0.0.1234@1700000000.123456789 (SDK form) or 0.0.1234-1700000000-123456789 (REST form)
_SDK_TX_ID = re.compile(r"^(\d+\.\d+\.\d+)@(\d+)\.(\d+)$")
_REST_TX_ID = re.compile(r"^(\d+\.\d+\.\d+)-(\d+)-(\d+)$")

SUCCESS_RESULT = "SUCCESS"


def to_mirror_transaction_id(transaction_id: str) -> str:
    """Convert a transaction id to the dash-separated form used in REST paths."""
    match = _SDK_TX_ID.match(transaction_id) or _REST_TX_ID.match(transaction_id)
    if not match:
        raise LedgerConfigurationError(f"Malformed transaction id: {transaction_id!r}")
    account, seconds, nanos = match.groups()
    return f"{account}-{seconds}-{nanos.ljust(9, '0')[:9]}"


class MirrorNodeClient:
    """
    Async client for the Hedera mirror node REST API.

    Pass ``http_client`` to reuse an existing httpx client (tests hand in one
    built on ``httpx.MockTransport``); otherwise one is created on
    ``initialize()`` and closed on ``close()``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True
            logger.info("mirror_node_client_initialized", base_url=self.base_url)
        return self._client

    async def initialize(self) -> None:
        self._http()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> dict[str, Any] | None:
        """
        GET a mirror node resource.

        Returns None on 404. Timeouts, connection failures, 429 and 5xx are
        transient; other 4xx responses are permanent.
        """
        client = self._http()
        url = f"{self.base_url}{path}"
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            logger.warning("mirror_node_timeout", path=path)
            raise TransientLedgerError(f"Mirror node timed out: {path}") from e
        except httpx.TransportError as e:
            logger.warning("mirror_node_unreachable", path=path, error=str(e))
            raise TransientLedgerError(f"Mirror node unreachable: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientLedgerError(
                f"Mirror node returned {response.status_code} for {path}"
            )
        if response.status_code >= 400:
            raise PermanentLedgerError(
                f"Mirror node rejected {path}: {response.status_code} {response.text[:200]}"
            )

        data: dict[str, Any] = response.json()
        return data

    # ==================== Transactions ====================

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        """Fetch the primary mirror record for a transaction id."""
        data = await self._get(f"/api/v1/transactions/{to_mirror_transaction_id(transaction_id)}")
        if not data:
            return None
        transactions = data.get("transactions") or []
        if not transactions:
            return None
        # Child and scheduled records share the id; the parent has nonce 0
        for record in transactions:
            if record.get("nonce", 0) == 0 and not record.get("scheduled", False):
                return dict(record)
        return dict(transactions[0])

    async def get_receipt(self, transaction_id: str) -> Receipt:
        record = await self.get_transaction(transaction_id)
        if record is None:
            return Receipt(transaction_id=transaction_id, status=ReceiptStatus.UNKNOWN)

        result = record.get("result")
        consensus_timestamp = record.get("consensus_timestamp")
        if result != SUCCESS_RESULT:
            return Receipt(
                transaction_id=transaction_id,
                status=ReceiptStatus.FAILURE,
                details=result,
                consensus_timestamp=consensus_timestamp,
            )

        serials = [
            int(t["serial_number"])
            for t in record.get("nft_transfers") or []
            if t.get("serial_number") is not None
        ]

        sequence_number = None
        if record.get("name") == "CONSENSUSSUBMITMESSAGE" and consensus_timestamp:
            message = await self.get_topic_message(consensus_timestamp)
            if message is None:
                # Transaction indexed before its message; not settled from our view yet
                return Receipt(transaction_id=transaction_id, status=ReceiptStatus.UNKNOWN)
            sequence_number = message.get("sequence_number")

        return Receipt(
            transaction_id=transaction_id,
            status=ReceiptStatus.SUCCESS,
            details=result,
            sequence_number=sequence_number,
            serial_numbers=serials,
            consensus_timestamp=consensus_timestamp,
        )

    # ==================== Topics & Tokens ====================

    async def get_topic_message(self, consensus_timestamp: str) -> dict[str, Any] | None:
        return await self._get(f"/api/v1/topics/messages/{consensus_timestamp}")

    async def get_nft_info(self, token_id: str, serial_number: int) -> NftInfo | None:
        data = await self._get(f"/api/v1/tokens/{token_id}/nfts/{serial_number}")
        if data is None:
            return None
        try:
            metadata = base64.b64decode(data.get("metadata") or "", validate=True)
        except ValueError as e:
            raise PermanentLedgerError(
                f"NFT {token_id}/{serial_number} has undecodable metadata"
            ) from e
        return NftInfo(
            token_id=data.get("token_id", token_id),
            serial_number=int(data.get("serial_number", serial_number)),
            metadata=metadata,
            account_id=data.get("account_id"),
            created_timestamp=data.get("created_timestamp"),
            deleted=bool(data.get("deleted", False)),
        )
