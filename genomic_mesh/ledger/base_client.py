"""
Ledger Client Base

Abstract contract for the external ledger network: topic-style append
logs, an NFT-capable token service and a receipt query round trip.

Every failure a client raises is classified as either transient (safe to
retry, the network may not have seen the transaction) or permanent (the
network rejected it and retrying the same request cannot succeed). Callers
above this layer decide what to do with that classification.
"""

from abc import ABC, abstractmethod

from genomic_mesh.models.ledger import (
    LogSubmission,
    NftInfo,
    Receipt,
    TokenMint,
    TokenTransfer,
)


class LedgerError(Exception):
    """Base exception for ledger client errors."""
    pass


class TransientLedgerError(LedgerError):
    """The ledger could not be reached or was busy; retrying may succeed."""
    pass


class PermanentLedgerError(LedgerError):
    """The ledger rejected the request; retrying it unchanged will not help."""
    pass


class SupplyExhausted(PermanentLedgerError):
    """The proof token has no remaining supply; needs operator intervention."""
    pass


class LedgerConfigurationError(PermanentLedgerError):
    """A topic, token or account reference is missing or malformed."""
    pass


LedgerUnavailable = TransientLedgerError
LedgerRejected = PermanentLedgerError


class BaseLedgerClient(ABC):
    """
    Abstract base class for ledger client implementations.

    Implementations hold no per-resource state and must be safe to share
    between concurrently running orchestrators. ``memo`` carries the
    caller's idempotency key where the network supports one.
    """

    async def initialize(self) -> None:
        """Open connections. Default is a no-op."""

    async def close(self) -> None:
        """Release connections. Default is a no-op."""

    # ==================== Submission ====================

    @abstractmethod
    async def submit_message(
        self,
        topic_id: str,
        message: bytes,
        memo: str | None = None,
    ) -> LogSubmission:
        """
        Submit a message to an append-log topic.

        Returns:
            LogSubmission with the transaction id. The sequence number is
            only known once consensus is reached, so it may be None.

        Raises:
            TransientLedgerError: network unavailable or busy
            PermanentLedgerError: payload or topic rejected
        """
        pass

    @abstractmethod
    async def mint_nft(
        self,
        token_id: str,
        metadata: bytes,
        memo: str | None = None,
    ) -> TokenMint:
        """
        Mint a single NFT carrying ``metadata``.

        Raises:
            TransientLedgerError: network unavailable or busy
            SupplyExhausted: token supply is used up
            PermanentLedgerError: any other rejection
        """
        pass

    @abstractmethod
    async def transfer_token(
        self,
        token_id: str,
        recipient_account_id: str,
        amount: int,
        memo: str | None = None,
    ) -> TokenTransfer:
        """Transfer ``amount`` smallest units of a fungible token."""
        pass

    # ==================== Queries ====================

    @abstractmethod
    async def get_receipt(self, transaction_id: str) -> Receipt:
        """
        Look up the consensus outcome of a transaction.

        A transaction the network has not settled yet yields a receipt with
        status UNKNOWN; that is a normal result, not an error.
        """
        pass

    @abstractmethod
    async def get_nft_info(self, token_id: str, serial_number: int) -> NftInfo | None:
        """Fetch a minted NFT, or None if no such serial exists."""
        pass
