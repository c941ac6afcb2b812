"""
Genomic Mesh Ledger Layer

Client contract and error taxonomy, the Hedera implementation and the
stateless gateway the services talk to.
"""

from genomic_mesh.ledger.base_client import (
    BaseLedgerClient,
    LedgerConfigurationError,
    LedgerError,
    LedgerRejected,
    LedgerUnavailable,
    PermanentLedgerError,
    SupplyExhausted,
    TransientLedgerError,
)
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.ledger.hedera_client import (
    HederaLedgerClient,
    SubmitResult,
    TransactionSubmitter,
)
from genomic_mesh.ledger.mirror_node import MirrorNodeClient, to_mirror_transaction_id

__all__ = [
    "BaseLedgerClient",
    "LedgerError",
    "TransientLedgerError",
    "PermanentLedgerError",
    "SupplyExhausted",
    "LedgerConfigurationError",
    "LedgerUnavailable",
    "LedgerRejected",
    "LedgerGateway",
    "HederaLedgerClient",
    "SubmitResult",
    "TransactionSubmitter",
    "MirrorNodeClient",
    "to_mirror_transaction_id",
]
