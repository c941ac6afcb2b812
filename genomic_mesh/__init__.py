"""
Genomic Mesh - Ledger-Anchored Resource & Reconciliation Engine

Patient consent and genomic data provenance anchored to a distributed
ledger, with reconciliation of off-chain records against on-chain state.
"""

__version__ = "1.0.0"

from genomic_mesh.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
