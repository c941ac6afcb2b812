"""
Genomic Mesh Services

Hashing, anchoring, reconciliation, access control, incentives and the
caller-facing consent operations.
"""

from genomic_mesh.services.access_control import (
    AccessControlAuditor,
    AccessDecision,
    UnauthorizedAccess,
    evaluate_access,
)
from genomic_mesh.services.anchoring import AnchoringOrchestrator, StepOutcome
from genomic_mesh.services.consent_service import (
    AnchoringStatus,
    ConsentService,
    ContentValidationError,
    NotCurrentlyGranted,
    NotReanchorable,
)
from genomic_mesh.services.hasher import CanonicalHasher, CanonicalizationError
from genomic_mesh.services.incentives import (
    IncentiveError,
    IncentiveService,
    NotReissuable,
)
from genomic_mesh.services.reconciliation import ReconciliationPoller, ReconciliationReport
from genomic_mesh.services.scheduler import BackgroundScheduler

__all__ = [
    "CanonicalHasher",
    "CanonicalizationError",
    "AnchoringOrchestrator",
    "StepOutcome",
    "ReconciliationPoller",
    "ReconciliationReport",
    "BackgroundScheduler",
    "AccessControlAuditor",
    "AccessDecision",
    "UnauthorizedAccess",
    "evaluate_access",
    "IncentiveService",
    "IncentiveError",
    "NotReissuable",
    "ConsentService",
    "AnchoringStatus",
    "ContentValidationError",
    "NotCurrentlyGranted",
    "NotReanchorable",
]
