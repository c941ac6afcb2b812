"""
Consent Service

Caller-facing operations over consents and genomic data records:
registration (validate, persist, anchor), revocation, access grants,
audited access, proof verification and re-anchoring.

Validation, not-found, unauthorized and not-granted conditions are raised
to the caller. Transient ledger trouble never is: a registration that
cannot finish in time comes back pending and the poller completes it.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import LedgerError, TransientLedgerError
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.models.base import (
    AnchorState,
    ConsentStatus,
    EntityType,
    ResourceKind,
    utc_now,
)
from genomic_mesh.models.ledger import ProofVerification
from genomic_mesh.models.resource import (
    AccessLogEntry,
    AnchoredResource,
    AuthorizedEntity,
    ConsentFields,
    GenomicDataFields,
)
from genomic_mesh.repositories.resource_repository import (
    InvalidTransition,
    ResourceNotFound,
    ResourceRepository,
    StaleTransition,
)
from genomic_mesh.services.access_control import AccessControlAuditor
from genomic_mesh.services.anchoring import AnchoringOrchestrator
from genomic_mesh.services.hasher import CanonicalHasher

logger = structlog.get_logger(__name__)

_consent_adapter = TypeAdapter(ConsentFields)
_genomic_adapter = TypeAdapter(GenomicDataFields)

# Reasons reported by verify_proof
PROOF_UNKNOWN_TOKEN = "unknown_token"
PROOF_NOT_ANCHORED = "not_anchored"
PROOF_TOKEN_NOT_FOUND = "token_not_found_on_ledger"
PROOF_TOKEN_DELETED = "token_deleted"
PROOF_LEDGER_UNAVAILABLE = "ledger_unavailable"
PROOF_HASH_MISMATCH = "content_hash_mismatch"
PROOF_METADATA_MISMATCH = "metadata_mismatch"


class ContentValidationError(ValueError):
    """Content fields failed validation; nothing was persisted."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class NotCurrentlyGranted(Exception):
    """The operation needs a resource whose status is granted."""

    def __init__(self, resource_id: str, status: ConsentStatus):
        super().__init__(f"Resource {resource_id} is {status.value}, not granted")
        self.resource_id = resource_id
        self.status = status


class NotReanchorable(InvalidTransition):
    """Only anchor_failed resources can be re-anchored."""
    pass


@dataclass
class AnchoringStatus:
    """What a caller is told about a resource's anchoring."""

    resource_id: str
    status: str  # pending_verification | anchored | failed
    anchor_state: AnchorState
    reason: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "status": self.status,
            "anchor_state": self.anchor_state.value,
            "reason": self.reason,
            "detail": self.detail,
        }


def _validate(adapter: TypeAdapter, fields: Any) -> Any:
    if isinstance(fields, (ConsentFields, GenomicDataFields)):
        fields = fields.model_dump()
    try:
        return adapter.validate_python(fields)
    except ValidationError as e:
        raise ContentValidationError(
            f"Invalid content fields: {e.error_count()} error(s)",
            errors=e.errors(include_url=False),
        ) from e


class ConsentService:
    """
    Caller-facing consent and genomic data operations.

    All collaborators are injected; nothing here is process-global.
    """

    def __init__(
        self,
        resources: ResourceRepository,
        orchestrator: AnchoringOrchestrator,
        auditor: AccessControlAuditor,
        gateway: LedgerGateway,
        hasher: CanonicalHasher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.resources = resources
        self.orchestrator = orchestrator
        self.auditor = auditor
        self.gateway = gateway
        self.hasher = hasher or CanonicalHasher()
        self.settings = settings or get_settings()
        self.clock = clock

    # ==================== Registration ====================

    async def register_consent(
        self,
        fields: Mapping[str, Any] | ConsentFields,
        resource_id: str | None = None,
    ) -> str:
        """
        Validate, persist and anchor a consent.

        Waits for anchoring at most ``anchor_sync_timeout_seconds``; the
        resource may come back still pending.

        Raises:
            ContentValidationError: malformed fields, nothing persisted
            DuplicateResourceId: ``resource_id`` already taken
        """
        consent = _validate(_consent_adapter, fields)
        resource = await self._register(consent, resource_id)
        return resource.resource_id

    async def register_genomic_data(
        self,
        fields: Mapping[str, Any] | GenomicDataFields,
        resource_id: str | None = None,
    ) -> str:
        """Validate, persist and anchor a genomic data record."""
        record = _validate(_genomic_adapter, fields)
        resource = await self._register(record, resource_id)
        return resource.resource_id

    async def _register(
        self,
        fields: ConsentFields | GenomicDataFields,
        resource_id: str | None,
        supersedes: str | None = None,
    ) -> AnchoredResource:
        created = await self.orchestrator.create(fields, resource_id, supersedes)
        logger.info(
            "resource_registered",
            resource_id=created.resource_id,
            kind=created.kind.value,
            owner_id=created.owner_id,
        )
        return await self.orchestrator.anchor(created.resource_id)

    async def reanchor(self, resource_id: str) -> str:
        """
        Re-anchor the content of a failed resource under a new id.

        Raises:
            NotReanchorable: the resource is not anchor_failed
        """
        failed = await self.resources.get(resource_id)
        if failed.anchor_state != AnchorState.ANCHOR_FAILED:
            raise NotReanchorable(
                f"Resource {resource_id} is {failed.anchor_state.value}, not anchor_failed"
            )
        resource = await self._register(failed.content_fields, None, supersedes=resource_id)
        logger.info(
            "resource_reanchored",
            resource_id=resource.resource_id,
            supersedes=resource_id,
        )
        return resource.resource_id

    # ==================== Reads ====================

    async def get_resource(self, resource_id: str) -> AnchoredResource:
        return await self.resources.get(resource_id)

    async def get_consent(self, resource_id: str) -> AnchoredResource:
        """
        Raises:
            ResourceNotFound: no consent with this id
        """
        resource = await self.resources.get(resource_id)
        if resource.kind != ResourceKind.CONSENT:
            raise ResourceNotFound(f"Consent {resource_id} not found")
        return resource

    async def status(self, resource_id: str) -> ConsentStatus:
        resource = await self.resources.get(resource_id)
        return resource.status(self.clock())

    async def anchoring_status(self, resource_id: str) -> AnchoringStatus:
        """Anchoring outcome as callers see it: pending until settled."""
        resource = await self.resources.get(resource_id)
        if resource.anchor_state == AnchorState.ANCHORED:
            status = "anchored"
        elif resource.anchor_state == AnchorState.ANCHOR_FAILED:
            status = "failed"
        else:
            status = "pending_verification"
        return AnchoringStatus(
            resource_id=resource_id,
            status=status,
            anchor_state=resource.anchor_state,
            reason=resource.failure_reason.value if resource.failure_reason else None,
            detail=resource.failure_detail,
        )

    async def list_by_owner(
        self,
        owner_id: str,
        kind: ResourceKind | None = None,
        limit: int = 100,
    ) -> list[AnchoredResource]:
        return await self.resources.list_by_owner(owner_id, kind=kind, limit=limit)

    # ==================== Revocation ====================

    async def revoke_consent(
        self,
        resource_id: str,
        reason: str,
        revoked_by: str,
    ) -> AnchoredResource:
        """
        Revoke a granted consent.

        Access is denied as soon as this returns; the ledger entry may
        still be pending, in which case the poller submits it.

        Raises:
            NotCurrentlyGranted: the consent is not granted (pending,
                failed, expired or already revoked)
            ResourceNotFound: no such consent
        """
        consent = await self.get_consent(resource_id)
        current = consent.status(self.clock())
        if current != ConsentStatus.GRANTED:
            raise NotCurrentlyGranted(resource_id, current)

        try:
            revoked = await self.orchestrator.revoke(consent, reason, revoked_by)
        except StaleTransition as e:
            latest = await self.resources.get(resource_id)
            raise NotCurrentlyGranted(resource_id, latest.status(self.clock())) from e

        logger.info(
            "consent_revoked",
            resource_id=resource_id,
            revoked_by=revoked_by,
            ledger_pending=revoked.revocation_pending,
        )
        return revoked

    # ==================== Access ====================

    async def record_access(
        self,
        resource_id: str,
        entity_id: str,
        action: str,
        purpose: str,
        data_accessed: str | None = None,
    ) -> bool:
        """Check and audit an access attempt; True if allowed."""
        return await self.auditor.check_and_log(
            resource_id, entity_id, action, purpose, data_accessed
        )

    async def grant_access(
        self,
        resource_id: str,
        entity_id: str,
        entity_type: EntityType | str,
        access_scope: Iterable[str],
        expires_at: datetime | None = None,
    ) -> AnchoredResource:
        """
        Grant (or replace) an entity's scoped access to a resource.

        Raises:
            ContentValidationError: empty scope or malformed entity
            NotCurrentlyGranted: the consent is not currently valid
        """
        try:
            grant = AuthorizedEntity(
                entity_id=entity_id,
                entity_type=entity_type,
                access_scope=frozenset(access_scope),
                granted_at=self.clock(),
                expires_at=expires_at,
            )
        except ValidationError as e:
            raise ContentValidationError(
                f"Invalid access grant: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

        for _ in range(self.settings.stale_transition_retries):
            resource = await self.resources.get(resource_id)
            if resource.kind == ResourceKind.CONSENT:
                current = resource.status(self.clock())
                if current != ConsentStatus.GRANTED:
                    raise NotCurrentlyGranted(resource_id, current)

            entities = [e for e in resource.authorized_entities if e.entity_id != entity_id]
            entities.append(grant)
            try:
                updated = await self.resources.replace_authorized_entities(
                    resource_id, resource.authorized_entities, entities
                )
            except StaleTransition:
                continue

            logger.info(
                "access_granted",
                resource_id=resource_id,
                entity_id=entity_id,
                scope=sorted(grant.access_scope),
            )
            return updated

        raise StaleTransition(f"Authorized entities of {resource_id} kept changing")

    async def get_access_log(self, resource_id: str, entity_id: str) -> list[AccessLogEntry]:
        """
        Read the access log; the read itself is audited.

        Raises:
            UnauthorizedAccess: ``entity_id`` lacks audit access
        """
        await self.auditor.require(resource_id, entity_id, "audit", "audit_trail_review")
        resource = await self.resources.get(resource_id)
        return list(resource.access_log)

    # ==================== Proof Verification ====================

    async def verify_proof(self, token_id: str, serial_number: int) -> ProofVerification:
        """
        Check a proof token against the local record.

        The content hash is recomputed from the stored fields and the
        token's on-chain metadata must equal its raw digest bytes.
        """
        now = self.clock()
        resource = await self.resources.find_by_token(token_id, serial_number)
        if resource is None:
            return ProofVerification(valid=False, reason=PROOF_UNKNOWN_TOKEN, verified_at=now)

        def result(valid: bool, reason: str | None = None) -> ProofVerification:
            return ProofVerification(
                valid=valid,
                resource_id=resource.resource_id,
                reason=reason,
                revoked=resource.is_revoked,
                expired=resource.is_expired(now),
                verified_at=now,
            )

        if resource.anchor_state != AnchorState.ANCHORED:
            return result(False, PROOF_NOT_ANCHORED)

        recomputed = self.hasher.hash(resource.content_fields)
        if recomputed != resource.content_hash:
            logger.error(
                "proof_content_hash_mismatch",
                resource_id=resource.resource_id,
                stored=resource.content_hash,
                recomputed=recomputed,
            )
            return result(False, PROOF_HASH_MISMATCH)

        try:
            nft = await self.gateway.get_nft_info(token_id, serial_number)
        except TransientLedgerError as e:
            logger.warning("proof_verification_deferred", token_id=token_id, error=str(e))
            return result(False, PROOF_LEDGER_UNAVAILABLE)
        except LedgerError as e:
            logger.error("proof_lookup_rejected", token_id=token_id, error=str(e))
            return result(False, PROOF_TOKEN_NOT_FOUND)

        if nft is None:
            return result(False, PROOF_TOKEN_NOT_FOUND)
        if nft.deleted:
            return result(False, PROOF_TOKEN_DELETED)
        if nft.metadata != self.hasher.token_metadata(recomputed):
            logger.error(
                "proof_metadata_mismatch",
                resource_id=resource.resource_id,
                token_id=token_id,
                serial_number=serial_number,
            )
            return result(False, PROOF_METADATA_MISMATCH)

        return result(True)
