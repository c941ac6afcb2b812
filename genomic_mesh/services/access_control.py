"""
Access Control Auditor

Evaluates an entity's access to a protected resource against its scoped,
time-bounded grant, and writes an access-log entry for every decision,
granted or denied. The audit append is not best effort: if it cannot be
written the call fails. Ledger publication of a granted access is
bounded by a timeout and never stands in the way of that append.

Revocation denies data access but leaves the audit trail readable, so a
revoked consent's access log stays inspectable for compliance.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import LedgerError
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.models.base import ResourceKind, utc_now
from genomic_mesh.models.ledger import LogSubmission
from genomic_mesh.models.resource import AccessLogEntry, AnchoredResource
from genomic_mesh.repositories.resource_repository import ResourceRepository

logger = structlog.get_logger(__name__)

# Action -> capability that must be in the grant's access scope
ACTION_CAPABILITIES: dict[str, str] = {
    "view": "read",
    "read": "read",
    "download": "download",
    "analyze": "analyze",
    "write": "write",
    "share": "share",
    "audit": "audit",
    "view_access_log": "audit",
}

# Read-only audit-trail access, still allowed after revocation
AUDIT_ACTIONS = frozenset({"audit", "view_access_log"})

# Deny reasons recorded in the access log
REASON_UNKNOWN_ACTION = "unknown_action"
REASON_NOT_AUTHORIZED = "entity_not_authorized"
REASON_ACCESS_EXPIRED = "access_expired"
REASON_SCOPE = "scope_excludes_action"
REASON_REVOKED = "consent_revoked"
REASON_CONSENT_EXPIRED = "consent_expired"


class UnauthorizedAccess(Exception):
    """Access was denied; the denial has already been logged."""

    def __init__(self, resource_id: str, entity_id: str, action: str, reason: str | None):
        super().__init__(f"{entity_id} may not {action} {resource_id}: {reason}")
        self.resource_id = resource_id
        self.entity_id = entity_id
        self.action = action
        self.reason = reason


@dataclass
class AccessDecision:
    allowed: bool
    reason: str | None
    entry: AccessLogEntry


def evaluate_access(
    resource: AnchoredResource,
    entity_id: str,
    action: str,
    now: datetime,
) -> tuple[bool, str | None]:
    """Pure access decision: (allowed, deny reason)."""
    capability = ACTION_CAPABILITIES.get(action.lower())
    if capability is None:
        return False, REASON_UNKNOWN_ACTION

    grant = resource.authorization_for(entity_id)
    if grant is None:
        return False, REASON_NOT_AUTHORIZED
    if grant.is_expired(now):
        return False, REASON_ACCESS_EXPIRED
    if capability not in grant.access_scope:
        return False, REASON_SCOPE

    if action.lower() in AUDIT_ACTIONS:
        return True, None
    if resource.is_revoked:
        return False, REASON_REVOKED
    if resource.is_expired(now):
        return False, REASON_CONSENT_EXPIRED
    return True, None


class AccessControlAuditor:
    """Checks and logs every access to a protected resource."""

    def __init__(
        self,
        resources: ResourceRepository,
        gateway: LedgerGateway | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.resources = resources
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock
        self._in_flight: set[asyncio.Task[LogSubmission]] = set()

    async def check(
        self,
        resource_id: str,
        entity_id: str,
        action: str,
        purpose: str,
        data_accessed: str | None = None,
    ) -> AccessDecision:
        """
        Decide and record an access attempt.

        Raises:
            ResourceNotFound: no such resource
        """
        resource = await self.resources.get(resource_id)
        now = self.clock()
        allowed, reason = evaluate_access(resource, entity_id, action, now)
        record: dict[str, Any] = {
            "entity_id": entity_id,
            "action": action,
            "purpose": purpose,
            "allowed": allowed,
            "reason": reason,
            "data_accessed": data_accessed,
            "resulting_log_transaction_id": None,
        }

        if allowed and action.lower() not in AUDIT_ACTIONS:
            try:
                record["resulting_log_transaction_id"] = await self._publish(
                    resource, entity_id, action, purpose, now
                )
            except asyncio.CancelledError:
                # The caller gave up mid-publish; the audit entry is still owed
                await self._append(resource_id, record, now)
                raise

        entry = await self._append(resource_id, record, now)

        log = logger.info if allowed else logger.warning
        log(
            "access_checked",
            resource_id=resource_id,
            entity_id=entity_id,
            action=action,
            allowed=allowed,
            reason=reason,
            sequence=entry.sequence,
        )
        return AccessDecision(allowed=allowed, reason=reason, entry=entry)

    async def check_and_log(
        self,
        resource_id: str,
        entity_id: str,
        action: str,
        purpose: str,
        data_accessed: str | None = None,
    ) -> bool:
        decision = await self.check(resource_id, entity_id, action, purpose, data_accessed)
        return decision.allowed

    async def require(
        self,
        resource_id: str,
        entity_id: str,
        action: str,
        purpose: str,
    ) -> AccessLogEntry:
        """
        Like ``check`` but raises on denial.

        Raises:
            UnauthorizedAccess: access denied (after logging the denial)
        """
        decision = await self.check(resource_id, entity_id, action, purpose)
        if not decision.allowed:
            raise UnauthorizedAccess(resource_id, entity_id, action, decision.reason)
        return decision.entry

    async def drain(self) -> None:
        """Wait for access publications still in flight."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _append(
        self,
        resource_id: str,
        record: dict[str, Any],
        now: datetime,
    ) -> AccessLogEntry:
        # Shielded: a cancelled caller must not leave the access unaudited
        return await asyncio.shield(
            self.resources.append_access_log(resource_id, record, now=now)
        )

    async def _publish(
        self,
        resource: AnchoredResource,
        entity_id: str,
        action: str,
        purpose: str,
        now: datetime,
    ) -> str | None:
        """
        Publish a granted data access to the ledger, if enabled. Best effort.

        Waits at most ``access_log_publish_timeout_seconds``; a submission
        still in flight after that keeps going but its transaction id is not
        recorded.
        """
        if self.gateway is None or not self.settings.access_log_anchoring_enabled:
            return None
        try:
            message = self.gateway.access_message(
                resource.resource_id, entity_id, action, purpose, now
            )
            topic_id = self.gateway.topic_for(ResourceKind.GENOMIC_DATA)
        except LedgerError as e:
            self._publish_failed(resource.resource_id, entity_id, e)
            return None

        task = asyncio.create_task(
            self.gateway.submit_log(topic_id, message),
            name=f"access_publish_{resource.resource_id}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._on_publish_done)
        try:
            submission = await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self.settings.access_log_publish_timeout_seconds,
            )
        except (TimeoutError, LedgerError) as e:
            self._publish_failed(resource.resource_id, entity_id, e)
            return None
        return submission.transaction_id

    def _publish_failed(self, resource_id: str, entity_id: str, error: Exception) -> None:
        logger.warning(
            "access_log_publish_failed",
            resource_id=resource_id,
            entity_id=entity_id,
            error=str(error) or type(error).__name__,
        )

    def _on_publish_done(self, task: asyncio.Task[LogSubmission]) -> None:
        self._in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("access_publish_settled_with_error", error=str(task.exception()))
