"""
Anchoring Orchestrator

Drives a resource through the two-phase anchor flow:

    unanchored -> log_pending -> log_confirmed -> token_pending -> anchored

Each submission is claimed before it is sent. The claim is a
compare-and-swap that records the idempotency key, so of two workers
racing on the same resource only one ever talks to the ledger; the other
gets StaleTransition, re-reads and backs off. The transaction id is
recorded on the claimed state once the ledger accepts the submission, and
the receipt is then polled until consensus settles it.

Transient ledger errors are retried with bounded backoff and, if they
persist, the claim is released so a later run can try again. Permanent
errors move the resource to anchor_failed. Nothing transient ever reaches
the caller.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from genomic_mesh.config import Settings, get_settings
from genomic_mesh.ledger.base_client import (
    PermanentLedgerError,
    SupplyExhausted,
    TransientLedgerError,
)
from genomic_mesh.ledger.gateway import LedgerGateway
from genomic_mesh.models.base import AnchorState, FailureReason, ResourceKind, utc_now
from genomic_mesh.models.ledger import Receipt, ReceiptStatus
from genomic_mesh.models.resource import AnchoredResource, ConsentFields, GenomicDataFields
from genomic_mesh.monitoring.logging import correlation_scope
from genomic_mesh.repositories.resource_repository import (
    InvalidTransition,
    ResourceRepository,
    StaleTransition,
)
from genomic_mesh.services.hasher import CanonicalHasher

if TYPE_CHECKING:
    from genomic_mesh.services.incentives import IncentiveService

logger = structlog.get_logger(__name__)

R = TypeVar("R")


def log_submission_key(resource_id: str) -> str:
    return f"{resource_id}:log"


def token_submission_key(resource_id: str) -> str:
    return f"{resource_id}:token"


def revocation_submission_key(resource_id: str) -> str:
    return f"{resource_id}:revocation"


@dataclass
class StepOutcome:
    """Result of one state-machine step."""

    resource: AnchoredResource
    progressed: bool


class AnchoringOrchestrator:
    """
    Coordinates hashing, ledger submission and state transitions.

    Holds no per-resource state between calls; any number of orchestrators
    may run against the same store.
    """

    def __init__(
        self,
        resources: ResourceRepository,
        gateway: LedgerGateway,
        hasher: CanonicalHasher | None = None,
        settings: Settings | None = None,
        incentives: "IncentiveService | None" = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.resources = resources
        self.gateway = gateway
        self.hasher = hasher or CanonicalHasher()
        self.settings = settings or get_settings()
        self.incentives = incentives
        self.clock = clock
        self._background: set[asyncio.Task[AnchoredResource]] = set()

    # ==================== Creation ====================

    def build_resource(
        self,
        fields: ConsentFields | GenomicDataFields,
        resource_id: str | None = None,
        supersedes: str | None = None,
    ) -> AnchoredResource:
        """Hash the content fields and build an unanchored resource."""
        now = self.clock()
        return AnchoredResource(
            resource_id=resource_id or str(uuid.uuid4()),
            kind=ResourceKind(fields.kind),
            owner_id=fields.owner_id,
            content_fields=fields,
            content_hash=self.hasher.hash(fields),
            supersedes=supersedes,
            created_at=now,
            last_transition_at=now,
        )

    async def create(
        self,
        fields: ConsentFields | GenomicDataFields,
        resource_id: str | None = None,
        supersedes: str | None = None,
    ) -> AnchoredResource:
        """
        Persist a new resource in the unanchored state.

        Raises:
            DuplicateResourceId: ``resource_id`` already exists
        """
        resource = self.build_resource(fields, resource_id, supersedes)
        return await self.resources.create_pending(resource)

    # ==================== Driving ====================

    async def anchor(self, resource_id: str) -> AnchoredResource:
        """
        Anchor a resource, waiting at most ``anchor_sync_timeout_seconds``.

        On timeout the caller gets the resource in whatever pending state it
        has reached; the run continues in the background and the poller
        covers anything it leaves behind.
        """
        task = asyncio.create_task(self.drive(resource_id), name=f"anchor_{resource_id}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        try:
            return await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self.settings.anchor_sync_timeout_seconds,
            )
        except TimeoutError:
            logger.info(
                "anchor_returned_pending",
                resource_id=resource_id,
                timeout_seconds=self.settings.anchor_sync_timeout_seconds,
            )
            return await self.resources.get(resource_id)

    def _on_background_done(self, task: asyncio.Task[AnchoredResource]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "anchor_run_failed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    async def drain(self) -> None:
        """Wait for in-flight background anchor runs."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def drive(
        self,
        resource_id: str,
        resubmit_claimed: bool = False,
        receipt_attempts: int | None = None,
    ) -> AnchoredResource:
        """
        Step a resource until it is terminal or cannot progress right now.

        Args:
            resource_id: Resource to drive
            resubmit_claimed: Resubmit claims that never recorded a
                transaction id (for the poller, after the minimum age)
            receipt_attempts: Receipt polls per pending step

        Raises:
            ResourceNotFound: no such resource
        """
        with correlation_scope(resource_id=resource_id):
            resource = await self.resources.get(resource_id)
            while not resource.is_terminal:
                outcome = await self.step(resource, resubmit_claimed, receipt_attempts)
                resource = outcome.resource
                if not outcome.progressed:
                    break
            logger.debug("anchor_drive_finished", anchor_state=resource.anchor_state.value)
            return resource

    async def step(
        self,
        resource: AnchoredResource,
        resubmit_claimed: bool = False,
        receipt_attempts: int | None = None,
    ) -> StepOutcome:
        """
        Apply the next transition for ``resource``.

        A StaleTransition means another worker moved the resource first; the
        current state is re-read and re-evaluated a bounded number of times.
        """
        attempts = receipt_attempts or self.settings.anchor_receipt_attempts
        for _ in range(self.settings.stale_transition_retries):
            try:
                return await self._step_once(resource, resubmit_claimed, attempts)
            except StaleTransition as e:
                logger.info(
                    "anchor_stale_transition",
                    resource_id=resource.resource_id,
                    expected_state=resource.anchor_state.value,
                    actual_state=e.actual_state.value if e.actual_state else None,
                )
                resource = await self.resources.get(resource.resource_id)
                if resource.is_terminal:
                    return StepOutcome(resource, False)
        return StepOutcome(resource, False)

    async def _step_once(
        self,
        resource: AnchoredResource,
        resubmit_claimed: bool,
        receipt_attempts: int,
    ) -> StepOutcome:
        state = resource.anchor_state

        if state == AnchorState.UNANCHORED:
            claimed = await self.resources.transition_anchor_state(
                resource.resource_id,
                AnchorState.UNANCHORED,
                AnchorState.LOG_PENDING,
                {"log_submission_key": log_submission_key(resource.resource_id)},
            )
            return await self._submit_log(claimed)

        if state == AnchorState.LOG_PENDING:
            if resource.log_transaction_id is None:
                if not resubmit_claimed:
                    # Another worker holds the claim and is still submitting
                    return StepOutcome(resource, False)
                logger.warning("anchor_resubmitting_claimed_log", resource_id=resource.resource_id)
                return await self._submit_log(resource)
            return await self._settle_log(resource, receipt_attempts)

        if state == AnchorState.LOG_CONFIRMED:
            try:
                token_id = self.gateway.token_for(resource.kind)
            except PermanentLedgerError as e:
                return await self._fail(resource, FailureReason.MINT_REJECTED, str(e))
            claimed = await self.resources.transition_anchor_state(
                resource.resource_id,
                AnchorState.LOG_CONFIRMED,
                AnchorState.TOKEN_PENDING,
                {
                    "token_submission_key": token_submission_key(resource.resource_id),
                    "token_id": token_id,
                },
            )
            return await self._mint(claimed)

        if state == AnchorState.TOKEN_PENDING:
            if resource.token_transaction_id is None:
                if not resubmit_claimed:
                    return StepOutcome(resource, False)
                logger.warning("anchor_resubmitting_claimed_mint", resource_id=resource.resource_id)
                return await self._mint(resource)
            return await self._settle_token(resource, receipt_attempts)

        return StepOutcome(resource, False)

    # ==================== Log Phase ====================

    async def _submit_log(self, resource: AnchoredResource) -> StepOutcome:
        key = resource.log_submission_key or log_submission_key(resource.resource_id)
        try:
            topic_id = self.gateway.topic_for(resource.kind)
            message = self.gateway.anchor_message(
                resource.kind,
                resource.resource_id,
                resource.owner_id,
                resource.content_hash,
                key,
            )
            submission = await self._submit_with_retries(
                self.gateway.submit_log, topic_id, message, key
            )
        except TransientLedgerError as e:
            logger.warning(
                "anchor_log_submit_deferred", resource_id=resource.resource_id, error=str(e)
            )
            released = await self.resources.transition_anchor_state(
                resource.resource_id,
                AnchorState.LOG_PENDING,
                AnchorState.UNANCHORED,
                {"log_submission_key": None},
                expected_fields={"log_transaction_id": None},
            )
            return StepOutcome(released, False)
        except PermanentLedgerError as e:
            return await self._fail(
                resource,
                FailureReason.LOG_REJECTED,
                str(e),
                expected_fields={"log_transaction_id": None},
            )

        recorded = await self.resources.transition_anchor_state(
            resource.resource_id,
            AnchorState.LOG_PENDING,
            AnchorState.LOG_PENDING,
            {
                "log_transaction_id": submission.transaction_id,
                "log_sequence_number": submission.sequence_number,
            },
            expected_fields={"log_transaction_id": None},
        )
        logger.info(
            "anchor_log_submitted",
            resource_id=resource.resource_id,
            transaction_id=submission.transaction_id,
        )
        return StepOutcome(recorded, True)

    async def _settle_log(self, resource: AnchoredResource, attempts: int) -> StepOutcome:
        if resource.log_transaction_id is None:
            raise InvalidTransition(f"{resource.resource_id} has no log transaction to settle")
        receipt = await self._await_receipt(resource.log_transaction_id, attempts)

        if receipt.status == ReceiptStatus.UNKNOWN:
            return StepOutcome(resource, False)
        if receipt.status == ReceiptStatus.FAILURE:
            return await self._fail(resource, FailureReason.LOG_RECEIPT_FAILED, receipt.details)

        confirmed = await self.resources.transition_anchor_state(
            resource.resource_id,
            AnchorState.LOG_PENDING,
            AnchorState.LOG_CONFIRMED,
            {"log_sequence_number": receipt.sequence_number or resource.log_sequence_number},
        )
        return StepOutcome(confirmed, True)

    # ==================== Token Phase ====================

    async def _mint(self, resource: AnchoredResource) -> StepOutcome:
        key = resource.token_submission_key or token_submission_key(resource.resource_id)
        token_id = resource.token_id or self.gateway.token_for(resource.kind)
        try:
            metadata = self.hasher.token_metadata(resource.content_hash)
            minted = await self._submit_with_retries(
                self.gateway.mint_proof_token, token_id, metadata, key
            )
        except TransientLedgerError as e:
            logger.warning("anchor_mint_deferred", resource_id=resource.resource_id, error=str(e))
            released = await self.resources.transition_anchor_state(
                resource.resource_id,
                AnchorState.TOKEN_PENDING,
                AnchorState.LOG_CONFIRMED,
                {"token_submission_key": None, "token_id": None},
                expected_fields={"token_transaction_id": None},
            )
            return StepOutcome(released, False)
        except SupplyExhausted as e:
            logger.critical("proof_token_supply_exhausted", token_id=token_id)
            return await self._fail(
                resource,
                FailureReason.SUPPLY_EXHAUSTED,
                str(e),
                expected_fields={"token_transaction_id": None},
            )
        except PermanentLedgerError as e:
            return await self._fail(
                resource,
                FailureReason.MINT_REJECTED,
                str(e),
                expected_fields={"token_transaction_id": None},
            )

        recorded = await self.resources.transition_anchor_state(
            resource.resource_id,
            AnchorState.TOKEN_PENDING,
            AnchorState.TOKEN_PENDING,
            {
                "token_transaction_id": minted.transaction_id,
                "token_serial_number": minted.serial_number,
            },
            expected_fields={"token_transaction_id": None},
        )
        logger.info(
            "anchor_token_minted",
            resource_id=resource.resource_id,
            transaction_id=minted.transaction_id,
        )
        return StepOutcome(recorded, True)

    async def _settle_token(self, resource: AnchoredResource, attempts: int) -> StepOutcome:
        if resource.token_transaction_id is None:
            raise InvalidTransition(f"{resource.resource_id} has no mint transaction to settle")
        receipt = await self._await_receipt(resource.token_transaction_id, attempts)

        if receipt.status == ReceiptStatus.UNKNOWN:
            return StepOutcome(resource, False)
        if receipt.status == ReceiptStatus.FAILURE:
            return await self._fail(resource, FailureReason.MINT_RECEIPT_FAILED, receipt.details)

        serial = resource.token_serial_number
        if receipt.serial_numbers:
            serial = receipt.serial_numbers[0]
        anchored = await self.resources.transition_anchor_state(
            resource.resource_id,
            AnchorState.TOKEN_PENDING,
            AnchorState.ANCHORED,
            {"token_serial_number": serial},
        )
        logger.info(
            "resource_anchored",
            resource_id=anchored.resource_id,
            log_transaction_id=anchored.log_transaction_id,
            token_transaction_id=anchored.token_transaction_id,
            token_serial_number=anchored.token_serial_number,
        )
        await self._on_anchored(anchored)
        return StepOutcome(anchored, True)

    async def _on_anchored(self, resource: AnchoredResource) -> None:
        if self.incentives is None:
            return
        try:
            await self.incentives.reward_anchored(resource)
        except Exception as e:  # Anchoring is complete; the reward is re-creatable
            logger.error(
                "anchor_incentive_failed",
                resource_id=resource.resource_id,
                error=str(e),
            )

    # ==================== Failure ====================

    async def _fail(
        self,
        resource: AnchoredResource,
        reason: FailureReason,
        detail: str | None,
        expected_fields: dict[str, Any] | None = None,
    ) -> StepOutcome:
        failed = await self.resources.transition_anchor_state(
            resource.resource_id,
            resource.anchor_state,
            AnchorState.ANCHOR_FAILED,
            {"failure_reason": reason, "failure_detail": detail},
            expected_fields=expected_fields,
        )
        logger.error(
            "anchor_failed",
            resource_id=resource.resource_id,
            from_state=resource.anchor_state.value,
            reason=reason.value,
            detail=detail,
        )
        return StepOutcome(failed, True)

    async def fail_with_timeout(self, resource: AnchoredResource, detail: str) -> AnchoredResource:
        """Escalate a resource stuck in a non-terminal state."""
        outcome = await self._fail(resource, FailureReason.TIMEOUT, detail)
        return outcome.resource

    # ==================== Revocation ====================

    async def revoke(
        self,
        resource: AnchoredResource,
        reason: str,
        revoked_by: str,
    ) -> AnchoredResource:
        """
        Revoke an anchored resource.

        The revocation is recorded locally first, so access is denied from
        this point on. The ledger entry follows; if the ledger is
        unavailable the poller resubmits it.

        Raises:
            StaleTransition: not anchored, or revoked concurrently
        """
        revoked = await self.resources.record_revocation(
            resource.resource_id, reason, revoked_by, self.clock()
        )
        return await self.submit_revocation_log(revoked)

    async def submit_revocation_log(self, resource: AnchoredResource) -> AnchoredResource:
        """Submit the ledger entry of a pending revocation and stamp its id."""
        revocation = resource.revocation
        if revocation is None or not resource.revocation_pending:
            return resource

        key = revocation_submission_key(resource.resource_id)
        try:
            message = self.gateway.revocation_message(
                resource.resource_id,
                resource.content_hash,
                revocation.reason,
                revocation.revoked_by,
                revocation.revoked_at,
                key,
            )
            submission = await self._submit_with_retries(
                self.gateway.submit_log, self.gateway.topic_for(resource.kind), message, key
            )
        except TransientLedgerError as e:
            logger.warning(
                "revocation_log_deferred", resource_id=resource.resource_id, error=str(e)
            )
            return resource
        except PermanentLedgerError as e:
            logger.error("revocation_log_rejected", resource_id=resource.resource_id, error=str(e))
            return resource

        try:
            return await self.resources.stamp_revocation_transaction(
                resource.resource_id, submission.transaction_id
            )
        except StaleTransition:
            logger.info("revocation_already_stamped", resource_id=resource.resource_id)
            return await self.resources.get(resource.resource_id)

    # ==================== Ledger Helpers ====================

    async def _submit_with_retries(
        self,
        func: Callable[..., Awaitable[R]],
        *args: Any,
    ) -> R:
        """Call a submission, retrying transient errors with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.anchor_submit_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self.settings.anchor_backoff_min_seconds,
                max=self.settings.anchor_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientLedgerError),
            before_sleep=_log_retry,
            reraise=True,
        )
        result: R = await retrying(func, *args)
        return result

    async def _await_receipt(self, transaction_id: str, attempts: int) -> Receipt:
        """Poll for a receipt; UNKNOWN if consensus has not settled in time."""

        unknown = Receipt(transaction_id=transaction_id, status=ReceiptStatus.UNKNOWN)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.settings.anchor_receipt_interval_seconds),
            retry=(
                retry_if_result(lambda receipt: receipt.status == ReceiptStatus.UNKNOWN)
                | retry_if_exception_type(TransientLedgerError)
            ),
            retry_error_callback=lambda state: unknown,
        )
        try:
            receipt: Receipt = await retrying(self.gateway.query_receipt, transaction_id)
        except PermanentLedgerError as e:
            logger.error("receipt_query_rejected", transaction_id=transaction_id, error=str(e))
            return unknown
        return receipt


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        "ledger_submit_retrying",
        attempt=state.attempt_number,
        error=str(error) if error else None,
    )
