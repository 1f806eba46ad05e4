"""Claim Coordinator - at most one successful claim per link.

The claim gate is the `claiming` state. A claimant takes it with a single
compare-and-transition funded -> claiming; every other concurrent or
duplicated request sees the link in another state and gets a typed outcome
without touching the engine.

Only the gate holder calls the engine, and it does so after the gate
transition has committed, never inside a database transaction. The engine
outcome is then recorded with a second transition out of `claiming`:

    success              -> claimed       (terminal)
    TransientFailure     -> funded        (after in-place retries, if any)
    TerminalFailure      -> claim_failed  (terminal until an operator reopens)
    ClaimOutcomeUnknown  -> stays claiming until resolve_pending_claim

CRITICAL: a transition out of `claiming` made by the gate holder must apply.
If it does not, the row was changed outside the gate; that is raised as
LedgerConsistencyError and never retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from paylink import events
from paylink.config import ClaimRetryPolicy
from paylink.errors import LedgerConsistencyError, LinkValidationError
from paylink.events import EventEmitter, EventMetadata
from paylink.providers.base import (
    ClaimOutcomeUnknown,
    ClaimReceipt,
    ClaimStatusResult,
    TerminalFailure,
    TransientFailure,
    ValueTransferEngine,
)
from paylink.services.link_store import AsyncLinkStore, Link, LinkStore, TransitionResult
from paylink.services.state_machine import LinkState

logger = logging.getLogger(__name__)


class ClaimStatus(str, Enum):
    """Outcome of a claim request."""

    SUCCESS = "success"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FUNDED = "not_funded"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    REOPENED = "reopened"  # Operator reopen only


@dataclass(frozen=True)
class ClaimResult:
    """Result of a claim, resolution or reopen."""

    status: ClaimStatus
    link: Link | None = None
    deliverable_amount: Decimal | None = None
    claim_transfer_ref: str | None = None
    reason: str | None = None
    retryable: bool | None = None

    @property
    def success(self) -> bool:
        """Whether this call delivered the value."""
        return self.status == ClaimStatus.SUCCESS


def _check_claimant(claimant_ref: str) -> str:
    claimant_ref = (claimant_ref or "").strip()
    if not claimant_ref:
        raise LinkValidationError("claimant_ref", "is required")
    return claimant_ref


def outcome_for_state(link: Link | None) -> ClaimResult:
    """Map a link that is not claimable by this caller to a claim outcome."""
    if link is None:
        return ClaimResult(ClaimStatus.NOT_FOUND)
    if link.state == LinkState.CLAIMED:
        return ClaimResult(
            ClaimStatus.ALREADY_CLAIMED,
            link=link,
            claim_transfer_ref=link.claim_transfer_ref,
        )
    if link.state == LinkState.CLAIMING:
        return ClaimResult(
            ClaimStatus.IN_PROGRESS, link=link, reason="another claim is in progress"
        )
    if link.state == LinkState.CREATED:
        return ClaimResult(ClaimStatus.NOT_FUNDED, link=link, reason="link is not funded yet")
    if link.state == LinkState.CLAIM_FAILED:
        return ClaimResult(
            ClaimStatus.FAILED,
            link=link,
            reason="previous claim attempt failed terminally",
            retryable=False,
        )
    # funded: no claim is pending for this link
    return ClaimResult(
        ClaimStatus.FAILED, link=link, reason="no claim in progress", retryable=True
    )


class _ClaimOutcomes:
    """Outcome recording shared by the sync and async coordinators."""

    emitter: EventEmitter | None

    def _emit(self, event: events.DomainEvent) -> None:
        if self.emitter is not None:
            self.emitter.emit(event)

    def _require_applied(self, result: TransitionResult, link: Link, **context: str | None) -> Link:
        """Return the transitioned link or raise LedgerConsistencyError."""
        if result.applied:
            return result.link

        found = result.link.state.value if result.link else None
        logger.critical(
            "Consistency violation on link %s: expected claiming, found %s (%s)",
            link.id,
            found,
            context,
        )
        self._emit(
            events.ConsistencyViolation(
                metadata=EventMetadata.create(link.id),
                link_id=link.id,
                expected_state=LinkState.CLAIMING.value,
                found_state=found,
                claim_transfer_ref=context.get("claim_transfer_ref"),
            )
        )
        raise LedgerConsistencyError(link.id, LinkState.CLAIMING.value, found)

    def _on_started(self, link: Link, claimant_ref: str) -> None:
        logger.info(
            "Claim gate taken on link %s by %s (attempt %d)",
            link.id,
            claimant_ref,
            link.claim_attempts,
        )
        self._emit(
            events.ClaimStarted(
                metadata=EventMetadata.create(link.id, actor_type="user"),
                link_id=link.id,
                claimant_ref=claimant_ref,
                attempt=link.claim_attempts,
            )
        )

    def _on_claimed(self, link: Link) -> ClaimResult:
        logger.info(
            "Link %s claimed by %s: %s %s (fee %s, transfer %s)",
            link.id,
            link.claimant_ref,
            link.deliverable_amount,
            link.asset,
            link.fee_amount,
            link.claim_transfer_ref,
        )
        self._emit(
            events.ClaimSucceeded(
                metadata=EventMetadata.create(link.id, actor_type="user"),
                link_id=link.id,
                claimant_ref=link.claimant_ref,
                claim_transfer_ref=link.claim_transfer_ref,
                deliverable_amount=link.deliverable_amount,
                fee_amount=link.fee_amount,
                asset=link.asset,
            )
        )
        return ClaimResult(
            ClaimStatus.SUCCESS,
            link=link,
            deliverable_amount=link.deliverable_amount,
            claim_transfer_ref=link.claim_transfer_ref,
        )

    def _on_released(self, link: Link, claimant_ref: str, reason: str, attempts: int) -> ClaimResult:
        logger.warning(
            "Claim on link %s released after %d transient failure(s): %s",
            link.id,
            attempts,
            reason,
        )
        self._emit(
            events.ClaimReleased(
                metadata=EventMetadata.create(link.id),
                link_id=link.id,
                claimant_ref=claimant_ref,
                reason=reason,
                attempts=attempts,
            )
        )
        return ClaimResult(ClaimStatus.FAILED, link=link, reason=reason, retryable=True)

    def _on_rejected(self, link: Link, claimant_ref: str, reason: str) -> ClaimResult:
        logger.error("Claim on link %s rejected by engine: %s", link.id, reason)
        self._emit(
            events.ClaimRejected(
                metadata=EventMetadata.create(link.id),
                link_id=link.id,
                claimant_ref=claimant_ref,
                reason=reason,
            )
        )
        return ClaimResult(ClaimStatus.FAILED, link=link, reason=reason, retryable=False)

    def _on_unknown(self, link: Link, claimant_ref: str, reason: str) -> ClaimResult:
        logger.warning(
            "Claim outcome unknown for link %s (key %s); gate held: %s",
            link.id,
            link.claim_key,
            reason,
        )
        self._emit(
            events.ClaimOutcomeUnknown(
                metadata=EventMetadata.create(link.id),
                link_id=link.id,
                claimant_ref=claimant_ref,
                idempotency_key=link.claim_key,
                reason=reason,
            )
        )
        return ClaimResult(
            ClaimStatus.IN_PROGRESS,
            link=link,
            reason=f"claim outcome unknown: {reason}",
        )

    def _on_resolved(self, link: Link, engine_status: str) -> None:
        logger.info(
            "Pending claim on link %s resolved from engine status %s -> %s",
            link.id,
            engine_status,
            link.state.value,
        )
        self._emit(
            events.ClaimResolved(
                metadata=EventMetadata.create(link.id, actor_type="operator"),
                link_id=link.id,
                engine_status=engine_status,
                new_state=link.state.value,
            )
        )

    def _on_reopened(self, link: Link, reason: str) -> ClaimResult:
        logger.warning("Failed claim on link %s reopened: %s", link.id, reason)
        self._emit(
            events.ClaimReopened(
                metadata=EventMetadata.create(link.id, actor_type="operator"),
                link_id=link.id,
                reason=reason,
                previous_error=link.last_claim_error,
            )
        )
        return ClaimResult(ClaimStatus.REOPENED, link=link, reason=reason, retryable=True)

    def _resolution_result(self, result: TransitionResult, engine_status: str) -> ClaimResult:
        if not result.applied:
            # A concurrent resolver got there first
            return outcome_for_state(result.link)
        link = result.link
        self._on_resolved(link, engine_status)
        if link.state == LinkState.CLAIMED:
            return self._on_claimed(link)
        return ClaimResult(
            ClaimStatus.FAILED,
            link=link,
            reason=link.last_claim_error,
            retryable=link.state == LinkState.FUNDED,
        )


class ClaimCoordinator(_ClaimOutcomes):
    """Drives claims through the gate and records the engine outcome.

    Safe to run in any number of threads or processes at once, each with its
    own session: the gate transition is the only coordination point.
    """

    def __init__(
        self,
        db: Session,
        engine: ValueTransferEngine,
        retry_policy: ClaimRetryPolicy | None = None,
        emitter: EventEmitter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = LinkStore(db)
        self.engine = engine
        self.retry_policy = retry_policy or ClaimRetryPolicy()
        self.emitter = emitter
        self._sleep = sleep

    def claim(self, link_id: str, claimant_ref: str) -> ClaimResult:
        """Claim a funded link for a claimant.

        Args:
            link_id: Link to claim
            claimant_ref: Recipient of the deliverable amount

        Returns:
            ClaimResult. Only one call per link ever returns SUCCESS.

        Raises:
            LinkValidationError: claimant_ref is blank.
            LedgerConsistencyError: The gate was broken while held.
        """
        claimant_ref = _check_claimant(claimant_ref)

        gate = self.store.compare_and_transition(
            link_id,
            LinkState.FUNDED,
            LinkState.CLAIMING,
            pending_claimant_ref=claimant_ref,
        )
        if not gate.applied:
            return outcome_for_state(gate.link)

        link = gate.link
        self._on_started(link, claimant_ref)

        attempt = 1
        while True:
            try:
                receipt = self.engine.claim(
                    link.deliverable_amount, link.asset, claimant_ref, link.claim_key
                )
            except TransientFailure as e:
                if attempt < self.retry_policy.max_attempts:
                    attempt += 1
                    delay = self.retry_policy.delay_before(attempt)
                    logger.warning(
                        "Transient failure claiming link %s (%s); retry %d in %.1fs",
                        link.id,
                        e,
                        attempt,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                return self._release(link, claimant_ref, str(e), attempt)
            except TerminalFailure as e:
                return self._reject(link, claimant_ref, str(e))
            except ClaimOutcomeUnknown as e:
                return self._on_unknown(link, claimant_ref, str(e))
            return self._record_success(link, claimant_ref, receipt)

    def resolve_pending_claim(self, link_id: str) -> ClaimResult:
        """Resolve a link left in `claiming` by an indeterminate engine outcome.

        Queries the engine by the attempt's idempotency key:
            settled   -> claimed (claimant is the pending claimant)
            rejected  -> claim_failed
            not_found -> funded (the engine never executed the claim)
            pending   -> unchanged, IN_PROGRESS
        """
        link = self.store.get(link_id)
        if link is None or link.state != LinkState.CLAIMING:
            return outcome_for_state(link)

        try:
            status = self.engine.claim_status(link.claim_key)
        except TransientFailure as e:
            return ClaimResult(
                ClaimStatus.IN_PROGRESS, link=link, reason=f"engine status unavailable: {e}"
            )

        if status.status == ClaimStatusResult.SETTLED and status.transfer_ref:
            result = self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.CLAIMED,
                claimant_ref=link.pending_claimant_ref,
                claim_transfer_ref=status.transfer_ref,
            )
        elif status.status == ClaimStatusResult.REJECTED:
            result = self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.CLAIM_FAILED,
                last_claim_error=status.message or "rejected by engine",
            )
        elif status.status == ClaimStatusResult.NOT_FOUND:
            result = self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.FUNDED,
                last_claim_error="claim was not executed by the engine",
            )
        else:
            return ClaimResult(
                ClaimStatus.IN_PROGRESS, link=link, reason="engine reports claim pending"
            )

        return self._resolution_result(result, status.status)

    def reopen_failed_claim(self, link_id: str, reason: str) -> ClaimResult:
        """Operator-only: move a claim_failed link back to funded."""
        result = self.store.compare_and_transition(
            link_id, LinkState.CLAIM_FAILED, LinkState.FUNDED
        )
        if not result.applied:
            return outcome_for_state(result.link)
        return self._on_reopened(result.link, reason)

    def _record_success(self, link: Link, claimant_ref: str, receipt: ClaimReceipt) -> ClaimResult:
        if not (receipt.transfer_ref or "").strip():
            return self._on_unknown(link, claimant_ref, "engine returned no transfer reference")
        result = self.store.compare_and_transition(
            link.id,
            LinkState.CLAIMING,
            LinkState.CLAIMED,
            claimant_ref=claimant_ref,
            claim_transfer_ref=receipt.transfer_ref,
        )
        claimed = self._require_applied(result, link, claim_transfer_ref=receipt.transfer_ref)
        return self._on_claimed(claimed)

    def _release(self, link: Link, claimant_ref: str, reason: str, attempts: int) -> ClaimResult:
        result = self.store.compare_and_transition(
            link.id, LinkState.CLAIMING, LinkState.FUNDED, last_claim_error=reason
        )
        released = self._require_applied(result, link)
        return self._on_released(released, claimant_ref, reason, attempts)

    def _reject(self, link: Link, claimant_ref: str, reason: str) -> ClaimResult:
        result = self.store.compare_and_transition(
            link.id, LinkState.CLAIMING, LinkState.CLAIM_FAILED, last_claim_error=reason
        )
        failed = self._require_applied(result, link)
        return self._on_rejected(failed, claimant_ref, reason)


class AsyncClaimCoordinator(_ClaimOutcomes):
    """Async version of ClaimCoordinator.

    The engine is synchronous; its calls run in a worker thread so the event
    loop is never blocked by the slow claim.
    """

    def __init__(
        self,
        db: AsyncSession,
        engine: ValueTransferEngine,
        retry_policy: ClaimRetryPolicy | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.store = AsyncLinkStore(db)
        self.engine = engine
        self.retry_policy = retry_policy or ClaimRetryPolicy()
        self.emitter = emitter

    async def claim(self, link_id: str, claimant_ref: str) -> ClaimResult:
        """Async claim a funded link for a claimant."""
        claimant_ref = _check_claimant(claimant_ref)

        gate = await self.store.compare_and_transition(
            link_id,
            LinkState.FUNDED,
            LinkState.CLAIMING,
            pending_claimant_ref=claimant_ref,
        )
        if not gate.applied:
            return outcome_for_state(gate.link)

        link = gate.link
        self._on_started(link, claimant_ref)

        attempt = 1
        while True:
            try:
                receipt = await asyncio.to_thread(
                    self.engine.claim,
                    link.deliverable_amount,
                    link.asset,
                    claimant_ref,
                    link.claim_key,
                )
            except TransientFailure as e:
                if attempt < self.retry_policy.max_attempts:
                    attempt += 1
                    delay = self.retry_policy.delay_before(attempt)
                    logger.warning(
                        "Transient failure claiming link %s (%s); retry %d in %.1fs",
                        link.id,
                        e,
                        attempt,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                return await self._release(link, claimant_ref, str(e), attempt)
            except TerminalFailure as e:
                return await self._reject(link, claimant_ref, str(e))
            except ClaimOutcomeUnknown as e:
                return self._on_unknown(link, claimant_ref, str(e))
            return await self._record_success(link, claimant_ref, receipt)

    async def resolve_pending_claim(self, link_id: str) -> ClaimResult:
        """Async resolve a link left in `claiming`."""
        link = await self.store.get(link_id)
        if link is None or link.state != LinkState.CLAIMING:
            return outcome_for_state(link)

        try:
            status = await asyncio.to_thread(self.engine.claim_status, link.claim_key)
        except TransientFailure as e:
            return ClaimResult(
                ClaimStatus.IN_PROGRESS, link=link, reason=f"engine status unavailable: {e}"
            )

        if status.status == ClaimStatusResult.SETTLED and status.transfer_ref:
            result = await self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.CLAIMED,
                claimant_ref=link.pending_claimant_ref,
                claim_transfer_ref=status.transfer_ref,
            )
        elif status.status == ClaimStatusResult.REJECTED:
            result = await self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.CLAIM_FAILED,
                last_claim_error=status.message or "rejected by engine",
            )
        elif status.status == ClaimStatusResult.NOT_FOUND:
            result = await self.store.compare_and_transition(
                link.id,
                LinkState.CLAIMING,
                LinkState.FUNDED,
                last_claim_error="claim was not executed by the engine",
            )
        else:
            return ClaimResult(
                ClaimStatus.IN_PROGRESS, link=link, reason="engine reports claim pending"
            )

        return self._resolution_result(result, status.status)

    async def reopen_failed_claim(self, link_id: str, reason: str) -> ClaimResult:
        """Async operator reopen of a claim_failed link."""
        result = await self.store.compare_and_transition(
            link_id, LinkState.CLAIM_FAILED, LinkState.FUNDED
        )
        if not result.applied:
            return outcome_for_state(result.link)
        return self._on_reopened(result.link, reason)

    async def _record_success(
        self, link: Link, claimant_ref: str, receipt: ClaimReceipt
    ) -> ClaimResult:
        if not (receipt.transfer_ref or "").strip():
            return self._on_unknown(link, claimant_ref, "engine returned no transfer reference")
        result = await self.store.compare_and_transition(
            link.id,
            LinkState.CLAIMING,
            LinkState.CLAIMED,
            claimant_ref=claimant_ref,
            claim_transfer_ref=receipt.transfer_ref,
        )
        claimed = self._require_applied(result, link, claim_transfer_ref=receipt.transfer_ref)
        return self._on_claimed(claimed)

    async def _release(
        self, link: Link, claimant_ref: str, reason: str, attempts: int
    ) -> ClaimResult:
        result = await self.store.compare_and_transition(
            link.id, LinkState.CLAIMING, LinkState.FUNDED, last_claim_error=reason
        )
        released = self._require_applied(result, link)
        return self._on_released(released, claimant_ref, reason, attempts)

    async def _reject(self, link: Link, claimant_ref: str, reason: str) -> ClaimResult:
        result = await self.store.compare_and_transition(
            link.id, LinkState.CLAIMING, LinkState.CLAIM_FAILED, last_claim_error=reason
        )
        failed = self._require_applied(result, link)
        return self._on_rejected(failed, claimant_ref, reason)
