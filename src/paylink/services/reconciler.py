"""Funding Reconciler - folds funding notifications into link state.

Funding notifications arrive at least once, possibly duplicated and from
several redundant paths (client report, relayer webhook, operator). All of
them go through report_funding, which is idempotent on (link_id, transfer_ref):
- First notice for a created link moves it to funded
- The same notice again is a no-op reported as already_applied
- A different transfer for an already funded link is a conflict; the
  recorded reference is never overwritten
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from paylink.errors import LinkValidationError
from paylink.events import EventEmitter, EventMetadata, FundingApplied, FundingConflictDetected
from paylink.services.link_store import AsyncLinkStore, Link, LinkStore
from paylink.services.state_machine import LinkState

logger = logging.getLogger(__name__)


class FundingStatus(str, Enum):
    """Outcome of a funding notification."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FundingResult:
    """Result of report_funding."""

    status: FundingStatus
    link: Link | None = None

    @property
    def ok(self) -> bool:
        """Whether the link is funded by the reported transfer."""
        return self.status in (FundingStatus.APPLIED, FundingStatus.ALREADY_APPLIED)


def _check_transfer_ref(transfer_ref: str) -> str:
    transfer_ref = (transfer_ref or "").strip()
    if not transfer_ref:
        raise LinkValidationError("transfer_ref", "is required")
    return transfer_ref


class _FundingOutcomes:
    """Outcome mapping shared by the sync and async reconcilers."""

    emitter: EventEmitter | None

    def _emit(self, event) -> None:
        if self.emitter is not None:
            self.emitter.emit(event)

    def _applied(self, link: Link) -> FundingResult:
        logger.info("Link %s funded by %s", link.id, link.funding_transfer_ref)
        self._emit(
            FundingApplied(
                metadata=EventMetadata.create(link.id, actor_type="webhook"),
                link_id=link.id,
                funding_transfer_ref=link.funding_transfer_ref,
                amount=link.requested_amount,
                asset=link.asset,
            )
        )
        return FundingResult(FundingStatus.APPLIED, link)

    def _compare(self, link: Link, transfer_ref: str) -> FundingResult:
        """Compare a notice against a link that is already past created."""
        if link.funding_transfer_ref == transfer_ref:
            logger.debug("Duplicate funding notice for link %s (%s)", link.id, transfer_ref)
            return FundingResult(FundingStatus.ALREADY_APPLIED, link)

        logger.error(
            "Funding conflict on link %s: recorded %s, reported %s",
            link.id,
            link.funding_transfer_ref,
            transfer_ref,
        )
        self._emit(
            FundingConflictDetected(
                metadata=EventMetadata.create(link.id, actor_type="webhook"),
                link_id=link.id,
                recorded_transfer_ref=link.funding_transfer_ref,
                reported_transfer_ref=transfer_ref,
            )
        )
        return FundingResult(FundingStatus.CONFLICT, link)


class Reconciler(_FundingOutcomes):
    """Idempotent funding reconciliation."""

    def __init__(self, db: Session, emitter: EventEmitter | None = None):
        self.store = LinkStore(db)
        self.emitter = emitter

    def report_funding(self, link_id: str, transfer_ref: str) -> FundingResult:
        """Fold one funding notification into the link.

        Args:
            link_id: Link the transfer funds
            transfer_ref: Engine transfer reference

        Returns:
            FundingResult; never raises for duplicates or conflicts.

        Raises:
            LinkValidationError: transfer_ref is blank.
        """
        transfer_ref = _check_transfer_ref(transfer_ref)

        link = self.store.get(link_id)
        if link is None:
            return FundingResult(FundingStatus.NOT_FOUND)

        if link.state == LinkState.CREATED:
            result = self.store.compare_and_transition(
                link_id,
                LinkState.CREATED,
                LinkState.FUNDED,
                funding_transfer_ref=transfer_ref,
            )
            if result.applied:
                return self._applied(result.link)
            # Another notice won the race; judge against what it recorded
            link = result.link

        return self._compare(link, transfer_ref)


class AsyncReconciler(_FundingOutcomes):
    """Async version of Reconciler."""

    def __init__(self, db: AsyncSession, emitter: EventEmitter | None = None):
        self.store = AsyncLinkStore(db)
        self.emitter = emitter

    async def report_funding(self, link_id: str, transfer_ref: str) -> FundingResult:
        """Async fold one funding notification into the link."""
        transfer_ref = _check_transfer_ref(transfer_ref)

        link = await self.store.get(link_id)
        if link is None:
            return FundingResult(FundingStatus.NOT_FOUND)

        if link.state == LinkState.CREATED:
            result = await self.store.compare_and_transition(
                link_id,
                LinkState.CREATED,
                LinkState.FUNDED,
                funding_transfer_ref=transfer_ref,
            )
            if result.applied:
                return self._applied(result.link)
            link = result.link

        return self._compare(link, transfer_ref)
