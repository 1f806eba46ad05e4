"""Link Store - durable link rows with compare-and-transition updates.

Provides the only write path to payment_link and link_transfer:
- Creation with amount/fee validation
- Keyed reads and creator/claimant listings
- compare_and_transition: one conditional UPDATE guarded by
  `WHERE id = :id AND state = :expected`, committed as its own transaction

Every state change in the system is a single compare_and_transition call. A
transition that finds the link in another state is a normal outcome
(applied=False), not an error; callers re-read and decide.

Transfer sub-records are derived by the store itself and inserted in the
same transaction as the transition they record:
- created -> funded writes the funding transfer
- claiming -> claimed writes the claim transfer
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import Select, Update, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from paylink.errors import LinkValidationError
from paylink.models import LinkTransfer, PaymentLink
from paylink.services.fees import deliverable_amount
from paylink.services.state_machine import LinkState, LinkStateMachine

logger = logging.getLogger(__name__)

link_table = PaymentLink.__table__
transfer_table = LinkTransfer.__table__

# Integer digits that fit the Numeric(30, 9) amount columns
MAX_INTEGER_DIGITS = 21

# Columns a transition may set besides state/updated_at
UPDATABLE_FIELDS = frozenset(
    {
        "funding_transfer_ref",
        "claimant_ref",
        "claim_transfer_ref",
        "pending_claimant_ref",
        "last_claim_error",
    }
)


@dataclass(frozen=True)
class Link:
    """Snapshot of a payment link row."""

    id: str
    requested_amount: Decimal
    asset: str
    creator_ref: str | None
    fee_amount: Decimal
    state: LinkState
    funding_transfer_ref: str | None
    claimant_ref: str | None
    claim_transfer_ref: str | None
    pending_claimant_ref: str | None
    claim_attempts: int
    last_claim_error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def deliverable_amount(self) -> Decimal:
        """Amount a claimant receives (requested minus fee)."""
        return deliverable_amount(self.requested_amount, self.fee_amount)

    @property
    def claim_key(self) -> str:
        """Engine idempotency key for the current claim attempt."""
        return f"{self.id}:{self.claim_attempts}"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Link:
        """Build a snapshot from a payment_link row mapping."""
        return cls(
            id=row["id"],
            requested_amount=Decimal(str(row["requested_amount"])),
            asset=row["asset"],
            creator_ref=row["creator_ref"],
            fee_amount=Decimal(str(row["fee_amount"])),
            state=LinkState(row["state"]),
            funding_transfer_ref=row["funding_transfer_ref"],
            claimant_ref=row["claimant_ref"],
            claim_transfer_ref=row["claim_transfer_ref"],
            pending_claimant_ref=row["pending_claimant_ref"],
            claim_attempts=row["claim_attempts"],
            last_claim_error=row["last_claim_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Transfer:
    """External transfer recorded against a link."""

    kind: str  # funding | claim
    link_id: str
    transfer_ref: str
    amount: Decimal
    asset: str
    counterparty_ref: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Transfer:
        """Build from a link_transfer row mapping."""
        return cls(
            kind=row["kind"],
            link_id=row["link_id"],
            transfer_ref=row["transfer_ref"],
            amount=Decimal(str(row["amount"])),
            asset=row["asset"],
            counterparty_ref=row["counterparty_ref"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class TransitionResult:
    """Result of compare_and_transition.

    IMPORTANT: `applied=False` is a conflict, not a failure. `link` is the row
    as read after the attempt (None if the link does not exist), so callers
    never need a second round trip to learn who moved it first.
    """

    applied: bool
    link: Link | None

    @property
    def conflict(self) -> bool:
        """True if the link was not in the expected state."""
        return not self.applied


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_new_link(requested_amount: Decimal, asset: str, fee_amount: Decimal) -> None:
    """Reject links that can never be claimed correctly."""
    if not requested_amount.is_finite() or requested_amount <= 0:
        raise LinkValidationError("amount", "must be a positive number")
    if requested_amount.adjusted() >= MAX_INTEGER_DIGITS:
        raise LinkValidationError("amount", f"cannot exceed {MAX_INTEGER_DIGITS} integer digits")
    if not fee_amount.is_finite() or fee_amount < 0:
        raise LinkValidationError("fee_amount", "cannot be negative")
    if fee_amount >= requested_amount:
        raise LinkValidationError("fee_amount", "must be less than the requested amount")
    if not asset:
        raise LinkValidationError("asset", "is required")


def _new_link_values(
    requested_amount: Decimal, asset: str, creator_ref: str | None, fee_amount: Decimal
) -> dict[str, Any]:
    now = _now()
    return {
        "id": uuid4().hex,
        "requested_amount": requested_amount,
        "asset": asset,
        "creator_ref": creator_ref,
        "fee_amount": fee_amount,
        "state": LinkState.CREATED.value,
        "claim_attempts": 0,
        "created_at": now,
        "updated_at": now,
    }


def _transition_stmt(
    link_id: str,
    expected_state: LinkState,
    new_state: LinkState,
    field_updates: dict[str, Any],
) -> Update:
    """Build the guarded UPDATE for one transition."""
    unknown = set(field_updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated by a transition: {sorted(unknown)}")

    values: dict[str, Any] = {"state": new_state.value, "updated_at": _now()}
    if expected_state == LinkState.CLAIMING:
        values["pending_claimant_ref"] = None
    if new_state == LinkState.CLAIMED:
        values["last_claim_error"] = None
    values.update(field_updates)
    if new_state == LinkState.CLAIMING:
        values["claim_attempts"] = link_table.c.claim_attempts + 1

    return (
        update(link_table)
        .where(link_table.c.id == link_id, link_table.c.state == expected_state.value)
        .values(**values)
    )


def _transfer_values(
    link: Link, expected_state: LinkState, new_state: LinkState
) -> dict[str, Any] | None:
    """Transfer sub-record produced by a transition, if any."""
    if expected_state == LinkState.CREATED and new_state == LinkState.FUNDED:
        return {
            "link_id": link.id,
            "kind": "funding",
            "transfer_ref": link.funding_transfer_ref,
            "amount": link.requested_amount,
            "asset": link.asset,
            "counterparty_ref": link.creator_ref,
            "created_at": link.updated_at,
        }
    if expected_state == LinkState.CLAIMING and new_state == LinkState.CLAIMED:
        return {
            "link_id": link.id,
            "kind": "claim",
            "transfer_ref": link.claim_transfer_ref,
            "amount": link.deliverable_amount,
            "asset": link.asset,
            "counterparty_ref": link.claimant_ref,
            "created_at": link.updated_at,
        }
    return None


def _select_link(link_id: str) -> Select:
    return select(link_table).where(link_table.c.id == link_id)


def _select_by(column: Any, value: str, limit: int) -> Select:
    return (
        select(link_table)
        .where(column == value)
        .order_by(link_table.c.created_at.desc(), link_table.c.id)
        .limit(limit)
    )


def _select_transfers(link_id: str) -> Select:
    return (
        select(transfer_table)
        .where(transfer_table.c.link_id == link_id)
        .order_by(transfer_table.c.id)
    )


class LinkStore:
    """Durable link storage with compare-and-transition updates.

    Notes:
    - Each mutating call commits its own transaction; the session must not
      be shared with unrelated pending work.
    - Links are never deleted.
    - Correctness relies only on the database's conditional UPDATE, so any
      number of processes may share one database.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        requested_amount: Decimal,
        asset: str,
        creator_ref: str | None = None,
        fee_amount: Decimal = Decimal("0"),
    ) -> Link:
        """Create a link in state `created`.

        Raises:
            LinkValidationError: amount <= 0, negative fee, or fee >= amount.
        """
        _validate_new_link(requested_amount, asset, fee_amount)
        values = _new_link_values(requested_amount, asset, creator_ref, fee_amount)
        try:
            self.db.execute(insert(link_table).values(**values))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Created link %s for %s %s", values["id"], requested_amount, asset)
        link = self.get(values["id"])
        if link is None:
            raise RuntimeError("Link insert failed unexpectedly - row not found")
        return link

    def get(self, link_id: str) -> Link | None:
        """Get a link by id."""
        row = self.db.execute(_select_link(link_id)).mappings().first()
        return Link.from_row(row) if row else None

    def list_by_creator(self, creator_ref: str, *, limit: int = 100) -> list[Link]:
        """Links created by a party, newest first."""
        rows = self.db.execute(_select_by(link_table.c.creator_ref, creator_ref, limit))
        return [Link.from_row(r) for r in rows.mappings()]

    def list_by_claimant(self, claimant_ref: str, *, limit: int = 100) -> list[Link]:
        """Links successfully claimed by a party, newest first."""
        rows = self.db.execute(_select_by(link_table.c.claimant_ref, claimant_ref, limit))
        return [Link.from_row(r) for r in rows.mappings()]

    def list_transfers(self, link_id: str) -> list[Transfer]:
        """Funding and claim transfers recorded for a link."""
        rows = self.db.execute(_select_transfers(link_id))
        return [Transfer.from_row(r) for r in rows.mappings()]

    def compare_and_transition(
        self,
        link_id: str,
        expected_state: LinkState,
        new_state: LinkState,
        **field_updates: Any,
    ) -> TransitionResult:
        """Move a link from expected_state to new_state atomically.

        Args:
            link_id: Link to transition
            expected_state: State the link must currently be in
            new_state: Target state (must be allowed by LinkStateMachine)
            **field_updates: Column values written with the transition

        Returns:
            TransitionResult; applied=False if zero rows matched.

        Raises:
            InvalidTransitionError: The edge or its required fields are invalid.
        """
        expected_state, new_state = LinkState(expected_state), LinkState(new_state)
        LinkStateMachine.validate_transition(expected_state, new_state, field_updates)
        stmt = _transition_stmt(link_id, expected_state, new_state, field_updates)

        try:
            result = self.db.execute(stmt)
            if result.rowcount != 1:
                self.db.rollback()
                return TransitionResult(applied=False, link=self.get(link_id))

            row = self.db.execute(_select_link(link_id)).mappings().one()
            link = Link.from_row(row)
            transfer = _transfer_values(link, expected_state, new_state)
            if transfer:
                self.db.execute(insert(transfer_table).values(**transfer))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.debug(
            "Link %s transitioned %s -> %s", link_id, expected_state.value, new_state.value
        )
        return TransitionResult(applied=True, link=link)


class AsyncLinkStore:
    """Async version of LinkStore."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        requested_amount: Decimal,
        asset: str,
        creator_ref: str | None = None,
        fee_amount: Decimal = Decimal("0"),
    ) -> Link:
        """Async create link."""
        _validate_new_link(requested_amount, asset, fee_amount)
        values = _new_link_values(requested_amount, asset, creator_ref, fee_amount)
        try:
            await self.db.execute(insert(link_table).values(**values))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Created link %s for %s %s", values["id"], requested_amount, asset)
        link = await self.get(values["id"])
        if link is None:
            raise RuntimeError("Link insert failed unexpectedly - row not found")
        return link

    async def get(self, link_id: str) -> Link | None:
        """Async get link."""
        result = await self.db.execute(_select_link(link_id))
        row = result.mappings().first()
        return Link.from_row(row) if row else None

    async def list_by_creator(self, creator_ref: str, *, limit: int = 100) -> list[Link]:
        """Async list by creator."""
        result = await self.db.execute(_select_by(link_table.c.creator_ref, creator_ref, limit))
        return [Link.from_row(r) for r in result.mappings()]

    async def list_by_claimant(self, claimant_ref: str, *, limit: int = 100) -> list[Link]:
        """Async list by claimant."""
        result = await self.db.execute(
            _select_by(link_table.c.claimant_ref, claimant_ref, limit)
        )
        return [Link.from_row(r) for r in result.mappings()]

    async def list_transfers(self, link_id: str) -> list[Transfer]:
        """Async list transfers."""
        result = await self.db.execute(_select_transfers(link_id))
        return [Transfer.from_row(r) for r in result.mappings()]

    async def compare_and_transition(
        self,
        link_id: str,
        expected_state: LinkState,
        new_state: LinkState,
        **field_updates: Any,
    ) -> TransitionResult:
        """Async compare-and-transition."""
        expected_state, new_state = LinkState(expected_state), LinkState(new_state)
        LinkStateMachine.validate_transition(expected_state, new_state, field_updates)
        stmt = _transition_stmt(link_id, expected_state, new_state, field_updates)

        try:
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                await self.db.rollback()
                return TransitionResult(applied=False, link=await self.get(link_id))

            row_result = await self.db.execute(_select_link(link_id))
            link = Link.from_row(row_result.mappings().one())
            transfer = _transfer_values(link, expected_state, new_state)
            if transfer:
                await self.db.execute(insert(transfer_table).values(**transfer))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.debug(
            "Link %s transitioned %s -> %s", link_id, expected_state.value, new_state.value
        )
        return TransitionResult(applied=True, link=link)
