"""Payment link models.

Covers the persisted state of the ledger:
- Payment links (one row per link, the unit of work)
- Link transfers (append-only audit of the funding and claim transfers)

The state invariants are also enforced as CHECK constraints so that a row
written outside the store still cannot describe an impossible link.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paylink.models.base import Base

AMOUNT = Numeric(30, 9)


class PaymentLink(Base):
    """A requested value transfer, tracked from creation through claim.

    CRITICAL: rows are only mutated through LinkStore.compare_and_transition.
    Links are audit records and are never deleted.
    """

    __tablename__ = "payment_link"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    requested_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    creator_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    fee_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="created")
    funding_transfer_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimant_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_transfer_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    pending_claimant_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_claim_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('created', 'funded', 'claiming', 'claimed', 'claim_failed')",
            name="payment_link_state_ck",
        ),
        CheckConstraint("requested_amount > 0", name="payment_link_amount_ck"),
        CheckConstraint(
            "fee_amount >= 0 AND fee_amount < requested_amount",
            name="payment_link_fee_ck",
        ),
        CheckConstraint(
            "(state = 'created') = (funding_transfer_ref IS NULL)",
            name="payment_link_funding_ref_ck",
        ),
        CheckConstraint(
            "(state = 'claimed') = (claimant_ref IS NOT NULL)",
            name="payment_link_claimant_ck",
        ),
        CheckConstraint(
            "(state = 'claimed') = (claim_transfer_ref IS NOT NULL)",
            name="payment_link_claim_ref_ck",
        ),
        CheckConstraint(
            "pending_claimant_ref IS NULL OR state = 'claiming'",
            name="payment_link_pending_ck",
        ),
        Index("payment_link_by_creator", "creator_ref", "created_at"),
        Index("payment_link_by_claimant", "claimant_ref"),
        Index("payment_link_by_state", "state", "updated_at"),
    )

    transfers: Mapped[list["LinkTransfer"]] = relationship(
        "LinkTransfer", back_populates="link", order_by="LinkTransfer.id"
    )


class LinkTransfer(Base):
    """External transfer applied to a link (funding or claim).

    Append-only. Written in the same transaction as the state transition it
    records, so a link has a transfer row iff the transition committed.
    """

    __tablename__ = "link_transfer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    link_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("payment_link.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    transfer_ref: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    counterparty_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("kind IN ('funding', 'claim')", name="link_transfer_kind_ck"),
        CheckConstraint("amount > 0", name="link_transfer_amount_ck"),
        UniqueConstraint("kind", "link_id", name="link_transfer_kind_link_uq"),
        Index("link_transfer_by_ref", "transfer_ref"),
    )

    link: Mapped[PaymentLink] = relationship("PaymentLink", back_populates="transfers")
