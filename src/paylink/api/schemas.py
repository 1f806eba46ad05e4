"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from paylink.services.link_store import Link, Transfer


def format_amount(value: Decimal) -> str:
    """Plain decimal string without trailing zeros (0.004000000 -> 0.004)."""
    return format(value.normalize(), "f")


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str
    field: str | None = None


# ============================================================================
# Link schemas
# ============================================================================


class LinkCreate(BaseModel):
    """Schema for creating a payment link.

    Amounts are accepted as strings or numbers and parsed as decimals;
    strings are preferred to avoid float rounding.
    """

    amount: str | int | float
    asset: str
    creator_ref: str | None = None
    fee_amount: str | int | float | None = None


class LinkCreateResponse(BaseModel):
    """Schema for a newly created link."""

    link_id: str
    share_url: str
    amount: str
    asset: str
    fee_amount: str
    state: str


class LinkResponse(BaseModel):
    """Schema for link view."""

    link_id: str
    share_url: str
    amount: str
    asset: str
    fee_amount: str
    deliverable_amount: str
    state: str
    creator_ref: str | None = None
    funding_transfer_ref: str | None = None
    claimant_ref: str | None = None
    claim_transfer_ref: str | None = None
    claim_attempts: int
    last_claim_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_link(cls, link: Link, share_url: str) -> LinkResponse:
        """Build from a link snapshot."""
        return cls(
            link_id=link.id,
            share_url=share_url,
            amount=format_amount(link.requested_amount),
            asset=link.asset,
            fee_amount=format_amount(link.fee_amount),
            deliverable_amount=format_amount(link.deliverable_amount),
            state=link.state.value,
            creator_ref=link.creator_ref,
            funding_transfer_ref=link.funding_transfer_ref,
            claimant_ref=link.claimant_ref,
            claim_transfer_ref=link.claim_transfer_ref,
            claim_attempts=link.claim_attempts,
            last_claim_error=link.last_claim_error,
            created_at=link.created_at,
            updated_at=link.updated_at,
        )


class LinkListResponse(BaseModel):
    """Schema for listing links."""

    items: list[LinkResponse]
    total: int


class HistoryResponse(BaseModel):
    """Links a wallet sent (created) and received (claimed)."""

    wallet_ref: str
    sent: list[LinkResponse]
    received: list[LinkResponse]


# ============================================================================
# Transfer schemas
# ============================================================================


class TransferResponse(BaseModel):
    """Schema for a recorded transfer."""

    kind: str
    transfer_ref: str
    amount: str
    asset: str
    counterparty_ref: str | None = None
    created_at: datetime

    @classmethod
    def from_transfer(cls, transfer: Transfer) -> TransferResponse:
        """Build from a transfer record."""
        return cls(
            kind=transfer.kind,
            transfer_ref=transfer.transfer_ref,
            amount=format_amount(transfer.amount),
            asset=transfer.asset,
            counterparty_ref=transfer.counterparty_ref,
            created_at=transfer.created_at,
        )


class TransferListResponse(BaseModel):
    """Schema for listing a link's transfers."""

    link_id: str
    items: list[TransferResponse]


# ============================================================================
# Funding schemas
# ============================================================================


class FundingReport(BaseModel):
    """Funding notification; safe to send more than once."""

    transfer_ref: str = Field(min_length=1)


class FundingResponse(BaseModel):
    """Schema for funding outcome."""

    status: str
    link_id: str
    funding_transfer_ref: str | None = None


# ============================================================================
# Claim schemas
# ============================================================================


class ClaimRequest(BaseModel):
    """Schema for claiming a link."""

    claimant_ref: str = Field(min_length=1)


class ClaimResponse(BaseModel):
    """Schema for claim outcome."""

    status: str
    link_id: str
    deliverable_amount: str | None = None
    claim_transfer_ref: str | None = None
    reason: str | None = None
    retryable: bool | None = None
