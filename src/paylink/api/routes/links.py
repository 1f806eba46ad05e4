"""Payment link API endpoints."""

from typing import Annotated

from fastapi import APIRouter, HTTPException, Path, Query, Response, status

from paylink.api.dependencies import Lifecycle
from paylink.api.schemas import (
    ClaimRequest,
    ClaimResponse,
    ErrorResponse,
    FundingReport,
    FundingResponse,
    LinkCreate,
    LinkCreateResponse,
    LinkListResponse,
    LinkResponse,
    TransferListResponse,
    TransferResponse,
    format_amount,
)
from paylink.services.claim_coordinator import ClaimResult, ClaimStatus
from paylink.services.reconciler import FundingStatus

router = APIRouter(prefix="/links", tags=["links"])

LinkId = Annotated[str, Path(min_length=1, max_length=64)]

FUNDING_STATUS_CODES = {
    FundingStatus.APPLIED: status.HTTP_200_OK,
    FundingStatus.ALREADY_APPLIED: status.HTTP_200_OK,
    FundingStatus.CONFLICT: status.HTTP_409_CONFLICT,
    FundingStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def claim_status_code(result: ClaimResult) -> int:
    """HTTP status for a claim outcome."""
    if result.status == ClaimStatus.SUCCESS:
        return status.HTTP_200_OK
    if result.status == ClaimStatus.NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if result.status in (
        ClaimStatus.ALREADY_CLAIMED,
        ClaimStatus.IN_PROGRESS,
        ClaimStatus.NOT_FUNDED,
    ):
        return status.HTTP_409_CONFLICT
    if result.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_422_UNPROCESSABLE_ENTITY


# ============================================================================
# Link CRUD
# ============================================================================


@router.post(
    "",
    response_model=LinkCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_link(lifecycle: Lifecycle, payload: LinkCreate) -> LinkCreateResponse:
    """Create a new payment link in state created."""
    link = await lifecycle.create_link(
        amount=payload.amount,
        asset=payload.asset,
        creator_ref=payload.creator_ref,
        fee_amount=payload.fee_amount,
    )
    return LinkCreateResponse(
        link_id=link.id,
        share_url=lifecycle.share_url(link.id),
        amount=format_amount(link.requested_amount),
        asset=link.asset,
        fee_amount=format_amount(link.fee_amount),
        state=link.state.value,
    )


@router.get("", response_model=LinkListResponse)
async def list_links(
    lifecycle: Lifecycle,
    creator_ref: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> LinkListResponse:
    """List links created by a party, newest first."""
    links = await lifecycle.list_links_by_creator(creator_ref, limit=limit)
    return LinkListResponse(
        items=[LinkResponse.from_link(link, lifecycle.share_url(link.id)) for link in links],
        total=len(links),
    )


@router.get(
    "/{link_id}",
    response_model=LinkResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_link(lifecycle: Lifecycle, link_id: LinkId) -> LinkResponse:
    """Get a link by id."""
    link = await lifecycle.get_link(link_id)
    if not link:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Link not found",
        )
    return LinkResponse.from_link(link, lifecycle.share_url(link.id))


@router.get(
    "/{link_id}/transfers",
    response_model=TransferListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_link_transfers(lifecycle: Lifecycle, link_id: LinkId) -> TransferListResponse:
    """Funding and claim transfers recorded for a link."""
    link = await lifecycle.get_link(link_id)
    if not link:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Link not found",
        )
    transfers = await lifecycle.list_transfers(link_id)
    return TransferListResponse(
        link_id=link_id,
        items=[TransferResponse.from_transfer(t) for t in transfers],
    )


# ============================================================================
# Funding and claim
# ============================================================================


@router.post(
    "/{link_id}/funding",
    response_model=FundingResponse,
    responses={404: {"model": FundingResponse}, 409: {"model": FundingResponse}},
)
async def report_funding(
    lifecycle: Lifecycle,
    link_id: LinkId,
    payload: FundingReport,
    response: Response,
) -> FundingResponse:
    """Report that a link was funded.

    Safe to repeat: the same (link_id, transfer_ref) always answers
    applied/already_applied.
    """
    result = await lifecycle.report_funding(link_id, payload.transfer_ref)
    response.status_code = FUNDING_STATUS_CODES[result.status]
    return FundingResponse(
        status=result.status.value,
        link_id=link_id,
        funding_transfer_ref=result.link.funding_transfer_ref if result.link else None,
    )


@router.post(
    "/{link_id}/claim",
    response_model=ClaimResponse,
    responses={
        404: {"model": ClaimResponse},
        409: {"model": ClaimResponse},
        422: {"model": ClaimResponse},
        503: {"model": ClaimResponse},
    },
)
async def claim_link(
    lifecycle: Lifecycle,
    link_id: LinkId,
    payload: ClaimRequest,
    response: Response,
) -> ClaimResponse:
    """Claim a funded link. At most one claim per link ever succeeds."""
    result = await lifecycle.claim_link(link_id, payload.claimant_ref)
    response.status_code = claim_status_code(result)
    return ClaimResponse(
        status=result.status.value,
        link_id=link_id,
        deliverable_amount=(
            format_amount(result.deliverable_amount)
            if result.deliverable_amount is not None
            else None
        ),
        claim_transfer_ref=result.claim_transfer_ref,
        reason=result.reason,
        retryable=result.retryable,
    )
