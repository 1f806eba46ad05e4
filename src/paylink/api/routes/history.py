"""Wallet history endpoint."""

from typing import Annotated

from fastapi import APIRouter, Path, Query

from paylink.api.dependencies import Lifecycle
from paylink.api.schemas import HistoryResponse, LinkResponse

router = APIRouter(prefix="/history", tags=["history"])


@router.get("/{wallet_ref}", response_model=HistoryResponse)
async def wallet_history(
    lifecycle: Lifecycle,
    wallet_ref: Annotated[str, Path(min_length=1, max_length=128)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> HistoryResponse:
    """Links a wallet created (sent) and claimed (received)."""
    history = await lifecycle.history(wallet_ref, limit=limit)
    return HistoryResponse(
        wallet_ref=wallet_ref,
        sent=[LinkResponse.from_link(link, lifecycle.share_url(link.id)) for link in history.sent],
        received=[
            LinkResponse.from_link(link, lifecycle.share_url(link.id))
            for link in history.received
        ],
    )
