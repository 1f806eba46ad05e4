"""Link Lifecycle - the boundary facade over store, reconciler and coordinator.

Callers (HTTP routes, the CLI, tests) go through LinkLifecycle and never
touch the store directly. The facade validates input shape, applies the
configured fee policy and returns the typed outcomes of the components.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from paylink.config import LedgerConfig
from paylink.errors import LinkValidationError
from paylink.events import EventEmitter, EventMetadata, LinkCreated
from paylink.providers.base import ValueTransferEngine
from paylink.services.claim_coordinator import (
    AsyncClaimCoordinator,
    ClaimCoordinator,
    ClaimResult,
)
from paylink.services.fees import compute_fee
from paylink.services.link_store import (
    MAX_INTEGER_DIGITS,
    AsyncLinkStore,
    Link,
    LinkStore,
    Transfer,
)
from paylink.services.reconciler import AsyncReconciler, FundingResult, Reconciler

ASSET_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,31}$")
MAX_REF_LENGTH = 128
MAX_SCALE = 9


@dataclass(frozen=True)
class LinkHistory:
    """Links a wallet created (sent) and claimed (received)."""

    sent: list[Link] = field(default_factory=list)
    received: list[Link] = field(default_factory=list)


def parse_amount(value: Decimal | str | int, field_name: str = "amount") -> Decimal:
    """Parse a positive decimal amount with at most nine decimal places."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise LinkValidationError(field_name, "must be a decimal number") from e
    if not amount.is_finite():
        raise LinkValidationError(field_name, "must be a finite number")
    if amount.as_tuple().exponent < -MAX_SCALE:
        raise LinkValidationError(field_name, f"supports at most {MAX_SCALE} decimal places")
    if amount.adjusted() >= MAX_INTEGER_DIGITS:
        raise LinkValidationError(field_name, f"cannot exceed {MAX_INTEGER_DIGITS} integer digits")
    return amount


def _clean_ref(value: str | None, field_name: str, required: bool) -> str | None:
    value = (value or "").strip()
    if not value:
        if required:
            raise LinkValidationError(field_name, "is required")
        return None
    if len(value) > MAX_REF_LENGTH:
        raise LinkValidationError(field_name, f"cannot exceed {MAX_REF_LENGTH} characters")
    return value


class _LinkInputs:
    """Input validation shared by the sync and async facades."""

    config: LedgerConfig
    emitter: EventEmitter | None

    def _validated_create(
        self,
        amount: Decimal | str | int,
        asset: str,
        creator_ref: str | None,
        fee_amount: Decimal | str | int | None,
    ) -> dict:
        requested = parse_amount(amount)
        if requested <= 0:
            raise LinkValidationError("amount", "must be positive")

        asset = (asset or "").strip()
        if not ASSET_PATTERN.match(asset):
            raise LinkValidationError("asset", "must be a short alphanumeric identifier")
        if self.config.allowed_assets is not None and asset not in self.config.allowed_assets:
            raise LinkValidationError(
                "asset", f"must be one of {', '.join(sorted(self.config.allowed_assets))}"
            )

        if fee_amount is None:
            fee = compute_fee(requested, self.config.fee)
        else:
            fee = parse_amount(fee_amount, "fee_amount")

        return {
            "requested_amount": requested,
            "asset": asset,
            "creator_ref": _clean_ref(creator_ref, "creator_ref", required=False),
            "fee_amount": fee,
        }

    def _created(self, link: Link) -> Link:
        if self.emitter is not None:
            self.emitter.emit(
                LinkCreated(
                    metadata=EventMetadata.create(link.id, actor_type="user"),
                    link_id=link.id,
                    requested_amount=link.requested_amount,
                    fee_amount=link.fee_amount,
                    asset=link.asset,
                    creator_ref=link.creator_ref,
                )
            )
        return link

    def share_url(self, link_id: str) -> str:
        """Shareable URL for a link; the id is the only secret it carries."""
        return f"{self.config.share_base_url.rstrip('/')}/{link_id}"


class LinkLifecycle(_LinkInputs):
    """Synchronous lifecycle facade.

    Usage:
        lifecycle = LinkLifecycle(session, engine)
        link = lifecycle.create_link(amount="0.01", asset="SOL")
        lifecycle.report_funding(link.id, "tx1")
        result = lifecycle.claim_link(link.id, "wallet-b")
    """

    def __init__(
        self,
        db: Session,
        engine: ValueTransferEngine,
        config: LedgerConfig | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.config = config or LedgerConfig()
        self.emitter = emitter
        self.store = LinkStore(db)
        self.reconciler = Reconciler(db, emitter=emitter)
        self.coordinator = ClaimCoordinator(
            db, engine, retry_policy=self.config.claim_retry, emitter=emitter
        )

    def create_link(
        self,
        *,
        amount: Decimal | str | int,
        asset: str,
        creator_ref: str | None = None,
        fee_amount: Decimal | str | int | None = None,
    ) -> Link:
        """Create a link; the fee comes from the fee policy unless given."""
        values = self._validated_create(amount, asset, creator_ref, fee_amount)
        return self._created(self.store.create(**values))

    def report_funding(self, link_id: str, transfer_ref: str) -> FundingResult:
        """Report that a link was funded by an engine transfer."""
        return self.reconciler.report_funding(link_id, transfer_ref)

    def claim_link(self, link_id: str, claimant_ref: str) -> ClaimResult:
        """Claim a funded link."""
        return self.coordinator.claim(link_id, claimant_ref)

    def get_link(self, link_id: str) -> Link | None:
        """Get a link by id."""
        return self.store.get(link_id)

    def list_links_by_creator(self, creator_ref: str, *, limit: int = 100) -> list[Link]:
        """Links created by a party, newest first."""
        return self.store.list_by_creator(creator_ref, limit=limit)

    def list_transfers(self, link_id: str) -> list[Transfer]:
        """Funding and claim transfers recorded for a link."""
        return self.store.list_transfers(link_id)

    def history(self, wallet_ref: str, *, limit: int = 100) -> LinkHistory:
        """Sent and received links for a wallet."""
        wallet_ref = _clean_ref(wallet_ref, "wallet_ref", required=True)
        return LinkHistory(
            sent=self.store.list_by_creator(wallet_ref, limit=limit),
            received=self.store.list_by_claimant(wallet_ref, limit=limit),
        )

    def resolve_claim(self, link_id: str) -> ClaimResult:
        """Resolve a claim whose engine outcome was unknown."""
        return self.coordinator.resolve_pending_claim(link_id)

    def reopen_claim(self, link_id: str, reason: str) -> ClaimResult:
        """Operator reopen of a terminally failed claim."""
        reason = _clean_ref(reason, "reason", required=True)
        return self.coordinator.reopen_failed_claim(link_id, reason)


class AsyncLinkLifecycle(_LinkInputs):
    """Async lifecycle facade used by the HTTP API."""

    def __init__(
        self,
        db: AsyncSession,
        engine: ValueTransferEngine,
        config: LedgerConfig | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.config = config or LedgerConfig()
        self.emitter = emitter
        self.store = AsyncLinkStore(db)
        self.reconciler = AsyncReconciler(db, emitter=emitter)
        self.coordinator = AsyncClaimCoordinator(
            db, engine, retry_policy=self.config.claim_retry, emitter=emitter
        )

    async def create_link(
        self,
        *,
        amount: Decimal | str | int,
        asset: str,
        creator_ref: str | None = None,
        fee_amount: Decimal | str | int | None = None,
    ) -> Link:
        """Async create link."""
        values = self._validated_create(amount, asset, creator_ref, fee_amount)
        return self._created(await self.store.create(**values))

    async def report_funding(self, link_id: str, transfer_ref: str) -> FundingResult:
        """Async report funding."""
        return await self.reconciler.report_funding(link_id, transfer_ref)

    async def claim_link(self, link_id: str, claimant_ref: str) -> ClaimResult:
        """Async claim link."""
        return await self.coordinator.claim(link_id, claimant_ref)

    async def get_link(self, link_id: str) -> Link | None:
        """Async get link."""
        return await self.store.get(link_id)

    async def list_links_by_creator(self, creator_ref: str, *, limit: int = 100) -> list[Link]:
        """Async list links by creator."""
        return await self.store.list_by_creator(creator_ref, limit=limit)

    async def list_transfers(self, link_id: str) -> list[Transfer]:
        """Async list transfers."""
        return await self.store.list_transfers(link_id)

    async def history(self, wallet_ref: str, *, limit: int = 100) -> LinkHistory:
        """Async sent/received history."""
        wallet_ref = _clean_ref(wallet_ref, "wallet_ref", required=True)
        sent = await self.store.list_by_creator(wallet_ref, limit=limit)
        received = await self.store.list_by_claimant(wallet_ref, limit=limit)
        return LinkHistory(sent=sent, received=received)

    async def resolve_claim(self, link_id: str) -> ClaimResult:
        """Async resolve pending claim."""
        return await self.coordinator.resolve_pending_claim(link_id)

    async def reopen_claim(self, link_id: str, reason: str) -> ClaimResult:
        """Async operator reopen."""
        reason = _clean_ref(reason, "reason", required=True)
        return await self.coordinator.reopen_failed_claim(link_id, reason)
