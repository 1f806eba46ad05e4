"""Async store, reconciler and claim coordinator against aiosqlite."""

import asyncio
from decimal import Decimal

import pytest

from paylink.config import ClaimRetryPolicy
from paylink.errors import LinkValidationError
from paylink.lifecycle import AsyncLinkLifecycle
from paylink.providers import (
    ClaimOutcomeUnknown,
    ClaimReceipt,
    StubTransferEngine,
    TransientFailure,
)
from paylink.services import (
    AsyncClaimCoordinator,
    AsyncLinkStore,
    AsyncReconciler,
    ClaimStatus,
    FundingStatus,
    LinkState,
)

pytestmark = pytest.mark.asyncio


async def new_funded_link(db_session, amount: str = "10") -> str:
    store = AsyncLinkStore(db_session)
    link = await store.create(
        requested_amount=Decimal(amount), asset="X", creator_ref="wallet-a"
    )
    result = await AsyncReconciler(db_session).report_funding(link.id, "tx1")
    assert result.status == FundingStatus.APPLIED
    return link.id


class TestAsyncLinkStore:
    """Async compare-and-transition."""

    async def test_create_and_transition(self, db_session):
        store = AsyncLinkStore(db_session)
        link = await store.create(
            requested_amount=Decimal("5"), asset="X", fee_amount=Decimal("1")
        )
        assert link.state == LinkState.CREATED

        funded = await store.compare_and_transition(
            link.id, LinkState.CREATED, LinkState.FUNDED, funding_transfer_ref="tx1"
        )
        assert funded.applied
        assert funded.link.funding_transfer_ref == "tx1"

        again = await store.compare_and_transition(
            link.id, LinkState.CREATED, LinkState.FUNDED, funding_transfer_ref="tx2"
        )
        assert again.conflict
        assert again.link.funding_transfer_ref == "tx1"

        transfers = await store.list_transfers(link.id)
        assert [t.kind for t in transfers] == ["funding"]

    async def test_missing_link(self, db_session):
        result = await AsyncLinkStore(db_session).compare_and_transition(
            "missing", LinkState.CREATED, LinkState.FUNDED, funding_transfer_ref="tx1"
        )
        assert not result.applied
        assert result.link is None


class TestAsyncReconciler:
    async def test_idempotent_and_conflicting_reports(self, db_session):
        link = await AsyncLinkStore(db_session).create(requested_amount=Decimal("5"), asset="X")
        reconciler = AsyncReconciler(db_session)

        assert (await reconciler.report_funding(link.id, "tx1")).status == FundingStatus.APPLIED
        assert (
            await reconciler.report_funding(link.id, "tx1")
        ).status == FundingStatus.ALREADY_APPLIED
        assert (await reconciler.report_funding(link.id, "tx2")).status == FundingStatus.CONFLICT
        assert (
            await reconciler.report_funding("missing", "tx1")
        ).status == FundingStatus.NOT_FOUND

    async def test_blank_ref_rejected(self, db_session):
        link = await AsyncLinkStore(db_session).create(requested_amount=Decimal("5"), asset="X")
        with pytest.raises(LinkValidationError):
            await AsyncReconciler(db_session).report_funding(link.id, "  ")


class TestAsyncClaimCoordinator:
    async def test_claim_success(self, db_session, transfer_engine):
        link_id = await new_funded_link(db_session)
        coordinator = AsyncClaimCoordinator(db_session, transfer_engine)

        result = await coordinator.claim(link_id, "wallet-b")

        assert result.status == ClaimStatus.SUCCESS
        assert result.link.state == LinkState.CLAIMED
        assert transfer_engine.claim_calls[0]["idempotency_key"] == f"{link_id}:1"

    async def test_in_place_retry(self, db_session, transfer_engine):
        link_id = await new_funded_link(db_session)
        transfer_engine.fail_next_claims(TransientFailure("not yet claimable"))
        coordinator = AsyncClaimCoordinator(
            db_session,
            transfer_engine,
            retry_policy=ClaimRetryPolicy(max_attempts=2, backoff_seconds=0.0),
        )

        result = await coordinator.claim(link_id, "wallet-b")

        assert result.status == ClaimStatus.SUCCESS
        assert len(transfer_engine.claim_calls) == 2
        # Both attempts share the idempotency key of one gate acquisition
        assert {c["idempotency_key"] for c in transfer_engine.claim_calls} == {f"{link_id}:1"}

    async def test_transient_failure_releases_gate(self, db_session, transfer_engine):
        link_id = await new_funded_link(db_session)
        transfer_engine.fail_next_claims(TransientFailure("engine busy"))

        result = await AsyncClaimCoordinator(db_session, transfer_engine).claim(
            link_id, "wallet-b"
        )

        assert result.status == ClaimStatus.FAILED
        assert result.retryable is True
        assert result.link.state == LinkState.FUNDED
        assert result.link.pending_claimant_ref is None

    async def test_resolve_settled_claim(self, db_session, transfer_engine):
        link_id = await new_funded_link(db_session)
        transfer_engine.fail_next_claims(ClaimOutcomeUnknown("timeout"), executed=True)
        coordinator = AsyncClaimCoordinator(db_session, transfer_engine)

        pending = await coordinator.claim(link_id, "wallet-b")
        assert pending.status == ClaimStatus.IN_PROGRESS

        resolved = await coordinator.resolve_pending_claim(link_id)

        assert resolved.status == ClaimStatus.SUCCESS
        assert resolved.link.claimant_ref == "wallet-b"
        assert transfer_engine.settled_claims == 1

    async def test_resolve_matches_sync_mapping(self, db_session, transfer_engine):
        """Async resolve maps engine statuses exactly like the sync coordinator."""
        link_id = await new_funded_link(db_session)
        transfer_engine.fail_next_claims(ClaimOutcomeUnknown("timeout"), executed=False)
        coordinator = AsyncClaimCoordinator(db_session, transfer_engine)
        await coordinator.claim(link_id, "wallet-b")

        released = await coordinator.resolve_pending_claim(link_id)

        assert released.status == ClaimStatus.FAILED
        assert released.retryable is True
        assert released.link.state == LinkState.FUNDED
        assert released.reason == "claim was not executed by the engine"

        transfer_engine.fail_next_claims(ClaimOutcomeUnknown("timeout"))
        await coordinator.claim(link_id, "wallet-b")
        transfer_engine.simulate_rejection(f"{link_id}:2", "recipient closed")

        rejected = await coordinator.resolve_pending_claim(link_id)

        assert rejected.status == ClaimStatus.FAILED
        assert rejected.retryable is False
        assert rejected.reason == "recipient closed"

    async def test_blank_receipt_keeps_gate(self, db_session):
        class BlankReceiptEngine(StubTransferEngine):
            def claim(self, amount, asset, recipient_ref, idempotency_key):
                return ClaimReceipt(transfer_ref="", amount=amount)

        link_id = await new_funded_link(db_session)

        result = await AsyncClaimCoordinator(db_session, BlankReceiptEngine()).claim(
            link_id, "wallet-b"
        )

        assert result.status == ClaimStatus.IN_PROGRESS
        assert result.link.state == LinkState.CLAIMING

    async def test_reopen(self, db_session):
        engine = StubTransferEngine()
        link_id = await new_funded_link(db_session)
        engine.fail_next_claims(ClaimOutcomeUnknown("timeout"))
        coordinator = AsyncClaimCoordinator(db_session, engine)
        await coordinator.claim(link_id, "wallet-b")
        engine.simulate_rejection(f"{link_id}:1", "recipient closed")

        failed = await coordinator.resolve_pending_claim(link_id)
        assert failed.link.state == LinkState.CLAIM_FAILED

        reopened = await coordinator.reopen_failed_claim(link_id, "recipient reopened")
        assert reopened.status == ClaimStatus.REOPENED
        assert reopened.link.state == LinkState.FUNDED

        second = await coordinator.claim(link_id, "wallet-b")
        assert second.status == ClaimStatus.SUCCESS
        assert engine.claim_calls[-1]["idempotency_key"] == f"{link_id}:2"

    async def test_concurrent_claims_single_winner(
        self, async_session_factory, db_session, transfer_engine
    ):
        link_id = await new_funded_link(db_session)

        async def attempt(claimant: str):
            async with async_session_factory() as session:
                return await AsyncClaimCoordinator(session, transfer_engine).claim(
                    link_id, claimant
                )

        results = await asyncio.gather(*(attempt(f"wallet-{i}") for i in range(6)))

        statuses = [r.status for r in results]
        assert statuses.count(ClaimStatus.SUCCESS) == 1
        assert set(statuses) <= {
            ClaimStatus.SUCCESS,
            ClaimStatus.IN_PROGRESS,
            ClaimStatus.ALREADY_CLAIMED,
        }
        assert transfer_engine.settled_claims == 1


class TestAsyncLinkLifecycle:
    async def test_end_to_end(self, db_session, transfer_engine, ledger_config):
        lifecycle = AsyncLinkLifecycle(db_session, transfer_engine, config=ledger_config)

        link = await lifecycle.create_link(amount="0.01", asset="X", creator_ref="wallet-a")
        assert link.fee_amount == Decimal("0.0001")

        await lifecycle.report_funding(link.id, "tx1")
        result = await lifecycle.claim_link(link.id, "wallet-b")
        assert result.success
        assert result.deliverable_amount == Decimal("0.0099")

        history = await lifecycle.history("wallet-b")
        assert [item.id for item in history.received] == [link.id]
        assert history.sent == []
