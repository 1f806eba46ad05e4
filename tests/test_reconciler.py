"""Tests for idempotent funding reconciliation."""

import logging

import pytest

from paylink.errors import LinkValidationError
from paylink.events import FundingApplied, FundingConflictDetected
from paylink.services.reconciler import FundingStatus, Reconciler
from paylink.services.state_machine import LinkState


@pytest.fixture
def reconciler(session, emitter) -> Reconciler:
    return Reconciler(session, emitter=emitter)


class TestReportFunding:
    """report_funding folds at-least-once notifications into link state."""

    def test_first_notice_applies(self, reconciler, created_link, recorded_events):
        result = reconciler.report_funding(created_link.id, "tx1")

        assert result.status == FundingStatus.APPLIED
        assert result.ok
        assert result.link.state == LinkState.FUNDED
        assert result.link.funding_transfer_ref == "tx1"
        assert [type(e) for e in recorded_events] == [FundingApplied]

    def test_duplicate_notice_is_noop(self, reconciler, created_link, recorded_events):
        reconciler.report_funding(created_link.id, "tx1")
        result = reconciler.report_funding(created_link.id, "tx1")

        assert result.status == FundingStatus.ALREADY_APPLIED
        assert result.ok
        assert result.link.funding_transfer_ref == "tx1"
        # Only the first notice produced an event
        assert len(recorded_events) == 1

    def test_different_transfer_is_conflict(
        self, reconciler, created_link, recorded_events, caplog
    ):
        reconciler.report_funding(created_link.id, "tx1")
        with caplog.at_level(logging.ERROR, logger="paylink.services.reconciler"):
            result = reconciler.report_funding(created_link.id, "tx2")

        assert result.status == FundingStatus.CONFLICT
        assert not result.ok
        # Recorded reference is never overwritten
        assert result.link.funding_transfer_ref == "tx1"
        assert reconciler.store.get(created_link.id).funding_transfer_ref == "tx1"

        conflict = recorded_events[-1]
        assert isinstance(conflict, FundingConflictDetected)
        assert conflict.recorded_transfer_ref == "tx1"
        assert conflict.reported_transfer_ref == "tx2"
        assert "Funding conflict" in caplog.text

    def test_unknown_link_not_found(self, reconciler):
        result = reconciler.report_funding("missing", "tx1")
        assert result.status == FundingStatus.NOT_FOUND
        assert result.link is None

    def test_blank_transfer_ref_rejected(self, reconciler, created_link):
        with pytest.raises(LinkValidationError):
            reconciler.report_funding(created_link.id, "   ")

    def test_duplicate_notice_after_claim_still_already_applied(
        self, lifecycle, funded_link
    ):
        """Late webhooks for a claimed link are harmless."""
        lifecycle.claim_link(funded_link.id, "wallet-b")
        result = lifecycle.report_funding(funded_link.id, "tx-fund-1")
        assert result.status == FundingStatus.ALREADY_APPLIED
        assert result.link.state == LinkState.CLAIMED

    def test_only_one_funding_transfer_recorded(self, reconciler, created_link):
        reconciler.report_funding(created_link.id, "tx1")
        reconciler.report_funding(created_link.id, "tx1")
        reconciler.report_funding(created_link.id, "tx2")

        transfers = reconciler.store.list_transfers(created_link.id)
        assert [(t.kind, t.transfer_ref) for t in transfers] == [("funding", "tx1")]
