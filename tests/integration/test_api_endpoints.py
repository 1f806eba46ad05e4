"""API endpoint integration tests.

Tests the FastAPI endpoints for link creation, funding and claims.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import text

from paylink.providers import ClaimOutcomeUnknown, StubTransferEngine, TerminalFailure, TransientFailure

pytestmark = pytest.mark.asyncio


async def create_link(client: AsyncClient, **overrides) -> dict:
    payload = {"amount": "100", "asset": "X", "creator_ref": "wallet-a"}
    payload.update(overrides)
    response = await client.post("/api/v1/links", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def funded_link(client: AsyncClient, transfer_ref: str = "tx1") -> str:
    link_id = (await create_link(client))["link_id"]
    response = await client.post(
        f"/api/v1/links/{link_id}/funding", json={"transfer_ref": transfer_ref}
    )
    assert response.status_code == 200
    return link_id


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should report the database as healthy."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["transfer_engine"] == "stub"
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestCreateLink:
    """POST /api/v1/links"""

    async def test_create_link(self, client: AsyncClient):
        """New links start in created with the default 1% fee."""
        data = await create_link(client)

        assert data["state"] == "created"
        assert data["amount"] == "100"
        assert data["fee_amount"] == "1"
        assert data["asset"] == "X"
        assert data["share_url"].endswith(f"/{data['link_id']}")

    async def test_create_with_explicit_fee(self, client: AsyncClient):
        data = await create_link(client, amount="0.01", fee_amount="0.006")

        assert data["amount"] == "0.01"
        assert data["fee_amount"] == "0.006"

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"amount": "0"}, "amount"),
            ({"amount": "-5"}, "amount"),
            ({"amount": "abc"}, "amount"),
            ({"amount": "0.0000000001"}, "amount"),
            ({"amount": "123456789012345678901234567.5"}, "amount"),
            ({"asset": ""}, "asset"),
            ({"asset": "bad asset!"}, "asset"),
            ({"fee_amount": "100"}, "fee_amount"),
        ],
    )
    async def test_create_rejects_invalid_input(self, client: AsyncClient, overrides, field):
        """Invalid input answers 400 with the offending field and creates nothing."""
        payload = {"amount": "100", "asset": "X", "creator_ref": "wallet-a", **overrides}
        response = await client.post("/api/v1/links", json=payload)

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["field"] == field

        listing = await client.get("/api/v1/links", params={"creator_ref": "wallet-a"})
        assert listing.json()["total"] == 0


class TestGetLink:
    """GET /api/v1/links/{link_id}"""

    async def test_get_link(self, client: AsyncClient):
        created = await create_link(client)

        response = await client.get(f"/api/v1/links/{created['link_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["link_id"] == created["link_id"]
        assert data["deliverable_amount"] == "99"
        assert data["claim_attempts"] == 0
        assert data["funding_transfer_ref"] is None

    async def test_get_missing_link(self, client: AsyncClient):
        response = await client.get("/api/v1/links/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Link not found"

    async def test_list_by_creator(self, client: AsyncClient):
        first = await create_link(client)
        second = await create_link(client)
        await create_link(client, creator_ref="wallet-z")

        response = await client.get("/api/v1/links", params={"creator_ref": "wallet-a"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert {item["link_id"] for item in data["items"]} == {
            first["link_id"],
            second["link_id"],
        }

    async def test_list_requires_creator(self, client: AsyncClient):
        response = await client.get("/api/v1/links")
        assert response.status_code == 422


class TestFunding:
    """POST /api/v1/links/{link_id}/funding"""

    async def test_apply_and_repeat(self, client: AsyncClient):
        """The same report is idempotent; a different ref conflicts."""
        link_id = (await create_link(client))["link_id"]
        url = f"/api/v1/links/{link_id}/funding"

        first = await client.post(url, json={"transfer_ref": "tx1"})
        assert first.status_code == 200
        assert first.json()["status"] == "applied"
        assert first.json()["funding_transfer_ref"] == "tx1"

        repeat = await client.post(url, json={"transfer_ref": "tx1"})
        assert repeat.status_code == 200
        assert repeat.json()["status"] == "already_applied"

        conflict = await client.post(url, json={"transfer_ref": "tx2"})
        assert conflict.status_code == 409
        assert conflict.json()["status"] == "conflict"
        assert conflict.json()["funding_transfer_ref"] == "tx1"

    async def test_unknown_link(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/links/missing/funding", json={"transfer_ref": "tx1"}
        )
        assert response.status_code == 404
        assert response.json()["status"] == "not_found"

    async def test_blank_transfer_ref(self, client: AsyncClient):
        link_id = (await create_link(client))["link_id"]
        response = await client.post(
            f"/api/v1/links/{link_id}/funding", json={"transfer_ref": ""}
        )
        assert response.status_code == 422


class TestClaim:
    """POST /api/v1/links/{link_id}/claim"""

    async def test_claim_success_then_already_claimed(
        self, client: AsyncClient, transfer_engine: StubTransferEngine
    ):
        link_id = await funded_link(client)
        url = f"/api/v1/links/{link_id}/claim"

        response = await client.post(url, json={"claimant_ref": "wallet-b"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["deliverable_amount"] == "99"
        assert data["claim_transfer_ref"].startswith("CLAIM-")

        again = await client.post(url, json={"claimant_ref": "wallet-c"})
        assert again.status_code == 409
        assert again.json()["status"] == "already_claimed"
        assert again.json()["claim_transfer_ref"] == data["claim_transfer_ref"]

        assert transfer_engine.settled_claims == 1
        link = (await client.get(f"/api/v1/links/{link_id}")).json()
        assert link["state"] == "claimed"
        assert link["claimant_ref"] == "wallet-b"

    async def test_claim_unfunded(self, client: AsyncClient, transfer_engine: StubTransferEngine):
        link_id = (await create_link(client))["link_id"]

        response = await client.post(
            f"/api/v1/links/{link_id}/claim", json={"claimant_ref": "wallet-b"}
        )

        assert response.status_code == 409
        assert response.json()["status"] == "not_funded"
        assert transfer_engine.claim_calls == []

    async def test_claim_missing(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/links/missing/claim", json={"claimant_ref": "wallet-b"}
        )
        assert response.status_code == 404
        assert response.json()["status"] == "not_found"

    async def test_transient_failure_is_retryable(
        self, client: AsyncClient, transfer_engine: StubTransferEngine
    ):
        link_id = await funded_link(client)
        transfer_engine.fail_next_claims(TransientFailure("engine busy"))
        url = f"/api/v1/links/{link_id}/claim"

        response = await client.post(url, json={"claimant_ref": "wallet-b"})
        assert response.status_code == 503
        assert response.json()["retryable"] is True

        link = (await client.get(f"/api/v1/links/{link_id}")).json()
        assert link["state"] == "funded"

        retry = await client.post(url, json={"claimant_ref": "wallet-b"})
        assert retry.status_code == 200

    async def test_terminal_failure(self, client: AsyncClient, transfer_engine: StubTransferEngine):
        link_id = await funded_link(client)
        transfer_engine.fail_next_claims(TerminalFailure("recipient invalid"))

        response = await client.post(
            f"/api/v1/links/{link_id}/claim", json={"claimant_ref": "wallet-b"}
        )

        assert response.status_code == 422
        data = response.json()
        assert data["status"] == "failed"
        assert data["retryable"] is False
        assert "recipient invalid" in data["reason"]

        link = (await client.get(f"/api/v1/links/{link_id}")).json()
        assert link["state"] == "claim_failed"
        assert link["last_claim_error"] == "recipient invalid"

    async def test_unknown_outcome_leaves_claim_in_progress(
        self, client: AsyncClient, transfer_engine: StubTransferEngine
    ):
        link_id = await funded_link(client)
        transfer_engine.fail_next_claims(ClaimOutcomeUnknown("timeout"), executed=True)
        url = f"/api/v1/links/{link_id}/claim"

        response = await client.post(url, json={"claimant_ref": "wallet-b"})
        assert response.status_code == 409
        assert response.json()["status"] == "in_progress"

        second = await client.post(url, json={"claimant_ref": "wallet-c"})
        assert second.status_code == 409
        assert second.json()["status"] == "in_progress"
        assert len(transfer_engine.claim_calls) == 1

    async def test_blank_claimant(self, client: AsyncClient):
        link_id = await funded_link(client)
        response = await client.post(
            f"/api/v1/links/{link_id}/claim", json={"claimant_ref": ""}
        )
        assert response.status_code == 422

    async def test_consistency_violation_is_500(
        self, client: AsyncClient, app, sync_engine
    ):
        """A row changed while the claim gate is held answers 500, never success."""

        def tamper(idempotency_key: str) -> None:
            link_id = idempotency_key.split(":")[0]
            with sync_engine.begin() as conn:
                conn.execute(
                    text(
                        "UPDATE payment_link SET state = 'funded', "
                        "pending_claimant_ref = NULL WHERE id = :id"
                    ),
                    {"id": link_id},
                )

        app.state.transfer_engine = StubTransferEngine(before_claim=tamper)
        link_id = await funded_link(client)

        response = await client.post(
            f"/api/v1/links/{link_id}/claim", json={"claimant_ref": "wallet-b"}
        )

        assert response.status_code == 500
        assert response.json()["code"] == "CONSISTENCY_ERROR"


class TestTransfersAndHistory:
    """Audit views over recorded transfers."""

    async def test_transfers(self, client: AsyncClient):
        link_id = await funded_link(client, transfer_ref="tx-fund")
        claim = await client.post(
            f"/api/v1/links/{link_id}/claim", json={"claimant_ref": "wallet-b"}
        )

        response = await client.get(f"/api/v1/links/{link_id}/transfers")

        assert response.status_code == 200
        items = response.json()["items"]
        assert [t["kind"] for t in items] == ["funding", "claim"]
        assert items[0]["transfer_ref"] == "tx-fund"
        assert items[0]["amount"] == "100"
        assert items[0]["counterparty_ref"] == "wallet-a"
        assert items[1]["transfer_ref"] == claim.json()["claim_transfer_ref"]
        assert items[1]["amount"] == "99"
        assert items[1]["counterparty_ref"] == "wallet-b"

    async def test_transfers_missing_link(self, client: AsyncClient):
        response = await client.get("/api/v1/links/missing/transfers")
        assert response.status_code == 404

    async def test_history(self, client: AsyncClient):
        link_id = await funded_link(client)
        await client.post(f"/api/v1/links/{link_id}/claim", json={"claimant_ref": "wallet-b"})

        sender = (await client.get("/api/v1/history/wallet-a")).json()
        receiver = (await client.get("/api/v1/history/wallet-b")).json()

        assert [link["link_id"] for link in sender["sent"]] == [link_id]
        assert sender["received"] == []
        assert receiver["sent"] == []
        assert [link["link_id"] for link in receiver["received"]] == [link_id]
