"""HTTP relayer adapter for the value transfer engine.

The relayer performs the actual deposit/withdraw against the external
network. This adapter only maps its HTTP answers onto the engine failure
taxonomy:

    timeout                      -> ClaimOutcomeUnknown (value may have moved)
    connect error / 5xx / 429    -> TransientFailure
    other 4xx                    -> TerminalFailure

Relayer endpoints:
    POST /deposit              {amount, asset}                      -> {transfer_ref}
    POST /withdraw             {amount, asset, recipient, idempotency_key}
                                                                    -> {transfer_ref}
    GET  /withdraw/{key}                                            -> {status, transfer_ref?, message?}
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

from paylink.providers.base import (
    ClaimOutcomeUnknown,
    ClaimReceipt,
    ClaimStatusResult,
    TerminalFailure,
    TransientFailure,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RelayerTransferEngine:
    """Value transfer engine backed by an HTTP relayer."""

    engine_name = "relayer"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 60.0,
        client: httpx.Client | None = None,
    ):
        """Initialize relayer adapter.

        Args:
            base_url: Relayer base URL
            timeout_seconds: Per-request timeout. Claims that exceed it are
                reported as ClaimOutcomeUnknown, never as failures.
            client: Pre-built client (tests pass one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout_seconds)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def fund(self, amount: Decimal, asset: str) -> str:
        """Ask the relayer to deposit value for a link."""
        try:
            response = self._client.post("/deposit", json={"amount": str(amount), "asset": asset})
        except httpx.TimeoutException as e:
            raise TransientFailure(f"Relayer deposit timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientFailure(f"Relayer unreachable: {e}") from e

        self._raise_for_status(response, "deposit")
        return self._json(response)["transfer_ref"]

    def claim(
        self,
        amount: Decimal,
        asset: str,
        recipient_ref: str,
        idempotency_key: str,
    ) -> ClaimReceipt:
        """Ask the relayer to withdraw the deliverable amount to the recipient."""
        payload = {
            "amount": str(amount),
            "asset": asset,
            "recipient": recipient_ref,
            "idempotency_key": idempotency_key,
        }
        try:
            response = self._client.post("/withdraw", json=payload)
        except httpx.TimeoutException as e:
            logger.warning("Relayer withdraw %s timed out", idempotency_key)
            raise ClaimOutcomeUnknown(f"Relayer withdraw timed out: {e}") from e
        except httpx.TransportError as e:
            # Request never reached the relayer
            raise TransientFailure(f"Relayer unreachable: {e}") from e

        self._raise_for_status(response, "withdraw")
        # 2xx means the withdraw was accepted; an unreadable body cannot be a failure
        try:
            data = self._json(response)
        except TransientFailure as e:
            raise ClaimOutcomeUnknown("Relayer accepted withdraw with an unreadable body") from e
        transfer_ref = data.get("transfer_ref") if isinstance(data, dict) else None
        if not isinstance(transfer_ref, str) or not transfer_ref.strip():
            raise ClaimOutcomeUnknown("Relayer accepted withdraw without a transfer_ref")
        return ClaimReceipt(
            transfer_ref=transfer_ref,
            amount=Decimal(str(data.get("amount", amount))),
        )

    def claim_status(self, idempotency_key: str) -> ClaimStatusResult:
        """Query the relayer for a withdraw by idempotency key."""
        try:
            response = self._client.get(f"/withdraw/{idempotency_key}")
        except httpx.TransportError as e:
            raise TransientFailure(f"Relayer status check failed: {e}") from e

        if response.status_code == 404:
            return ClaimStatusResult(status=ClaimStatusResult.NOT_FOUND)
        self._raise_for_status(response, "status")

        data = self._json(response)
        status = data.get("status", "")
        if status not in (
            ClaimStatusResult.SETTLED,
            ClaimStatusResult.REJECTED,
            ClaimStatusResult.PENDING,
            ClaimStatusResult.NOT_FOUND,
        ):
            raise TransientFailure(f"Relayer returned unknown status {status!r}")
        return ClaimStatusResult(
            status=status,
            transfer_ref=data.get("transfer_ref"),
            message=data.get("message", ""),
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        detail = response.text[:200]
        if response.status_code in RETRYABLE_STATUS:
            raise TransientFailure(
                f"Relayer {operation} returned {response.status_code}: {detail}"
            )
        raise TerminalFailure(f"Relayer {operation} returned {response.status_code}: {detail}")

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise TransientFailure("Relayer returned a non-JSON body") from e
