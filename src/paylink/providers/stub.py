"""In-memory transfer engine for local development and testing.

Replace with RelayerTransferEngine (or another adapter) for production.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from decimal import Decimal
from typing import Any, Callable

from paylink.providers.base import (
    ClaimOutcomeUnknown,
    ClaimReceipt,
    ClaimStatusResult,
    TerminalFailure,
    TransientFailure,
)


class StubTransferEngine:
    """Stub engine with failure injection.

    Claims are keyed by idempotency key: a repeated claim with a settled key
    returns the original receipt instead of paying twice.

    Failure injection:
        engine.fail_next_claims(TransientFailure("not yet"), count=2)
        engine.fail_next_claims(ClaimOutcomeUnknown("timeout"))

    An injected ClaimOutcomeUnknown can be set to have moved value anyway
    (`executed=True`), which is what a real timeout may look like.
    """

    engine_name = "stub"

    def __init__(self, before_claim: Callable[[str], None] | None = None):
        """Initialize stub engine.

        Args:
            before_claim: Optional hook called with the idempotency key
                before each claim is processed. Tests use it to observe or
                interfere with the ledger while the claim gate is held.
        """
        self.before_claim = before_claim
        self._lock = threading.Lock()
        self._failures: deque[tuple[Exception, bool]] = deque()
        self._funded: dict[str, dict[str, Any]] = {}
        self._claims: dict[str, dict[str, Any]] = {}
        self.claim_calls: list[dict[str, Any]] = []

    def fund(self, amount: Decimal, asset: str) -> str:
        """Record a funding transfer and return its reference."""
        transfer_ref = f"FUND-{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._funded[transfer_ref] = {"amount": amount, "asset": asset}
        return transfer_ref

    def claim(
        self,
        amount: Decimal,
        asset: str,
        recipient_ref: str,
        idempotency_key: str,
    ) -> ClaimReceipt:
        """Process a claim, honouring any injected failure first."""
        if self.before_claim is not None:
            self.before_claim(idempotency_key)

        with self._lock:
            self.claim_calls.append(
                {
                    "amount": amount,
                    "asset": asset,
                    "recipient_ref": recipient_ref,
                    "idempotency_key": idempotency_key,
                }
            )

            existing = self._claims.get(idempotency_key)
            if existing and existing["status"] == ClaimStatusResult.SETTLED:
                return ClaimReceipt(transfer_ref=existing["transfer_ref"], amount=existing["amount"])

            if self._failures:
                error, executed = self._failures.popleft()
                if isinstance(error, TerminalFailure):
                    self._claims[idempotency_key] = {
                        "status": ClaimStatusResult.REJECTED,
                        "message": str(error),
                    }
                elif isinstance(error, ClaimOutcomeUnknown) and executed:
                    self._settle(idempotency_key, amount)
                raise error

            receipt = self._settle(idempotency_key, amount)
        return receipt

    def claim_status(self, idempotency_key: str) -> ClaimStatusResult:
        """Return the recorded outcome for an idempotency key."""
        with self._lock:
            record = self._claims.get(idempotency_key)
        if record is None:
            return ClaimStatusResult(status=ClaimStatusResult.NOT_FOUND)
        return ClaimStatusResult(
            status=record["status"],
            transfer_ref=record.get("transfer_ref"),
            message=record.get("message", ""),
        )

    def _settle(self, idempotency_key: str, amount: Decimal) -> ClaimReceipt:
        transfer_ref = f"CLAIM-{uuid.uuid4().hex[:16]}"
        self._claims[idempotency_key] = {
            "status": ClaimStatusResult.SETTLED,
            "transfer_ref": transfer_ref,
            "amount": amount,
        }
        return ClaimReceipt(transfer_ref=transfer_ref, amount=amount)

    def fail_next_claims(
        self, error: Exception, count: int = 1, *, executed: bool = False
    ) -> None:
        """Make the next `count` claims raise `error` (for testing).

        Args:
            error: TransientFailure, TerminalFailure or ClaimOutcomeUnknown
            count: Number of claims to fail
            executed: For ClaimOutcomeUnknown only, settle the claim anyway
        """
        if not isinstance(error, (TransientFailure, TerminalFailure, ClaimOutcomeUnknown)):
            raise TypeError(f"Unsupported engine failure: {type(error).__name__}")
        with self._lock:
            for _ in range(count):
                self._failures.append((error, executed))

    def simulate_pending(self, idempotency_key: str) -> None:
        """Mark a claim as still in flight on the engine side (for testing)."""
        with self._lock:
            self._claims[idempotency_key] = {"status": ClaimStatusResult.PENDING}

    def simulate_rejection(self, idempotency_key: str, message: str = "rejected") -> None:
        """Mark a claim as rejected on the engine side (for testing)."""
        with self._lock:
            self._claims[idempotency_key] = {
                "status": ClaimStatusResult.REJECTED,
                "message": message,
            }

    @property
    def settled_claims(self) -> int:
        """Number of distinct claims that moved value."""
        with self._lock:
            return sum(
                1 for c in self._claims.values() if c["status"] == ClaimStatusResult.SETTLED
            )
