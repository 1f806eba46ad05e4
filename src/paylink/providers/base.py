"""Base protocol and types for value transfer engines.

All engine adapters must implement the ValueTransferEngine protocol. The
engine is injected into the services that need it; nothing in the ledger
creates or caches an engine on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


class TransientFailure(Exception):
    """Engine could not complete the claim now; a later attempt may succeed.

    The caller can be certain no value moved.
    """


class TerminalFailure(Exception):
    """Engine rejected the claim; retrying with the same inputs cannot succeed."""


class ClaimOutcomeUnknown(Exception):
    """Engine did not give a definitive answer (e.g. timeout).

    Value may or may not have moved. The claim gate must stay held until the
    outcome is resolved with claim_status().
    """


@dataclass(frozen=True)
class ClaimReceipt:
    """Result of a successful engine claim."""

    transfer_ref: str
    amount: Decimal


@dataclass(frozen=True)
class ClaimStatusResult:
    """Engine's view of a previously submitted claim."""

    status: str  # pending/settled/rejected/not_found
    transfer_ref: str | None = None
    message: str = ""

    SETTLED = "settled"
    REJECTED = "rejected"
    PENDING = "pending"
    NOT_FOUND = "not_found"


class ValueTransferEngine(Protocol):
    """Protocol for the non-custodial engine that moves value.

    The engine offers no exactly-once guarantee of its own. The ledger gives
    claims exactly-once semantics by holding a claim gate around claim() and
    by passing an idempotency key that is stable for one claim attempt.
    """

    engine_name: str

    def fund(self, amount: Decimal, asset: str) -> str:
        """Move value into the engine for a link.

        Returns:
            Transfer reference. Completion is reported separately through
            the reconciler, not by this return value.
        """
        ...

    def claim(
        self,
        amount: Decimal,
        asset: str,
        recipient_ref: str,
        idempotency_key: str,
    ) -> ClaimReceipt:
        """Release value to a recipient.

        Args:
            amount: Deliverable amount (fee already deducted)
            asset: Asset identifier
            recipient_ref: Claimant reference (wallet address)
            idempotency_key: Stable key for this claim attempt

        Raises:
            TransientFailure: Nothing moved; may be retried.
            TerminalFailure: Rejected; must not be retried.
            ClaimOutcomeUnknown: No definitive answer.
        """
        ...

    def claim_status(self, idempotency_key: str) -> ClaimStatusResult:
        """Look up the outcome of a claim by its idempotency key."""
        ...
