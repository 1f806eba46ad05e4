"""Link ledger services."""

from paylink.services.claim_coordinator import (
    AsyncClaimCoordinator,
    ClaimCoordinator,
    ClaimResult,
    ClaimStatus,
)
from paylink.services.fees import compute_fee, deliverable_amount
from paylink.services.link_store import (
    AsyncLinkStore,
    Link,
    LinkStore,
    Transfer,
    TransitionResult,
)
from paylink.services.reconciler import (
    AsyncReconciler,
    FundingResult,
    FundingStatus,
    Reconciler,
)
from paylink.services.state_machine import LinkState, LinkStateMachine

__all__ = [
    # State machine
    "LinkState",
    "LinkStateMachine",
    # Fees
    "compute_fee",
    "deliverable_amount",
    # Store
    "Link",
    "Transfer",
    "TransitionResult",
    "LinkStore",
    "AsyncLinkStore",
    # Reconciler
    "FundingStatus",
    "FundingResult",
    "Reconciler",
    "AsyncReconciler",
    # Claims
    "ClaimStatus",
    "ClaimResult",
    "ClaimCoordinator",
    "AsyncClaimCoordinator",
]
