"""Fee arithmetic for payment links.

Pure functions only. The fee is fixed when a link is created and is never
recomputed afterwards; the claimant receives requested_amount - fee_amount
through a single engine claim, with no separate fee transfer.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from paylink.config import FeePolicy


def compute_fee(amount: Decimal, policy: FeePolicy) -> Decimal:
    """Fee for a requested amount, rounded down to the policy quantum."""
    if amount <= 0:
        raise ValueError("Amount must be positive")
    return (amount * policy.rate).quantize(policy.quantum, rounding=ROUND_DOWN)


def deliverable_amount(requested_amount: Decimal, fee_amount: Decimal) -> Decimal:
    """Amount the claimant actually receives."""
    return requested_amount - fee_amount
