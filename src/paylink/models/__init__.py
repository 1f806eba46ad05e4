"""ORM models for the payment link ledger."""

from paylink.models.base import Base
from paylink.models.link import LinkTransfer, PaymentLink

__all__ = [
    "Base",
    "LinkTransfer",
    "PaymentLink",
]
