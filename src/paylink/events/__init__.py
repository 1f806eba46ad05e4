"""Link ledger domain events package.

This package provides:
- Typed domain events for link, funding and claim operations
- Event emitter for publishing events to handlers
"""

from paylink.events.emitter import EventEmitter, EventHandler
from paylink.events.types import (
    # Claim Events
    ClaimOutcomeUnknown,
    ClaimRejected,
    ClaimReleased,
    ClaimReopened,
    ClaimResolved,
    ClaimStarted,
    ClaimSucceeded,
    ConsistencyViolation,
    # Base
    DomainEvent,
    EventCategory,
    EventMetadata,
    # Funding Events
    FundingApplied,
    FundingConflictDetected,
    # Link Events
    LinkCreated,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    # Link Events
    "LinkCreated",
    # Funding Events
    "FundingApplied",
    "FundingConflictDetected",
    # Claim Events
    "ClaimStarted",
    "ClaimSucceeded",
    "ClaimReleased",
    "ClaimRejected",
    "ClaimOutcomeUnknown",
    "ClaimResolved",
    "ClaimReopened",
    "ConsistencyViolation",
    # Emitter
    "EventEmitter",
    "EventHandler",
]
