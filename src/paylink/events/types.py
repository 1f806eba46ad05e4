"""Domain event types for link ledger operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata (correlation_id is the link id)
- Serializable for logging and notification

Events describe what already happened; they are emitted after the
transition they describe has committed.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    LINK = "link"
    FUNDING = "funding"
    CLAIM = "claim"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: str  # Link id
    actor_type: str  # 'user', 'system', 'operator', 'webhook'
    source_service: str  # Service that emitted
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        correlation_id: str,
        actor_type: str = "system",
        source_service: str = "paylink",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize_dict(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Link Events
# =============================================================================


@dataclass(frozen=True)
class LinkCreated(DomainEvent):
    """A payment link was created."""

    link_id: str
    requested_amount: Decimal
    fee_amount: Decimal
    asset: str
    creator_ref: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.LINK


# =============================================================================
# Funding Events
# =============================================================================


@dataclass(frozen=True)
class FundingApplied(DomainEvent):
    """A funding notification moved a link from created to funded."""

    link_id: str
    funding_transfer_ref: str
    amount: Decimal
    asset: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.FUNDING


@dataclass(frozen=True)
class FundingConflictDetected(DomainEvent):
    """A funding notification named a different transfer than the one recorded.

    The recorded reference is kept; operators must investigate the other one.
    """

    link_id: str
    recorded_transfer_ref: str | None
    reported_transfer_ref: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.FUNDING


# =============================================================================
# Claim Events
# =============================================================================


@dataclass(frozen=True)
class ClaimStarted(DomainEvent):
    """A claimant took the claim gate (funded -> claiming)."""

    link_id: str
    claimant_ref: str
    attempt: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimSucceeded(DomainEvent):
    """Value was delivered and the link is claimed."""

    link_id: str
    claimant_ref: str
    claim_transfer_ref: str
    deliverable_amount: Decimal
    fee_amount: Decimal
    asset: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimReleased(DomainEvent):
    """A transient engine failure released the gate (claiming -> funded)."""

    link_id: str
    claimant_ref: str
    reason: str
    attempts: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimRejected(DomainEvent):
    """The engine rejected the claim terminally (claiming -> claim_failed)."""

    link_id: str
    claimant_ref: str
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimOutcomeUnknown(DomainEvent):
    """The engine gave no definitive answer; the gate stays held."""

    link_id: str
    claimant_ref: str
    idempotency_key: str
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimResolved(DomainEvent):
    """A link stuck in claiming was resolved from the engine's status."""

    link_id: str
    engine_status: str
    new_state: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ClaimReopened(DomainEvent):
    """An operator reopened a failed claim (claim_failed -> funded)."""

    link_id: str
    reason: str
    previous_error: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM


@dataclass(frozen=True)
class ConsistencyViolation(DomainEvent):
    """A transition only the gate holder may perform did not apply.

    Requires operator attention; value may have moved without being recorded.
    """

    link_id: str
    expected_state: str
    found_state: str | None
    claim_transfer_ref: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.CLAIM
