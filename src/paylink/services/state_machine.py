"""Link state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from paylink.errors import InvalidTransitionError


class LinkState(str, Enum):
    """Link state values."""

    CREATED = "created"
    FUNDED = "funded"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    CLAIM_FAILED = "claim_failed"


class LinkStateMachine:
    """State machine for link state transitions.

    Allowed transitions:
    - created → funded (funding reconciled)
    - funded → claiming (claim gate taken)
    - claiming → claimed (engine claim succeeded)
    - claiming → funded (transient failure, gate released)
    - claiming → claim_failed (terminal failure)
    - claim_failed → funded (operator reopen only)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        LinkState.CREATED: [LinkState.FUNDED],
        LinkState.FUNDED: [LinkState.CLAIMING],
        LinkState.CLAIMING: [LinkState.CLAIMED, LinkState.FUNDED, LinkState.CLAIM_FAILED],
        LinkState.CLAIMED: [],  # Terminal state
        LinkState.CLAIM_FAILED: [LinkState.FUNDED],  # Administrative reopen
    }

    # Fields each target state requires from the transition itself
    REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
        LinkState.CLAIMED: ("claimant_ref", "claim_transfer_ref"),
        LinkState.CLAIMING: ("pending_claimant_ref",),
    }

    @classmethod
    def can_transition(cls, from_state: str, to_state: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(LinkState(from_state), [])
        return LinkState(to_state) in allowed

    @classmethod
    def validate_transition(
        cls, from_state: str, to_state: str, fields: dict[str, object] | None = None
    ) -> None:
        """Validate a transition and its field updates.

        Raises InvalidTransitionError if the edge is not in the table or a
        field the target state depends on is missing.
        """
        if not cls.can_transition(from_state, to_state):
            raise InvalidTransitionError(LinkState(from_state).value, LinkState(to_state).value)

        fields = fields or {}
        for name in cls.REQUIRED_FIELDS.get(LinkState(to_state), ()):
            if not fields.get(name):
                raise InvalidTransitionError(
                    LinkState(from_state).value,
                    LinkState(to_state).value,
                    f"'{name}' is required",
                )

        if (
            LinkState(from_state) == LinkState.CREATED
            and LinkState(to_state) == LinkState.FUNDED
            and not fields.get("funding_transfer_ref")
        ):
            raise InvalidTransitionError(
                LinkState.CREATED.value,
                LinkState.FUNDED.value,
                "'funding_transfer_ref' is required",
            )

    @classmethod
    def get_next_states(cls, current_state: str) -> list[str]:
        """Get list of valid next states from current state."""
        return [s.value for s in cls.VALID_TRANSITIONS.get(LinkState(current_state), [])]
