"""Exception types raised by the link ledger.

Conflicts are not exceptions: a compare-and-transition that finds the link in
another state returns a TransitionResult with applied=False and callers map it
to a typed outcome. Only the cases below interrupt control flow.
"""

from __future__ import annotations


class LinkValidationError(ValueError):
    """Raised when link input is rejected before reaching the state machine."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class InvalidTransitionError(Exception):
    """Raised when code asks the store for a transition the state table forbids."""

    def __init__(self, from_state: str, to_state: str, reason: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        msg = f"Invalid transition from '{from_state}' to '{to_state}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class LedgerConsistencyError(RuntimeError):
    """Raised when a transition only the gate holder can perform did not apply.

    This means a row was changed behind the store's back. It must alert an
    operator and is never retried automatically.
    """

    def __init__(self, link_id: str, expected_state: str, found_state: str | None):
        self.link_id = link_id
        self.expected_state = expected_state
        self.found_state = found_state
        super().__init__(
            f"Link {link_id} expected in '{expected_state}' but found "
            f"'{found_state or 'missing'}'; row modified outside the claim gate"
        )
