"""
Session state machine.

Local mirror of the coordinator-side transaction state. The broker remains
authoritative; this only decides which calls are legal locally.
"""

from enum import Enum


class SessionState(Enum):
    """
    Producer session lifecycle states.

    State transitions:
    UNINITIALIZED → READY → IN_TRANSACTION → COMMITTING → READY
                                           ↘ ABORTING  ↗
    any state → CLOSED (terminal)
    """

    UNINITIALIZED = "UNINITIALIZED"  # No identity acquired yet
    READY = "READY"  # Identity acquired, no transaction begun
    IN_TRANSACTION = "IN_TRANSACTION"  # Transaction begun, sends allowed
    COMMITTING = "COMMITTING"  # EndTxn(commit) in flight
    ABORTING = "ABORTING"  # EndTxn(abort) in flight
    CLOSED = "CLOSED"  # Terminal

    def is_terminal(self) -> bool:
        """Check if state is terminal (closed)."""
        return self is SessionState.CLOSED

    def has_identity(self) -> bool:
        """Check if a producer identity has been acquired in this state."""
        return self not in (SessionState.UNINITIALIZED, SessionState.CLOSED)

    def is_completing(self) -> bool:
        return self in (SessionState.COMMITTING, SessionState.ABORTING)

    def can_transition_to(self, new_state: "SessionState") -> bool:
        """
        Check if transition to new state is valid.

        Args:
            new_state: Target state

        Returns:
            True if transition is valid
        """
        if self is SessionState.CLOSED:
            return False

        if new_state is SessionState.CLOSED:
            return True

        return new_state in _VALID_TRANSITIONS.get(self, frozenset())


# COMMITTING/ABORTING fall back to IN_TRANSACTION when the broker could not
# be reached, so the same call can be retried.
_VALID_TRANSITIONS = {
    SessionState.UNINITIALIZED: frozenset({SessionState.READY}),
    SessionState.READY: frozenset({
        SessionState.IN_TRANSACTION,
        SessionState.COMMITTING,
        SessionState.ABORTING,
    }),
    SessionState.IN_TRANSACTION: frozenset({
        SessionState.COMMITTING,
        SessionState.ABORTING,
    }),
    SessionState.COMMITTING: frozenset({
        SessionState.READY,
        SessionState.IN_TRANSACTION,
    }),
    SessionState.ABORTING: frozenset({
        SessionState.READY,
        SessionState.IN_TRANSACTION,
    }),
    SessionState.CLOSED: frozenset(),
}
