"""
txsession - Transactional producer sessions with resumable identity.

A ProducerSession wraps a transactional producer client and adds the resume
protocol an external recovery mechanism needs:
- Capture the (producer_id, epoch) of an in-flight transaction
- Re-attach a fresh session to that identity after a failure
- Commit or abort the resumed transaction, idempotently
- Fencing of stale sessions by the broker's epoch check
"""

__version__ = "0.1.0"

from txsession.session import (
    ProducerSession,
    SessionConfig,
    SessionFactory,
    SessionState,
    TransactionCheckpoint,
)

__all__ = [
    "ProducerSession",
    "SessionConfig",
    "SessionFactory",
    "SessionState",
    "TransactionCheckpoint",
]
