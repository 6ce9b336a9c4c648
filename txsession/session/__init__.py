"""
Producer sessions and the resume protocol.

Provides transactional sessions whose identity can be checkpointed and resumed.
"""

from txsession.session.config import SessionConfig
from txsession.session.delivery import DeliveryTracker, RecordMetadata
from txsession.session.errors import (
    DeliveryError,
    ErrorKind,
    FencingError,
    IllegalStateError,
    SessionError,
    TransportError,
    classify,
    is_retriable,
)
from txsession.session.factory import SessionFactory, TransactionCheckpoint
from txsession.session.identity import ProducerIdentity
from txsession.session.producer_session import ProducerSession
from txsession.session.result import RpcResult, RpcStatus
from txsession.session.state import SessionState

__all__ = [
    # Session
    "ProducerSession",
    "SessionConfig",
    "SessionState",
    "ProducerIdentity",
    # Resume
    "SessionFactory",
    "TransactionCheckpoint",
    # Delivery
    "DeliveryTracker",
    "RecordMetadata",
    # Results and errors
    "RpcResult",
    "RpcStatus",
    "ErrorKind",
    "SessionError",
    "IllegalStateError",
    "TransportError",
    "FencingError",
    "DeliveryError",
    "classify",
    "is_retriable",
]
