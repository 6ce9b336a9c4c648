"""
Tagged results for broker RPCs.

Transports report every coordinator call as an RpcResult instead of a
boolean, so the session can tell "committed now" from "already committed by
another owner" and from "fenced".
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from txsession.session.errors import (
    DeliveryError,
    FencingError,
    IllegalStateError,
    SessionError,
    TransportError,
)
from txsession.session.identity import ProducerIdentity


class RpcStatus(Enum):
    """Outcome of a broker RPC."""

    OK = "OK"
    NOOP = "NOOP"  # Accepted, nothing to do (transaction already completed)
    FENCED = "FENCED"
    COORDINATOR_UNAVAILABLE = "COORDINATOR_UNAVAILABLE"
    REQUEST_TIMED_OUT = "REQUEST_TIMED_OUT"
    INVALID_TXN_STATE = "INVALID_TXN_STATE"
    UNKNOWN_TOPIC = "UNKNOWN_TOPIC"
    RECORD_TOO_LARGE = "RECORD_TOO_LARGE"

    def is_success(self) -> bool:
        return self in (RpcStatus.OK, RpcStatus.NOOP)


_ERROR_TYPES = {
    RpcStatus.FENCED: FencingError,
    RpcStatus.COORDINATOR_UNAVAILABLE: TransportError,
    RpcStatus.REQUEST_TIMED_OUT: TransportError,
    RpcStatus.INVALID_TXN_STATE: IllegalStateError,
    RpcStatus.UNKNOWN_TOPIC: DeliveryError,
    RpcStatus.RECORD_TOO_LARGE: DeliveryError,
}


@dataclass
class RpcResult:
    """
    Result of a broker RPC.

    Attributes:
        status: Outcome tag
        identity: Identity minted by init_producer_id (if any)
        error: Broker-supplied error detail
        partitions: Partition numbers (partitions_for only)
    """
    status: RpcStatus
    identity: Optional[ProducerIdentity] = None
    error: Optional[str] = None
    partitions: List[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status.is_success()

    @classmethod
    def ok(cls, **kwargs) -> "RpcResult":
        return cls(status=RpcStatus.OK, **kwargs)

    @classmethod
    def noop(cls, error: Optional[str] = None) -> "RpcResult":
        return cls(status=RpcStatus.NOOP, error=error)

    @classmethod
    def failure(cls, status: RpcStatus, error: str) -> "RpcResult":
        return cls(status=status, error=error)


def to_exception(
    result: RpcResult,
    operation: str,
    transactional_id: Optional[str] = None,
    identity: Optional[ProducerIdentity] = None,
) -> Optional[SessionError]:
    """
    Build the exception matching a failed result.

    Args:
        result: RPC result
        operation: Name of the session operation (for the message)
        transactional_id: Transactional ID for error context
        identity: Producer identity for error context

    Returns:
        Exception, or None if the result is a success
    """
    if result.success:
        return None

    error_type = _ERROR_TYPES.get(result.status, TransportError)
    detail = result.error or result.status.value
    return error_type(
        f"{operation} failed: {detail}",
        transactional_id=transactional_id,
        identity=identity,
    )


def raise_for_status(
    result: RpcResult,
    operation: str,
    transactional_id: Optional[str] = None,
    identity: Optional[ProducerIdentity] = None,
) -> RpcResult:
    """
    Raise the matching SessionError unless the result is OK or NOOP.

    Returns:
        The result itself on success
    """
    error = to_exception(result, operation, transactional_id, identity)
    if error is not None:
        raise error
    return result
