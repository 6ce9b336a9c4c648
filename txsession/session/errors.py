"""
Error taxonomy for producer sessions.

Callers branch on four kinds of failure:
- STATE_VIOLATION: call made outside its legal state window (programming error)
- TRANSPORT: broker unreachable or timed out (retriable by the caller)
- FENCED: a newer epoch owns the transactional id (fatal for this session)
- DELIVERY: a record was rejected for a reason unrelated to fencing
"""

from enum import Enum
from typing import Optional

from txsession.session.identity import ProducerIdentity


class ErrorKind(Enum):
    """Classification of session failures."""

    STATE_VIOLATION = "state_violation"
    TRANSPORT = "transport"
    FENCED = "fenced"
    DELIVERY = "delivery"


class SessionError(Exception):
    """Base class for all session failures."""

    kind: ErrorKind = ErrorKind.TRANSPORT
    retriable: bool = False

    def __init__(
        self,
        message: str,
        transactional_id: Optional[str] = None,
        identity: Optional[ProducerIdentity] = None,
    ):
        super().__init__(message)
        self.message = message
        self.transactional_id = transactional_id
        self.identity = identity

    def __str__(self) -> str:
        context = []
        if self.transactional_id is not None:
            context.append(f"transactional_id={self.transactional_id}")
        if self.identity is not None:
            context.append(f"identity={self.identity}")

        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class IllegalStateError(SessionError, RuntimeError):
    """Operation invoked outside its legal state window."""

    kind = ErrorKind.STATE_VIOLATION


class TransportError(SessionError):
    """Broker unreachable, or a coordinator request timed out."""

    kind = ErrorKind.TRANSPORT
    retriable = True


class FencingError(SessionError):
    """A newer epoch for the same transactional id superseded this session."""

    kind = ErrorKind.FENCED


class DeliveryError(SessionError):
    """A record was not accepted for a reason other than fencing."""

    kind = ErrorKind.DELIVERY


def classify(error: BaseException) -> ErrorKind:
    """
    Map any exception to an error kind.

    Exceptions raised below the session (sockets, timeouts from a transport
    library) count as transport failures.

    Args:
        error: Exception to classify

    Returns:
        Error kind
    """
    if isinstance(error, SessionError):
        return error.kind
    return ErrorKind.TRANSPORT


def is_retriable(error: BaseException) -> bool:
    """
    Check whether retrying the failed call (possibly after resume) can succeed.

    Args:
        error: Exception raised by a session operation

    Returns:
        True if the failure is retriable
    """
    if isinstance(error, SessionError):
        return error.retriable
    return classify(error) is ErrorKind.TRANSPORT
