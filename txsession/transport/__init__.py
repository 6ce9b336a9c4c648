"""Transport boundary between a session and the broker."""

from txsession.transport.base import SendCallback, TransportClient

__all__ = [
    "SendCallback",
    "TransportClient",
]
