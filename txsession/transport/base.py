"""
Transport client interface.

A transport wraps a raw broker connection. Sessions only talk to brokers
through these operations; wire encoding lives below this line.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from txsession.session.delivery import RecordMetadata
from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult

# callback(metadata, failure): exactly one of the two is None
SendCallback = Callable[[Optional[RecordMetadata], Optional[RpcResult]], None]


class TransportClient(ABC):
    """Abstract base class for broker transports."""

    @abstractmethod
    def init_producer_id(self, transactional_id: str) -> RpcResult:
        """
        Mint a producer identity for a transactional id.

        Bumps the epoch of an existing identity, fencing older instances and
        aborting any transaction they left open.

        Returns:
            RpcResult with ``identity`` set on success
        """

    @abstractmethod
    def set_producer_identity(self, identity: ProducerIdentity) -> None:
        """Adopt a previously minted identity without contacting the broker."""

    @abstractmethod
    def begin_transaction(self) -> None:
        """Mark the start of a transaction (local to the client)."""

    @abstractmethod
    def send(
        self,
        topic: str,
        partition: int,
        key: Optional[bytes],
        value: Optional[bytes],
        callback: SendCallback,
    ) -> None:
        """
        Enqueue a record for asynchronous delivery.

        The callback is invoked exactly once on a transport worker thread,
        unless the transport is closed before the record is delivered.
        """

    @abstractmethod
    def add_partitions_to_transaction(
        self,
        partitions: List[Tuple[str, int]],
    ) -> RpcResult:
        """Register (topic, partition) pairs with the transaction coordinator."""

    @abstractmethod
    def commit_transaction(self) -> RpcResult:
        """Ask the coordinator to commit the current transaction."""

    @abstractmethod
    def abort_transaction(self) -> RpcResult:
        """Ask the coordinator to abort the current transaction."""

    @abstractmethod
    def flush(self, timeout: Optional[float] = None) -> None:
        """Push every enqueued record to the broker."""

    @abstractmethod
    def partitions_for(self, topic: str) -> RpcResult:
        """Look up partition numbers of a topic (``partitions`` on success)."""

    @abstractmethod
    def close(self, timeout: Optional[float] = None) -> None:
        """Release resources, waiting at most ``timeout`` seconds."""
