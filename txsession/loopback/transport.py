"""
TransportClient backed by a LoopbackBroker.

Coordinator RPCs run on the caller's thread; record delivery runs on a
single sender thread so records reach each partition in send order.
"""

import threading
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional, Set, Tuple

from txsession.loopback.broker import LoopbackBroker
from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult, RpcStatus
from txsession.transport.base import SendCallback, TransportClient
from txsession.utils.logging import get_logger

logger = get_logger(__name__)


class LoopbackTransport(TransportClient):
    """
    In-process transport for one transactional id.

    Mirrors the client-side bookkeeping of a transactional producer: an
    EndTxn request is only sent when partitions were added to the
    transaction, or when the identity was adopted through
    set_producer_identity() and the previous owner may have left one open.
    """

    def __init__(
        self,
        broker: LoopbackBroker,
        transactional_id: str,
        transaction_timeout_ms: Optional[int] = None,
    ):
        """
        Initialize loopback transport.

        Args:
            broker: Broker to talk to
            transactional_id: Transactional ID carried by produce/EndTxn requests
            transaction_timeout_ms: Timeout registered with init_producer_id
        """
        self.broker = broker
        self.transactional_id = transactional_id
        self.transaction_timeout_ms = transaction_timeout_ms

        self._identity: Optional[ProducerIdentity] = None
        self._partitions_added = False
        self._resumed = False

        self._closed = False
        self._in_flight: Set[Future] = set()
        self._in_flight_lock = threading.Lock()

        # Cleared by hold_deliveries() to keep records in flight
        self._delivery_gate = threading.Event()
        self._delivery_gate.set()

        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="loopback-sender",
        )

    @property
    def identity(self) -> Optional[ProducerIdentity]:
        return self._identity

    def init_producer_id(self, transactional_id: str) -> RpcResult:
        result = self.broker.init_producer_id(
            transactional_id,
            self.transaction_timeout_ms,
        )
        if result.success:
            self._identity = result.identity
            self._resumed = False
        return result

    def set_producer_identity(self, identity: ProducerIdentity) -> None:
        self._identity = identity
        self._resumed = True

        logger.debug(
            "Adopted producer identity",
            transactional_id=self.transactional_id,
            identity=str(identity),
        )

    def _require_identity(self) -> ProducerIdentity:
        if self._identity is None:
            raise RuntimeError("Producer identity not initialized")
        return self._identity

    def begin_transaction(self) -> None:
        self._require_identity()
        self._partitions_added = False
        self._resumed = False

    def add_partitions_to_transaction(
        self,
        partitions: List[Tuple[str, int]],
    ) -> RpcResult:
        result = self.broker.add_partitions(
            self.transactional_id,
            self._require_identity(),
            partitions,
        )
        if result.success:
            self._partitions_added = True
        return result

    def send(
        self,
        topic: str,
        partition: int,
        key: Optional[bytes],
        value: Optional[bytes],
        callback: SendCallback,
    ) -> None:
        if self._closed:
            raise RuntimeError("Transport is closed")

        identity = self._require_identity()

        future = self._executor.submit(
            self._deliver,
            identity,
            topic,
            partition,
            key,
            value,
            callback,
        )

        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def _deliver(
        self,
        identity: ProducerIdentity,
        topic: str,
        partition: int,
        key: Optional[bytes],
        value: Optional[bytes],
        callback: SendCallback,
    ) -> None:
        self._delivery_gate.wait()
        if self._closed:
            return

        result, metadata = self.broker.produce(
            self.transactional_id,
            identity,
            topic,
            partition,
            key,
            value,
        )

        if result.status is RpcStatus.OK:
            callback(metadata, None)
        else:
            logger.debug(
                "Produce rejected",
                transactional_id=self.transactional_id,
                topic=topic,
                partition=partition,
                status=result.status.value,
            )
            callback(None, result)

    def _end_transaction(self, commit: bool) -> RpcResult:
        identity = self._require_identity()

        if not self._partitions_added and not self._resumed:
            return RpcResult.noop("no partitions added to transaction")

        result = self.broker.end_transaction(self.transactional_id, identity, commit)

        if result.status not in (
            RpcStatus.COORDINATOR_UNAVAILABLE,
            RpcStatus.REQUEST_TIMED_OUT,
        ):
            self._partitions_added = False
            self._resumed = False

        return result

    def commit_transaction(self) -> RpcResult:
        return self._end_transaction(commit=True)

    def abort_transaction(self) -> RpcResult:
        return self._end_transaction(commit=False)

    def flush(self, timeout: Optional[float] = None) -> None:
        with self._in_flight_lock:
            pending = list(self._in_flight)

        if pending:
            futures.wait(pending, timeout=timeout)

    def partitions_for(self, topic: str) -> RpcResult:
        return self.broker.partitions_for(topic)

    def hold_deliveries(self) -> None:
        """Keep subsequent deliveries in flight until release_deliveries()."""
        self._delivery_gate.clear()

    def release_deliveries(self) -> None:
        self._delivery_gate.set()

    def close(self, timeout: Optional[float] = None) -> None:
        if self._closed:
            return

        self.flush(timeout)

        self._closed = True
        self._delivery_gate.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "LoopbackTransport closed",
            transactional_id=self.transactional_id,
        )
