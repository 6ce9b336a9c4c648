"""
In-process broker for exercising producer sessions without a cluster.

Holds topics (partition logs) and a transaction coordinator, and supports
the failure injection the conformance tests need: coordinator unavailability
and coordinator restart.
"""

import threading
from typing import Dict, List, Optional, Tuple

from txsession.loopback.coordinator import TransactionCoordinator, TransactionEntry
from txsession.loopback.partition_log import IsolationLevel, LogEntry, PartitionLog
from txsession.session.delivery import RecordMetadata
from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult, RpcStatus
from txsession.utils.logging import get_logger

logger = get_logger(__name__)


class LoopbackBroker:
    """
    Single in-memory broker.

    Example:
        broker = LoopbackBroker()
        broker.create_topic("orders", partitions=3)
        transport = LoopbackTransport(broker, "tx-1")
    """

    def __init__(
        self,
        default_partitions: int = 1,
        auto_create_topics: bool = True,
        max_record_bytes: int = 1048576,  # 1MB
        transaction_timeout_ms: int = 60000,
    ):
        """
        Initialize loopback broker.

        Args:
            default_partitions: Partition count of auto-created topics
            auto_create_topics: Create unknown topics on metadata lookup
            max_record_bytes: Largest accepted key + value size
            transaction_timeout_ms: Default coordinator transaction timeout
        """
        self.default_partitions = default_partitions
        self.auto_create_topics = auto_create_topics
        self.max_record_bytes = max_record_bytes

        self._topics: Dict[str, List[PartitionLog]] = {}
        self._available = True
        self._lock = threading.RLock()

        self.coordinator = TransactionCoordinator(
            marker_writer=self._write_markers,
            transaction_timeout_ms=transaction_timeout_ms,
        )

        logger.info(
            "LoopbackBroker initialized",
            default_partitions=default_partitions,
            auto_create_topics=auto_create_topics,
        )

    def create_topic(self, topic: str, partitions: int = 1) -> None:
        if partitions <= 0:
            raise ValueError(f"Invalid partition count: {partitions}")

        with self._lock:
            if topic in self._topics:
                raise ValueError(f"Topic {topic} already exists")

            self._topics[topic] = [PartitionLog(topic, p) for p in range(partitions)]

        logger.info("Topic created", topic=topic, partitions=partitions)

    def delete_topic(self, topic: str) -> None:
        with self._lock:
            self._topics.pop(topic, None)

        logger.info("Topic deleted", topic=topic)

    def topics(self) -> List[str]:
        with self._lock:
            return sorted(self._topics)

    def set_available(self, available: bool) -> None:
        """Simulate the broker becoming unreachable (or reachable again)."""
        self._available = available

        logger.warning("Broker availability changed", available=available)

    @property
    def available(self) -> bool:
        return self._available

    def restart_coordinator(self) -> int:
        """Restart the transaction coordinator from its state log."""
        return self.coordinator.restart()

    def _unavailable(self) -> RpcResult:
        return RpcResult.failure(
            RpcStatus.COORDINATOR_UNAVAILABLE,
            "broker is not available",
        )

    def _get_partition(self, topic: str, partition: int) -> Optional[PartitionLog]:
        with self._lock:
            logs = self._topics.get(topic)
            if logs is None or not 0 <= partition < len(logs):
                return None
            return logs[partition]

    def _write_markers(self, entry: TransactionEntry, commit: bool) -> None:
        for topic, partition in sorted(entry.partitions):
            log = self._get_partition(topic, partition)
            if log is not None:
                log.write_marker(entry.producer_id, entry.epoch, commit)

    def partitions_for(self, topic: str) -> RpcResult:
        if not self._available:
            return self._unavailable()

        with self._lock:
            if topic not in self._topics:
                if not self.auto_create_topics:
                    return RpcResult.failure(
                        RpcStatus.UNKNOWN_TOPIC,
                        f"unknown topic {topic}",
                    )
                self.create_topic(topic, self.default_partitions)

            return RpcResult.ok(partitions=list(range(len(self._topics[topic]))))

    def init_producer_id(
        self,
        transactional_id: str,
        timeout_ms: Optional[int] = None,
    ) -> RpcResult:
        if not self._available:
            return self._unavailable()
        return self.coordinator.init_producer_id(transactional_id, timeout_ms)

    def add_partitions(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        partitions: List[Tuple[str, int]],
    ) -> RpcResult:
        if not self._available:
            return self._unavailable()

        for topic, partition in partitions:
            if self._get_partition(topic, partition) is None:
                return RpcResult.failure(
                    RpcStatus.UNKNOWN_TOPIC,
                    f"unknown partition {topic}-{partition}",
                )

        return self.coordinator.add_partitions(transactional_id, identity, partitions)

    def produce(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        topic: str,
        partition: int,
        key: Optional[bytes],
        value: Optional[bytes],
    ) -> Tuple[RpcResult, Optional[RecordMetadata]]:
        """
        Append a transactional record.

        Returns:
            (result, metadata); metadata is None unless result is OK
        """
        if not self._available:
            return self._unavailable(), None

        log = self._get_partition(topic, partition)
        if log is None:
            return RpcResult.failure(
                RpcStatus.UNKNOWN_TOPIC,
                f"unknown partition {topic}-{partition}",
            ), None

        size = len(key or b"") + len(value or b"")
        if size > self.max_record_bytes:
            return RpcResult.failure(
                RpcStatus.RECORD_TOO_LARGE,
                f"record of {size} bytes exceeds {self.max_record_bytes}",
            ), None

        failure, entry = self.coordinator.validate_produce(
            transactional_id,
            identity,
            (topic, partition),
            append=lambda: log.append(identity.producer_id, identity.epoch, key, value),
        )
        if failure is not None:
            return failure, None

        return RpcResult.ok(), RecordMetadata(
            topic=topic,
            partition=partition,
            offset=entry.offset,
            timestamp=entry.timestamp,
        )

    def end_transaction(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        commit: bool,
    ) -> RpcResult:
        if not self._available:
            return self._unavailable()
        return self.coordinator.end_transaction(transactional_id, identity, commit)

    def read(
        self,
        topic: str,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> List[Tuple[int, LogEntry]]:
        """
        Read visible records of every partition of a topic.

        Returns:
            (partition, entry) pairs ordered by partition, then offset
        """
        with self._lock:
            logs = list(self._topics.get(topic, []))

        records = []
        for log in logs:
            records.extend((log.partition, entry) for entry in log.read(isolation_level))
        return records

    def partition_log(self, topic: str, partition: int) -> Optional[PartitionLog]:
        return self._get_partition(topic, partition)
