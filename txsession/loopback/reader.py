"""
Reader for verifying what a loopback broker exposes to consumers.

Controls which records are visible through the isolation level.
"""

import time
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from txsession.loopback.broker import LoopbackBroker
from txsession.loopback.partition_log import IsolationLevel
from txsession.producer.serialization import Serializer, get_serializer
from txsession.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConsumedRecord:
    """A record as seen by a consumer."""
    topic: str
    partition: int
    offset: int
    key: Any
    value: Any
    timestamp: int


class CommittedReader:
    """
    Reads whole topics from a LoopbackBroker.

    With READ_COMMITTED isolation only records of committed transactions
    below the last stable offset are returned.
    """

    def __init__(
        self,
        broker: LoopbackBroker,
        isolation_level: Union[str, IsolationLevel] = IsolationLevel.READ_COMMITTED,
        key_deserializer: Union[str, Serializer, None] = "string",
        value_deserializer: Union[str, Serializer, None] = "string",
    ):
        """
        Initialize reader.

        Args:
            broker: Broker to read from
            isolation_level: read_committed or read_uncommitted
            key_deserializer: Serializer name or instance, None for raw bytes
            value_deserializer: Serializer name or instance, None for raw bytes
        """
        self.broker = broker
        self.isolation_level = IsolationLevel(isolation_level)
        self._key_deserializer = self._resolve(key_deserializer)
        self._value_deserializer = self._resolve(value_deserializer)

    @staticmethod
    def _resolve(deserializer: Union[str, Serializer, None]) -> Optional[Serializer]:
        if isinstance(deserializer, str):
            return get_serializer(deserializer)
        return deserializer

    @staticmethod
    def _decode(deserializer: Optional[Serializer], data: Optional[bytes]) -> Any:
        if deserializer is None:
            return data
        return deserializer.deserialize(data)

    def read(self, topic: str) -> List[ConsumedRecord]:
        """
        Read every visible record of a topic.

        Returns:
            Records ordered by partition, then offset
        """
        return [
            ConsumedRecord(
                topic=topic,
                partition=partition,
                offset=entry.offset,
                key=self._decode(self._key_deserializer, entry.key),
                value=self._decode(self._value_deserializer, entry.value),
                timestamp=entry.timestamp,
            )
            for partition, entry in self.broker.read(topic, self.isolation_level)
        ]

    def values(self, topic: str) -> List[Any]:
        return [record.value for record in self.read(topic)]

    def poll_until(
        self,
        topic: str,
        count: int,
        timeout: float = 5.0,
        interval: float = 0.01,
    ) -> List[ConsumedRecord]:
        """
        Re-read a topic until at least ``count`` records are visible.

        Returns:
            Visible records (possibly fewer than ``count`` on timeout)
        """
        deadline = time.monotonic() + timeout

        while True:
            records = self.read(topic)
            if len(records) >= count or time.monotonic() >= deadline:
                break
            time.sleep(interval)

        if len(records) < count:
            logger.warning(
                "Timed out waiting for records",
                topic=topic,
                expected=count,
                visible=len(records),
            )

        return records
