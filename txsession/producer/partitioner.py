"""
Partitioner for choosing the destination partition of a record.

Strategies:
- default: Hash key to partition, round-robin for null keys
- key_hash: Always hash key (key required)
- round_robin: Distribute evenly regardless of key
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence

from txsession.utils.logging import get_logger

logger = get_logger(__name__)


class Partitioner(ABC):
    """Abstract base class for partitioners."""

    @abstractmethod
    def partition(
        self,
        topic: str,
        key: Optional[bytes],
        partitions: Sequence[int],
    ) -> int:
        """
        Choose a partition for a record.

        Args:
            topic: Topic name
            key: Serialized key (None for no key)
            partitions: Partition numbers reported by the broker

        Returns:
            One of ``partitions``
        """


def _check_partitions(topic: str, partitions: Sequence[int]) -> None:
    if not partitions:
        raise ValueError(f"No partitions available for topic {topic}")


def _hash_key(key: bytes, partitions: Sequence[int]) -> int:
    hash_value = int(hashlib.md5(key).hexdigest(), 16)
    return partitions[hash_value % len(partitions)]


class RoundRobinPartitioner(Partitioner):
    """Distributes records evenly per topic, ignoring keys."""

    def __init__(self):
        self._counters: Dict[str, int] = {}

    def partition(
        self,
        topic: str,
        key: Optional[bytes],
        partitions: Sequence[int],
    ) -> int:
        _check_partitions(topic, partitions)

        counter = self._counters.get(topic, 0)
        self._counters[topic] = counter + 1

        return partitions[counter % len(partitions)]


class DefaultPartitioner(RoundRobinPartitioner):
    """
    Hybrid strategy.

    - Key present: hash key to partition (same key → same partition)
    - No key: round-robin across partitions
    """

    def partition(
        self,
        topic: str,
        key: Optional[bytes],
        partitions: Sequence[int],
    ) -> int:
        _check_partitions(topic, partitions)

        if key is None:
            return super().partition(topic, key, partitions)

        partition = _hash_key(key, partitions)

        logger.debug(
            "Hashed key to partition",
            topic=topic,
            partition=partition,
            key_size=len(key),
        )

        return partition


class KeyHashPartitioner(Partitioner):
    """Always hashes the key; records without a key are rejected."""

    def partition(
        self,
        topic: str,
        key: Optional[bytes],
        partitions: Sequence[int],
    ) -> int:
        if key is None:
            raise ValueError("KeyHashPartitioner requires key to be set")

        _check_partitions(topic, partitions)
        return _hash_key(key, partitions)


def create_partitioner(partitioner_type: str = "default") -> Partitioner:
    """
    Factory method to create partitioner.

    Args:
        partitioner_type: default, key_hash or round_robin

    Returns:
        Partitioner instance
    """
    partitioners = {
        "default": DefaultPartitioner,
        "key_hash": KeyHashPartitioner,
        "round_robin": RoundRobinPartitioner,
    }

    partitioner_class = partitioners.get(partitioner_type)

    if partitioner_class is None:
        raise ValueError(f"Unknown partitioner type: {partitioner_type}")

    return partitioner_class()
