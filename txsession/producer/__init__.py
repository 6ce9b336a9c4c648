"""Record serialization and partitioning for producer sessions."""

from txsession.producer.partitioner import Partitioner, create_partitioner
from txsession.producer.serialization import Serializer, get_serializer

__all__ = [
    "Partitioner",
    "create_partitioner",
    "Serializer",
    "get_serializer",
]
