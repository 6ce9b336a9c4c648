"""
Producer identity (producer id + epoch) used for fencing.

The broker assigns the identity; sessions only ever hold a copy of it.
"""

from dataclasses import dataclass
from typing import Tuple

MAX_PRODUCER_ID = 2**63 - 1
MAX_EPOCH = 2**15 - 1


@dataclass(frozen=True)
class ProducerIdentity:
    """
    Broker-assigned producer identity.

    Attributes:
        producer_id: Producer ID (PID), a non-negative 64-bit integer
        epoch: Producer epoch (fencing token), a non-negative 16-bit integer
    """
    producer_id: int
    epoch: int

    def __post_init__(self) -> None:
        if not isinstance(self.producer_id, int) or isinstance(self.producer_id, bool):
            raise TypeError(f"producer_id must be int, got {type(self.producer_id)}")
        if not isinstance(self.epoch, int) or isinstance(self.epoch, bool):
            raise TypeError(f"epoch must be int, got {type(self.epoch)}")
        if not 0 <= self.producer_id <= MAX_PRODUCER_ID:
            raise ValueError(f"producer_id out of range: {self.producer_id}")
        if not 0 <= self.epoch <= MAX_EPOCH:
            raise ValueError(f"epoch out of range: {self.epoch}")

    def with_epoch(self, epoch: int) -> "ProducerIdentity":
        """Return a copy of this identity carrying another epoch."""
        return ProducerIdentity(self.producer_id, epoch)

    def is_newer_than(self, other: "ProducerIdentity") -> bool:
        """
        Check whether this identity fences ``other``.

        Only identities sharing a producer id are comparable.
        """
        return self.producer_id == other.producer_id and self.epoch > other.epoch

    def is_epoch_exhausted(self) -> bool:
        return self.epoch >= MAX_EPOCH

    def as_tuple(self) -> Tuple[int, int]:
        return (self.producer_id, self.epoch)

    def __str__(self) -> str:
        return f"{self.producer_id}:{self.epoch}"
