"""
In-memory partition log with transaction markers.

Data records carry the producer identity that wrote them; COMMIT/ABORT
control markers close a producer's open transaction on the partition.
A read_committed reader sees only records whose transaction has a COMMIT
marker, and nothing at or beyond the last stable offset.
"""

import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import crc32c

from txsession.utils.logging import get_logger

logger = get_logger(__name__)


class IsolationLevel(Enum):
    """
    Reader isolation levels.

    - READ_UNCOMMITTED: See all data records (including open/aborted transactions)
    - READ_COMMITTED: Only see records of committed transactions
    """

    READ_UNCOMMITTED = "read_uncommitted"
    READ_COMMITTED = "read_committed"


class ControlType(Enum):
    COMMIT = "COMMIT"
    ABORT = "ABORT"


@dataclass
class LogEntry:
    """
    A single entry in a partition log.

    Attributes:
        offset: Offset within the partition
        producer_id: Producer ID of the writer
        epoch: Producer epoch of the writer
        key: Record key (None for no key)
        value: Record value
        timestamp: Append timestamp (ms)
        control: Marker type for control entries, None for data records
        crc: CRC32C of the entry payload
    """
    offset: int
    producer_id: int
    epoch: int
    key: Optional[bytes]
    value: Optional[bytes]
    timestamp: int
    control: Optional[ControlType] = None
    crc: int = 0

    def _payload(self) -> bytes:
        key = self.key if self.key is not None else b""
        value = self.value if self.value is not None else b""
        control = self.control.value.encode() if self.control else b""
        return struct.pack(
            f">qqhqi{len(key)}si{len(value)}s{len(control)}s",
            self.offset,
            self.producer_id,
            self.epoch,
            self.timestamp,
            len(key) if self.key is not None else -1,
            key,
            len(value) if self.value is not None else -1,
            value,
            control,
        )

    def seal(self) -> "LogEntry":
        self.crc = crc32c.crc32c(self._payload())
        return self

    def verify(self) -> None:
        """
        Check the stored CRC.

        Raises:
            ValueError: If the entry was modified after append
        """
        computed_crc = crc32c.crc32c(self._payload())
        if computed_crc != self.crc:
            raise ValueError(
                f"CRC mismatch at offset {self.offset}: "
                f"expected {self.crc}, computed {computed_crc}"
            )

    @property
    def is_control(self) -> bool:
        return self.control is not None


class PartitionLog:
    """Append-only log of one topic-partition."""

    def __init__(self, topic: str, partition: int):
        """
        Initialize partition log.

        Args:
            topic: Topic name
            partition: Partition number
        """
        self.topic = topic
        self.partition = partition

        self._entries: List[LogEntry] = []

        # producer_id -> first offset of its open transaction on this partition
        self._open_transactions: Dict[int, int] = {}

        self._lock = threading.Lock()

    def append(
        self,
        producer_id: int,
        epoch: int,
        key: Optional[bytes],
        value: Optional[bytes],
    ) -> LogEntry:
        """
        Append a transactional data record.

        Returns:
            Appended entry
        """
        with self._lock:
            entry = LogEntry(
                offset=len(self._entries),
                producer_id=producer_id,
                epoch=epoch,
                key=key,
                value=value,
                timestamp=int(time.time() * 1000),
            ).seal()

            self._entries.append(entry)
            self._open_transactions.setdefault(producer_id, entry.offset)

        logger.debug(
            "Appended record",
            topic=self.topic,
            partition=self.partition,
            offset=entry.offset,
            producer_id=producer_id,
        )

        return entry

    def write_marker(self, producer_id: int, epoch: int, commit: bool) -> LogEntry:
        """
        Write a COMMIT or ABORT marker closing the producer's transaction.

        Returns:
            Marker entry
        """
        with self._lock:
            marker = LogEntry(
                offset=len(self._entries),
                producer_id=producer_id,
                epoch=epoch,
                key=None,
                value=None,
                timestamp=int(time.time() * 1000),
                control=ControlType.COMMIT if commit else ControlType.ABORT,
            ).seal()

            self._entries.append(marker)
            self._open_transactions.pop(producer_id, None)

        logger.debug(
            "Wrote transaction marker",
            topic=self.topic,
            partition=self.partition,
            offset=marker.offset,
            producer_id=producer_id,
            marker_type=marker.control.value,
        )

        return marker

    def last_stable_offset(self) -> int:
        """First offset of any open transaction, or the log end offset."""
        with self._lock:
            if self._open_transactions:
                return min(self._open_transactions.values())
            return len(self._entries)

    def end_offset(self) -> int:
        with self._lock:
            return len(self._entries)

    def has_open_transaction(self, producer_id: int) -> bool:
        with self._lock:
            return producer_id in self._open_transactions

    def read(
        self,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> List[LogEntry]:
        """
        Read data records visible under an isolation level.

        Control markers are never returned.

        Args:
            isolation_level: Reader isolation level

        Returns:
            Visible data records in offset order
        """
        with self._lock:
            entries = list(self._entries)
            lso = (
                min(self._open_transactions.values())
                if self._open_transactions else len(entries)
            )

        for entry in entries:
            entry.verify()

        if isolation_level is IsolationLevel.READ_UNCOMMITTED:
            return [entry for entry in entries if not entry.is_control]

        visible = []
        pending: Dict[int, List[LogEntry]] = {}

        for entry in entries[:lso]:
            if entry.is_control:
                records = pending.pop(entry.producer_id, [])
                if entry.control is ControlType.COMMIT:
                    visible.extend(records)
            else:
                pending.setdefault(entry.producer_id, []).append(entry)

        visible.sort(key=lambda entry: entry.offset)
        return visible
