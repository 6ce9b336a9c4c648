"""
Delivery tracking for records sent inside a transaction.

Each send is represented by a PendingRecord whose future completes exactly
once. The tracker lets flush() wait for every outstanding future and lets
close() abandon whatever did not finish in time.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from txsession.utils.logging import get_logger

logger = get_logger(__name__)

CompletionCallback = Callable[[Optional["RecordMetadata"], Optional[BaseException]], None]


@dataclass
class RecordMetadata:
    """
    Metadata about a record accepted by the broker.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset assigned by broker
        timestamp: Record timestamp (ms)
    """
    topic: str
    partition: int
    offset: int
    timestamp: int


@dataclass
class PendingRecord:
    """
    A record submitted with send() and not yet completed.

    Attributes:
        topic: Topic name
        partition: Destination partition
        key: Serialized key (None for no key)
        value: Serialized value
        sequence: Session-local submission number
        future: Resolves to RecordMetadata or fails with a SessionError
    """
    topic: str
    partition: int
    key: Optional[bytes]
    value: Optional[bytes]
    sequence: int
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    future: Future = field(default_factory=Future, repr=False)

    def add_callback(self, on_complete: CompletionCallback) -> None:
        """
        Invoke ``on_complete(metadata, error)`` once the record completes.

        Exceptions raised by the callback are logged, never propagated into
        the thread that completed the record.
        """
        def _done(future: Future) -> None:
            error = future.exception()
            metadata = None if error is not None else future.result()
            try:
                on_complete(metadata, error)
            except Exception:
                logger.exception(
                    "Send completion callback raised",
                    topic=self.topic,
                    partition=self.partition,
                    sequence=self.sequence,
                )

        self.future.add_done_callback(_done)


class DeliveryTracker:
    """
    Tracks outstanding records of one session.

    Completion may come from any transport worker thread; waiting uses a
    condition variable, never polling.
    """

    def __init__(self, name: str = "session"):
        """
        Initialize delivery tracker.

        Args:
            name: Prefix for the internal completion thread
        """
        self._cond = threading.Condition()
        self._pending: Dict[int, PendingRecord] = {}
        self._completing: Dict[int, PendingRecord] = {}
        self._next_sequence = 0
        self._abandoned = False

        # Completes records that failed before reaching the transport, so
        # callbacks never run on the thread that called send().
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"{name}-delivery",
        )

    def register(
        self,
        topic: str,
        partition: int,
        key: Optional[bytes],
        value: Optional[bytes],
    ) -> PendingRecord:
        """
        Register a record about to be handed to the transport.

        Returns:
            Pending record
        """
        with self._cond:
            if self._abandoned:
                raise RuntimeError("Delivery tracker already abandoned")

            record = PendingRecord(
                topic=topic,
                partition=partition,
                key=key,
                value=value,
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
            self._pending[record.sequence] = record

        return record

    def complete(
        self,
        record: PendingRecord,
        metadata: Optional[RecordMetadata],
        error: Optional[BaseException],
    ) -> bool:
        """
        Complete a record with metadata or an error.

        Args:
            record: Pending record
            metadata: Broker metadata on success
            error: Failure (takes precedence over metadata)

        Returns:
            False if the record was already completed or abandoned
        """
        with self._cond:
            if self._abandoned or record.sequence not in self._pending:
                return False
            self._completing[record.sequence] = self._pending.pop(record.sequence)

        try:
            if error is not None:
                record.future.set_exception(error)
            else:
                record.future.set_result(metadata)
        finally:
            with self._cond:
                self._completing.pop(record.sequence, None)
                self._cond.notify_all()

        logger.debug(
            "Record completed",
            topic=record.topic,
            partition=record.partition,
            sequence=record.sequence,
            failed=error is not None,
        )

        return True

    def fail_async(self, record: PendingRecord, error: BaseException) -> None:
        """Fail a record on the tracker's own thread."""
        with self._cond:
            if self._abandoned:
                return
            self._executor.submit(self.complete, record, None, error)

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every registered record has completed.

        Must not be called from a completion callback.

        Args:
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            True if nothing is outstanding any more
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._pending and not self._completing,
                timeout=timeout,
            )

    def outstanding(self) -> int:
        with self._cond:
            return len(self._pending) + len(self._completing)

    def abandon(self) -> int:
        """
        Stop tracking all outstanding records.

        Their futures are left pending; no synthetic failure is reported.

        Returns:
            Number of records abandoned
        """
        with self._cond:
            if self._abandoned:
                return 0

            self._abandoned = True
            dropped = len(self._pending)
            self._pending.clear()
            self._cond.notify_all()

        self._executor.shutdown(wait=False, cancel_futures=True)

        if dropped:
            logger.warning("Abandoned undelivered records", count=dropped)

        return dropped
