"""
Transaction coordinator double for the loopback broker.

Implements the broker contract a ProducerSession relies on:
- one current (producer_id, epoch) per transactional id
- init_producer_id bumps the epoch and aborts the previous open transaction
- stale epochs cannot write or complete an open transaction
- completing an already-completed transaction the same way is a no-op

Every state change is appended to a JSON state log so a restart can rebuild
the coordinator and finish transactions caught between prepare and complete.
"""

import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, TypeVar

from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult, RpcStatus
from txsession.utils.logging import get_logger

logger = get_logger(__name__)

TopicPartition = Tuple[str, int]
T = TypeVar("T")


class BrokerTransactionState(Enum):
    """
    Coordinator-side transaction states.

    State transitions:
    EMPTY → ONGOING → PREPARE_COMMIT → COMPLETE_COMMIT
                    ↘ PREPARE_ABORT  → COMPLETE_ABORT
    COMPLETE_* → ONGOING (next transaction), EMPTY (after an epoch bump)
    """

    EMPTY = "EMPTY"
    ONGOING = "ONGOING"
    PREPARE_COMMIT = "PREPARE_COMMIT"
    PREPARE_ABORT = "PREPARE_ABORT"
    COMPLETE_COMMIT = "COMPLETE_COMMIT"
    COMPLETE_ABORT = "COMPLETE_ABORT"

    def is_complete(self) -> bool:
        return self in (
            BrokerTransactionState.COMPLETE_COMMIT,
            BrokerTransactionState.COMPLETE_ABORT,
        )

    def is_preparing(self) -> bool:
        return self in (
            BrokerTransactionState.PREPARE_COMMIT,
            BrokerTransactionState.PREPARE_ABORT,
        )

    def can_transition_to(self, new_state: "BrokerTransactionState") -> bool:
        return new_state in _VALID_TRANSITIONS.get(self, frozenset())


_VALID_TRANSITIONS = {
    BrokerTransactionState.EMPTY: frozenset({
        BrokerTransactionState.EMPTY,
        BrokerTransactionState.ONGOING,
    }),
    BrokerTransactionState.ONGOING: frozenset({
        BrokerTransactionState.PREPARE_COMMIT,
        BrokerTransactionState.PREPARE_ABORT,
    }),
    BrokerTransactionState.PREPARE_COMMIT: frozenset({
        BrokerTransactionState.COMPLETE_COMMIT,
    }),
    BrokerTransactionState.PREPARE_ABORT: frozenset({
        BrokerTransactionState.COMPLETE_ABORT,
    }),
    BrokerTransactionState.COMPLETE_COMMIT: frozenset({
        BrokerTransactionState.ONGOING,
        BrokerTransactionState.EMPTY,
    }),
    BrokerTransactionState.COMPLETE_ABORT: frozenset({
        BrokerTransactionState.ONGOING,
        BrokerTransactionState.EMPTY,
    }),
}


@dataclass
class TransactionEntry:
    """
    Coordinator metadata for one transactional id.

    Attributes:
        transactional_id: Transactional ID
        producer_id: Current producer ID
        epoch: Current producer epoch
        state: Transaction state
        partitions: Partitions of the current transaction
        timeout_ms: Transaction timeout
        start_time: Start of the current transaction (ms)
    """
    transactional_id: str
    producer_id: int
    epoch: int
    state: BrokerTransactionState
    partitions: Set[TopicPartition] = field(default_factory=set)
    timeout_ms: int = 60000
    start_time: int = 0

    @property
    def identity(self) -> ProducerIdentity:
        return ProducerIdentity(self.producer_id, self.epoch)

    def is_timed_out(self, current_time: int) -> bool:
        if self.state is not BrokerTransactionState.ONGOING:
            return False
        return current_time - self.start_time > self.timeout_ms

    def to_bytes(self) -> bytes:
        data = {
            "transactional_id": self.transactional_id,
            "producer_id": self.producer_id,
            "epoch": self.epoch,
            "state": self.state.value,
            "partitions": [
                {"topic": t, "partition": p}
                for t, p in sorted(self.partitions)
            ],
            "timeout_ms": self.timeout_ms,
            "start_time": self.start_time,
        }
        return json.dumps(data).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "TransactionEntry":
        obj = json.loads(data.decode("utf-8"))
        return cls(
            transactional_id=obj["transactional_id"],
            producer_id=obj["producer_id"],
            epoch=obj["epoch"],
            state=BrokerTransactionState(obj["state"]),
            partitions={(p["topic"], p["partition"]) for p in obj["partitions"]},
            timeout_ms=obj.get("timeout_ms", 60000),
            start_time=obj.get("start_time", 0),
        )


class TransactionStateLog:
    """
    Append-only log of coordinator state changes.

    Replaying it keeps the latest entry per transactional id.
    """

    def __init__(self):
        self._records: List[bytes] = []
        self._lock = threading.Lock()

    def append(self, entry: TransactionEntry) -> None:
        with self._lock:
            self._records.append(entry.to_bytes())

    def replay(self) -> Dict[str, TransactionEntry]:
        with self._lock:
            records = list(self._records)

        state: Dict[str, TransactionEntry] = {}
        for data in records:
            entry = TransactionEntry.from_bytes(data)
            state[entry.transactional_id] = entry

        return state

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# marker_writer(entry, commit): writes COMMIT/ABORT markers to entry.partitions
MarkerWriter = Callable[[TransactionEntry, bool], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TransactionCoordinator:
    """
    Tracks producer identities and transactions per transactional id.

    Thread-safe; produce requests from transport worker threads validate
    against the same state as session control calls.
    """

    def __init__(
        self,
        marker_writer: MarkerWriter,
        transaction_timeout_ms: int = 60000,
        start_producer_id: int = 1000,
    ):
        """
        Initialize transaction coordinator.

        Args:
            marker_writer: Callback writing markers to partition logs
            transaction_timeout_ms: Default transaction timeout
            start_producer_id: First producer ID to hand out
        """
        self._marker_writer = marker_writer
        self.transaction_timeout_ms = transaction_timeout_ms

        self._transactions: Dict[str, TransactionEntry] = {}
        self._next_producer_id = start_producer_id
        self.state_log = TransactionStateLog()

        self._lock = threading.RLock()

        logger.info(
            "TransactionCoordinator initialized",
            timeout_ms=transaction_timeout_ms,
        )

    def _allocate_producer_id(self) -> int:
        producer_id = self._next_producer_id
        self._next_producer_id += 1
        return producer_id

    def _update(
        self,
        entry: TransactionEntry,
        new_state: BrokerTransactionState,
    ) -> None:
        if not entry.state.can_transition_to(new_state):
            raise ValueError(
                f"Invalid state transition: {entry.state.value} → {new_state.value}"
            )

        old_state = entry.state
        entry.state = new_state
        self.state_log.append(entry)

        logger.debug(
            "Transaction state updated",
            transactional_id=entry.transactional_id,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def _complete(self, entry: TransactionEntry, commit: bool) -> None:
        """Two-phase completion: prepare, write markers, complete."""
        if commit:
            prepare = BrokerTransactionState.PREPARE_COMMIT
            complete = BrokerTransactionState.COMPLETE_COMMIT
        else:
            prepare = BrokerTransactionState.PREPARE_ABORT
            complete = BrokerTransactionState.COMPLETE_ABORT

        self._update(entry, prepare)
        self._marker_writer(entry, commit)
        self._update(entry, complete)

        logger.info(
            "Transaction committed" if commit else "Transaction aborted",
            transactional_id=entry.transactional_id,
            producer_id=entry.producer_id,
            epoch=entry.epoch,
            partitions=len(entry.partitions),
        )

    def init_producer_id(
        self,
        transactional_id: str,
        timeout_ms: Optional[int] = None,
    ) -> RpcResult:
        """
        Mint the next identity for a transactional id.

        Args:
            transactional_id: Transactional ID
            timeout_ms: Transaction timeout for this producer

        Returns:
            RpcResult carrying the new identity
        """
        timeout = timeout_ms or self.transaction_timeout_ms

        with self._lock:
            entry = self._transactions.get(transactional_id)

            if entry is None:
                entry = TransactionEntry(
                    transactional_id=transactional_id,
                    producer_id=self._allocate_producer_id(),
                    epoch=0,
                    state=BrokerTransactionState.EMPTY,
                    timeout_ms=timeout,
                )
                self._transactions[transactional_id] = entry
                self.state_log.append(entry)
            else:
                if entry.state is BrokerTransactionState.ONGOING:
                    logger.warning(
                        "Aborting transaction of fenced producer",
                        transactional_id=transactional_id,
                        producer_id=entry.producer_id,
                        epoch=entry.epoch,
                    )
                    self._complete(entry, commit=False)

                self._bump_epoch(entry)
                entry.timeout_ms = timeout
                entry.partitions = set()
                self._update(entry, BrokerTransactionState.EMPTY)

            identity = entry.identity

        logger.info(
            "Assigned producer identity",
            transactional_id=transactional_id,
            producer_id=identity.producer_id,
            epoch=identity.epoch,
        )

        return RpcResult.ok(identity=identity)

    def _bump_epoch(self, entry: TransactionEntry) -> None:
        if entry.identity.is_epoch_exhausted():
            entry.producer_id = self._allocate_producer_id()
            entry.epoch = 0

            logger.warning(
                "Producer epoch exhausted, assigned new producer ID",
                transactional_id=entry.transactional_id,
                producer_id=entry.producer_id,
            )
        else:
            entry.epoch += 1

    def _check_identity(
        self,
        entry: Optional[TransactionEntry],
        identity: ProducerIdentity,
    ) -> Optional[RpcResult]:
        if entry is None or entry.producer_id != identity.producer_id:
            return RpcResult.failure(
                RpcStatus.FENCED,
                f"producer id {identity.producer_id} is not the current owner",
            )

        if identity.epoch > entry.epoch:
            return RpcResult.failure(
                RpcStatus.FENCED,
                f"unknown epoch {identity.epoch} (current {entry.epoch})",
            )

        if identity.epoch < entry.epoch:
            return RpcResult.failure(
                RpcStatus.FENCED,
                f"epoch {identity.epoch} fenced by epoch {entry.epoch}",
            )

        return None

    def add_partitions(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        partitions: List[TopicPartition],
    ) -> RpcResult:
        """
        Add partitions to the transaction, starting one if needed.

        Returns:
            OK, or FENCED for a stale identity
        """
        with self._lock:
            self._abort_expired_locked(_now_ms())

            entry = self._transactions.get(transactional_id)
            failure = self._check_identity(entry, identity)
            if failure is not None:
                return failure

            if entry.state is not BrokerTransactionState.ONGOING:
                entry.partitions = set()
                entry.start_time = _now_ms()
                self._update(entry, BrokerTransactionState.ONGOING)

            entry.partitions.update(partitions)
            self.state_log.append(entry)

        logger.debug(
            "Partitions added to transaction",
            transactional_id=transactional_id,
            partitions=len(partitions),
        )

        return RpcResult.ok()

    def validate_produce(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        topic_partition: TopicPartition,
        append: Callable[[], T],
    ) -> Tuple[Optional[RpcResult], Optional[T]]:
        """
        Check that a write may be appended, and append it.

        ``append`` runs under the coordinator lock, so no epoch bump or
        transaction completion can slip in between check and write.

        Returns:
            (None, append result) if allowed, otherwise (failure, None)
        """
        with self._lock:
            entry = self._transactions.get(transactional_id)
            failure = self._check_identity(entry, identity)
            if failure is not None:
                return failure, None

            if (
                entry.state is not BrokerTransactionState.ONGOING
                or topic_partition not in entry.partitions
            ):
                return RpcResult.failure(
                    RpcStatus.INVALID_TXN_STATE,
                    f"{topic_partition[0]}-{topic_partition[1]} is not part of an ongoing transaction",
                ), None

            return None, append()

    def end_transaction(
        self,
        transactional_id: str,
        identity: ProducerIdentity,
        commit: bool,
    ) -> RpcResult:
        """
        Commit or abort the current transaction.

        Returns:
            OK when completed now; NOOP when there was nothing to do
            (no transaction, or already completed the same way); FENCED for a
            stale epoch that would change an outcome; INVALID_TXN_STATE when
            the current epoch asks for the opposite of a completed outcome
        """
        target = (
            BrokerTransactionState.COMPLETE_COMMIT if commit
            else BrokerTransactionState.COMPLETE_ABORT
        )

        with self._lock:
            self._abort_expired_locked(_now_ms())

            entry = self._transactions.get(transactional_id)
            if entry is None or entry.producer_id != identity.producer_id:
                return RpcResult.failure(
                    RpcStatus.FENCED,
                    f"producer id {identity.producer_id} is not the current owner",
                )

            if identity.epoch > entry.epoch:
                return RpcResult.failure(
                    RpcStatus.FENCED,
                    f"unknown epoch {identity.epoch} (current {entry.epoch})",
                )

            stale = identity.epoch < entry.epoch

            if entry.state is BrokerTransactionState.ONGOING:
                if stale:
                    return RpcResult.failure(
                        RpcStatus.FENCED,
                        f"epoch {identity.epoch} fenced by epoch {entry.epoch}",
                    )
                self._complete(entry, commit)
                return RpcResult.ok()

            if entry.state is target:
                return RpcResult.noop(f"transaction already {target.value}")

            if entry.state is BrokerTransactionState.EMPTY and not stale:
                return RpcResult.noop("no transaction in progress")

            if stale:
                return RpcResult.failure(
                    RpcStatus.FENCED,
                    f"epoch {identity.epoch} fenced by epoch {entry.epoch}",
                )

            return RpcResult.failure(
                RpcStatus.INVALID_TXN_STATE,
                f"transaction already {entry.state.value}",
            )

    def abort_expired_transactions(self, current_time: Optional[int] = None) -> int:
        """
        Abort transactions open longer than their timeout.

        The epoch is bumped as well, fencing the producer that left the
        transaction open.

        Args:
            current_time: Timestamp to compare against (ms, now if None)

        Returns:
            Number of transactions aborted
        """
        with self._lock:
            return self._abort_expired_locked(current_time or _now_ms())

    def _abort_expired_locked(self, current_time: int) -> int:
        expired = [
            entry for entry in self._transactions.values()
            if entry.is_timed_out(current_time)
        ]

        for entry in expired:
            logger.warning(
                "Aborting timed out transaction",
                transactional_id=entry.transactional_id,
                age_ms=current_time - entry.start_time,
            )
            self._complete(entry, commit=False)
            self._bump_epoch(entry)
            self.state_log.append(entry)

        return len(expired)

    def restart(self) -> int:
        """
        Rebuild coordinator state from the state log.

        Transactions caught between prepare and complete are completed.

        Returns:
            Number of transactions completed during recovery
        """
        with self._lock:
            self._transactions = self.state_log.replay()
            self._next_producer_id = max(
                [self._next_producer_id]
                + [entry.producer_id + 1 for entry in self._transactions.values()]
            )

            recovered = 0
            for entry in self._transactions.values():
                if entry.state.is_preparing():
                    commit = entry.state is BrokerTransactionState.PREPARE_COMMIT
                    self._marker_writer(entry, commit)
                    self._update(
                        entry,
                        BrokerTransactionState.COMPLETE_COMMIT if commit
                        else BrokerTransactionState.COMPLETE_ABORT,
                    )
                    recovered += 1

        logger.info(
            "Transaction coordinator restarted",
            transactions=len(self._transactions),
            recovered=recovered,
        )

        return recovered

    def get_transaction(self, transactional_id: str) -> Optional[TransactionEntry]:
        """Return a copy of the coordinator entry for a transactional id."""
        with self._lock:
            entry = self._transactions.get(transactional_id)
            if entry is None:
                return None
            return TransactionEntry.from_bytes(entry.to_bytes())
