"""
Resumable transactional producer session.

Owns the local transaction state machine and the producer identity, and
drives a TransportClient. A session acquires its identity exactly once,
either from the broker (initialize) or from a checkpoint (resume):

```
session = ProducerSession(config, transport)
session.initialize()
session.begin_transaction()
session.send("orders", key="42", value="42", on_complete=callback)
session.flush()
checkpoint = (session.get_producer_id(), session.get_epoch())

# later, in a new process
recovered = ProducerSession(config, new_transport)
recovered.resume(*checkpoint)
recovered.commit_transaction()  # commits what the first session sent
```

Control operations are not thread-safe; one owner drives a session at a time.
"""

import time
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Set, Tuple

from txsession.producer.partitioner import create_partitioner
from txsession.producer.serialization import get_serializer
from txsession.session.config import SessionConfig
from txsession.session.delivery import (
    CompletionCallback,
    DeliveryTracker,
    PendingRecord,
    RecordMetadata,
)
from txsession.session.errors import (
    FencingError,
    IllegalStateError,
    SessionError,
    TransportError,
)
from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult, RpcStatus, raise_for_status, to_exception
from txsession.session.state import SessionState
from txsession.transport.base import TransportClient
from txsession.utils.logging import get_logger

logger = get_logger(__name__)

UNRESOLVED_PARTITION = -1


class ProducerSession:
    """
    Transactional producer with fenced, resumable identity.

    Every operation except close() raises IllegalStateError once the session
    is closed.
    """

    def __init__(self, config: SessionConfig, transport: TransportClient):
        """
        Initialize producer session.

        Args:
            config: Session configuration
            transport: Broker transport (owned by the session from now on)
        """
        self.config = config
        self._transport = transport

        self._state = SessionState.UNINITIALIZED
        self._identity: Optional[ProducerIdentity] = None

        # Set by resume(): the previous owner may have left a transaction
        # open, so commit/abort are legal before any begin_transaction().
        self._recovering = False

        # First fencing failure seen by this session
        self._fatal_error: Optional[FencingError] = None

        self._txn_partitions: Set[Tuple[str, int]] = set()
        self._partition_cache: Dict[str, List[int]] = {}

        self._key_serializer = get_serializer(config.key_serializer)
        self._value_serializer = get_serializer(config.value_serializer)
        self._partitioner = create_partitioner(config.partitioner)
        self._tracker = DeliveryTracker(name=f"txsession-{config.transactional_id}")

        self._transactions_committed = 0
        self._transactions_aborted = 0

        logger.info(
            "ProducerSession created",
            transactional_id=config.transactional_id,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transactional_id(self) -> str:
        return self.config.transactional_id

    def _ensure_open(self, operation: str) -> None:
        if self._state is SessionState.CLOSED:
            raise IllegalStateError(
                f"Cannot {operation}: session is closed",
                transactional_id=self.transactional_id,
            )

    def _require_state(self, operation: str, *allowed: SessionState) -> None:
        self._ensure_open(operation)

        if self._state not in allowed:
            raise IllegalStateError(
                f"Cannot {operation} in state {self._state.value}",
                transactional_id=self.transactional_id,
                identity=self._identity,
            )

    def _transition(self, new_state: SessionState) -> None:
        if not self._state.can_transition_to(new_state):
            raise IllegalStateError(
                f"Invalid state transition: {self._state.value} → {new_state.value}",
                transactional_id=self.transactional_id,
                identity=self._identity,
            )

        old_state = self._state
        self._state = new_state

        logger.info(
            "Session state updated",
            transactional_id=self.transactional_id,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def _rpc(self, operation: str, call: Callable[[], RpcResult]) -> RpcResult:
        """Run a transport RPC and convert failures into SessionErrors."""
        try:
            result = call()
        except SessionError:
            raise
        except Exception as e:
            logger.error(
                "Transport call failed",
                transactional_id=self.transactional_id,
                operation=operation,
                error=str(e),
            )
            raise TransportError(
                f"{operation} failed: {e}",
                transactional_id=self.transactional_id,
                identity=self._identity,
            ) from e

        return raise_for_status(
            result,
            operation,
            transactional_id=self.transactional_id,
            identity=self._identity,
        )

    def _record_fatal(self, error: FencingError) -> None:
        if self._fatal_error is None:
            self._fatal_error = error

            logger.warning(
                "Session fenced by a newer producer epoch",
                transactional_id=self.transactional_id,
                identity=str(self._identity),
                error=str(error),
            )

    def _raise_if_fenced(self, operation: str) -> None:
        if self._fatal_error is not None:
            raise FencingError(
                f"{operation} rejected: session was fenced",
                transactional_id=self.transactional_id,
                identity=self._identity,
            ) from self._fatal_error

    def initialize(self) -> ProducerIdentity:
        """
        Obtain a fresh identity from the broker.

        Fences every older instance of the same transactional id; the broker
        aborts any transaction such an instance left open.

        Returns:
            The minted identity

        Raises:
            IllegalStateError: If identity was already acquired or session closed
            TransportError: If the broker cannot be reached
        """
        self._require_state("initialize", SessionState.UNINITIALIZED)

        result = self._rpc(
            "initialize",
            lambda: self._transport.init_producer_id(self.transactional_id),
        )

        if result.identity is None:
            raise TransportError(
                "initialize failed: broker returned no producer identity",
                transactional_id=self.transactional_id,
            )

        self._identity = result.identity
        self._transition(SessionState.READY)

        logger.info(
            "Producer identity assigned",
            transactional_id=self.transactional_id,
            producer_id=self._identity.producer_id,
            epoch=self._identity.epoch,
        )

        return self._identity

    def resume(self, producer_id: int, epoch: int) -> ProducerIdentity:
        """
        Adopt a previously observed identity without minting a new one.

        The broker validates the identity on the next RPC that carries it.
        A transaction the previous owner left open can then be committed or
        aborted without calling begin_transaction().

        Args:
            producer_id: Producer ID recorded by the previous owner
            epoch: Epoch recorded by the previous owner

        Returns:
            The adopted identity

        Raises:
            IllegalStateError: If identity was already acquired or session closed
            ValueError: If producer_id or epoch is out of range
        """
        self._require_state("resume", SessionState.UNINITIALIZED)

        identity = ProducerIdentity(producer_id, epoch)
        self._transport.set_producer_identity(identity)

        self._identity = identity
        self._recovering = True
        self._transition(SessionState.READY)

        logger.info(
            "Producer identity resumed",
            transactional_id=self.transactional_id,
            producer_id=producer_id,
            epoch=epoch,
        )

        return identity

    resume_transaction = resume

    @property
    def identity(self) -> ProducerIdentity:
        self._ensure_open("read producer identity")

        if self._identity is None:
            raise IllegalStateError(
                "Producer identity not acquired yet",
                transactional_id=self.transactional_id,
            )

        return self._identity

    def get_producer_id(self) -> int:
        return self.identity.producer_id

    def get_epoch(self) -> int:
        return self.identity.epoch

    def is_recovering(self) -> bool:
        """Check if a resumed transaction is still waiting for commit/abort."""
        return self._recovering

    def begin_transaction(self) -> None:
        """
        Begin a new transaction.

        Raises:
            IllegalStateError: If not READY (including after close)
            FencingError: If a send of this session was fenced
        """
        self._require_state("begin_transaction", SessionState.READY)
        self._raise_if_fenced("begin_transaction")

        self._transport.begin_transaction()

        self._txn_partitions = set()
        self._recovering = False
        self._transition(SessionState.IN_TRANSACTION)

    def send(
        self,
        topic: str,
        key=None,
        value=None,
        on_complete: Optional[CompletionCallback] = None,
        partition: Optional[int] = None,
    ) -> "Future[RecordMetadata]":
        """
        Send a record within the current transaction.

        Never blocks for acknowledgment. Every failure after the state check
        (fencing, rejected record, unreachable broker) is reported through the
        returned future and ``on_complete(metadata, error)``, which runs once,
        off the calling thread.

        Args:
            topic: Topic name
            key: Record key (serialized with the key serializer)
            value: Record value (serialized with the value serializer)
            on_complete: Completion callback
            partition: Explicit partition (chosen by the partitioner if None)

        Returns:
            Future resolving to RecordMetadata

        Raises:
            IllegalStateError: If no transaction is in progress
        """
        self._require_state("send", SessionState.IN_TRANSACTION)

        key_bytes = self._key_serializer.serialize(key)
        value_bytes = self._value_serializer.serialize(value)

        failure: Optional[SessionError] = None
        target = partition

        if target is None:
            try:
                target = self._choose_partition(topic, key_bytes)
            except SessionError as e:
                failure = e
                target = UNRESOLVED_PARTITION

        record = self._tracker.register(topic, target, key_bytes, value_bytes)
        if on_complete is not None:
            record.add_callback(on_complete)

        if failure is None and self._fatal_error is not None:
            failure = FencingError(
                "send rejected: session was fenced",
                transactional_id=self.transactional_id,
                identity=self._identity,
            )

        if failure is None:
            failure = self._register_partition(topic, target)

        if failure is not None:
            self._fail(record, failure)
            return record.future

        try:
            self._transport.send(
                topic,
                target,
                key_bytes,
                value_bytes,
                lambda metadata, result: self._on_delivery(record, metadata, result),
            )
        except Exception as e:
            self._fail(
                record,
                TransportError(
                    f"send failed: {e}",
                    transactional_id=self.transactional_id,
                    identity=self._identity,
                ),
            )

        logger.debug(
            "Transactional send",
            transactional_id=self.transactional_id,
            topic=topic,
            partition=target,
            sequence=record.sequence,
        )

        return record.future

    def _choose_partition(self, topic: str, key: Optional[bytes]) -> int:
        partitions = self._partition_cache.get(topic)

        if partitions is None:
            partitions = self.partitions_for(topic)
            self._partition_cache[topic] = partitions

        return self._partitioner.partition(topic, key, partitions)

    def _register_partition(self, topic: str, partition: int) -> Optional[SessionError]:
        topic_partition = (topic, partition)
        if topic_partition in self._txn_partitions:
            return None

        try:
            self._rpc(
                "add_partitions_to_transaction",
                lambda: self._transport.add_partitions_to_transaction([topic_partition]),
            )
        except SessionError as e:
            return e

        self._txn_partitions.add(topic_partition)

        logger.debug(
            "Partition added to transaction",
            transactional_id=self.transactional_id,
            topic=topic,
            partition=partition,
        )

        return None

    def _fail(self, record: PendingRecord, error: SessionError) -> None:
        if isinstance(error, FencingError):
            self._record_fatal(error)

        logger.warning(
            "Send failed",
            transactional_id=self.transactional_id,
            topic=record.topic,
            partition=record.partition,
            kind=error.kind.value,
            error=str(error),
        )

        self._tracker.fail_async(record, error)

    def _on_delivery(
        self,
        record: PendingRecord,
        metadata: Optional[RecordMetadata],
        result: Optional[RpcResult],
    ) -> None:
        """Transport completion hook (runs on a transport worker thread)."""
        error = None
        if result is not None:
            error = to_exception(
                result,
                "send",
                transactional_id=self.transactional_id,
                identity=self._identity,
            )
            if error is None and result.status is not RpcStatus.OK:
                error = TransportError(
                    f"send failed: unexpected status {result.status.value}",
                    transactional_id=self.transactional_id,
                )

        if isinstance(error, FencingError):
            self._record_fatal(error)

        self._tracker.complete(record, metadata, error)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every record sent so far has completed.

        Completion callbacks have run when this returns True.

        Args:
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            False if the timeout expired first

        Raises:
            IllegalStateError: If the session is closed
        """
        self._ensure_open("flush")

        self._transport.flush(timeout)
        drained = self._tracker.wait_all(timeout)

        if not drained:
            logger.warning(
                "Flush timed out",
                transactional_id=self.transactional_id,
                outstanding=self._tracker.outstanding(),
            )

        return drained

    def commit_transaction(self) -> RpcStatus:
        """
        Commit the current transaction.

        Also legal right after resume(), to commit what the previous owner
        sent. A commit the broker already applied (for example by another
        owner of the same identity) succeeds as a no-op.

        Returns:
            RpcStatus.OK, or RpcStatus.NOOP if there was nothing to commit

        Raises:
            IllegalStateError: Outside a transaction, or after close
            FencingError: If this session was fenced
            TransportError: If the coordinator cannot be reached; the
                outcome is unknown and the commit may be retried
        """
        return self._end_transaction(commit=True)

    def abort_transaction(self) -> RpcStatus:
        """
        Abort the current transaction.

        Legal right after resume() and after a fenced send. Aborting a
        transaction the broker already aborted succeeds as a no-op, and so
        does aborting on a closed session.

        Returns:
            RpcStatus.OK, or RpcStatus.NOOP if there was nothing to abort

        Raises:
            IllegalStateError: Outside a transaction
            TransportError: If the coordinator cannot be reached
        """
        if self._state is SessionState.CLOSED:
            logger.debug(
                "Abort on closed session ignored",
                transactional_id=self.transactional_id,
            )
            return RpcStatus.NOOP

        return self._end_transaction(commit=False)

    def _end_transaction(self, commit: bool) -> RpcStatus:
        operation = "commit_transaction" if commit else "abort_transaction"
        self._ensure_open(operation)

        resumed = self._state is SessionState.READY and self._recovering
        if self._state is not SessionState.IN_TRANSACTION and not resumed:
            raise IllegalStateError(
                f"Cannot {operation} in state {self._state.value}",
                transactional_id=self.transactional_id,
                identity=self._identity,
            )

        self.flush()

        if commit:
            self._raise_if_fenced(operation)

        previous_state = self._state
        partitions = len(self._txn_partitions)
        self._transition(SessionState.COMMITTING if commit else SessionState.ABORTING)

        call = self._transport.commit_transaction if commit else self._transport.abort_transaction

        try:
            result = self._rpc(operation, call)
        except TransportError:
            # Outcome unknown; let the caller retry the same call
            self._transition(previous_state)
            raise
        except FencingError as e:
            self._record_fatal(e)
            self._finish_transaction()
            raise
        except SessionError:
            self._finish_transaction()
            raise

        self._finish_transaction()

        if commit:
            self._transactions_committed += 1
        else:
            self._transactions_aborted += 1

        logger.info(
            "Transaction committed" if commit else "Transaction aborted",
            transactional_id=self.transactional_id,
            producer_id=self._identity.producer_id,
            epoch=self._identity.epoch,
            partitions=partitions,
            resumed=resumed,
            noop=result.status is RpcStatus.NOOP,
        )

        return result.status

    def _finish_transaction(self) -> None:
        self._recovering = False
        self._txn_partitions = set()
        self._transition(SessionState.READY)

    def partitions_for(self, topic: str) -> List[int]:
        """
        Look up the partitions of a topic.

        Raises:
            IllegalStateError: If the session is closed
            TransportError: If the broker cannot be reached
            DeliveryError: If the topic does not exist
        """
        self._ensure_open("partitions_for")

        result = self._rpc("partitions_for", lambda: self._transport.partitions_for(topic))
        return list(result.partitions)

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Close the session.

        Waits up to ``timeout`` seconds for outstanding records; records not
        completed by then are abandoned and their callbacks never fire. An
        open transaction is left to the broker (or to a resuming owner).
        Calling close() again is a no-op.

        Args:
            timeout: Seconds to wait (config close_timeout_ms if None)
        """
        if self._state is SessionState.CLOSED:
            return

        if timeout is None:
            timeout = self.config.close_timeout_s

        deadline = time.monotonic() + timeout
        self._transition(SessionState.CLOSED)

        try:
            self._transport.flush(timeout)
            self._tracker.wait_all(max(0.0, deadline - time.monotonic()))
        except Exception as e:
            logger.error(
                "Error during flush on close",
                transactional_id=self.transactional_id,
                error=str(e),
            )
        finally:
            abandoned = self._tracker.abandon()
            self._transport.close(max(0.0, deadline - time.monotonic()))

        logger.info(
            "ProducerSession closed",
            transactional_id=self.transactional_id,
            abandoned=abandoned,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def metrics(self) -> dict:
        """
        Get session metrics.

        Returns:
            Dictionary with metrics
        """
        return {
            "transactional_id": self.transactional_id,
            "state": self._state.value,
            "identity": str(self._identity) if self._identity else None,
            "recovering": self._recovering,
            "fenced": self._fatal_error is not None,
            "pending_records": self._tracker.outstanding(),
            "transaction_partitions": len(self._txn_partitions),
            "transactions_committed": self._transactions_committed,
            "transactions_aborted": self._transactions_aborted,
        }
