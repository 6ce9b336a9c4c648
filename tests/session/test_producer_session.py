"""
Tests for ProducerSession against the loopback broker.
"""

import threading
import time

import pytest

from txsession.loopback import CommittedReader, LoopbackBroker, LoopbackTransport
from txsession.session import (
    DeliveryError,
    FencingError,
    IllegalStateError,
    ProducerSession,
    RpcStatus,
    SessionConfig,
    SessionState,
    TransportError,
)


@pytest.fixture
def broker():
    """Create broker with a single-partition topic."""
    broker = LoopbackBroker()
    broker.create_topic("orders", partitions=1)
    return broker


@pytest.fixture
def open_session(broker):
    """Create sessions bound to the broker, closed after the test."""
    sessions = []

    def _open(transactional_id="tx-1", **overrides):
        overrides.setdefault("close_timeout_ms", 1000)
        config = SessionConfig(transactional_id=transactional_id, **overrides)
        session = ProducerSession(config, LoopbackTransport(broker, transactional_id))
        sessions.append(session)
        return session

    yield _open

    for session in sessions:
        session.close(0)


@pytest.fixture
def reader(broker):
    """Create read_committed reader."""
    return CommittedReader(broker)


class TestTransactionLifecycle:
    """Test the initialize/begin/send/commit cycle."""

    def test_commit_exactly_one_record(self, open_session, reader):
        """Test a committed record is visible exactly once."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        future = session.send("orders", key="42", value="42")

        assert session.commit_transaction() is RpcStatus.OK
        assert future.result(timeout=1).offset == 0
        assert reader.values("orders") == ["42"]
        assert session.state is SessionState.READY

    def test_uncommitted_records_are_invisible(self, broker, open_session, reader):
        """Test read_committed hides an open transaction."""
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value="pending")
        session.flush()

        uncommitted = CommittedReader(broker, isolation_level="read_uncommitted")

        assert reader.values("orders") == []
        assert uncommitted.values("orders") == ["pending"]

        session.commit_transaction()

        assert reader.values("orders") == ["pending"]

    def test_abort_discards_records(self, open_session, reader):
        """Test aborted records are never visible."""
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value="discarded")

        assert session.abort_transaction() is RpcStatus.OK
        assert reader.values("orders") == []

        session.begin_transaction()
        session.send("orders", value="kept")
        session.commit_transaction()

        assert reader.values("orders") == ["kept"]

    def test_completion_callback(self, open_session):
        """Test the callback receives metadata once flush returns."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        seen = []
        session.send(
            "orders",
            value="v",
            on_complete=lambda metadata, error: seen.append((metadata, error)),
        )

        assert session.flush(timeout=1)
        assert len(seen) == 1

        metadata, error = seen[0]
        assert error is None
        assert metadata.topic == "orders"
        assert metadata.partition == 0

    def test_records_across_partitions(self, broker, open_session, reader):
        """Test one transaction spanning several partitions."""
        broker.create_topic("payments", partitions=3)

        session = open_session(partitioner="round_robin")
        session.initialize()
        session.begin_transaction()

        for i in range(6):
            session.send("payments", value=str(i))

        session.commit_transaction()

        records = reader.read("payments")
        assert sorted(r.value for r in records) == [str(i) for i in range(6)]
        assert {r.partition for r in records} == {0, 1, 2}
        assert session.partitions_for("payments") == [0, 1, 2]

    def test_empty_transaction_commit_is_noop(self, open_session):
        """Test committing a transaction without records."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        assert session.commit_transaction() is RpcStatus.NOOP
        assert session.state is SessionState.READY

    def test_metrics(self, open_session):
        """Test session metrics."""
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value="v")
        session.commit_transaction()

        metrics = session.metrics()

        assert metrics["state"] == "READY"
        assert metrics["transactions_committed"] == 1
        assert metrics["pending_records"] == 0
        assert not metrics["fenced"]


class TestIllegalState:
    """Test calls outside their legal state window."""

    def test_begin_before_initialize(self, open_session):
        """Test begin_transaction needs an identity."""
        session = open_session()

        with pytest.raises(IllegalStateError):
            session.begin_transaction()

    def test_send_outside_transaction(self, open_session):
        """Test send needs an open transaction."""
        session = open_session()
        session.initialize()

        with pytest.raises(IllegalStateError):
            session.send("orders", value="v")

    def test_commit_without_transaction(self, open_session):
        """Test commit in plain READY."""
        session = open_session()
        session.initialize()

        with pytest.raises(IllegalStateError):
            session.commit_transaction()

        with pytest.raises(IllegalStateError):
            session.abort_transaction()

    def test_double_begin(self, open_session):
        """Test nested transactions are rejected."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        with pytest.raises(IllegalStateError):
            session.begin_transaction()

    def test_identity_acquired_once(self, open_session):
        """Test initialize and resume are mutually exclusive."""
        initialized = open_session()
        identity = initialized.initialize()

        with pytest.raises(IllegalStateError):
            initialized.initialize()

        with pytest.raises(IllegalStateError):
            initialized.resume(identity.producer_id, identity.epoch)

        resumed = open_session()
        resumed.resume(identity.producer_id, identity.epoch)

        with pytest.raises(IllegalStateError):
            resumed.initialize()

        with pytest.raises(IllegalStateError):
            resumed.resume(identity.producer_id, identity.epoch)

        with pytest.raises(IllegalStateError):
            resumed.resume_transaction(identity.producer_id, identity.epoch)

    def test_identity_before_initialize(self, open_session):
        """Test identity accessors need an identity."""
        session = open_session()

        with pytest.raises(IllegalStateError):
            session.get_producer_id()


class TestClose:
    """Test close semantics."""

    def test_operations_fail_after_close(self, open_session):
        """Test operations other than close and abort are rejected once closed."""
        session = open_session()
        session.initialize()
        session.close()

        operations = [
            lambda: session.partitions_for("orders"),
            lambda: session.initialize(),
            lambda: session.begin_transaction(),
            lambda: session.commit_transaction(),
            lambda: session.resume(1000, 0),
            lambda: session.flush(),
            lambda: session.send("orders", value="v"),
            lambda: session.get_producer_id(),
            lambda: session.get_epoch(),
        ]

        for operation in operations:
            with pytest.raises(IllegalStateError):
                operation()

    def test_abort_after_close(self, open_session, reader):
        """Test abort on a closed session is a no-op and resume still fails."""
        session = open_session()
        identity = session.initialize()
        session.begin_transaction()
        session.send("orders", key="42", value="42")
        session.close(5)

        assert session.abort_transaction() is RpcStatus.NOOP
        assert session.state is SessionState.CLOSED

        with pytest.raises(IllegalStateError):
            session.resume_transaction(identity.producer_id, identity.epoch)

        assert reader.values("orders") == []

    def test_close_is_idempotent(self, open_session):
        """Test closing twice."""
        session = open_session()
        session.initialize()

        session.close()
        session.close()

        assert session.state is SessionState.CLOSED

    def test_close_from_uninitialized(self, open_session):
        """Test closing a session that never acquired an identity."""
        session = open_session()
        session.close()

        assert session.state is SessionState.CLOSED

    def test_close_drains_sent_records(self, open_session):
        """Test a record sent just before close is still delivered."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        delivered = threading.Event()
        future = session.send(
            "orders",
            value="last",
            on_complete=lambda metadata, error: delivered.set(),
        )

        session.close()

        assert delivered.is_set()
        assert future.result(timeout=0).offset == 0

    def test_close_abandons_undelivered_records(self, broker):
        """Test records still in flight at the deadline never complete."""
        transport = LoopbackTransport(broker, "tx-1")
        session = ProducerSession(SessionConfig(transactional_id="tx-1"), transport)
        session.initialize()
        session.begin_transaction()

        transport.hold_deliveries()

        seen = []
        future = session.send(
            "orders",
            value="stuck",
            on_complete=lambda metadata, error: seen.append(error),
        )

        session.close(timeout=0.1)
        time.sleep(0.1)

        assert seen == []
        assert not future.done()
        assert broker.partition_log("orders", 0).end_offset() == 0

    def test_context_manager(self, broker):
        """Test the session closes on exit."""
        config = SessionConfig(transactional_id="tx-1")

        with ProducerSession(config, LoopbackTransport(broker, "tx-1")) as session:
            session.initialize()

        assert session.state is SessionState.CLOSED


class TestResume:
    """Test resuming an in-flight transaction."""

    def _start(self, open_session, value="in-flight"):
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value=value)
        session.flush()
        return session

    def test_resume_commits_previous_owner_records(self, open_session, reader):
        """Test a resumed session commits what another session sent."""
        original = self._start(open_session)

        resumed = open_session()
        resumed.resume(original.get_producer_id(), original.get_epoch())

        assert resumed.is_recovering()
        assert resumed.get_producer_id() == original.get_producer_id()
        assert resumed.get_epoch() == original.get_epoch()

        assert resumed.commit_transaction() is RpcStatus.OK
        assert not resumed.is_recovering()
        assert reader.values("orders") == ["in-flight"]

    def test_resume_keeps_epoch(self, broker, open_session):
        """Test resume does not mint a new epoch."""
        original = self._start(open_session)
        epoch = original.get_epoch()

        resumed = open_session()
        resumed.resume(original.get_producer_id(), epoch)
        resumed.commit_transaction()

        assert broker.coordinator.get_transaction("tx-1").epoch == epoch

    def test_stale_owner_commit_is_noop(self, open_session, reader):
        """Test the original owner may still commit after the resumer did."""
        original = self._start(open_session)

        resumed = open_session()
        resumed.resume(original.get_producer_id(), original.get_epoch())
        resumed.commit_transaction()

        assert original.commit_transaction() is RpcStatus.NOOP
        assert reader.values("orders") == ["in-flight"]

    def test_second_resumer_commit_is_noop(self, open_session, reader):
        """Test resuming an already committed transaction again."""
        original = self._start(open_session)
        identity = (original.get_producer_id(), original.get_epoch())

        first = open_session()
        first.resume(*identity)
        assert first.commit_transaction() is RpcStatus.OK

        second = open_session()
        second.resume(*identity)
        assert second.commit_transaction() is RpcStatus.NOOP

        assert reader.values("orders") == ["in-flight"]

    def test_abort_then_resumed_abort(self, open_session, reader):
        """Test aborting a transaction that was already aborted."""
        original = self._start(open_session)
        assert original.abort_transaction() is RpcStatus.OK

        resumed = open_session()
        resumed.resume(original.get_producer_id(), original.get_epoch())

        assert resumed.abort_transaction() is RpcStatus.NOOP
        assert reader.values("orders") == []

    def test_resumed_session_runs_new_transactions(self, open_session, reader):
        """Test a resumed session keeps producing with the same identity."""
        original = self._start(open_session, value="first")

        resumed = open_session()
        resumed.resume(original.get_producer_id(), original.get_epoch())
        resumed.commit_transaction()

        resumed.begin_transaction()
        resumed.send("orders", value="second")
        resumed.commit_transaction()

        assert reader.values("orders") == ["first", "second"]

    def test_resume_unknown_identity(self, open_session):
        """Test the broker fences an identity it never issued."""
        session = open_session()
        session.resume(424242, 0)

        with pytest.raises(FencingError):
            session.commit_transaction()

    def test_resume_invalid_identity(self, open_session):
        """Test out-of-range identities are rejected before any state change."""
        session = open_session()

        with pytest.raises(ValueError):
            session.resume(1000, -1)

        assert session.state is SessionState.UNINITIALIZED


class TestFencing:
    """Test fencing by a newer epoch."""

    def test_initialize_fences_previous_owner(self, open_session, reader):
        """Test a new initialize fences the old session's writes."""
        old = open_session()
        old.initialize()
        old.begin_transaction()
        old.send("orders", value="before")
        old.flush()

        new = open_session()
        new.initialize()

        assert new.get_producer_id() == old.get_producer_id()
        assert new.get_epoch() == old.get_epoch() + 1

        errors = []
        future = old.send(
            "orders",
            value="after",
            on_complete=lambda metadata, error: errors.append(error),
        )

        assert old.flush(timeout=1)
        assert isinstance(future.exception(timeout=1), FencingError)
        assert isinstance(errors[0], FencingError)

        with pytest.raises(FencingError):
            old.commit_transaction()

        assert reader.values("orders") == []

    def test_fenced_session_cannot_continue(self, open_session):
        """Test a fenced session must be abandoned."""
        old = open_session()
        old.initialize()
        old.begin_transaction()
        old.send("orders", value="before")
        old.flush()

        open_session().initialize()

        old.send("orders", value="after")
        old.flush()

        with pytest.raises(FencingError):
            old.abort_transaction()

        assert old.metrics()["fenced"]

        with pytest.raises(FencingError):
            old.begin_transaction()

    def test_new_owner_commits_after_fencing(self, open_session, reader):
        """Test the new owner is unaffected by the fenced session."""
        old = open_session()
        old.initialize()
        old.begin_transaction()
        old.send("orders", value="old")
        old.flush()

        new = open_session()
        new.initialize()
        new.begin_transaction()
        new.send("orders", value="new")

        assert new.commit_transaction() is RpcStatus.OK
        assert reader.values("orders") == ["new"]

    def test_stale_commit_without_writes(self, open_session):
        """Test a stale session that wrote nothing commits silently."""
        old = open_session()
        old.initialize()

        open_session().initialize()

        old.begin_transaction()
        assert old.commit_transaction() is RpcStatus.NOOP


class TestFailures:
    """Test transport and delivery failures."""

    def test_initialize_broker_unavailable(self, broker, open_session):
        """Test initialize surfaces TransportError and can be retried."""
        session = open_session()
        broker.set_available(False)

        with pytest.raises(TransportError) as exc_info:
            session.initialize()

        assert exc_info.value.retriable
        assert session.state is SessionState.UNINITIALIZED

        broker.set_available(True)
        session.initialize()

        assert session.state is SessionState.READY

    def test_commit_broker_unavailable(self, broker, open_session, reader):
        """Test a commit that could not reach the coordinator can be retried."""
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value="v")
        session.flush()

        broker.set_available(False)

        with pytest.raises(TransportError):
            session.commit_transaction()

        assert session.state is SessionState.IN_TRANSACTION

        broker.set_available(True)

        assert session.commit_transaction() is RpcStatus.OK
        assert reader.values("orders") == ["v"]

    def test_send_broker_unavailable(self, broker, open_session):
        """Test send reports TransportError asynchronously."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        broker.set_available(False)
        future = session.send("orders", value="v")

        assert isinstance(future.exception(timeout=1), TransportError)

    def test_record_too_large(self):
        """Test oversized records fail with DeliveryError."""
        broker = LoopbackBroker(max_record_bytes=16)
        config = SessionConfig(transactional_id="tx-big")
        session = ProducerSession(config, LoopbackTransport(broker, "tx-big"))

        try:
            session.initialize()
            session.begin_transaction()
            future = session.send("orders", value="x" * 64)

            assert isinstance(future.exception(timeout=1), DeliveryError)
        finally:
            session.close(0)

    def test_unknown_topic(self):
        """Test sending to a missing topic without auto-creation."""
        broker = LoopbackBroker(auto_create_topics=False)
        config = SessionConfig(transactional_id="tx-1")
        session = ProducerSession(config, LoopbackTransport(broker, "tx-1"))

        try:
            session.initialize()
            session.begin_transaction()
            future = session.send("missing", value="v")

            assert isinstance(future.exception(timeout=1), DeliveryError)

            with pytest.raises(DeliveryError):
                session.partitions_for("missing")
        finally:
            session.close(0)

    def test_coordinator_restart_mid_transaction(self, broker, open_session, reader):
        """Test flush and commit after a coordinator restart."""
        session = open_session()
        session.initialize()
        session.begin_transaction()
        session.send("orders", value="survives")

        broker.restart_coordinator()

        assert session.flush(timeout=1)
        assert session.commit_transaction() is RpcStatus.OK
        assert reader.values("orders") == ["survives"]

    def test_coordinator_restart_empty_transaction(self, broker, open_session):
        """Test committing an empty transaction across a restart."""
        session = open_session()
        session.initialize()
        session.begin_transaction()

        broker.restart_coordinator()

        assert session.flush(timeout=1)
        assert session.commit_transaction().is_success()
