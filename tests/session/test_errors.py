"""
Tests for the error taxonomy and RPC result mapping.
"""

import pytest

from txsession.session.errors import (
    DeliveryError,
    ErrorKind,
    FencingError,
    IllegalStateError,
    SessionError,
    TransportError,
    classify,
    is_retriable,
)
from txsession.session.identity import ProducerIdentity
from txsession.session.result import RpcResult, RpcStatus, raise_for_status, to_exception


class TestErrorTaxonomy:
    """Test error kinds and retriability."""

    def test_error_kinds(self):
        """Test each error class carries its kind."""
        assert IllegalStateError("x").kind is ErrorKind.STATE_VIOLATION
        assert TransportError("x").kind is ErrorKind.TRANSPORT
        assert FencingError("x").kind is ErrorKind.FENCED
        assert DeliveryError("x").kind is ErrorKind.DELIVERY

    def test_illegal_state_is_runtime_error(self):
        """Test IllegalStateError can be caught as RuntimeError."""
        with pytest.raises(RuntimeError):
            raise IllegalStateError("closed")

    def test_only_transport_errors_are_retriable(self):
        """Test retriability per kind."""
        assert is_retriable(TransportError("timeout"))
        assert not is_retriable(FencingError("fenced"))
        assert not is_retriable(IllegalStateError("closed"))
        assert not is_retriable(DeliveryError("too large"))

    def test_foreign_exceptions_are_transport(self):
        """Test exceptions from below the session count as transport failures."""
        assert classify(ConnectionError("reset")) is ErrorKind.TRANSPORT
        assert is_retriable(TimeoutError())

    def test_error_context(self):
        """Test transactional id and identity appear in the message."""
        error = FencingError(
            "send rejected",
            transactional_id="tx-1",
            identity=ProducerIdentity(1000, 2),
        )

        assert error.transactional_id == "tx-1"
        assert "transactional_id=tx-1" in str(error)
        assert "identity=1000:2" in str(error)
        assert str(SessionError("plain")) == "plain"


class TestRpcResult:
    """Test RpcResult to exception mapping."""

    def test_success_statuses(self):
        """Test OK and NOOP are successes."""
        assert RpcResult.ok().success
        assert RpcResult.noop("already committed").success
        assert not RpcResult.failure(RpcStatus.FENCED, "stale").success

    def test_success_raises_nothing(self):
        """Test successful results pass through."""
        result = RpcResult.noop("already committed")

        assert to_exception(result, "commit") is None
        assert raise_for_status(result, "commit") is result

    @pytest.mark.parametrize(
        "status, error_type",
        [
            (RpcStatus.FENCED, FencingError),
            (RpcStatus.COORDINATOR_UNAVAILABLE, TransportError),
            (RpcStatus.REQUEST_TIMED_OUT, TransportError),
            (RpcStatus.INVALID_TXN_STATE, IllegalStateError),
            (RpcStatus.UNKNOWN_TOPIC, DeliveryError),
            (RpcStatus.RECORD_TOO_LARGE, DeliveryError),
        ],
    )
    def test_failure_mapping(self, status, error_type):
        """Test every failure status maps to one error class."""
        result = RpcResult.failure(status, "detail")

        with pytest.raises(error_type) as exc_info:
            raise_for_status(result, "commit_transaction", transactional_id="tx-1")

        assert "commit_transaction failed: detail" in str(exc_info.value)
        assert exc_info.value.transactional_id == "tx-1"
