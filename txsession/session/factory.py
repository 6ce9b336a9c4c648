"""
Session factory and resume protocol.

An external recovery mechanism stores a TransactionCheckpoint next to its own
checkpoint state. After a failure it hands the checkpoint back to the factory,
which builds a new session bound to the same identity. Correctness rests on
the broker: at most one epoch per transactional id is current, and writes
carrying a stale epoch are rejected.
"""

import json
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from txsession.session.config import SessionConfig
from txsession.session.identity import ProducerIdentity
from txsession.session.producer_session import ProducerSession
from txsession.session.result import RpcStatus
from txsession.transport.base import TransportClient
from txsession.utils.logging import get_logger, session_log_context

logger = get_logger(__name__)

TransportFactory = Callable[[SessionConfig], TransportClient]


@dataclass(frozen=True)
class TransactionCheckpoint:
    """
    Identity of an in-flight transaction, as persisted by a recovery log.

    Attributes:
        transactional_id: Transactional ID the identity belongs to
        producer_id: Producer ID
        epoch: Producer epoch
    """
    transactional_id: str
    producer_id: int
    epoch: int

    def __post_init__(self) -> None:
        if not self.transactional_id:
            raise ValueError("Checkpoint requires a transactional_id")
        # Validates id/epoch ranges
        ProducerIdentity(self.producer_id, self.epoch)

    @property
    def identity(self) -> ProducerIdentity:
        return ProducerIdentity(self.producer_id, self.epoch)

    @classmethod
    def from_session(cls, session: ProducerSession) -> "TransactionCheckpoint":
        """
        Capture the identity of a live session.

        Raises:
            IllegalStateError: If the session has no identity or is closed
        """
        identity = session.identity
        return cls(
            transactional_id=session.transactional_id,
            producer_id=identity.producer_id,
            epoch=identity.epoch,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionCheckpoint":
        return cls(
            transactional_id=data["transactional_id"],
            producer_id=int(data["producer_id"]),
            epoch=int(data["epoch"]),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, data: str) -> "TransactionCheckpoint":
        return cls.from_dict(json.loads(data))


class SessionFactory:
    """
    Builds producer sessions for one transactional id.

    A session gets its identity exactly one way: ``initialize()`` mints a new
    epoch, ``resume(checkpoint)`` adopts a recorded one.
    """

    def __init__(
        self,
        config: SessionConfig,
        transport_factory: TransportFactory,
    ):
        """
        Initialize session factory.

        Args:
            config: Session configuration shared by every session
            transport_factory: Creates a fresh transport per session
        """
        self.config = config
        self._transport_factory = transport_factory

    def create(self) -> ProducerSession:
        """Create an UNINITIALIZED session."""
        return ProducerSession(self.config, self._transport_factory(self.config))

    def initialize(self) -> ProducerSession:
        """
        Create a session holding a freshly minted identity.

        The previous owner of the transactional id is fenced and its open
        transaction aborted by the broker.
        """
        session = self.create()
        try:
            session.initialize()
        except Exception:
            session.close(0)
            raise
        return session

    def resume(self, checkpoint: TransactionCheckpoint) -> ProducerSession:
        """
        Create a session re-attached to a checkpointed identity.

        Args:
            checkpoint: Identity recorded by a previous owner

        Returns:
            READY session that may commit/abort the resumed transaction

        Raises:
            ValueError: If the checkpoint belongs to another transactional id
        """
        if checkpoint.transactional_id != self.config.transactional_id:
            raise ValueError(
                f"Checkpoint for {checkpoint.transactional_id!r} cannot resume "
                f"session {self.config.transactional_id!r}"
            )

        session = self.create()
        try:
            session.resume(checkpoint.producer_id, checkpoint.epoch)
        except Exception:
            session.close(0)
            raise

        logger.info(
            "Session resumed from checkpoint",
            transactional_id=checkpoint.transactional_id,
            producer_id=checkpoint.producer_id,
            epoch=checkpoint.epoch,
        )

        return session

    def recover(
        self,
        checkpoint: TransactionCheckpoint,
        commit: bool = True,
        timeout: Optional[float] = None,
    ) -> RpcStatus:
        """
        Finish a checkpointed transaction and close the recovering session.

        Safe to repeat: a transaction already completed the same way is
        reported as RpcStatus.NOOP.

        Args:
            checkpoint: Identity recorded by a previous owner
            commit: Commit (True) or abort (False) the transaction
            timeout: Close timeout in seconds

        Returns:
            RpcStatus.OK or RpcStatus.NOOP
        """
        with session_log_context(checkpoint.transactional_id, recovery=True):
            session = self.resume(checkpoint)
            try:
                if commit:
                    status = session.commit_transaction()
                else:
                    status = session.abort_transaction()
            finally:
                session.close(timeout)

        logger.info(
            "Recovered transaction",
            transactional_id=checkpoint.transactional_id,
            producer_id=checkpoint.producer_id,
            epoch=checkpoint.epoch,
            committed=commit,
            status=status.value,
        )

        return status
