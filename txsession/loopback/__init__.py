"""
In-process broker for running producer sessions without a cluster.

Provides partition logs with transaction markers, a transaction coordinator
with epoch fencing, and a transport and reader bound to them.
"""

from txsession.loopback.broker import LoopbackBroker
from txsession.loopback.coordinator import (
    BrokerTransactionState,
    TransactionCoordinator,
)
from txsession.loopback.partition_log import IsolationLevel, PartitionLog
from txsession.loopback.reader import CommittedReader, ConsumedRecord
from txsession.loopback.transport import LoopbackTransport

__all__ = [
    "LoopbackBroker",
    "LoopbackTransport",
    "CommittedReader",
    "ConsumedRecord",
    "IsolationLevel",
    "PartitionLog",
    "BrokerTransactionState",
    "TransactionCoordinator",
]
