#!/usr/bin/env python3
"""
Resume example: a crashed writer's transaction is committed by its successor.
"""

import argparse

from txsession.loopback import CommittedReader, LoopbackBroker, LoopbackTransport
from txsession.session import SessionConfig, SessionFactory, TransactionCheckpoint
from txsession.utils.logging import configure_logging


def main():
    parser = argparse.ArgumentParser(description='txsession Resume Example')
    parser.add_argument('--topic', default='events', help='Topic name')
    parser.add_argument('--messages', type=int, default=5, help='Records in the transaction')
    parser.add_argument('--abort', action='store_true', help='Abort instead of commit on recovery')
    parser.add_argument('--log-level', default='WARNING', help='Log level')
    args = parser.parse_args()

    configure_logging(log_level=args.log_level, log_format='console')

    broker = LoopbackBroker()
    broker.create_topic(args.topic, partitions=2)

    config = SessionConfig(transactional_id='example-sink-0', value_serializer='json')
    factory = SessionFactory(
        config,
        lambda cfg: LoopbackTransport(broker, cfg.transactional_id, cfg.transaction_timeout_ms),
    )

    # First owner writes a transaction and "crashes" before committing
    session = factory.initialize()
    session.begin_transaction()

    for i in range(args.messages):
        session.send(args.topic, key=f'key-{i % 3}', value={'id': i})

    session.flush()
    checkpoint_json = TransactionCheckpoint.from_session(session).to_json()
    session.close()

    print(f"Checkpoint stored: {checkpoint_json}")

    reader = CommittedReader(broker, value_deserializer='json')
    print(f"Visible before recovery: {len(reader.read(args.topic))}")

    # Successor resumes the checkpointed identity and finishes the transaction
    checkpoint = TransactionCheckpoint.from_json(checkpoint_json)
    status = factory.recover(checkpoint, commit=not args.abort)
    print(f"Recovery: {status.value}")

    # Repeating recovery is harmless
    status = factory.recover(checkpoint, commit=not args.abort)
    print(f"Repeated recovery: {status.value}")

    records = reader.read(args.topic)
    print(f"Visible after recovery: {len(records)}")
    for record in records:
        print(f"  partition={record.partition} offset={record.offset} value={record.value}")


if __name__ == '__main__':
    main()
