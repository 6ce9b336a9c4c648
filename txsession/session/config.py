"""
Configuration for producer sessions.
"""

from dataclasses import dataclass, fields
from typing import List, Optional, Union

from txsession.utils.config import Config

ISOLATION_LEVELS = ("read_committed", "read_uncommitted")


@dataclass
class SessionConfig:
    """
    Configuration for a transactional producer session.

    Attributes:
        transactional_id: Stable id of the logical producer slot (required)
        bootstrap_servers: Initial broker list
        key_serializer: Serializer name for keys (string, bytes, json)
        value_serializer: Serializer name for values
        isolation_level: Isolation level of the paired read-side verifier
        transaction_timeout_ms: Broker-side timeout for an open transaction
        request_timeout_ms: Timeout for a single coordinator request
        close_timeout_ms: Default drain time for close()
        partitioner: Partitioner strategy (default, key_hash or round_robin)
    """
    transactional_id: str
    bootstrap_servers: Union[str, List[str]] = "localhost:9092"
    key_serializer: str = "string"
    value_serializer: str = "string"
    isolation_level: str = "read_committed"
    transaction_timeout_ms: int = 60000
    request_timeout_ms: int = 30000
    close_timeout_ms: int = 5000
    partitioner: str = "default"

    def __post_init__(self) -> None:
        if not self.transactional_id or not isinstance(self.transactional_id, str):
            raise ValueError("transactional_id is required for a transactional session")

        if self.isolation_level not in ISOLATION_LEVELS:
            raise ValueError(
                f"isolation_level must be one of {ISOLATION_LEVELS}, "
                f"got {self.isolation_level!r}"
            )

        for name in ("transaction_timeout_ms", "request_timeout_ms", "close_timeout_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @property
    def close_timeout_s(self) -> float:
        return self.close_timeout_ms / 1000.0

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        **overrides,
    ) -> "SessionConfig":
        """
        Build a session config from the ``session`` section of a Config.

        Args:
            config: Loaded configuration (global config if None)
            **overrides: Values taking precedence over the file

        Returns:
            SessionConfig
        """
        if config is None:
            from txsession.utils.config import get_config
            config = get_config()

        known = {f.name for f in fields(cls)}
        values = {
            key: value
            for key, value in config.section("session").items()
            if key in known
        }
        values.update(overrides)

        for name in ("transaction_timeout_ms", "request_timeout_ms", "close_timeout_ms"):
            if name in values:
                values[name] = int(values[name])

        if "transactional_id" not in values:
            raise ValueError("transactional_id is required for a transactional session")

        return cls(**values)
