"""
Key/value serializers selected by name in SessionConfig.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional


class Serializer(ABC):
    """Converts application keys/values to bytes and back."""

    name = ""

    @abstractmethod
    def serialize(self, obj: Any) -> Optional[bytes]:
        pass

    @abstractmethod
    def deserialize(self, data: Optional[bytes]) -> Any:
        pass


class StringSerializer(Serializer):
    """Text encoded with a fixed charset."""

    name = "string"

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def serialize(self, obj: Any) -> Optional[bytes]:
        if obj is None:
            return None
        if not isinstance(obj, str):
            raise TypeError(f"StringSerializer expects str, got {type(obj)}")
        return obj.encode(self.encoding)

    def deserialize(self, data: Optional[bytes]) -> Optional[str]:
        if data is None:
            return None
        return data.decode(self.encoding)


class BytesSerializer(Serializer):
    """Pass-through for payloads that are already bytes."""

    name = "bytes"

    def serialize(self, obj: Any) -> Optional[bytes]:
        if obj is None:
            return None
        if not isinstance(obj, (bytes, bytearray, memoryview)):
            raise TypeError(f"BytesSerializer expects bytes, got {type(obj)}")
        return bytes(obj)

    def deserialize(self, data: Optional[bytes]) -> Optional[bytes]:
        return data


class JsonSerializer(Serializer):
    """JSON documents encoded as UTF-8."""

    name = "json"

    def serialize(self, obj: Any) -> Optional[bytes]:
        if obj is None:
            return None
        return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def deserialize(self, data: Optional[bytes]) -> Any:
        if data is None:
            return None
        return json.loads(data.decode("utf-8"))


_SERIALIZERS = {
    StringSerializer.name: StringSerializer,
    BytesSerializer.name: BytesSerializer,
    JsonSerializer.name: JsonSerializer,
}


def get_serializer(name: str) -> Serializer:
    """
    Create a serializer by name.

    Args:
        name: string, bytes or json

    Returns:
        Serializer instance

    Raises:
        ValueError: If name is unknown
    """
    try:
        return _SERIALIZERS[name]()
    except KeyError:
        raise ValueError(f"Unknown serializer: {name}") from None
