"""
Serialization contract for values stored in the remote layer.

A serializer turns a value into bytes and back. Failures are raised as
``SerializationException`` so callers see the broken data contract.
"""

import json
from typing import Any, Generic, Optional, Protocol, Type, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from ..exceptions import SerializationException

M = TypeVar('M', bound=BaseModel)


@runtime_checkable
class Serializer(Protocol):
    """Encode values to bytes and decode them back."""

    def encode(self, value: Any) -> bytes:
        ...

    def decode(self, data: bytes) -> Any:
        ...


class JsonSerializer:
    """
    Strict JSON serializer.

    Values that JSON cannot represent are rejected instead of being
    stringified, and non-finite floats are refused.
    """

    def encode(self, value: Any, key: Optional[str] = None) -> bytes:
        try:
            return json.dumps(value, allow_nan=False, separators=(',', ':')).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise SerializationException(
                f"Cannot encode value of type {type(value).__name__} as JSON",
                key=key, direction="encode", original_error=e,
            )

    def decode(self, data: bytes, key: Optional[str] = None) -> Any:
        try:
            if isinstance(data, (bytes, bytearray)):
                data = data.decode('utf-8')
            return json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationException(
                "Stored value is not valid JSON", key=key, direction="decode", original_error=e,
            )


class PydanticSerializer(Generic[M]):
    """Serializer bound to one pydantic model."""

    def __init__(self, model: Type[M]):
        self.model = model

    def encode(self, value: M, key: Optional[str] = None) -> bytes:
        if not isinstance(value, self.model):
            raise SerializationException(
                f"Expected {self.model.__name__}, got {type(value).__name__}",
                key=key, direction="encode",
            )
        return value.model_dump_json().encode('utf-8')

    def decode(self, data: bytes, key: Optional[str] = None) -> M:
        try:
            return self.model.model_validate_json(data)
        except ValidationError as e:
            raise SerializationException(
                f"Stored value does not match {self.model.__name__}",
                key=key, direction="decode", original_error=e,
            )


def encode_value(serializer: Serializer, value: Any, key: str) -> bytes:
    """Encode with a serializer, wrapping unexpected failures."""
    try:
        return serializer.encode(value)
    except SerializationException as e:
        if key and 'key' not in e.details:
            e.details['key'] = key
        raise
    except Exception as e:
        raise SerializationException("Value encoding failed", key=key, direction="encode", original_error=e)


def decode_value(serializer: Serializer, data: bytes, key: str) -> Any:
    """Decode with a serializer, wrapping unexpected failures."""
    try:
        return serializer.decode(data)
    except SerializationException as e:
        if key and 'key' not in e.details:
            e.details['key'] = key
        raise
    except Exception as e:
        raise SerializationException("Value decoding failed", key=key, direction="decode", original_error=e)
