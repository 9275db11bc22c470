"""
Rebalancing Engine - Serialization.

Converts domain dataclasses to JSON-safe primitives and back with
pydantic adapters.

- Decimal -> str (exact round trip)
- datetime -> ISO 8601 string
- Enum -> value
- nested dataclasses, lists, dicts and Optionals follow the
  type hints of the target class

Decoding validates: a malformed payload raises
pydantic.ValidationError instead of being coerced.
"""

from functools import lru_cache
from typing import Any, Dict, Type, TypeVar

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python


T = TypeVar("T")


def to_primitive(value: Any) -> Any:
    """Convert a domain value into JSON-safe primitives."""
    return to_jsonable_python(value, fallback=str)


def from_primitive(target: Any, data: Any) -> Any:
    """
    Rebuild a value of type ``target`` from primitives.

    Unknown keys in dataclass payloads are ignored; missing keys
    fall back to the field defaults.

    Raises:
        pydantic.ValidationError: data does not fit ``target``
    """
    return _adapter(target).validate_python(data)


def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    """Typed entry point of from_primitive for dataclasses."""
    return from_primitive(cls, data)


@lru_cache(maxsize=None)
def _adapter(target: Any) -> TypeAdapter:
    return TypeAdapter(target)
