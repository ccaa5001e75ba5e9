"""Safe, typed access into untyped JSON trees.

Event payloads arrive from socket.io as plain Python JSON values (dict, list,
str, int, float, bool, None) with no schema guarantee. `map_get` walks such a
tree along a key path and returns a `Lookup`: either the value, checked
against the requested kind, or the reason it could not be produced. It never
raises for bad input.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, overload

from homely2mqtt.homely.exceptions import PayloadError
from homely2mqtt.logging_abstraction import get_logger

__all__ = [
    "Lookup",
    "map_get",
]

logger = get_logger(__name__)

T = TypeVar("T")
D = TypeVar("D")

_MAX_REPR = 200


def _short(value: object) -> str:
    text = repr(value)
    return text if len(text) <= _MAX_REPR else f"{text[:_MAX_REPR]}..."


@dataclass(frozen=True, slots=True)
class Lookup(Generic[T]):
    """Result of a `map_get` call.

    Truthy when the value was found with the right kind. `value` is None when
    not found, so check `found` (or truthiness) before trusting it; a found
    value may itself legitimately be None when the requested kind is `object`.
    """

    found: bool
    value: T | None = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.found

    @overload
    def get(self) -> T | None: ...

    @overload
    def get(self, default: D) -> T | D: ...

    def get(self, default: Any = None) -> Any:
        return self.value if self.found else default

    def unwrap(self) -> T:
        """Return the value or raise PayloadError with the lookup failure reason."""
        if not self.found:
            raise PayloadError(self.reason)
        return self.value  # type: ignore[return-value]


def _missing(reason: str) -> Lookup[Any]:
    logger.debug("extract: %s", reason)
    return Lookup(found=False, reason=reason)


def _coerce(value: object, kind: type | tuple[type, ...]) -> tuple[bool, object]:
    """Check `value` against `kind`, JSON style.

    bool is never accepted as a number, ints are accepted (and converted) where
    a float is asked for, and `list`/`dict` accept any non-string sequence or
    mapping respectively.
    """
    kinds = kind if isinstance(kind, tuple) else (kind,)
    for k in kinds:
        if k is object:
            return True, value
        if k is bool:
            if isinstance(value, bool):
                return True, value
            continue
        if isinstance(value, bool):
            continue
        if k is float and isinstance(value, (int, float)):
            return True, float(value)
        if k is list and isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            return True, list(value)
        if k is dict and isinstance(value, Mapping):
            return True, value
        if isinstance(value, k):
            return True, value
    return False, value


def _kind_name(kind: type | tuple[type, ...]) -> str:
    if isinstance(kind, tuple):
        return " | ".join(k.__name__ for k in kind)
    return kind.__name__


def map_get(tree: object, *keys: str, kind: type[T] | tuple[type, ...] = object) -> Lookup[T]:
    """Walk `tree` along `keys` and return the final value if it has `kind`.

    Every node on the way, including the one holding the last key, must be a
    mapping. Examples:

        map_get(envelope, "data", "deviceId", kind=str)
        map_get(change, "value")  # any JSON value, None included

    Args:
        tree: Untyped JSON value to read from
        *keys: Non-empty key path
        kind: Type (or tuple of types) the final value must have

    Returns:
        Lookup holding the value, or the reason it is missing

    Raises:
        ValueError: when called without any key (a programming error, not bad input)

    """
    if not keys:
        msg = "map_get requires at least one key"
        raise ValueError(msg)

    current: object = tree
    path: list[str] = []
    for key in keys:
        if not isinstance(current, Mapping):
            where = ".".join(path) or "<root>"
            return _missing(f"expected mapping at {where}, found {type(current).__name__}: {_short(current)}")
        if key not in current:
            return _missing(f"expected key {'.'.join([*path, key])} in {_short(current)}")
        current = current[key]
        path.append(key)

    ok, value = _coerce(current, kind)
    if not ok:
        return _missing(
            f"mismatch type for {'.'.join(path)}: cant coerce {_short(current)} "
            f"to {_kind_name(kind)}, found {type(current).__name__}",
        )
    return Lookup(found=True, value=value)  # type: ignore[arg-type]
