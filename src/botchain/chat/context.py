"""Per-dispatch value bag shared by the handlers of one chain run."""

from __future__ import annotations

from typing import Any, Dict, Generic, Iterator, Optional, TypeVar, overload

T = TypeVar("T")
D = TypeVar("D")

_MISSING = object()


class ContextKey(Generic[T]):
    """Typed key; identity, not name, decides equality."""

    __slots__ = ("name", "type")

    def __init__(self, name: str, value_type: type[T]) -> None:
        self.name = name
        self.type = value_type

    def __repr__(self) -> str:
        return f"ContextKey({self.name!r}, {self.type.__name__})"


class Context:
    """Mutable mapping from :class:`ContextKey` to values.

    One instance is built per dispatch call and discarded when the chain
    finishes; handlers earlier in the chain can leave values for later ones.
    """

    def __init__(self) -> None:
        self._values: Dict[ContextKey[Any], Any] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[ContextKey[Any]]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def set(self, key: ContextKey[T], value: T) -> None:
        if not isinstance(value, key.type):
            raise TypeError(
                f"context key {key.name!r} expects {key.type.__name__}, "
                f"got {type(value).__name__}"
            )
        self._values[key] = value

    @overload
    def get(self, key: ContextKey[T]) -> Optional[T]: ...

    @overload
    def get(self, key: ContextKey[T], default: D) -> T | D: ...

    def get(self, key: ContextKey[Any], default: Any = None) -> Any:
        return self._values.get(key, default)

    def require(self, key: ContextKey[T]) -> T:
        value = self._values.get(key, _MISSING)
        if value is _MISSING:
            raise KeyError(f"context has no value for {key.name!r}")
        return value  # type: ignore[return-value]

    def pop(self, key: ContextKey[T]) -> Optional[T]:
        return self._values.pop(key, None)
