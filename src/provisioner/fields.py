"""Tri-state field values for task descriptors.

A descriptor field is in exactly one of three states:

- UNSET: the declaration has no opinion. The delta engine never flags it.
- ABSENT: the declaration explicitly wants "nothing" (no tags, no address).
- VALUE: a concrete value.

Keeping the three apart avoids the classic confusion between "not specified"
and "specified as empty" that optional references invite.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class FieldState(str, Enum):
    """State tag of an Opt value."""

    UNSET = "unset"
    ABSENT = "absent"
    VALUE = "value"


@dataclass(frozen=True)
class Opt(Generic[T]):
    """Tagged option value. Build with Opt.of(), UNSET, ABSENT or opt()."""

    state: FieldState
    value: T | None = None

    @classmethod
    def of(cls, value: T) -> Opt[T]:
        if value is None:
            raise ValueError("Opt.of() requires a value; use ABSENT for explicit none")
        return cls(FieldState.VALUE, value)

    @property
    def is_unset(self) -> bool:
        return self.state is FieldState.UNSET

    @property
    def is_absent(self) -> bool:
        return self.state is FieldState.ABSENT

    @property
    def has_value(self) -> bool:
        return self.state is FieldState.VALUE

    def get(self) -> T:
        """Return the held value.

        Raises:
            ValueError: If the field is UNSET or ABSENT.
        """
        if self.state is not FieldState.VALUE:
            raise ValueError(f"field is {self.state.value}, not a value")
        return self.value  # type: ignore[return-value]

    def value_or(self, default: U) -> T | U:
        if self.state is FieldState.VALUE:
            return self.value  # type: ignore[return-value]
        return default

    def map(self, fn: Callable[[T], U]) -> Opt[U]:
        """Apply fn to a held value; UNSET and ABSENT pass through."""
        if self.state is FieldState.VALUE:
            return Opt.of(fn(self.value))  # type: ignore[arg-type]
        return self  # type: ignore[return-value]

    def __repr__(self) -> str:
        if self.state is FieldState.VALUE:
            return f"Opt.of({self.value!r})"
        return self.state.name


UNSET: Opt[Any] = Opt(FieldState.UNSET)
ABSENT: Opt[Any] = Opt(FieldState.ABSENT)


def opt(value: T | None) -> Opt[T]:
    """Wrap an observed value: None becomes ABSENT, anything else a value."""
    if value is None:
        return ABSENT
    return Opt.of(value)
