"""Delta engine: actual vs. expected comparison.

Each task type lists its comparable fields explicitly in ``Task.diff`` using a
Differ, picking a comparison strategy per field. The rules shared by every
strategy:

- An UNSET expected field is never flagged, whatever the actual value is.
- Empty equivalence: ABSENT, None, "", [] and {} are all the same "nothing".
- A flagged field carries the expected value verbatim, not a delta payload.
- With no actual snapshot (resource not found) every non-UNSET expected
  field is flagged, which is a full create.

The strategies mirror the usual sources of spurious drift in cloud APIs:
unordered collections, case variations in enum-like strings, and references
that come back as URLs or stubs rather than full descriptors.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from typing import TYPE_CHECKING, Any

from .fields import Opt

if TYPE_CHECKING:
    from .task import Task

logger = logging.getLogger(__name__)

# Compares an actual value to an expected value (both plain, never Opt)
Comparator = Callable[[Any, Any], bool]


def equal(actual: Any, expected: Any) -> bool:
    return actual == expected


def unordered(actual: Any, expected: Any) -> bool:
    """Compare collections ignoring order (multiset semantics)."""
    if isinstance(actual, list | tuple | set) and isinstance(expected, list | tuple | set):
        return sorted(map(repr, actual)) == sorted(map(repr, expected))
    return actual == expected


def case_insensitive(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    return actual == expected


def same_ref(actual: Any, expected: Any) -> bool:
    """Compare task references by key; works for single refs, lists and dicts."""
    return _ref_keys(actual) == _ref_keys(expected)


def same_bytes(actual: Any, expected: Any) -> bool:
    """Compare content by its rendered bytes."""
    return _as_bytes(actual) == _as_bytes(expected)


def _ref_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _ref_keys(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return sorted(_ref_keys(v) for v in value)
    key = getattr(value, "key", None)
    return key if key is not None else value


def _as_bytes(value: Any) -> Any:
    if isinstance(value, str):
        return value.encode("utf-8")
    opener = getattr(value, "open", None)
    if callable(opener):
        return opener()
    return value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str | list | tuple | dict | set) and len(value) == 0)


def _plain(value: Any) -> Any:
    if isinstance(value, Opt):
        return value.value if value.has_value else None
    return value


class Changes(Mapping[str, Opt[Any]]):
    """Sparse set of fields that must move, keyed by field name.

    Values are the expected Opt for that field. Renderers that have applied a
    field call discard() so that whatever is left can be reported as
    unsupported.
    """

    def __init__(self, task_key: str, fields: dict[str, Opt[Any]] | None = None) -> None:
        self._task_key = task_key
        self._fields: dict[str, Opt[Any]] = dict(fields or {})

    @property
    def task_key(self) -> str:
        return self._task_key

    @property
    def is_empty(self) -> bool:
        return not self._fields

    @property
    def field_names(self) -> list[str]:
        return sorted(self._fields)

    def discard(self, name: str) -> None:
        self._fields.pop(name, None)

    def __getitem__(self, name: str) -> Opt[Any]:
        return self._fields[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        if not self._fields:
            return f"Changes({self._task_key}: none)"
        return f"Changes({self._task_key}: {', '.join(self.field_names)})"


class Differ:
    """Builds a Changes value field by field.

    Usage inside a task::

        def diff(self, actual):
            return (
                Differ(self, actual)
                .field("zone")
                .field("tags", unordered)
                .field("network", same_ref)
                .changes()
            )
    """

    def __init__(self, expected: Task, actual: Task | None) -> None:
        self._expected = expected
        self._actual = actual
        self._fields: dict[str, Opt[Any]] = {}

    def field(self, name: str, compare: Comparator = equal) -> Differ:
        expected = getattr(self._expected, name)
        if not isinstance(expected, Opt):
            raise TypeError(f"{self._expected.kind}.{name} is not an Opt field")
        if expected.is_unset:
            return self

        if self._actual is None:
            self._fields[name] = expected
            return self

        actual_value = _plain(getattr(self._actual, name))
        expected_value = _plain(expected)

        if _is_empty(actual_value) and _is_empty(expected_value):
            return self
        if _is_empty(actual_value) != _is_empty(expected_value) or not compare(
            actual_value, expected_value
        ):
            self._fields[name] = expected
        return self

    def changes(self) -> Changes:
        return Changes(self._expected.key, self._fields)


def compute_changes(actual: Task | None, expected: Task) -> Changes:
    """Compute the Changes needed to move actual to expected."""
    changes = expected.diff(actual)
    logger.debug(
        "Computed changes",
        extra={
            "task": expected.key,
            "found": actual is not None,
            "changed_fields": changes.field_names,
        },
    )
    return changes
