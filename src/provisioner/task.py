"""Task: the declarative description of one infrastructure object.

A task carries identity (kind + name), a lifecycle and resource-specific
fields held as tri-state Opt values. Concrete task types add:

- dependencies(): the other tasks they reference, listed explicitly.
- find(): discovery of the actual state, returning None when not found.
- diff(): explicit per-field comparison (see delta.Differ).
- check_changes(): validation hook rejecting disallowed transitions.
- One render routine per supported target (see render.py).

Once the graph is built the task is sealed: only fields listed in
computed_fields may still be assigned, and each of them only once. This is
how renderers hand engine-computed values (an assigned IP address, a
fingerprint) to dependents without making the descriptor mutable.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from .config import ConfigurationError
from .fields import Opt
from .lifecycle import Lifecycle

if TYPE_CHECKING:
    from .context import RunContext
    from .delta import Changes


class DisallowedChangeError(ConfigurationError):
    """Raised by a validation hook when a field may not change."""

    def __init__(self, task_key: str, field_name: str, actual: Any, expected: Any) -> None:
        self.task_key = task_key
        self.field_name = field_name
        super().__init__(
            f"{task_key}: field {field_name!r} cannot be changed "
            f"(actual={actual!r}, expected={expected!r})"
        )


class CannotApplyChangesError(Exception):
    """Raised by a renderer when changes remain that it has no API call for."""

    def __init__(self, task_key: str, field_names: list[str]) -> None:
        self.task_key = task_key
        self.field_names = field_names
        super().__init__(f"cannot apply changes to {task_key}: {', '.join(field_names)}")


@dataclass
class Task:
    """Base class for every task type."""

    name: str
    lifecycle: Lifecycle = Lifecycle.SYNC

    kind: ClassVar[str] = "Task"
    computed_fields: ClassVar[frozenset[str]] = frozenset()
    immutable_fields: ClassVar[frozenset[str]] = frozenset()

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_sealed") and not name.startswith("_"):
            if name not in self.computed_fields:
                raise AttributeError(f"{self.key} is sealed; {name} cannot change during a run")
            written: set[str] = self.__dict__["_written"]
            if name in written:
                raise AttributeError(f"{self.key}: computed field {name} was already written")
            written.add(name)
        object.__setattr__(self, name, value)

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.name}"

    @property
    def sealed(self) -> bool:
        return bool(self.__dict__.get("_sealed"))

    def seal(self) -> None:
        object.__setattr__(self, "_written", set())
        object.__setattr__(self, "_sealed", True)

    def dependencies(self) -> list[Task]:
        return []

    def link(self, resolve: Callable[[Task], Task]) -> None:
        """Replace referenced tasks with their canonical graph nodes."""
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Opt) and value.has_value:
                linked = _link_value(value.value, resolve)
                if linked is not value.value:
                    setattr(self, f.name, Opt.of(linked))

    async def find(self, ctx: RunContext) -> Task | None:
        raise NotImplementedError(f"{self.kind} does not implement find")

    def diff(self, actual: Task | None) -> Changes:
        raise NotImplementedError(f"{self.kind} does not implement diff")

    def check_changes(self, actual: Task | None, changes: Changes) -> None:
        """Reject changes to immutable fields of an existing resource."""
        if actual is None:
            return
        for name in sorted(self.immutable_fields):
            if name in changes:
                raise DisallowedChangeError(
                    self.key, name, getattr(actual, name), changes[name]
                )


def refs(*values: Opt[Any]) -> list[Task]:
    """Collect the tasks referenced by some Opt fields, in order, without repeats."""
    found: dict[str, Task] = {}
    for value in values:
        if value.has_value:
            _collect(value.value, found)
    return list(found.values())


def _collect(value: Any, found: dict[str, Task]) -> None:
    if isinstance(value, Task):
        found.setdefault(value.key, value)
    elif isinstance(value, list | tuple):
        for item in value:
            _collect(item, found)
    elif isinstance(value, dict):
        for item in value.values():
            _collect(item, found)


def _link_value(value: Any, resolve: Callable[[Task], Task]) -> Any:
    if isinstance(value, Task):
        return resolve(value)
    if isinstance(value, list) and any(isinstance(v, Task) for v in value):
        return [_link_value(v, resolve) for v in value]
    if isinstance(value, dict) and any(isinstance(v, Task) for v in value.values()):
        return {k: _link_value(v, resolve) for k, v in value.items()}
    return value
