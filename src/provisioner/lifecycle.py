"""Per-task lifecycle policy and overrides.

The lifecycle decides what the engine may do with a task:

- Sync: create missing resources and apply changes.
- Ignore: do not process the task at all.
- ExistsAndValidates: the resource must exist with no changes; never mutate.
- ExistsAndWarnIfChanges: the resource must exist; drift is only logged.

Each task declares its own lifecycle. Operators can override it for whole
classes of tasks without editing the manifest, e.g. to verify networks that
another team owns:

    LIFECYCLE_OVERRIDES="Network=ExistsAndValidates,Subnet/shared-*=Ignore"

Overrides are evaluated in order and the first matching rule wins.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import ConfigurationError

if TYPE_CHECKING:
    from .task import Task

logger = logging.getLogger(__name__)


class Lifecycle(str, Enum):
    """What the engine is allowed to do with a task."""

    SYNC = "Sync"
    IGNORE = "Ignore"
    EXISTS_AND_VALIDATES = "ExistsAndValidates"
    EXISTS_AND_WARN_IF_CHANGES = "ExistsAndWarnIfChanges"

    @property
    def may_mutate(self) -> bool:
        return self is Lifecycle.SYNC

    @property
    def requires_existing(self) -> bool:
        return self in (Lifecycle.EXISTS_AND_VALIDATES, Lifecycle.EXISTS_AND_WARN_IF_CHANGES)


class LifecycleViolationError(ConfigurationError):
    """Raised when a task's state is incompatible with its lifecycle."""

    pass


@dataclass(frozen=True)
class LifecycleDecision:
    """Result of a lifecycle resolution.

    Attributes:
        lifecycle: The lifecycle to use for this task.
        rule_matched: Which rule was matched (None if the task's own lifecycle).
        reason: Human-readable explanation of why this lifecycle was chosen.
    """

    lifecycle: Lifecycle
    rule_matched: str | None
    reason: str


class LifecycleOverride(BaseModel):
    """A single lifecycle override rule.

    Examples:
        # Never touch externally managed networks
        - kinds: ["Network", "Subnet"]
          lifecycle: ExistsAndValidates

        # Skip all bastion instances
        - kinds: ["Instance"]
          names: ["bastion-*"]
          lifecycle: Ignore
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    kinds: list[str] = Field(default_factory=list)
    names: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle
    reason: str = ""

    @field_validator("kinds", "names")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop empty patterns and surrounding whitespace."""
        return [pattern.strip() for pattern in v if pattern and pattern.strip()]

    def matches(self, kind: str, name: str) -> bool:
        """Check if this override matches the given task.

        A rule without any criteria matches nothing.
        """
        if not self.kinds and not self.names:
            return False

        if self.kinds and not _matches_any_pattern(kind, self.kinds):
            return False

        return not (self.names and not _matches_any_pattern(name, self.names))

    def describe(self) -> str:
        kinds = ",".join(self.kinds) or "*"
        names = ",".join(self.names) or "*"
        return f"{kinds}/{names}={self.lifecycle.value}"


def _matches_any_pattern(value: str, patterns: list[str]) -> bool:
    value_lower = value.lower()
    return any(re.match(_glob_to_regex(p.lower()), value_lower) for p in patterns)


def _glob_to_regex(pattern: str) -> str:
    """Convert glob pattern to regex.

    * -> .*
    ? -> .
    Other regex chars are escaped
    """
    escaped = ""
    for char in pattern:
        if char == "*":
            escaped += ".*"
        elif char == "?":
            escaped += "."
        elif char in r"\.[]{}()+^$|":
            escaped += "\\" + char
        else:
            escaped += char

    return f"^{escaped}$"


@dataclass
class LifecycleResolver:
    """Resolves the effective lifecycle for a task.

    Thread Safety:
        The resolver is never mutated after construction.
    """

    overrides: list[LifecycleOverride] = field(default_factory=list)

    def resolve(self, task: Task) -> LifecycleDecision:
        for override in self.overrides:
            if override.matches(task.kind, task.name):
                return LifecycleDecision(
                    lifecycle=override.lifecycle,
                    rule_matched=override.describe(),
                    reason=override.reason or f"Override: {override.lifecycle.value}",
                )

        return LifecycleDecision(
            lifecycle=task.lifecycle,
            rule_matched=None,
            reason=f"Declared lifecycle: {task.lifecycle.value}",
        )


def parse_lifecycle_overrides(value: str) -> list[LifecycleOverride]:
    """Parse lifecycle overrides.

    Accepts either a JSON list of rule objects or the compact form
    ``Kind=Lifecycle,Kind/name-glob=Lifecycle``.

    Raises:
        ConfigurationError: If the value cannot be parsed.
    """
    value = value.strip()
    if not value:
        return []

    if value.startswith("["):
        try:
            data = json.loads(value)
            return [LifecycleOverride.model_validate(item) for item in data]
        except ValueError as e:
            # ValueError covers json.JSONDecodeError and pydantic ValidationError
            raise ConfigurationError(f"Invalid lifecycle overrides: {e}") from e

    overrides: list[LifecycleOverride] = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        selector, sep, lifecycle = entry.partition("=")
        if not sep or not selector.strip():
            raise ConfigurationError(f"Invalid lifecycle override {entry!r}: expected Kind=Lifecycle")
        kind, _, name = selector.strip().partition("/")
        try:
            overrides.append(
                LifecycleOverride(
                    kinds=[kind],
                    names=[name] if name else [],
                    lifecycle=Lifecycle(lifecycle.strip()),
                )
            )
        except (ValueError, ValidationError) as e:
            valid = [lc.value for lc in Lifecycle]
            raise ConfigurationError(
                f"Invalid lifecycle override {entry!r}: lifecycle must be one of {valid}"
            ) from e
    return overrides


def merge_lifecycle_overrides(*values: str) -> str:
    """Concatenate override strings so rules of earlier values win.

    Compact values are joined as they are. As soon as one value is JSON the
    result is a JSON list holding every rule in order.

    Raises:
        ConfigurationError: If a value cannot be parsed.
    """
    values = tuple(value.strip() for value in values if value and value.strip())
    if not any(value.startswith("[") for value in values):
        return ",".join(values)

    rules = [rule for value in values for rule in parse_lifecycle_overrides(value)]
    return json.dumps([rule.model_dump(mode="json") for rule in rules])


def create_lifecycle_resolver(overrides: str | None = None) -> LifecycleResolver:
    """Create a LifecycleResolver from an override string or the environment.

    Environment Variables:
        LIFECYCLE_OVERRIDES: Compact or JSON overrides (used when overrides is None)
    """
    if overrides is None:
        overrides = os.environ.get("LIFECYCLE_OVERRIDES", "")

    rules = parse_lifecycle_overrides(overrides)
    if rules:
        logger.info(
            "Lifecycle overrides active",
            extra={"overrides": [rule.describe() for rule in rules]},
        )
    return LifecycleResolver(overrides=rules)
