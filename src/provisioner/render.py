"""Render targets and capability dispatch.

Each output mechanism is a RenderTarget. A task type declares what it can be
rendered to by inheriting capability interfaces:

    @dataclass
    class Network(Task, CloudAPIRenderer, TerraformRenderer):
        async def render_cloud_api(self, t, actual, changes): ...
        def render_terraform(self, t, actual, changes): ...

Capabilities register when the class is created, so whether a task type
supports a target is a registry lookup, never a probe at render time.
RenderDispatcher.check_supported() uses it to reject unsupported
combinations before scheduling starts.

CROSS-RESOURCE VALUES:
A renderer that needs a value owned by another task (an instance needing an
address's IP) asks the target: ``await t.resolve(address, "ip_address")``.
The live target returns the concrete value (written back by the referenced
task's renderer, else looked up through the backend); the Terraform target
returns a symbolic ``${type.name.attr}`` reference instead.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from .backend import ResourceRef
from .config import ConfigurationError, TargetKind
from .delta import Changes
from .fields import Opt
from .task import Task

if TYPE_CHECKING:
    from .context import RunContext
    from .terraform import TerraformLiteral, TerraformTarget

logger = logging.getLogger(__name__)

# target name -> task types registered for it
_CAPABILITIES: dict[str, set[type]] = {}


class UnsupportedTargetError(ConfigurationError):
    """Raised when declared tasks cannot be rendered to the active target."""

    def __init__(self, target: str, task_keys: list[str]) -> None:
        self.target = target
        self.task_keys = task_keys
        super().__init__(
            f"Target {target!r} is not supported by: {', '.join(task_keys)}"
        )


class ResolutionError(Exception):
    """Raised when a cross-resource value cannot be resolved."""

    pass


class Capability:
    """Base of capability interfaces.

    An interface sets ``target_name``; any class inheriting the interface is
    registered for that target at class creation.
    """

    target_name: ClassVar[str] = ""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "target_name" in cls.__dict__:
            return
        for base in cls.__mro__[1:]:
            name = base.__dict__.get("target_name")
            if name and issubclass(base, Capability):
                _CAPABILITIES.setdefault(name, set()).add(cls)


class CloudAPIRenderer(Capability):
    """Renders a task by calling the provider API."""

    target_name = TargetKind.CLOUD.value

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Any | None, changes: Changes
    ) -> None:
        raise NotImplementedError


class TerraformRenderer(Capability):
    """Renders a task as a Terraform resource block."""

    target_name = TargetKind.TERRAFORM.value

    def render_terraform(
        self, t: TerraformTarget, actual: Any | None, changes: Changes
    ) -> None:
        raise NotImplementedError

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        """Symbolic reference to an attribute of the block this task emits."""
        raise ResolutionError(f"{type(self).__name__} exposes no Terraform attribute {attribute!r}")

    def terraform_value(self, t: TerraformTarget, attribute: str, actual: Any | None) -> Any:
        """Concrete value of an attribute when this task emitted no block.

        Declared values win over discovered ones; the name is always known.

        Raises:
            ResolutionError: If the value is neither declared nor discovered.
        """
        if attribute == "name":
            return self.name  # type: ignore[attr-defined]
        for source in (self, actual):
            value = getattr(source, attribute, None)
            if isinstance(value, Opt) and value.has_value:
                return value.get()
        raise ResolutionError(
            f"{self.key}: {attribute} is not known and no Terraform block was emitted for it"  # type: ignore[attr-defined]
        )


def supported_targets(task_type: type) -> frozenset[str]:
    return frozenset(name for name, types in _CAPABILITIES.items() if task_type in types)


def supports(task_type: type, target_name: str) -> bool:
    return task_type in _CAPABILITIES.get(target_name, set())


class RenderTarget(ABC):
    """One output mechanism of a run. Exactly one target is active per run."""

    name: ClassVar[str]
    # Whether nodes run discovery (find) before diffing
    discovers: ClassVar[bool] = True

    def __init__(self) -> None:
        self._ctx: RunContext | None = None

    @property
    def ctx(self) -> RunContext:
        if self._ctx is None:
            raise RuntimeError(f"Target {self.name!r} used before start()")
        return self._ctx

    def start(self, ctx: RunContext) -> None:
        self._ctx = ctx

    def supports(self, task: Task) -> bool:
        return supports(type(task), self.name)

    @abstractmethod
    async def render(self, task: Task, actual: Task | None, changes: Changes) -> None:
        """Produce this target's artifact (or mutation) for one node."""

    @abstractmethod
    async def resolve(self, task: Task, attribute: str) -> Any:
        """Resolve an attribute of another task for use by a dependent."""

    def observe(self, task: Task, actual: Task | None) -> None:
        """Record a node that finished without being rendered."""
        return None

    def finish(self) -> None:
        """Commit run artifacts. Only called when every node succeeded."""
        return None


class CloudAPITarget(RenderTarget):
    """Live target: mutations go through the backend client."""

    name = TargetKind.CLOUD.value

    @property
    def project(self) -> str:
        return self.ctx.project

    async def render(self, task: Task, actual: Task | None, changes: Changes) -> None:
        await task.render_cloud_api(self, actual, changes)  # type: ignore[attr-defined]

    async def create(self, ref: ResourceRef, body: dict[str, Any]) -> None:
        """Create a resource and wait until the backend reports it done."""
        logger.info("Creating resource", extra={"resource": str(ref)})
        operation = await self.ctx.create(ref, body)
        await self.ctx.await_operation(operation)

    async def update(self, ref: ResourceRef, changes: dict[str, Any]) -> None:
        """Apply in-place updates and wait for completion."""
        logger.info("Updating resource", extra={"resource": str(ref), "verbs": sorted(changes)})
        operation = await self.ctx.update(ref, changes)
        await self.ctx.await_operation(operation)

    async def resolve(self, task: Task, attribute: str) -> Any:
        value = getattr(task, attribute)
        if isinstance(value, Opt) and value.has_value:
            return value.get()

        actual = await task.find(self.ctx)
        if actual is not None:
            found = getattr(actual, attribute)
            if isinstance(found, Opt) and found.has_value:
                return found.get()
        raise ResolutionError(f"{task.key}: {attribute} is not known yet")


@dataclass
class PlannedChange:
    """What a dry run would have done for one task."""

    key: str
    action: str
    fields: list[str] = field(default_factory=list)

    def describe(self) -> str:
        if not self.fields:
            return f"{self.action} {self.key}"
        return f"{self.action} {self.key}: {', '.join(self.fields)}"


class DryRunTarget(RenderTarget):
    """Discovers and diffs, records the plan, mutates nothing."""

    name = TargetKind.DRY_RUN.value

    def __init__(self, discovers: bool = True) -> None:
        super().__init__()
        # Without a backend there is nothing to discover; every task plans as a create
        self.discovers = discovers
        self.plan: list[PlannedChange] = []

    def supports(self, task: Task) -> bool:
        return True

    async def render(self, task: Task, actual: Task | None, changes: Changes) -> None:
        action = "create" if actual is None else "update"
        self.plan.append(PlannedChange(task.key, action, changes.field_names))
        logger.info(
            "Planned change",
            extra={"task": task.key, "action": action, "changed_fields": changes.field_names},
        )

    async def resolve(self, task: Task, attribute: str) -> Any:
        value = getattr(task, attribute)
        if isinstance(value, Opt) and value.has_value:
            return value.get()
        return f"<{task.key}.{attribute}>"


class RenderDispatcher:
    """Selects the rendering routine of the active target for each node."""

    def __init__(self, target: RenderTarget) -> None:
        self._target = target

    @property
    def target(self) -> RenderTarget:
        return self._target

    def check_supported(self, tasks: list[Task]) -> None:
        """Reject the run if any task cannot be rendered to the target.

        Raises:
            UnsupportedTargetError: Naming every offending task.
        """
        unsupported = sorted(
            (task for task in tasks if not self._target.supports(task)), key=lambda task: task.key
        )
        for task in unsupported:
            logger.error(
                "Task not supported by target",
                extra={
                    "task": task.key,
                    "target": self._target.name,
                    "supported_targets": sorted(supported_targets(type(task))),
                },
            )
        if unsupported:
            raise UnsupportedTargetError(self._target.name, [task.key for task in unsupported])

    async def dispatch(self, task: Task, actual: Task | None, changes: Changes) -> None:
        logger.debug(
            "Rendering task",
            extra={"task": task.key, "target": self._target.name, "changed_fields": changes.field_names},
        )
        await self._target.render(task, actual, changes)
