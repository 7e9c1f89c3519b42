"""Object written to a path-addressed store (memfs://, s3://, gs://).

Contents are either literal bytes/text or a resource object computed at
render time (for example a key set derived from a Keypair). A resource may
declare its own task dependencies, which become dependencies of the file.

The live target writes the object immediately. The Terraform target queues
the write and performs it at commit, together with the generated
configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, Protocol, runtime_checkable

from ..context import RunContext
from ..delta import Changes, Differ, same_bytes
from ..fields import UNSET, Opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import Task
from ..terraform import TerraformTarget
from ..vfs import StorePath

logger = logging.getLogger(__name__)


@runtime_checkable
class Resource(Protocol):
    """Content computed when the file is rendered."""

    def open(self) -> bytes: ...

    def dependencies(self) -> list[Task]: ...


def resource_bytes(contents: bytes | str | Resource) -> bytes:
    if isinstance(contents, bytes):
        return contents
    if isinstance(contents, str):
        return contents.encode("utf-8")
    return contents.open()


@dataclass
class ManagedFile(Task, CloudAPIRenderer, TerraformRenderer):
    base: Opt[str] = UNSET
    location: Opt[str] = UNSET
    contents: Opt[bytes | str | Resource] = UNSET
    public_acl: Opt[bool] = UNSET

    kind: ClassVar[str] = "ManagedFile"

    def dependencies(self) -> list[Task]:
        if self.contents.has_value and isinstance(self.contents.get(), Resource):
            return list(self.contents.get().dependencies())
        return []

    def link(self, resolve: Callable[[Task], Task]) -> None:
        super().link(resolve)
        contents = self.contents.value_or(None)
        linker = getattr(contents, "link", None)
        if callable(linker):
            linker(resolve)

    def path(self, ctx: RunContext) -> StorePath:
        base = ctx.vfs.build_path(self.base.get())
        return base.join(self.location.get())

    async def find(self, ctx: RunContext) -> ManagedFile | None:
        path = self.path(ctx)
        data = await ctx.call(path.read, operation_name=f"read {path.url}")
        if data is None:
            return None

        actual = ManagedFile(
            name=self.name,
            lifecycle=self.lifecycle,
            base=self.base,
            location=self.location,
            contents=Opt.of(data),
        )
        if self.public_acl.has_value:
            public = await ctx.call(path.is_object_public, operation_name=f"acl {path.url}")
            actual.public_acl = Opt.of(public)
        return actual

    def diff(self, actual: ManagedFile | None) -> Changes:
        return (
            Differ(self, actual)
            .field("base")
            .field("location")
            .field("contents", same_bytes)
            .field("public_acl")
            .changes()
        )

    def _payload(self) -> tuple[bytes, bool | None]:
        return resource_bytes(self.contents.get()), self.public_acl.value_or(None)

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: ManagedFile | None, changes: Changes
    ) -> None:
        path = self.path(t.ctx)
        data, public = self._payload()
        logger.info("Writing file", extra={"task": self.key, "url": path.url, "public": bool(public)})
        await t.ctx.call(path.write, data, public, operation_name=f"write {path.url}")

    def render_terraform(
        self, t: TerraformTarget, actual: ManagedFile | None, changes: Changes
    ) -> None:
        data, public = self._payload()
        t.add_upload(self.path(t.ctx), data, public)
