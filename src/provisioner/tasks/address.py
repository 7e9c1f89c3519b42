"""Regional static external IP address.

The IP is assigned by GCE on creation and written back into ``ip_address``
so instances rendered later in the same run can attach it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from ..backend import BackendError, ResourceRef
from ..context import RunContext
from ..delta import Changes, Differ
from ..fields import UNSET, Opt, opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, Task
from ..terraform import TerraformLiteral, TerraformTarget
from .gce import last_component

logger = logging.getLogger(__name__)


@dataclass
class Address(Task, CloudAPIRenderer, TerraformRenderer):
    region: Opt[str] = UNSET
    ip_address: Opt[str] = UNSET

    kind: ClassVar[str] = "Address"
    computed_fields: ClassVar[frozenset[str]] = frozenset({"ip_address"})
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"region", "ip_address"})

    def resolved_region(self, ctx: RunContext) -> str:
        return self.region.value_or(ctx.config.region)

    def ref_in(self, region: str) -> ResourceRef:
        return ResourceRef("addresses", self.name, region)

    async def find(self, ctx: RunContext) -> Address | None:
        region = self.resolved_region(ctx)
        r = await ctx.find(self.ref_in(region))
        if r is None:
            return None

        return Address(
            name=r["name"],
            lifecycle=self.lifecycle,
            region=Opt.of(last_component(r.get("region", region))),
            ip_address=opt(r.get("address")),
        )

    def diff(self, actual: Address | None) -> Changes:
        return Differ(self, actual).field("region").field("ip_address").changes()

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Address | None, changes: Changes
    ) -> None:
        if actual is not None:
            if not changes.is_empty:
                raise CannotApplyChangesError(self.key, changes.field_names)
            return

        region = self.resolved_region(t.ctx)
        ref = self.ref_in(region)
        body: dict[str, Any] = {"name": self.name, "region": region}
        if self.ip_address.has_value:
            body["address"] = self.ip_address.get()
        await t.create(ref, body)

        created = await t.ctx.find(ref)
        if created is None or not created.get("address"):
            raise BackendError(f"{self.key}: address was created but has no IP assigned")
        self.ip_address = Opt.of(created["address"])
        logger.info("Address assigned", extra={"task": self.key, "ip_address": created["address"]})

    def render_terraform(
        self, t: TerraformTarget, actual: Address | None, changes: Changes
    ) -> None:
        t.render_resource(
            "google_compute_address",
            self.name,
            {
                "name": self.name,
                "region": self.region.value_or(t.region),
                "address": self.ip_address.value_or(None),
            },
        )

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        match attribute:
            case "ip_address":
                return TerraformLiteral.attribute("google_compute_address", self.name, "address")
            case "name" | "self_link":
                return TerraformLiteral.attribute("google_compute_address", self.name, attribute)
            case _:
                return super().terraform_reference(attribute)
