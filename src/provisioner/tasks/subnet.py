"""Regional subnetwork of a custom-mode network."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from ..backend import ResourceRef
from ..config import ConfigurationError
from ..context import RunContext
from ..delta import Changes, Differ, same_ref
from ..fields import UNSET, Opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, Task, refs
from ..terraform import TerraformLiteral, TerraformTarget
from .gce import last_component, subnet_url
from .network import Network


@dataclass
class Subnet(Task, CloudAPIRenderer, TerraformRenderer):
    network: Opt[Network] = UNSET
    region: Opt[str] = UNSET
    cidr: Opt[str] = UNSET

    kind: ClassVar[str] = "Subnet"
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"network", "region", "cidr"})

    def dependencies(self) -> list[Task]:
        return refs(self.network)

    def resolved_region(self, ctx: RunContext) -> str:
        return self.region.value_or(ctx.config.region)

    def ref_in(self, region: str) -> ResourceRef:
        return ResourceRef("subnetworks", self.name, region)

    def url(self, project: str, region: str) -> str:
        return subnet_url(project, region, self.name)

    async def find(self, ctx: RunContext) -> Subnet | None:
        region = self.resolved_region(ctx)
        r = await ctx.find(self.ref_in(region))
        if r is None:
            return None

        return Subnet(
            name=r["name"],
            lifecycle=self.lifecycle,
            network=Opt.of(Network(name=last_component(r["network"]))),
            region=Opt.of(last_component(r.get("region", region))),
            cidr=Opt.of(r["ipCidrRange"]),
        )

    def diff(self, actual: Subnet | None) -> Changes:
        return (
            Differ(self, actual)
            .field("network", same_ref)
            .field("region")
            .field("cidr")
            .changes()
        )

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Subnet | None, changes: Changes
    ) -> None:
        if actual is not None:
            if not changes.is_empty:
                raise CannotApplyChangesError(self.key, changes.field_names)
            return

        if not self.network.has_value or not self.cidr.has_value:
            raise ConfigurationError(f"{self.key}: network and cidr are required to create a subnet")

        region = self.resolved_region(t.ctx)
        body: dict[str, Any] = {
            "name": self.name,
            "network": self.network.get().url(t.project),
            "region": region,
            "ipCidrRange": self.cidr.get(),
        }
        await t.create(self.ref_in(region), body)

    def render_terraform(
        self, t: TerraformTarget, actual: Subnet | None, changes: Changes
    ) -> None:
        t.render_resource(
            "google_compute_subnetwork",
            self.name,
            {
                "name": self.name,
                "network": t.reference(self.network.get(), "name") if self.network.has_value else None,
                "region": self.region.value_or(t.region),
                "ip_cidr_range": self.cidr.value_or(None),
            },
        )

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        match attribute:
            case "name" | "self_link":
                return TerraformLiteral.attribute("google_compute_subnetwork", self.name, attribute)
            case _:
                return super().terraform_reference(attribute)

    def terraform_value(self, t: TerraformTarget, attribute: str, actual: Subnet | None) -> Any:
        if attribute == "self_link":
            return self.url(t.project, self.resolved_region(t.ctx))
        return super().terraform_value(t, attribute, actual)
