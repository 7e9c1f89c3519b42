"""VPC network."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from ..backend import ResourceRef
from ..context import RunContext
from ..delta import Changes, Differ, case_insensitive
from ..fields import UNSET, Opt, opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, Task
from ..terraform import TerraformLiteral, TerraformTarget
from .gce import network_url

logger = logging.getLogger(__name__)

NETWORK_MODES = ("auto", "custom", "legacy")


@dataclass
class Network(Task, CloudAPIRenderer, TerraformRenderer):
    """A global VPC network.

    mode is "auto" (one subnet per region created by GCE), "custom" (subnets
    declared explicitly) or "legacy" (single range given by cidr).
    """

    mode: Opt[str] = UNSET
    cidr: Opt[str] = UNSET

    kind: ClassVar[str] = "Network"
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"mode", "cidr"})

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef("networks", self.name)

    def url(self, project: str) -> str:
        return network_url(project, self.name)

    async def find(self, ctx: RunContext) -> Network | None:
        r = await ctx.find(self.ref)
        if r is None:
            return None

        cidr = r.get("IPv4Range")
        if cidr:
            mode = "legacy"
        elif r.get("autoCreateSubnetworks"):
            mode = "auto"
        else:
            mode = "custom"

        return Network(name=r["name"], lifecycle=self.lifecycle, mode=Opt.of(mode), cidr=opt(cidr))

    def diff(self, actual: Network | None) -> Changes:
        return Differ(self, actual).field("mode", case_insensitive).field("cidr").changes()

    def _to_gce(self) -> dict[str, Any]:
        mode = self.mode.value_or("legacy" if self.cidr.has_value else "auto")
        body: dict[str, Any] = {"name": self.name}
        if mode == "legacy":
            body["IPv4Range"] = self.cidr.get()
        else:
            body["autoCreateSubnetworks"] = mode == "auto"
        return body

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Network | None, changes: Changes
    ) -> None:
        if actual is None:
            await t.create(self.ref, self._to_gce())
            return
        if not changes.is_empty:
            raise CannotApplyChangesError(self.key, changes.field_names)

    def render_terraform(
        self, t: TerraformTarget, actual: Network | None, changes: Changes
    ) -> None:
        gce = self._to_gce()
        t.render_resource(
            "google_compute_network",
            self.name,
            {
                "name": self.name,
                "auto_create_subnetworks": gce.get("autoCreateSubnetworks"),
                "ipv4_range": gce.get("IPv4Range"),
            },
        )

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        match attribute:
            case "name" | "self_link":
                return TerraformLiteral.attribute("google_compute_network", self.name, attribute)
            case _:
                return super().terraform_reference(attribute)

    def terraform_value(self, t: TerraformTarget, attribute: str, actual: Network | None) -> Any:
        if attribute == "self_link":
            return network_url(t.project, self.name)
        return super().terraform_value(t, attribute, actual)
