"""Zonal persistent disk.

Labels are updated in place (setLabels, guarded by the label fingerprint
returned by discovery). Size can grow with resize but never shrink. The disk
type cannot change after creation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..backend import ResourceRef
from ..config import ConfigurationError
from ..context import RunContext
from ..delta import Changes, Differ
from ..fields import UNSET, Opt, opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, DisallowedChangeError, Task
from ..terraform import TerraformLiteral, TerraformTarget
from .gce import disk_type_url, disk_url, last_component


@dataclass
class Disk(Task, CloudAPIRenderer, TerraformRenderer):
    zone: Opt[str] = UNSET
    size_gb: Opt[int] = UNSET
    volume_type: Opt[str] = UNSET
    labels: Opt[dict[str, str]] = UNSET

    label_fingerprint: str = field(default="", compare=False, repr=False)

    kind: ClassVar[str] = "Disk"
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"zone", "volume_type"})

    def resolved_zone(self, ctx: RunContext) -> str:
        zone = self.zone.value_or(ctx.config.zone)
        if not zone:
            raise ConfigurationError(f"{self.key}: no zone declared and no default zone configured")
        return zone

    def ref_in(self, zone: str) -> ResourceRef:
        return ResourceRef("disks", self.name, zone)

    def url(self, project: str, zone: str) -> str:
        return disk_url(project, zone, self.name)

    async def find(self, ctx: RunContext) -> Disk | None:
        zone = self.resolved_zone(ctx)
        r = await ctx.find(self.ref_in(zone))
        if r is None:
            return None

        actual = Disk(
            name=r["name"],
            lifecycle=self.lifecycle,
            zone=Opt.of(last_component(r.get("zone", zone))),
            size_gb=opt(int(r["sizeGb"]) if r.get("sizeGb") is not None else None),
            volume_type=opt(last_component(r["type"]) if r.get("type") else None),
            labels=opt(r.get("labels") or None),
        )
        actual.label_fingerprint = r.get("labelFingerprint", "")
        return actual

    def diff(self, actual: Disk | None) -> Changes:
        return (
            Differ(self, actual)
            .field("zone")
            .field("size_gb")
            .field("volume_type")
            .field("labels")
            .changes()
        )

    def check_changes(self, actual: Disk | None, changes: Changes) -> None:
        super().check_changes(actual, changes)
        if actual is None or "size_gb" not in changes:
            return
        current = actual.size_gb.value_or(0)
        if changes["size_gb"].value_or(0) < current:
            raise DisallowedChangeError(self.key, "size_gb", current, changes["size_gb"])

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Disk | None, changes: Changes
    ) -> None:
        zone = self.resolved_zone(t.ctx)
        ref = self.ref_in(zone)

        if actual is None:
            body: dict[str, Any] = {"name": self.name, "zone": zone}
            if self.size_gb.has_value:
                body["sizeGb"] = self.size_gb.get()
            if self.volume_type.has_value:
                body["type"] = disk_type_url(t.project, zone, self.volume_type.get())
            if self.labels.has_value:
                body["labels"] = dict(self.labels.get())
            await t.create(ref, body)
            return

        updates: dict[str, Any] = {}
        if "labels" in changes:
            updates["setLabels"] = {
                "labels": dict(self.labels.value_or({})),
                "labelFingerprint": actual.label_fingerprint,
            }
            changes.discard("labels")
        if "size_gb" in changes:
            updates["resize"] = {"sizeGb": self.size_gb.get()}
            changes.discard("size_gb")

        if not changes.is_empty:
            raise CannotApplyChangesError(self.key, changes.field_names)
        if updates:
            await t.update(ref, updates)

    def render_terraform(
        self, t: TerraformTarget, actual: Disk | None, changes: Changes
    ) -> None:
        t.render_resource(
            "google_compute_disk",
            self.name,
            {
                "name": self.name,
                "zone": self.zone.value_or(t.ctx.config.zone),
                "size": self.size_gb.value_or(None),
                "type": self.volume_type.value_or(None),
                "labels": self.labels.value_or(None),
            },
        )

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        match attribute:
            case "name" | "self_link":
                return TerraformLiteral.attribute("google_compute_disk", self.name, attribute)
            case _:
                return super().terraform_reference(attribute)

    def terraform_value(self, t: TerraformTarget, attribute: str, actual: Disk | None) -> Any:
        if attribute == "self_link":
            return self.url(t.project, self.resolved_zone(t.ctx))
        return super().terraform_value(t, attribute, actual)
