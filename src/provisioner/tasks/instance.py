"""Compute instance.

Discovery performs dependent lookups: the boot disk (to recover the source
image), and the address list (to map the NAT IP back to an Address task).
These are plain backend calls, not further reconciliation.

On an existing instance only metadata can be updated in place, using the
fingerprint returned by discovery. Any other change is rejected by the
validation hook before rendering.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..backend import BackendError, ResourceRef
from ..config import ConfigurationError
from ..context import RunContext
from ..delta import Changes, Differ, same_ref, unordered
from ..fields import UNSET, Opt, opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, DisallowedChangeError, Task, refs
from ..terraform import TerraformTarget
from .address import Address
from .disk import Disk
from .gce import (
    build_image_url,
    build_machine_type_url,
    last_component,
    parse_google_cloud_url,
    scope_to_long_form,
    scope_to_short_form,
    service_account_id,
    shorten_image_url,
    zone_to_region,
)
from .network import Network
from .serviceaccount import ServiceAccount
from .subnet import Subnet

logger = logging.getLogger(__name__)

BOOT_DEVICE_NAME = "persistent-disks-0"


def _same_scopes(actual: Any, expected: Any) -> bool:
    """Compare scope lists by their long form, ignoring order."""
    return unordered(
        [scope_to_long_form(s) for s in actual], [scope_to_long_form(s) for s in expected]
    )


def _metadata_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


@dataclass
class Instance(Task, CloudAPIRenderer, TerraformRenderer):
    zone: Opt[str] = UNSET
    machine_type: Opt[str] = UNSET
    image: Opt[str] = UNSET
    network: Opt[Network] = UNSET
    subnet: Opt[Subnet] = UNSET
    ip_address: Opt[Address] = UNSET
    disks: Opt[dict[str, Disk]] = UNSET
    service_account: Opt[ServiceAccount] = UNSET
    scopes: Opt[list[str]] = UNSET
    tags: Opt[list[str]] = UNSET
    preemptible: Opt[bool] = UNSET
    can_ip_forward: Opt[bool] = UNSET
    stack_type: Opt[str] = UNSET
    metadata: Opt[dict[str, str]] = UNSET

    metadata_fingerprint: str = field(default="", compare=False, repr=False)

    kind: ClassVar[str] = "Instance"

    def dependencies(self) -> list[Task]:
        return refs(
            self.network,
            self.subnet,
            self.ip_address,
            self.disks,
            self.service_account,
        )

    def resolved_zone(self, ctx: RunContext) -> str:
        zone = self.zone.value_or(ctx.config.zone)
        if not zone:
            raise ConfigurationError(f"{self.key}: no zone declared and no default zone configured")
        return zone

    def ref_in(self, zone: str) -> ResourceRef:
        return ResourceRef("instances", self.name, zone)

    async def find(self, ctx: RunContext) -> Instance | None:
        zone = self.resolved_zone(ctx)
        r = await ctx.find(self.ref_in(zone))
        if r is None:
            return None

        actual = Instance(name=r["name"], lifecycle=self.lifecycle)
        actual.tags = opt((r.get("tags") or {}).get("items") or None)
        actual.zone = Opt.of(last_component(r.get("zone", zone)))
        actual.machine_type = opt(last_component(r["machineType"]) if r.get("machineType") else None)
        actual.can_ip_forward = Opt.of(bool(r.get("canIpForward", False)))
        if r.get("scheduling") is not None:
            actual.preemptible = Opt.of(bool(r["scheduling"].get("preemptible", False)))

        interfaces = r.get("networkInterfaces") or []
        if interfaces:
            ni = interfaces[0]
            actual.network = Opt.of(Network(name=last_component(ni["network"])))
            if ni.get("subnetwork"):
                actual.subnet = Opt.of(Subnet(name=last_component(ni["subnetwork"])))
            actual.stack_type = opt(ni.get("stackType"))
            access_configs = ni.get("accessConfigs") or []
            nat_ip = access_configs[0].get("natIP") if access_configs else None
            address = await self._find_address(ctx, zone, nat_ip) if nat_ip else None
            actual.ip_address = opt(address)

        scopes: list[str] = []
        for account in r.get("serviceAccounts") or []:
            scopes.extend(scope_to_short_form(s) for s in account.get("scopes", []))
            if account.get("email"):
                actual.service_account = Opt.of(
                    ServiceAccount(name=service_account_id(account["email"]))
                )
        actual.scopes = opt(scopes or None)

        attached: dict[str, Disk] = {}
        for index, disk in enumerate(r.get("disks") or []):
            if index == 0:
                actual.image = opt(await self._find_boot_image(ctx, zone, disk["source"]))
                continue
            try:
                parsed = parse_google_cloud_url(disk["source"])
            except ValueError as e:
                raise BackendError(f"unable to parse disk source URL {disk['source']!r}") from e
            attached[disk["deviceName"]] = Disk(name=parsed.name)
        actual.disks = opt(attached or None)

        if r.get("metadata") is not None:
            items = r["metadata"].get("items") or []
            actual.metadata = opt({item["key"]: item.get("value", "") for item in items} or None)
            actual.metadata_fingerprint = r["metadata"].get("fingerprint", "")

        return actual

    async def _find_address(self, ctx: RunContext, zone: str, nat_ip: str) -> Address | None:
        """Map a NAT IP back to the Address resource holding it.

        Returns None for an ephemeral IP, which no Address resource holds.
        """
        for address in await ctx.list("addresses", zone_to_region(zone)):
            if address.get("address") == nat_ip:
                return Address(name=address["name"])
        logger.debug("NAT IP is ephemeral", extra={"task": self.key, "nat_ip": nat_ip})
        return None

    async def _find_boot_image(self, ctx: RunContext, zone: str, source: str) -> str | None:
        """Recover the image spec from the boot disk's source image."""
        name = last_component(source)
        disk = await ctx.find(ResourceRef("disks", name, zone))
        if disk is None:
            raise BackendError(f"{self.key}: boot disk not found {source!r}")
        if not disk.get("sourceImage"):
            return None
        try:
            return shorten_image_url(ctx.project, disk["sourceImage"])
        except ValueError as e:
            raise BackendError(f"{self.key}: error parsing source image URL: {e}") from e

    def diff(self, actual: Instance | None) -> Changes:
        return (
            Differ(self, actual)
            .field("zone")
            .field("machine_type")
            .field("image")
            .field("network", same_ref)
            .field("subnet", same_ref)
            .field("ip_address", same_ref)
            .field("disks", same_ref)
            .field("service_account", same_ref)
            .field("scopes", _same_scopes)
            .field("tags", unordered)
            .field("preemptible")
            .field("can_ip_forward")
            .field("stack_type")
            .field("metadata")
            .changes()
        )

    def check_changes(self, actual: Instance | None, changes: Changes) -> None:
        """An existing instance only accepts metadata updates."""
        if actual is None:
            return
        for name in changes.field_names:
            if name != "metadata":
                raise DisallowedChangeError(self.key, name, getattr(actual, name), changes[name])

    def _to_gce(
        self,
        project: str,
        zone: str,
        nat_ip: str | None,
        service_account_email: str | None,
    ) -> dict[str, Any]:
        """Map the declaration to a GCE instance body."""
        if not self.machine_type.has_value or not self.image.has_value:
            raise ConfigurationError(f"{self.key}: machine_type and image are required")
        if not self.network.has_value:
            raise ConfigurationError(f"{self.key}: network is required")

        if self.preemptible.value_or(False):
            scheduling = {"onHostMaintenance": "TERMINATE", "preemptible": True}
        else:
            scheduling = {
                "automaticRestart": True,
                "onHostMaintenance": "MIGRATE",
                "preemptible": False,
            }

        disks: list[dict[str, Any]] = [
            {
                "initializeParams": {"sourceImage": build_image_url(project, self.image.get())},
                "boot": True,
                "deviceName": BOOT_DEVICE_NAME,
                "index": 0,
                "autoDelete": True,
                "mode": "READ_WRITE",
                "type": "PERSISTENT",
            }
        ]
        for device_name, disk in sorted(self.disks.value_or({}).items()):
            disks.append(
                {
                    "source": disk.url(project, disk.zone.value_or(zone)),
                    "autoDelete": False,
                    "mode": "READ_WRITE",
                    "deviceName": device_name,
                }
            )

        access_config: dict[str, Any] = {"type": "ONE_TO_ONE_NAT"}
        if nat_ip is not None:
            access_config["natIP"] = nat_ip
        interface: dict[str, Any] = {
            "network": self.network.get().url(project),
            "accessConfigs": [access_config],
        }
        if self.subnet.has_value:
            subnet = self.subnet.get()
            interface["subnetwork"] = subnet.url(project, subnet.region.value_or(zone_to_region(zone)))
        if self.stack_type.has_value:
            interface["stackType"] = self.stack_type.get()

        body: dict[str, Any] = {
            "name": self.name,
            "canIpForward": self.can_ip_forward.value_or(False),
            "disks": disks,
            "machineType": build_machine_type_url(project, zone, self.machine_type.get()),
            "metadata": {"items": self._metadata_items()},
            "networkInterfaces": [interface],
            "scheduling": scheduling,
        }
        if self.tags.has_value:
            body["tags"] = {"items": list(self.tags.get())}
        if service_account_email is not None:
            body["serviceAccounts"] = [
                {
                    "email": service_account_email,
                    "scopes": [scope_to_long_form(s) for s in self.scopes.value_or([])],
                }
            ]
        return body

    def _metadata_items(self) -> list[dict[str, str]]:
        return [
            {"key": key, "value": _metadata_text(value)}
            for key, value in sorted(self.metadata.value_or({}).items())
        ]

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Instance | None, changes: Changes
    ) -> None:
        zone = self.resolved_zone(t.ctx)
        ref = self.ref_in(zone)

        if actual is None:
            nat_ip = None
            if self.ip_address.has_value:
                nat_ip = await t.resolve(self.ip_address.get(), "ip_address")
            email = None
            if self.service_account.has_value:
                email = await t.resolve(self.service_account.get(), "email")
            await t.create(ref, self._to_gce(t.project, zone, nat_ip, email))
            return

        if "metadata" in changes:
            logger.info("Updating instance metadata", extra={"task": self.key})
            await t.update(
                ref,
                {
                    "setMetadata": {
                        "fingerprint": actual.metadata_fingerprint,
                        "items": self._metadata_items(),
                    }
                },
            )
            changes.discard("metadata")

        if not changes.is_empty:
            logger.error(
                "Cannot apply changes to instance",
                extra={"task": self.key, "changed_fields": changes.field_names},
            )
            raise CannotApplyChangesError(self.key, changes.field_names)

    def render_terraform(
        self, t: TerraformTarget, actual: Instance | None, changes: Changes
    ) -> None:
        zone = self.zone.value_or(t.ctx.config.zone)
        if not zone:
            raise ConfigurationError(f"{self.key}: Terraform requires a zone")
        if not self.machine_type.has_value or not self.image.has_value:
            raise ConfigurationError(f"{self.key}: machine_type and image are required")
        if not self.network.has_value:
            raise ConfigurationError(f"{self.key}: network is required")

        access_config: dict[str, Any] = {}
        if self.ip_address.has_value:
            access_config["nat_ip"] = t.reference(self.ip_address.get(), "ip_address")
        interface: dict[str, Any] = {
            "network": t.reference(self.network.get(), "name"),
            "subnetwork": t.reference(self.subnet.get(), "name") if self.subnet.has_value else None,
            "stack_type": self.stack_type.value_or(None),
            "access_config": [access_config],
        }

        service_accounts = None
        if self.service_account.has_value:
            service_accounts = [
                {
                    "email": t.reference(self.service_account.get(), "email"),
                    "scopes": [scope_to_long_form(s) for s in self.scopes.value_or([])],
                }
            ]

        preemptible = self.preemptible.value_or(False)
        metadata = {
            key: t.add_file("google_compute_instance", self.name, f"metadata_{key}", _metadata_text(value))
            for key, value in sorted(self.metadata.value_or({}).items())
        }

        t.render_resource(
            "google_compute_instance",
            self.name,
            {
                "name": self.name,
                "zone": zone,
                "machine_type": self.machine_type.get(),
                "can_ip_forward": self.can_ip_forward.value_or(False),
                "tags": self.tags.value_or(None),
                "boot_disk": {
                    "auto_delete": True,
                    "device_name": BOOT_DEVICE_NAME,
                    "initialize_params": {"image": build_image_url(t.project, self.image.get())},
                },
                "attached_disk": [
                    {
                        "source": t.reference(disk, "self_link"),
                        "device_name": device_name,
                        "mode": "READ_WRITE",
                    }
                    for device_name, disk in sorted(self.disks.value_or({}).items())
                ]
                or None,
                "network_interface": [interface],
                "service_account": service_accounts,
                "scheduling": {
                    "automatic_restart": not preemptible,
                    "on_host_maintenance": "TERMINATE" if preemptible else "MIGRATE",
                    "preemptible": preemptible,
                },
                "metadata": metadata or None,
            },
        )
