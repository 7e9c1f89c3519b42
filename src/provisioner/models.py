"""Pydantic models for the task manifest.

These models provide:
1. Type-safe YAML parsing, discriminated on ``kind``
2. Validation at the boundary (fail fast, fail loudly)
3. Transformation to Task descriptors with tri-state fields

TRI-STATE MAPPING:
A key omitted from the YAML is UNSET (no opinion, never diffed). A key given
as ``null`` is ABSENT (explicitly nothing). Any other value is a value.
Pydantic's ``model_fields_set`` tells the first two apart.

References to other tasks are plain names in YAML. They become stub tasks
(``Network(name="net-1")``) that the graph links to the declared node.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .fields import ABSENT, UNSET, Opt
from .lifecycle import Lifecycle
from .task import Task
from .tasks.address import Address
from .tasks.disk import Disk
from .tasks.instance import Instance
from .tasks.keypair import Keypair, KeysetItem
from .tasks.managedfile import ManagedFile
from .tasks.network import NETWORK_MODES, Network
from .tasks.serviceaccount import ServiceAccount
from .tasks.subnet import Subnet

# Lowercase letter first, letters/digits/hyphens, no trailing hyphen (GCE naming rule)
GCE_NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")

STACK_TYPES = ("IPV4_ONLY", "IPV4_IPV6", "IPV6_ONLY")


def _validate_cidr(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        ipaddress.ip_network(v, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR {v!r}: {e}") from e
    return v


# =============================================================================
# Base Model
# =============================================================================


class TaskSpec(BaseModel):
    """Fields common to every task declaration."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    lifecycle: Lifecycle = Lifecycle.SYNC

    def opt(self, field_name: str, convert: Callable[[Any], Any] | None = None) -> Opt[Any]:
        """Tri-state value of a field: UNSET if omitted, ABSENT if null."""
        if field_name not in self.model_fields_set:
            return UNSET
        value = getattr(self, field_name)
        if value is None:
            return ABSENT
        return Opt.of(convert(value) if convert else value)

    def to_task(self, base_dir: Path) -> Task:
        """Build the Task descriptor.

        Args:
            base_dir: Directory of the manifest, for relative file references.
        """
        raise NotImplementedError("Subclasses must implement to_task")


class GceTaskSpec(TaskSpec):
    """Task whose name is a GCE resource name."""

    @field_validator("name")
    @classmethod
    def validate_gce_name(cls, v: str) -> str:
        if not GCE_NAME_PATTERN.match(v):
            raise ValueError(
                f"'{v}' is not a valid GCE resource name "
                "(lowercase letters, digits and hyphens, starting with a letter, max 63)"
            )
        return v


def _ref(task_type: type[Task]) -> Callable[[str], Task]:
    return lambda name: task_type(name=name)


# =============================================================================
# Networking
# =============================================================================


class NetworkSpec(GceTaskSpec):
    kind: Literal["Network"]
    mode: str | None = None
    cidr: str | None = None

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str | None) -> str | None:
        if v is not None and v not in NETWORK_MODES:
            raise ValueError(f"mode must be one of {list(NETWORK_MODES)}")
        return v

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def validate_legacy_cidr(self) -> NetworkSpec:
        if self.mode == "legacy" and not self.cidr:
            raise ValueError("legacy networks require cidr")
        if self.cidr and self.mode not in (None, "legacy"):
            raise ValueError("cidr is only valid for legacy networks")
        return self

    def to_task(self, base_dir: Path) -> Task:
        return Network(
            name=self.name,
            lifecycle=self.lifecycle,
            mode=self.opt("mode"),
            cidr=self.opt("cidr"),
        )


class SubnetSpec(GceTaskSpec):
    kind: Literal["Subnet"]
    network: str | None = None
    region: str | None = None
    cidr: str | None = None

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return _validate_cidr(v)

    def to_task(self, base_dir: Path) -> Task:
        return Subnet(
            name=self.name,
            lifecycle=self.lifecycle,
            network=self.opt("network", _ref(Network)),
            region=self.opt("region"),
            cidr=self.opt("cidr"),
        )


class AddressSpec(GceTaskSpec):
    kind: Literal["Address"]
    region: str | None = None
    ip_address: str | None = Field(None, alias="ipAddress")

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        if v is not None:
            ipaddress.ip_address(v)
        return v

    def to_task(self, base_dir: Path) -> Task:
        return Address(
            name=self.name,
            lifecycle=self.lifecycle,
            region=self.opt("region"),
            ip_address=self.opt("ip_address"),
        )


# =============================================================================
# Compute
# =============================================================================


class DiskSpec(GceTaskSpec):
    kind: Literal["Disk"]
    zone: str | None = None
    size_gb: Annotated[int, Field(ge=1, le=65536)] | None = Field(None, alias="sizeGb")
    volume_type: str | None = Field(None, alias="volumeType")
    labels: dict[str, str] | None = None

    def to_task(self, base_dir: Path) -> Task:
        return Disk(
            name=self.name,
            lifecycle=self.lifecycle,
            zone=self.opt("zone"),
            size_gb=self.opt("size_gb"),
            volume_type=self.opt("volume_type"),
            labels=self.opt("labels", dict),
        )


class ServiceAccountSpec(TaskSpec):
    kind: Literal["ServiceAccount"]
    email: str | None = None
    display_name: str | None = Field(None, alias="displayName")
    description: str | None = None

    def to_task(self, base_dir: Path) -> Task:
        return ServiceAccount(
            name=self.name,
            lifecycle=self.lifecycle,
            email=self.opt("email"),
            display_name=self.opt("display_name"),
            description=self.opt("description"),
        )


class InstanceSpec(GceTaskSpec):
    kind: Literal["Instance"]
    zone: str | None = None
    machine_type: str | None = Field(None, alias="machineType")
    image: str | None = None
    network: str | None = None
    subnet: str | None = None
    ip_address: str | None = Field(None, alias="ipAddress")
    # device name -> disk task name
    disks: dict[str, str] | None = None
    service_account: str | None = Field(None, alias="serviceAccount")
    scopes: list[str] | None = None
    tags: list[str] | None = None
    preemptible: bool | None = None
    can_ip_forward: bool | None = Field(None, alias="canIpForward")
    stack_type: str | None = Field(None, alias="stackType")
    metadata: dict[str, str] | None = None

    @field_validator("stack_type")
    @classmethod
    def validate_stack_type(cls, v: str | None) -> str | None:
        if v is not None and v not in STACK_TYPES:
            raise ValueError(f"stackType must be one of {list(STACK_TYPES)}")
        return v

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str | None) -> str | None:
        if v is not None and (v.count("/") > 1 or not all(v.split("/"))):
            raise ValueError(f"image must be 'name' or 'project/name', got '{v}'")
        return v

    def to_task(self, base_dir: Path) -> Task:
        return Instance(
            name=self.name,
            lifecycle=self.lifecycle,
            zone=self.opt("zone"),
            machine_type=self.opt("machine_type"),
            image=self.opt("image"),
            network=self.opt("network", _ref(Network)),
            subnet=self.opt("subnet", _ref(Subnet)),
            ip_address=self.opt("ip_address", _ref(Address)),
            disks=self.opt("disks", lambda d: {dev: Disk(name=n) for dev, n in d.items()}),
            service_account=self.opt("service_account", _ref(ServiceAccount)),
            scopes=self.opt("scopes", list),
            tags=self.opt("tags", list),
            preemptible=self.opt("preemptible"),
            can_ip_forward=self.opt("can_ip_forward"),
            stack_type=self.opt("stack_type"),
            metadata=self.opt("metadata", dict),
        )


# =============================================================================
# Files and Keys
# =============================================================================


class ManagedFileSpec(TaskSpec):
    kind: Literal["ManagedFile"]
    base: str
    location: str
    contents: str | None = None
    contents_file: str | None = Field(None, alias="contentsFile")
    public_acl: bool | None = Field(None, alias="publicAcl")

    @model_validator(mode="after")
    def validate_contents(self) -> ManagedFileSpec:
        if (self.contents is None) == (self.contents_file is None):
            raise ValueError("exactly one of contents or contentsFile is required")
        return self

    def to_task(self, base_dir: Path) -> Task:
        if self.contents_file is not None:
            contents: bytes | str = (base_dir / self.contents_file).read_bytes()
        else:
            contents = self.contents or ""
        return ManagedFile(
            name=self.name,
            lifecycle=self.lifecycle,
            base=Opt.of(self.base),
            location=Opt.of(self.location),
            contents=Opt.of(contents),
            public_acl=self.opt("public_acl"),
        )


class KeysetItemSpec(BaseModel):
    """One certificate of a keyset, inline PEM or a file next to the manifest."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1)]
    certificate: str | None = None
    certificate_file: str | None = Field(None, alias="certificateFile")
    distrust_timestamp: datetime | None = Field(None, alias="distrustTimestamp")

    @model_validator(mode="after")
    def validate_source(self) -> KeysetItemSpec:
        if (self.certificate is None) == (self.certificate_file is None):
            raise ValueError("exactly one of certificate or certificateFile is required")
        return self

    def to_item(self, base_dir: Path) -> KeysetItem:
        pem = self.certificate
        if self.certificate_file is not None:
            pem = (base_dir / self.certificate_file).read_text(encoding="utf-8")
        return KeysetItem.from_pem(self.id, pem or "", self.distrust_timestamp)


class KeypairSpec(TaskSpec):
    kind: Literal["Keypair"]
    common_name: str | None = Field(None, alias="commonName")
    items: list[KeysetItemSpec] = Field(default_factory=list)

    def to_task(self, base_dir: Path) -> Task:
        return Keypair(
            name=self.name,
            lifecycle=self.lifecycle,
            common_name=self.opt("common_name"),
            items=Opt.of([item.to_item(base_dir) for item in self.items]),
        )


TaskSpecUnion = Annotated[
    Union[
        NetworkSpec,
        SubnetSpec,
        AddressSpec,
        DiskSpec,
        ServiceAccountSpec,
        InstanceSpec,
        ManagedFileSpec,
        KeypairSpec,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Manifest
# =============================================================================


class IssuerDiscoverySpec(BaseModel):
    """Service account issuer discovery publication."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    issuer: str
    discovery_store: str | None = Field(None, alias="discoveryStore")
    lifecycle: Lifecycle = Lifecycle.SYNC

    @field_validator("issuer")
    @classmethod
    def validate_issuer(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("issuer must be an https:// URL")
        return v.rstrip("/")


class Manifest(BaseModel):
    """Top-level manifest: declared tasks plus optional issuer discovery."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    tasks: list[TaskSpecUnion] = Field(default_factory=list)
    issuer_discovery: IssuerDiscoverySpec | None = Field(None, alias="issuerDiscovery")
