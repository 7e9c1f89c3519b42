"""GCE naming helpers: resource URLs, image specs and scope aliases.

Compute API resources reference each other by full URL:

    https://www.googleapis.com/compute/v1/projects/<p>/zones/<z>/disks/<name>

Tasks store short names and build URLs at render time; discovery shortens
URLs back to names so both sides of a diff use the same form.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

COMPUTE_URL_PREFIX = "https://www.googleapis.com/compute/"
COMPUTE_V1_URL = COMPUTE_URL_PREFIX + "v1/"
SERVICE_ACCOUNT_DOMAIN = "iam.gserviceaccount.com"

# Read-only for the life of the process
SCOPE_ALIASES: MappingProxyType[str, str] = MappingProxyType(
    {
        "storage-ro": "https://www.googleapis.com/auth/devstorage.read_only",
        "storage-rw": "https://www.googleapis.com/auth/devstorage.read_write",
        "compute-ro": "https://www.googleapis.com/auth/compute.read_only",
        "compute-rw": "https://www.googleapis.com/auth/compute",
        "monitoring": "https://www.googleapis.com/auth/monitoring",
        "monitoring-write": "https://www.googleapis.com/auth/monitoring.write",
        "logging-write": "https://www.googleapis.com/auth/logging.write",
        "cloud-platform": "https://www.googleapis.com/auth/cloud-platform",
    }
)

_SCOPE_SHORT_FORMS: MappingProxyType[str, str] = MappingProxyType(
    {url: alias for alias, url in SCOPE_ALIASES.items()}
)


def scope_to_long_form(scope: str) -> str:
    return SCOPE_ALIASES.get(scope, scope)


def scope_to_short_form(scope: str) -> str:
    return _SCOPE_SHORT_FORMS.get(scope, scope)


def last_component(value: str) -> str:
    """Return the part after the last slash (the name, for a resource URL)."""
    return value.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class GoogleCloudURL:
    """Parsed compute resource URL."""

    project: str
    type: str
    name: str
    zone: str | None = None
    region: str | None = None
    is_global: bool = False


def parse_google_cloud_url(url: str) -> GoogleCloudURL:
    """Parse a compute resource URL.

    Accepts full URLs (any API version) and the relative form starting with
    ``projects/``.

    Raises:
        ValueError: If the URL does not name a compute resource.
    """
    path = url
    if path.startswith(COMPUTE_URL_PREFIX):
        path = path[len(COMPUTE_URL_PREFIX) :]
        _, _, path = path.partition("/")

    tokens = path.strip("/").split("/")
    if len(tokens) < 2 or tokens[0] != "projects":
        raise ValueError(f"unexpected compute URL {url!r}")

    project = tokens[1]
    rest = tokens[2:]
    match rest:
        case ["global", resource_type, name]:
            return GoogleCloudURL(project=project, type=resource_type, name=name, is_global=True)
        case ["zones", zone, resource_type, name]:
            return GoogleCloudURL(project=project, type=resource_type, name=name, zone=zone)
        case ["regions", region, resource_type, name]:
            return GoogleCloudURL(project=project, type=resource_type, name=name, region=region)
        case _:
            raise ValueError(f"unexpected compute URL {url!r}")


def zone_to_region(zone: str) -> str:
    """us-central1-a -> us-central1"""
    region, sep, _ = zone.rpartition("-")
    if not sep:
        raise ValueError(f"invalid zone {zone!r}")
    return region


def build_machine_type_url(project: str, zone: str, name: str) -> str:
    return f"{COMPUTE_V1_URL}projects/{project}/zones/{zone}/machineTypes/{name}"


def build_image_url(default_project: str, name_spec: str) -> str:
    """Map an image spec to its URL.

    ``name`` resolves in the default project, ``project/name`` in the given one.

    Raises:
        ValueError: If the spec has more than one slash or is empty.
    """
    tokens = name_spec.split("/")
    match tokens:
        case [project, name] if project and name:
            pass
        case [name] if name:
            project = default_project
        case _:
            raise ValueError(f"cannot parse image spec {name_spec!r}")
    return f"{COMPUTE_V1_URL}projects/{project}/global/images/{name}"


def shorten_image_url(default_project: str, image_url: str) -> str:
    """Inverse of build_image_url.

    Raises:
        ValueError: If image_url is not a compute URL.
    """
    parsed = parse_google_cloud_url(image_url)
    if parsed.project == default_project:
        return parsed.name
    return f"{parsed.project}/{parsed.name}"


def network_url(project: str, name: str) -> str:
    return f"{COMPUTE_V1_URL}projects/{project}/global/networks/{name}"


def subnet_url(project: str, region: str, name: str) -> str:
    return f"{COMPUTE_V1_URL}projects/{project}/regions/{region}/subnetworks/{name}"


def disk_url(project: str, zone: str, name: str) -> str:
    return f"{COMPUTE_V1_URL}projects/{project}/zones/{zone}/disks/{name}"


def disk_type_url(project: str, zone: str, volume_type: str) -> str:
    return f"{COMPUTE_V1_URL}projects/{project}/zones/{zone}/diskTypes/{volume_type}"


def service_account_email(project: str, account_id: str) -> str:
    return f"{account_id}@{project}.{SERVICE_ACCOUNT_DOMAIN}"


def service_account_id(email: str) -> str:
    """Account id of a service account email (the part before @)."""
    return email.partition("@")[0]
