"""Terraform JSON target.

Instead of mutating infrastructure, each task emits a named resource block
(``google_compute_instance.vm-1`` and so on). Values that point at resources
which will only exist once Terraform applies the configuration are written
as symbolic references (``${google_compute_address.ip-1.address}``). Large
values such as startup scripts go to side files under ``data/`` and are
referenced with ``${file("${path.module}/data/<file>")}``.

Nothing is written until finish(), which the reconciler only calls when
every node succeeded:

    <output_dir>/main.tf.json
    <output_dir>/data/<resource_type>_<name>_<key>

Objects in VFS stores (ManagedFile) have no Terraform resource here; they are
queued and uploaded by finish() as well.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import ConfigurationError, TargetKind
from .delta import Changes
from .render import RenderTarget, ResolutionError, TerraformRenderer
from .task import Task
from .vfs import StorePath

logger = logging.getLogger(__name__)

MAIN_FILE_NAME = "main.tf.json"
DATA_DIR_NAME = "data"

GOOGLE_PROVIDER_SOURCE = "hashicorp/google"
GOOGLE_PROVIDER_VERSION = ">= 2.19.0"
TERRAFORM_REQUIRED_VERSION = ">= 0.15.0"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class DuplicateResourceError(ConfigurationError):
    """Raised when two tasks emit the same Terraform block."""

    pass


def tf_name(name: str) -> str:
    """Make a name usable as a Terraform resource name."""
    safe = _UNSAFE_NAME_CHARS.sub("-", name)
    if not safe or safe[0].isdigit() or safe[0] == "-":
        safe = "_" + safe
    return safe


@dataclass(frozen=True)
class TerraformLiteral:
    """A value written verbatim into the generated configuration."""

    value: str

    @classmethod
    def attribute(cls, resource_type: str, name: str, attribute: str) -> TerraformLiteral:
        return cls(f"${{{resource_type}.{tf_name(name)}.{attribute}}}")

    @classmethod
    def file(cls, filename: str) -> TerraformLiteral:
        return cls(f'${{file("${{path.module}}/{DATA_DIR_NAME}/{filename}")}}')

    def __str__(self) -> str:
        return self.value


def _prune(value: Any) -> Any:
    """Drop None values so a block only carries concrete or symbolic fields."""
    if isinstance(value, dict):
        return {k: _prune(v) for k, v in value.items() if v is not None}
    if isinstance(value, list | tuple):
        return [_prune(v) for v in value if v is not None]
    return value


def _encode(value: Any) -> Any:
    if isinstance(value, TerraformLiteral):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class TerraformTarget(RenderTarget):
    """Collects resource blocks and side files, written out at finish()."""

    name = TargetKind.TERRAFORM.value
    discovers = False

    def __init__(self, project: str, region: str, output_dir: Path) -> None:
        super().__init__()
        self.project = project
        self.region = region
        self.output_dir = Path(output_dir)
        self.resources: dict[str, dict[str, dict[str, Any]]] = {}
        self.files: dict[str, bytes] = {}
        self.uploads: list[tuple[StorePath, bytes, bool | None]] = []
        # Keys of tasks that emitted their own artifact
        self.emitted: set[str] = set()
        # Tasks left out of the configuration, with what discovery found
        self.external: dict[str, Task | None] = {}

    async def render(self, task: Task, actual: Task | None, changes: Changes) -> None:
        task.render_terraform(self, actual, changes)  # type: ignore[attr-defined]
        self.emitted.add(task.key)

    def observe(self, task: Task, actual: Task | None) -> None:
        self.external[task.key] = actual

    async def resolve(self, task: Task, attribute: str) -> Any:
        return self.reference(task, attribute)

    def reference(self, task: Task, attribute: str) -> Any:
        """Reference to an attribute of another task.

        Symbolic when the task emitted a block in this run. A task that was
        not emitted (ignored, or only checked for existence) resolves to a
        concrete declared or discovered value, since no block exists to point
        at.

        Raises:
            ResolutionError: If the task does not render to Terraform, or it
                emitted no block and the value is not known.
        """
        if not isinstance(task, TerraformRenderer):
            raise ResolutionError(f"{task.key} is not rendered to Terraform")
        if task.key in self.emitted:
            return task.terraform_reference(attribute)
        return task.terraform_value(self, attribute, self.external.get(task.key))

    def add_upload(self, path: StorePath, data: bytes, public: bool | None) -> None:
        """Queue an object write performed at finish()."""
        self.uploads.append((path, data, public))

    def render_resource(self, resource_type: str, name: str, body: dict[str, Any]) -> None:
        """Register one resource block.

        Raises:
            DuplicateResourceError: If the block was already registered.
        """
        blocks = self.resources.setdefault(resource_type, {})
        key = tf_name(name)
        if key in blocks:
            raise DuplicateResourceError(f"Terraform resource {resource_type}.{key} emitted twice")
        blocks[key] = _prune(body)
        logger.debug("Rendered terraform resource", extra={"resource": f"{resource_type}.{key}"})

    def add_file(
        self, resource_type: str, name: str, key: str, contents: bytes | str
    ) -> TerraformLiteral:
        """Register a side file and return the expression that reads it."""
        filename = f"{resource_type}_{tf_name(name)}_{key}"
        if filename in self.files:
            raise DuplicateResourceError(f"Terraform data file {filename} emitted twice")
        if isinstance(contents, str):
            contents = contents.encode("utf-8")
        self.files[filename] = contents
        return TerraformLiteral.file(filename)

    def to_json(self) -> str:
        document = {
            "terraform": {
                "required_version": TERRAFORM_REQUIRED_VERSION,
                "required_providers": {
                    "google": {
                        "source": GOOGLE_PROVIDER_SOURCE,
                        "version": GOOGLE_PROVIDER_VERSION,
                    }
                },
            },
            "provider": {"google": {"project": self.project, "region": self.region}},
            "resource": self.resources,
        }
        return json.dumps(document, indent=2, sort_keys=True, default=_encode) + "\n"

    def finish(self) -> None:
        data_dir = self.output_dir / DATA_DIR_NAME
        self.output_dir.mkdir(parents=True, exist_ok=True)
        (self.output_dir / MAIN_FILE_NAME).write_text(self.to_json(), encoding="utf-8")
        if self.files:
            data_dir.mkdir(exist_ok=True)
            for filename, contents in sorted(self.files.items()):
                (data_dir / filename).write_bytes(contents)

        for path, data, public in self.uploads:
            path.write(data, public=public)

        logger.info(
            "Terraform configuration written",
            extra={
                "output_dir": str(self.output_dir),
                "resource_count": sum(len(blocks) for blocks in self.resources.values()),
                "file_count": len(self.files),
                "upload_count": len(self.uploads),
            },
        )
