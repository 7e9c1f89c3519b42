"""Manifest file loading with validation.

SECURITY: The manifest size is checked before reading. Input validation is
performed at the boundary; nothing downstream sees unvalidated data.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, ConfigurationError
from .models import Manifest
from .oidc import IssuerDiscovery, IssuerDiscoveryBuilder
from .task import Task
from .vfs import VFSContext

logger = logging.getLogger(__name__)


class ManifestLoadError(ConfigurationError):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(manifest_path: Path) -> Manifest:
    """Load and validate a task manifest from YAML.

    Both a flat document (``tasks:`` at the top level) and a wrapped one
    (``apiVersion``/``kind``/``spec``) are accepted.

    Args:
        manifest_path: Path of the YAML manifest.

    Returns:
        Validated manifest.

    Raises:
        ManifestLoadError: If the file cannot be read or fails validation.
    """
    if not manifest_path.exists():
        raise ManifestLoadError(f"Manifest file not found: {manifest_path}")

    # SECURITY: Check file size before reading
    try:
        file_size = manifest_path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {manifest_path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: "
            f"{manifest_path}"
        )

    try:
        content = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {manifest_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {manifest_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest file must contain a YAML mapping: {manifest_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec") or {}
        if not isinstance(data, dict):
            raise ManifestLoadError(f"spec section must be a mapping: {manifest_path}")
    else:
        data = raw_data

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {manifest_path}:\n{error_list}") from e

    logger.info("Loaded %d task(s) from %s", len(manifest.tasks), manifest_path)
    return manifest


def build_tasks(manifest: Manifest, base_dir: Path, vfs: VFSContext) -> list[Task]:
    """Turn a validated manifest into task descriptors.

    Issuer discovery, when configured, adds its ManagedFile tasks.

    Args:
        manifest: Validated manifest.
        base_dir: Directory that relative file references resolve against.
        vfs: Store path factory, used to decide object ACLs.

    Raises:
        ManifestLoadError: If a referenced file cannot be read or parsed.
        ConfigurationError: If issuer discovery lacks its signing keypair.
    """
    tasks: list[Task] = []
    for spec in manifest.tasks:
        try:
            tasks.append(spec.to_task(base_dir))
        except (OSError, ValueError) as e:
            raise ManifestLoadError(f"{spec.kind}/{spec.name}: {e}") from e

    discovery = manifest.issuer_discovery
    if discovery is not None:
        settings = IssuerDiscovery(
            issuer=discovery.issuer,
            discovery_store=discovery.discovery_store,
            lifecycle=discovery.lifecycle,
        )
        tasks.extend(IssuerDiscoveryBuilder(settings, vfs).build(tasks))

    return tasks
