"""Configuration management with validation.

Every run is driven by one frozen Config. Invalid values are collected and
reported together at construction time so that a bad environment fails before
any task is discovered or rendered.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any


class TargetKind(str, Enum):
    """Supported render targets. Exactly one is active per run."""

    CLOUD = "cloud"
    TERRAFORM = "terraform"
    DRY_RUN = "dryrun"


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Also the base class for every fatal configuration problem detected by the
    engine (dangling dependencies, cycles, unsupported targets, disallowed
    field transitions). These are never retried.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 8
MAX_CONCURRENCY = 64

DEFAULT_CALL_TIMEOUT_SECONDS = 120
DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MAX_OPERATION_TIMEOUT_SECONDS = 3600

DEFAULT_OUTPUT_DIR = "out/terraform"

# Manifest files are small; anything bigger is almost certainly a mistake
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

# Input validation patterns
VALID_PROJECT_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"
VALID_ZONE_PATTERN = r"^[a-z]+-[a-z]+[0-9]+-[a-z]$"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    project: str
    region: str

    zone: str | None = None

    target: TargetKind = TargetKind.CLOUD
    output_dir: Path = field(default_factory=lambda: Path(DEFAULT_OUTPUT_DIR))

    # Scheduling
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Timeouts
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Compact lifecycle overrides, e.g. "Network=ExistsAndValidates"
    lifecycle_overrides: str = ""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project:
            errors.append("GCE_PROJECT is required")
        elif not re.match(VALID_PROJECT_PATTERN, self.project):
            errors.append(f"GCE_PROJECT must match pattern {VALID_PROJECT_PATTERN}: {self.project}")

        if not self.region:
            errors.append("GCE_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"GCE_REGION must be a valid region: {self.region}")

        if self.zone:
            if not re.match(VALID_ZONE_PATTERN, self.zone):
                errors.append(f"GCE_ZONE must be a valid zone: {self.zone}")
            elif self.region and not self.zone.startswith(f"{self.region}-"):
                errors.append(f"GCE_ZONE {self.zone} is not in region {self.region}")

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY}")

        if self.call_timeout_seconds < 1:
            errors.append("CALL_TIMEOUT must be at least 1 second")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )
        elif self.operation_timeout_seconds < self.call_timeout_seconds:
            errors.append("OPERATION_TIMEOUT must not be shorter than CALL_TIMEOUT")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def with_overrides(self, **changes: object) -> Config:
        """Return a copy with some fields replaced (re-validated)."""
        return replace(self, **changes)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If a value is malformed or the result is invalid.
        """
        return cls(**cls.values_from_env())

    @staticmethod
    def values_from_env() -> dict[str, Any]:
        """Read configuration fields from the environment, unvalidated.

        Callers layering other sources (CLI flags) on top build the Config
        from the merged values.

        Environment Variables:
            GCE_PROJECT: Target project
            GCE_REGION: Default region for regional resources
            GCE_ZONE: Default zone for zonal resources (optional)
            TARGET: One of cloud, terraform, dryrun (default: cloud)
            OUTPUT_DIR: Where terraform artifacts are written (default: out/terraform)
            MAX_CONCURRENCY: Tasks executed in parallel (default: 8)
            CALL_TIMEOUT: Timeout for a single backend call in seconds (default: 120)
            OPERATION_TIMEOUT: Timeout for asynchronous operations in seconds (default: 600)
            LIFECYCLE_OVERRIDES: Compact or JSON lifecycle overrides (optional)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_target(value: str | None) -> TargetKind:
            if not value:
                return TargetKind.CLOUD
            try:
                return TargetKind(value.lower())
            except ValueError as e:
                valid = [t.value for t in TargetKind]
                raise ConfigurationError(f"TARGET must be one of {valid}: {value}") from e

        return {
            "project": os.environ.get("GCE_PROJECT", ""),
            "region": os.environ.get("GCE_REGION", ""),
            "zone": os.environ.get("GCE_ZONE") or None,
            "target": get_target(os.environ.get("TARGET")),
            "output_dir": Path(os.environ.get("OUTPUT_DIR", DEFAULT_OUTPUT_DIR)),
            "max_concurrency": get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            "call_timeout_seconds": get_int("CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            "operation_timeout_seconds": get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            "lifecycle_overrides": os.environ.get("LIFECYCLE_OVERRIDES", ""),
        }
