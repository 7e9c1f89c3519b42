"""Provisioner CLI.

Usage:
    provisioner graph manifest.yaml                        # Print execution order
    provisioner plan manifest.yaml                         # Dry run, print planned changes
    provisioner apply manifest.yaml --target terraform     # Write main.tf.json
    provisioner apply manifest.yaml --backend mypkg.gce:client

Exit codes: 0 on success, 1 when any task failed or the run was cancelled,
2 on configuration errors (nothing was executed).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from .config import Config, ConfigurationError, TargetKind
from .graph import TaskGraph
from .lifecycle import merge_lifecycle_overrides
from .main import create_target, load_backend, run_tasks, setup_logging
from .manifest_loader import build_tasks, load_manifest
from .render import DryRunTarget
from .scheduler import RunReport
from .task import Task
from .vfs import VFSContext

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Options shared by every subcommand."""

    project: str | None
    region: str | None
    zone: str | None
    max_concurrency: int | None


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(EXIT_CONFIG_ERROR)


def _load_tasks(manifest_path: str, vfs: VFSContext) -> list[Task]:
    path = Path(manifest_path)
    manifest = load_manifest(path)
    return build_tasks(manifest, path.resolve().parent, vfs)


def _build_config(
    settings: Settings,
    target: TargetKind | None = None,
    output_dir: str | None = None,
    lifecycle_overrides: tuple[str, ...] = (),
) -> Config:
    """Layer command line flags over the environment.

    Flags the user passed replace the matching variables. Lifecycle rules from
    the command line are evaluated before those of LIFECYCLE_OVERRIDES.
    """
    values = Config.values_from_env()
    flags = {
        "project": settings.project,
        "region": settings.region,
        "zone": settings.zone,
        "max_concurrency": settings.max_concurrency,
        "target": target,
        "output_dir": Path(output_dir) if output_dir else None,
    }
    values.update({key: value for key, value in flags.items() if value is not None})
    values["lifecycle_overrides"] = merge_lifecycle_overrides(
        ",".join(lifecycle_overrides), values["lifecycle_overrides"]
    )
    return Config(**values)


def _print_report(report: RunReport) -> None:
    for line in report.describe():
        click.echo(f"  {line}")
    summary = ", ".join(f"{status}={count}" for status, count in sorted(report.summary().items()))
    colour = "green" if report.success else "red"
    click.secho(f"Run {'succeeded' if report.success else 'failed'}: {summary}", fg=colour)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option("--project", help="Target project [env: GCE_PROJECT]")
@click.option("--region", help="Default region for regional resources [env: GCE_REGION]")
@click.option("--zone", help="Default zone for zonal resources [env: GCE_ZONE]")
@click.option(
    "--max-concurrency", type=int, help="Tasks executed in parallel [env: MAX_CONCURRENCY]"
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    project: str | None,
    region: str | None,
    zone: str | None,
    max_concurrency: int | None,
    json_logs: bool,
    verbose: bool,
) -> None:
    """Reconcile declared infrastructure tasks against a target.

    \b
    Quick Start:
        provisioner graph tasks.yaml
        provisioner --project my-project --region us-central1 plan tasks.yaml
        provisioner --project my-project --region us-central1 \\
            apply tasks.yaml --target terraform --output-dir out/
    """
    setup_logging(json_output=json_logs, level=logging.DEBUG if verbose else logging.INFO)
    ctx.obj = Settings(
        project=project,
        region=region,
        zone=zone,
        max_concurrency=max_concurrency,
    )


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
def graph(manifest: str) -> None:
    """Print the execution order of the tasks in MANIFEST."""
    try:
        task_graph = TaskGraph.build(_load_tasks(manifest, VFSContext()))
        order = task_graph.topological_sort()
    except ConfigurationError as e:
        _fail(str(e))
        return

    for key in order:
        deps = task_graph.dependencies(key)
        suffix = f"  <- {', '.join(deps)}" if deps else ""
        click.echo(f"{key}{suffix}")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--backend", "backend_spec", default=None, help="Backend factory as module:factory")
@click.option(
    "--lifecycle-override",
    "lifecycle_overrides",
    multiple=True,
    help="Kind[/name-glob]=Lifecycle, may be repeated",
)
@click.pass_obj
def plan(
    settings: Settings,
    manifest: str,
    backend_spec: str | None,
    lifecycle_overrides: tuple[str, ...],
) -> None:
    """Discover and diff MANIFEST without changing anything.

    Without --backend nothing is discovered and every task plans as a create.
    """
    vfs = VFSContext()
    try:
        config = _build_config(settings, TargetKind.DRY_RUN, lifecycle_overrides=lifecycle_overrides)
        backend = load_backend(backend_spec) if backend_spec else None
        target = create_target(config, backend)
        tasks = _load_tasks(manifest, vfs)
        report = asyncio.run(run_tasks(config, target, tasks, backend=backend, vfs=vfs))
    except ConfigurationError as e:
        _fail(str(e))
        return

    if isinstance(target, DryRunTarget):
        for change in target.plan:
            click.echo(change.describe())
        if not target.plan:
            click.echo("No changes.")
    _print_report(report)
    sys.exit(EXIT_OK if report.success else EXIT_FAILED)


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--target",
    "target_kind",
    type=click.Choice([TargetKind.CLOUD.value, TargetKind.TERRAFORM.value]),
    default=None,
    help="Render target [env: TARGET, default: cloud]",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False),
    help="Where terraform artifacts are written [env: OUTPUT_DIR]",
)
@click.option("--backend", "backend_spec", default=None, help="Backend factory as module:factory")
@click.option(
    "--lifecycle-override",
    "lifecycle_overrides",
    multiple=True,
    help="Kind[/name-glob]=Lifecycle, may be repeated",
)
@click.pass_obj
def apply(
    settings: Settings,
    manifest: str,
    target_kind: str | None,
    output_dir: str | None,
    backend_spec: str | None,
    lifecycle_overrides: tuple[str, ...],
) -> None:
    """Reconcile MANIFEST against the cloud or render it to Terraform."""
    vfs = VFSContext()
    try:
        config = _build_config(
            settings,
            TargetKind(target_kind) if target_kind else None,
            output_dir=output_dir,
            lifecycle_overrides=lifecycle_overrides,
        )
        backend = load_backend(backend_spec) if backend_spec else None
        target = create_target(config, backend)
        tasks = _load_tasks(manifest, vfs)
        report = asyncio.run(run_tasks(config, target, tasks, backend=backend, vfs=vfs))
    except ConfigurationError as e:
        _fail(str(e))
        return

    _print_report(report)
    sys.exit(EXIT_OK if report.success else EXIT_FAILED)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
