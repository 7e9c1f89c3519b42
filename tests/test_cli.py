"""Tests for the command line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from provisioner.cli import cli

MANIFEST = """
tasks:
  - kind: Network
    name: net-1
    mode: custom
  - kind: Subnet
    name: sub-1
    network: net-1
    cidr: 10.0.0.0/24
  - kind: Instance
    name: vm-1
    machineType: e2-small
    image: debian-12
    network: net-1
    subnet: sub-1
"""

GLOBAL_OPTIONS = ["--project", "test-project", "--region", "us-central1", "--zone", "us-central1-a"]

ENV_KEYS = ("TARGET", "OUTPUT_DIR", "MAX_CONCURRENCY", "CALL_TIMEOUT", "OPERATION_TIMEOUT", "LIFECYCLE_OVERRIDES")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the CLI from replacing pytest's log handlers."""
    monkeypatch.setattr("provisioner.cli.setup_logging", lambda **kwargs: None)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "tasks.yaml"
    path.write_text(MANIFEST)
    return path


class TestGraphCommand:
    """Tests for `provisioner graph`."""

    def test_prints_order(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, ["graph", str(manifest)])

        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == [
            "Network/net-1",
            "Subnet/sub-1  <- Network/net-1",
            "Instance/vm-1  <- Network/net-1, Subnet/sub-1",
        ]

    def test_dangling_reference(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("tasks:\n  - kind: Subnet\n    name: sub-1\n    network: missing\n")

        result = runner.invoke(cli, ["graph", str(path)])

        assert result.exit_code == 2
        assert "Network/missing" in result.output

    def test_invalid_manifest(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("tasks:\n  - kind: Bucket\n    name: b\n")

        result = runner.invoke(cli, ["graph", str(path)])

        assert result.exit_code == 2
        assert "Validation failed" in result.output


class TestPlanCommand:
    """Tests for `provisioner plan`."""

    def test_without_backend_everything_is_created(
        self, runner: CliRunner, manifest: Path
    ) -> None:
        result = runner.invoke(cli, [*GLOBAL_OPTIONS, "plan", str(manifest)])

        assert result.exit_code == 0, result.output
        assert "create Network/net-1: mode" in result.output
        assert "create Instance/vm-1: image, machine_type, network, subnet" in result.output

    def test_with_backend(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(
            cli, [*GLOBAL_OPTIONS, "plan", str(manifest), "--backend", "cloud_mock:create_backend"]
        )

        assert result.exit_code == 0, result.output
        assert "create Subnet/sub-1" in result.output

    def test_invalid_config(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, ["--project", "X", "--region", "us-central1", "plan", str(manifest)])

        assert result.exit_code == 2
        assert "GCE_PROJECT must match pattern" in result.output

    def test_bad_backend_spec(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(
            cli, [*GLOBAL_OPTIONS, "plan", str(manifest), "--backend", "no_such_module:factory"]
        )

        assert result.exit_code == 2


class TestApplyCommand:
    """Tests for `provisioner apply`."""

    def test_terraform(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        output_dir = tmp_path / "out"

        result = runner.invoke(
            cli,
            [
                *GLOBAL_OPTIONS,
                "apply",
                str(manifest),
                "--target",
                "terraform",
                "--output-dir",
                str(output_dir),
            ],
        )

        assert result.exit_code == 0, result.output
        document = json.loads((output_dir / "main.tf.json").read_text())
        assert set(document["resource"]) == {
            "google_compute_network",
            "google_compute_subnetwork",
            "google_compute_instance",
        }

    def test_cloud_requires_backend(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, [*GLOBAL_OPTIONS, "apply", str(manifest)])

        assert result.exit_code == 2
        assert "requires a backend" in result.output

    def test_cloud(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(
            cli, [*GLOBAL_OPTIONS, "apply", str(manifest), "--backend", "cloud_mock:create_backend"]
        )

        assert result.exit_code == 0, result.output
        assert "Run succeeded" in result.output
        assert "Instance/vm-1: created" in result.output

    def test_failed_task_exit_code(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(
            cli,
            [
                *GLOBAL_OPTIONS,
                "apply",
                str(manifest),
                "--backend",
                "cloud_mock:create_backend",
                "--lifecycle-override",
                "Network=ExistsAndValidates",
            ],
        )

        assert result.exit_code == 1
        assert "Network/net-1: failed" in result.output
        assert "Instance/vm-1: skipped: blocked-by Network/net-1" in result.output

    def test_invalid_lifecycle_override(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(
            cli,
            [*GLOBAL_OPTIONS, "apply", str(manifest), "--lifecycle-override", "Network"],
        )

        assert result.exit_code == 2


class TestEnvironment:
    """Tests for configuration taken from the environment."""

    def test_lifecycle_overrides_apply(
        self, runner: CliRunner, manifest: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LIFECYCLE_OVERRIDES", "Network=ExistsAndValidates")

        result = runner.invoke(
            cli, [*GLOBAL_OPTIONS, "apply", str(manifest), "--backend", "cloud_mock:create_backend"]
        )

        assert result.exit_code == 1
        assert "Network/net-1: failed" in result.output

    def test_command_line_rules_come_first(
        self, runner: CliRunner, manifest: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LIFECYCLE_OVERRIDES", "Network=ExistsAndValidates")

        result = runner.invoke(
            cli,
            [
                *GLOBAL_OPTIONS,
                "apply",
                str(manifest),
                "--backend",
                "cloud_mock:create_backend",
                "--lifecycle-override",
                "Network=Sync",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Network/net-1: created" in result.output

    def test_json_rules_merge_with_command_line(
        self, runner: CliRunner, manifest: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(
            "LIFECYCLE_OVERRIDES",
            json.dumps([{"kinds": ["Network"], "lifecycle": "ExistsAndValidates"}]),
        )

        result = runner.invoke(
            cli,
            [
                *GLOBAL_OPTIONS,
                "apply",
                str(manifest),
                "--backend",
                "cloud_mock:create_backend",
                "--lifecycle-override",
                "Network=Sync",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Network/net-1: created" in result.output

    def test_target_and_output_dir(
        self, runner: CliRunner, manifest: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        output_dir = tmp_path / "from-env"
        monkeypatch.setenv("TARGET", "terraform")
        monkeypatch.setenv("OUTPUT_DIR", str(output_dir))

        result = runner.invoke(cli, [*GLOBAL_OPTIONS, "apply", str(manifest)])

        assert result.exit_code == 0, result.output
        assert (output_dir / "main.tf.json").exists()

    def test_flags_replace_variables(
        self, runner: CliRunner, manifest: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TARGET", "terraform")
        monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "from-env"))

        result = runner.invoke(
            cli,
            [*GLOBAL_OPTIONS, "apply", str(manifest), "--output-dir", str(tmp_path / "from-flag")],
        )

        assert result.exit_code == 0, result.output
        assert (tmp_path / "from-flag" / "main.tf.json").exists()
        assert not (tmp_path / "from-env").exists()

    def test_invalid_timeout(
        self, runner: CliRunner, manifest: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CALL_TIMEOUT", "soon")

        result = runner.invoke(cli, [*GLOBAL_OPTIONS, "plan", str(manifest)])

        assert result.exit_code == 2
        assert "CALL_TIMEOUT must be an integer" in result.output
