"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec, rsa  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402

from cloud_mock import DEFAULT_PROJECT, MockBackendClient  # noqa: E402
from provisioner.config import Config, TargetKind  # noqa: E402
from provisioner.vfs import VFSContext  # noqa: E402

TEST_REGION = "us-central1"
TEST_ZONE = "us-central1-a"


@pytest.fixture
def config() -> Config:
    """Valid config with a default zone, cloud target."""
    return Config(project=DEFAULT_PROJECT, region=TEST_REGION, zone=TEST_ZONE)


@pytest.fixture
def terraform_config(tmp_path: Path) -> Config:
    return Config(
        project=DEFAULT_PROJECT,
        region=TEST_REGION,
        zone=TEST_ZONE,
        target=TargetKind.TERRAFORM,
        output_dir=tmp_path / "terraform",
    )


@pytest.fixture
def backend() -> MockBackendClient:
    return MockBackendClient(project=DEFAULT_PROJECT)


@pytest.fixture
def vfs() -> VFSContext:
    return VFSContext()


def _make_certificate(
    common_name: str,
    key_type: str = "rsa",
    not_before: datetime | None = None,
) -> str:
    if key_type == "rsa":
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        key = ec.generate_private_key(ec.SECP256R1())
    start = not_before or datetime.now(UTC) - timedelta(days=1)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture
def make_certificate() -> Callable[..., str]:
    """Factory for self-signed PEM certificates: make_certificate(cn, key_type, not_before)."""
    return _make_certificate
