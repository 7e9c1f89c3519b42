"""Tests for issuer discovery documents."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from cryptography import x509

from provisioner.config import ConfigurationError
from provisioner.fields import Opt
from provisioner.lifecycle import Lifecycle
from provisioner.oidc import (
    DISCOVERY_LOCATION,
    KEYS_LOCATION,
    IssuerDiscovery,
    IssuerDiscoveryBuilder,
    OIDCKeys,
    build_discovery_json,
    key_id,
    public_jwk,
)
from provisioner.tasks.keypair import Keypair, KeysetItem
from provisioner.tasks.managedfile import ManagedFile
from provisioner.tasks.network import Network
from provisioner.vfs import VFSContext

ISSUER = "https://example.com/oidc"


def signing_keypair(*items: KeysetItem) -> Keypair:
    return Keypair(name="service-account", items=Opt.of(list(items)))


class TestDiscoveryDocument:
    """Tests for build_discovery_json()."""

    def test_contents(self) -> None:
        document = json.loads(build_discovery_json(ISSUER))

        assert document == {
            "issuer": "https://example.com/oidc",
            "jwks_uri": "https://example.com/oidc/openid/v1/jwks",
            "authorization_endpoint": "urn:kubernetes:programmatic_authorization",
            "response_types_supported": ["id_token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "claims_supported": ["sub", "iss"],
        }

    def test_one_member_per_line(self) -> None:
        lines = build_discovery_json(ISSUER).decode("utf-8").splitlines()

        assert lines[0] == "{"
        assert lines[1] == '"issuer": "https://example.com/oidc",'


class TestJWKS:
    """Tests for the key set document."""

    def test_rsa_key(self, make_certificate) -> None:
        item = KeysetItem.from_pem("1", make_certificate("service-account"))
        public_key = item.certificate.public_key()

        jwk = public_jwk(public_key)

        assert jwk["kty"] == "RSA"
        assert jwk["use"] == "sig"
        assert jwk["alg"] == "RS256"
        assert jwk["e"] == "AQAB"
        assert jwk["kid"] == key_id(public_key)
        assert "=" not in jwk["kid"]

    def test_ec_key(self, make_certificate) -> None:
        item = KeysetItem.from_pem("1", make_certificate("service-account", key_type="ec"))

        jwk = public_jwk(item.certificate.public_key())

        assert jwk["kty"] == "EC"
        assert jwk["crv"] == "P-256"
        assert {"x", "y"} <= set(jwk)

    def test_unsupported_key(self) -> None:
        with pytest.raises(ValueError, match="unsupported public key type"):
            public_jwk(object())

    def test_filters_and_sorts(self, make_certificate) -> None:
        """Test that distrusted and foreign certificates are left out."""
        trusted = [
            KeysetItem.from_pem(str(i), make_certificate("service-account")) for i in range(3)
        ]
        distrusted = KeysetItem.from_pem(
            "old", make_certificate("service-account"), distrust_timestamp=datetime.now(UTC)
        )
        foreign = KeysetItem.from_pem("ca", make_certificate("kubernetes-ca"))
        keys = OIDCKeys(signing_key=signing_keypair(trusted[0], distrusted, foreign, *trusted[1:]))

        document = json.loads(keys.open())

        kids = [jwk["kid"] for jwk in document["keys"]]
        expected = sorted(key_id(item.certificate.public_key()) for item in trusted)
        assert kids == expected

    def test_deterministic(self, make_certificate) -> None:
        items = [KeysetItem.from_pem(str(i), make_certificate("service-account")) for i in range(2)]

        first = OIDCKeys(signing_key=signing_keypair(*items)).open()
        second = OIDCKeys(signing_key=signing_keypair(*reversed(items))).open()

        assert first == second

    def test_empty(self) -> None:
        """Test that a keypair without usable keys publishes an empty list, never null."""
        assert OIDCKeys(signing_key=signing_keypair()).open() == b'{\n"keys": []\n}'

    def test_keys_depend_on_keypair(self) -> None:
        keypair = signing_keypair()

        assert OIDCKeys(signing_key=keypair).dependencies() == [keypair]

    def test_certificate_type(self, make_certificate) -> None:
        item = KeysetItem.from_pem("1", make_certificate("service-account"))

        assert isinstance(item.certificate, x509.Certificate)
        assert item.common_name == "service-account"


class TestIssuerDiscoveryBuilder:
    """Tests for IssuerDiscoveryBuilder."""

    def test_no_store_adds_nothing(self, vfs: VFSContext) -> None:
        builder = IssuerDiscoveryBuilder(IssuerDiscovery(issuer=ISSUER), vfs)

        assert builder.build([signing_keypair()]) == []

    def test_memfs_store(self, vfs: VFSContext) -> None:
        keypair = signing_keypair()
        settings = IssuerDiscovery(
            issuer=ISSUER,
            discovery_store="memfs://discovery/cluster",
            lifecycle=Lifecycle.EXISTS_AND_WARN_IF_CHANGES,
        )

        files = IssuerDiscoveryBuilder(settings, vfs).build([Network(name="net-1"), keypair])

        assert [f.key for f in files] == ["ManagedFile/keys.json", "ManagedFile/discovery.json"]
        keys, discovery = files
        assert isinstance(keys, ManagedFile)
        assert keys.location.get() == KEYS_LOCATION
        assert keys.dependencies() == [keypair]
        assert keys.lifecycle is Lifecycle.EXISTS_AND_WARN_IF_CHANGES
        assert keys.public_acl.is_unset
        assert discovery.location.get() == DISCOVERY_LOCATION
        assert discovery.contents.get() == build_discovery_json(ISSUER)
        assert discovery.dependencies() == []

    def test_missing_keypair(self, vfs: VFSContext) -> None:
        settings = IssuerDiscovery(issuer=ISSUER, discovery_store="memfs://discovery")

        with pytest.raises(ConfigurationError, match="Keypair/service-account task not found"):
            IssuerDiscoveryBuilder(settings, vfs).build([Network(name="net-1")])

    def test_bad_store_url(self, vfs: VFSContext) -> None:
        settings = IssuerDiscovery(issuer=ISSUER, discovery_store="ftp://discovery")

        with pytest.raises(ConfigurationError, match="building store path"):
            IssuerDiscoveryBuilder(settings, vfs).build([signing_keypair()])


class TestPublicAcl:
    """Tests for the public ACL decision on S3 stores."""

    def make_vfs(self, bucket_public: bool) -> tuple[VFSContext, MagicMock]:
        client = MagicMock()
        client.meta.region_name = "us-east-1"
        client.get_bucket_policy_status.return_value = {"PolicyStatus": {"IsPublic": bucket_public}}
        return VFSContext(s3_client_factory=lambda: client), client

    def build(self, vfs: VFSContext, issuer: str) -> list:
        settings = IssuerDiscovery(issuer=issuer, discovery_store="s3://issuer-bucket/cluster-1")
        return IssuerDiscoveryBuilder(settings, vfs).build([signing_keypair()])

    def test_private_bucket_serving_issuer(self) -> None:
        vfs, _ = self.make_vfs(bucket_public=False)

        files = self.build(vfs, "https://issuer-bucket.s3.us-east-1.amazonaws.com/cluster-1")

        assert all(f.public_acl == Opt.of(True) for f in files)

    def test_public_bucket(self) -> None:
        vfs, _ = self.make_vfs(bucket_public=True)

        files = self.build(vfs, "https://issuer-bucket.s3.us-east-1.amazonaws.com/cluster-1")

        assert all(f.public_acl.is_unset for f in files)

    def test_user_managed_issuer(self) -> None:
        """Test that a store not serving the issuer never gets public objects."""
        vfs, client = self.make_vfs(bucket_public=False)

        files = self.build(vfs, ISSUER)

        assert all(f.public_acl.is_unset for f in files)
        client.get_bucket_policy_status.assert_not_called()


class TestPublicAclOnCloudStorage:
    """Tests for the public ACL decision on Cloud Storage stores."""

    ISSUER_URL = "https://storage.googleapis.com/issuer-bucket/cluster-1"

    def make_vfs(self, members: set[str]) -> tuple[VFSContext, MagicMock]:
        client = MagicMock()
        policy = client.bucket.return_value.get_iam_policy.return_value
        policy.bindings = [{"role": "roles/storage.objectViewer", "members": members}]
        return VFSContext(gcs_client_factory=lambda: client), client

    def build(self, vfs: VFSContext, issuer: str) -> list:
        settings = IssuerDiscovery(issuer=issuer, discovery_store="gs://issuer-bucket/cluster-1")
        return IssuerDiscoveryBuilder(settings, vfs).build([signing_keypair()])

    def test_private_bucket_serving_issuer(self) -> None:
        vfs, _ = self.make_vfs(members={"projectViewer:test-project"})

        files = self.build(vfs, self.ISSUER_URL)

        assert all(f.public_acl == Opt.of(True) for f in files)

    def test_public_bucket(self) -> None:
        vfs, _ = self.make_vfs(members={"allUsers"})

        files = self.build(vfs, self.ISSUER_URL)

        assert all(f.public_acl.is_unset for f in files)

    def test_user_managed_issuer(self) -> None:
        vfs, client = self.make_vfs(members=set())

        files = self.build(vfs, ISSUER)

        assert all(f.public_acl.is_unset for f in files)
        client.bucket.return_value.get_iam_policy.assert_not_called()
