"""Service-account issuer discovery (OIDC) documents.

Publishes two documents to the discovery store so that external relying
parties can verify service account tokens:

- ``.well-known/openid-configuration`` (task discovery.json): a static
  function of the issuer URL.
- ``openid/v1/jwks`` (task keys.json): the public keys of the
  service-account signing keypair, as a JWK set.

Both are ManagedFile tasks. The key set depends on the Keypair task, so the
graph orders it after the keypair is validated.

PUBLIC ACCESS:
When the store's public HTTPS URL is the issuer itself, the documents must
be readable anonymously. If the bucket is already public nothing else is
needed; otherwise each object is written with a public ACL. The same rule
applies to S3 (bucket policy status) and Cloud Storage (an IAM binding of
allUsers to the object viewer role) stores.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .config import ConfigurationError
from .fields import UNSET, Opt
from .lifecycle import Lifecycle
from .task import Task
from .tasks.keypair import Keypair
from .tasks.managedfile import ManagedFile
from .vfs import MemFSPath, VFSContext, VFSError

logger = logging.getLogger(__name__)

SIGNING_KEYPAIR_KEY = "Keypair/service-account"
SIGNING_COMMON_NAME = "service-account"
AUTHORIZATION_ENDPOINT = "urn:kubernetes:programmatic_authorization"
SIGNING_ALGORITHM = "RS256"

KEYS_FILE_NAME = "keys.json"
KEYS_LOCATION = "openid/v1/jwks"
DISCOVERY_FILE_NAME = "discovery.json"
DISCOVERY_LOCATION = ".well-known/openid-configuration"

_EC_CURVE_NAMES = {"secp256r1": "P-256", "secp384r1": "P-384", "secp521r1": "P-521"}


def _marshal(document: dict[str, Any]) -> bytes:
    # One member per line, no indentation
    return json.dumps(document, indent=0).encode("utf-8")


def build_discovery_json(issuer_url: str) -> bytes:
    """Build the OpenID provider configuration for an issuer URL."""
    return _marshal(
        {
            "issuer": issuer_url,
            "jwks_uri": f"{issuer_url}/{KEYS_LOCATION}",
            "authorization_endpoint": AUTHORIZATION_ENDPOINT,
            "response_types_supported": ["id_token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
            "claims_supported": ["sub", "iss"],
        }
    )


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _int_bytes(value: int, length: int | None = None) -> bytes:
    if length is None:
        length = max(1, (value.bit_length() + 7) // 8)
    return value.to_bytes(length, "big")


def key_id(public_key: Any) -> str:
    """URL-safe base64 (no padding) of the SHA-256 of the DER public key."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return _b64url(hashlib.sha256(der).digest())


def public_jwk(public_key: Any) -> dict[str, str]:
    """JWK for a signing public key.

    Raises:
        ValueError: If the key type is not RSA or EC.
    """
    kid = key_id(public_key)
    if isinstance(public_key, rsa.RSAPublicKey):
        numbers = public_key.public_numbers()
        return {
            "use": "sig",
            "kty": "RSA",
            "kid": kid,
            "alg": SIGNING_ALGORITHM,
            "n": _b64url(_int_bytes(numbers.n)),
            "e": _b64url(_int_bytes(numbers.e)),
        }
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        numbers = public_key.public_numbers()
        size = (public_key.curve.key_size + 7) // 8
        return {
            "use": "sig",
            "kty": "EC",
            "kid": kid,
            "crv": _EC_CURVE_NAMES.get(public_key.curve.name, public_key.curve.name),
            "alg": SIGNING_ALGORITHM,
            "x": _b64url(_int_bytes(numbers.x, size)),
            "y": _b64url(_int_bytes(numbers.y, size)),
        }
    raise ValueError(f"unsupported public key type {type(public_key).__name__}")


@dataclass
class OIDCKeys:
    """JWK set content derived from the signing keypair at render time."""

    signing_key: Keypair

    def dependencies(self) -> list[Task]:
        return [self.signing_key]

    def link(self, resolve: Callable[[Task], Task]) -> None:
        resolved = resolve(self.signing_key)
        if isinstance(resolved, Keypair):
            self.signing_key = resolved

    def open(self) -> bytes:
        keys = []
        for item in self.signing_key.keyset():
            if item.distrusted:
                continue
            if item.certificate is None or item.common_name != SIGNING_COMMON_NAME:
                continue
            keys.append(public_jwk(item.certificate.public_key()))
        keys.sort(key=lambda jwk: jwk["kid"])
        return _marshal({"keys": keys})


@dataclass(frozen=True)
class IssuerDiscovery:
    """Issuer discovery settings."""

    issuer: str
    discovery_store: str | None = None
    lifecycle: Lifecycle = Lifecycle.SYNC


class IssuerDiscoveryBuilder:
    """Adds the discovery ManagedFile tasks to a declared task set."""

    def __init__(self, settings: IssuerDiscovery, vfs: VFSContext) -> None:
        self._settings = settings
        self._vfs = vfs

    def build(self, tasks: list[Task]) -> list[Task]:
        """Return the discovery tasks to add to tasks.

        Raises:
            ConfigurationError: If the signing keypair is not declared or the
                store URL is not usable.
        """
        settings = self._settings
        if not settings.discovery_store:
            return []

        signing_key = next((t for t in tasks if t.key == SIGNING_KEYPAIR_KEY), None)
        if not isinstance(signing_key, Keypair):
            raise ConfigurationError(f"{SIGNING_KEYPAIR_KEY} task not found")

        public_acl = self._public_acl(settings.discovery_store, settings.issuer)
        discovery = build_discovery_json(settings.issuer)

        def managed_file(name: str, location: str, contents: Any) -> ManagedFile:
            return ManagedFile(
                name=name,
                lifecycle=settings.lifecycle,
                base=Opt.of(settings.discovery_store),
                location=Opt.of(location),
                contents=Opt.of(contents),
                public_acl=Opt.of(True) if public_acl else UNSET,
            )

        return [
            managed_file(KEYS_FILE_NAME, KEYS_LOCATION, OIDCKeys(signing_key=signing_key)),
            managed_file(DISCOVERY_FILE_NAME, DISCOVERY_LOCATION, discovery),
        ]

    def _public_acl(self, store_url: str, issuer: str) -> bool:
        try:
            store = self._vfs.build_path(store_url)
        except VFSError as e:
            raise ConfigurationError(f"building store path for {store_url!r}: {e}") from e

        if isinstance(store, MemFSPath):
            return False

        if store.https_url() != issuer:
            logger.info("Using user managed service account issuer", extra={"issuer": issuer})
            return False

        if store.is_bucket_public():
            return False
        logger.info(
            "Discovery store is not public; will use object ACL",
            extra={"store": store_url},
        )
        return True
