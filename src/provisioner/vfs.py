"""Path-addressed object stores used by ManagedFile tasks.

Supported schemes:

- memfs://bucket/path  in-memory, scoped to one VFSContext (tests, dry runs)
- s3://bucket/path     Amazon S3 via boto3
- gs://bucket/path     Google Cloud Storage via google-cloud-storage

Each path can report its public HTTPS URL and whether its bucket is publicly
readable. Callers use this to decide whether objects must carry a public ACL
(see oidc.IssuerDiscoveryBuilder).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import boto3
from botocore.exceptions import ClientError
from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.cloud import storage

logger = logging.getLogger(__name__)

ALL_USERS_GRANTEE_URI = "http://acs.amazonaws.com/groups/global/AllUsers"
GCS_ALL_USERS = "allUsers"
GCS_OBJECT_VIEWER_ROLE = "roles/storage.objectViewer"
GCS_PUBLIC_ENDPOINT = "https://storage.googleapis.com"


class VFSError(Exception):
    """Raised when a store operation fails."""

    pass


class StorePath(Protocol):
    """A location in an object store."""

    @property
    def url(self) -> str: ...

    def join(self, *parts: str) -> StorePath: ...

    def read(self) -> bytes | None:
        """Return the object contents, or None if it does not exist."""
        ...

    def write(self, data: bytes, public: bool | None = None) -> None: ...

    def https_url(self) -> str: ...

    def is_bucket_public(self) -> bool: ...

    def is_object_public(self) -> bool: ...


def _join_key(key: str, parts: tuple[str, ...]) -> str:
    segments = [key.strip("/")] if key.strip("/") else []
    segments.extend(p.strip("/") for p in parts if p.strip("/"))
    return "/".join(segments)


@dataclass
class MemFSStore:
    """Backing state for memfs:// paths."""

    objects: dict[tuple[str, str], bytes] = field(default_factory=dict)
    public_objects: set[tuple[str, str]] = field(default_factory=set)
    public_buckets: set[str] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(frozen=True)
class MemFSPath:
    """memfs://bucket/key"""

    store: MemFSStore
    bucket: str
    key: str = ""

    @property
    def url(self) -> str:
        return f"memfs://{self.bucket}/{self.key}" if self.key else f"memfs://{self.bucket}"

    def join(self, *parts: str) -> MemFSPath:
        return MemFSPath(self.store, self.bucket, _join_key(self.key, parts))

    def read(self) -> bytes | None:
        with self.store.lock:
            return self.store.objects.get((self.bucket, self.key))

    def write(self, data: bytes, public: bool | None = None) -> None:
        with self.store.lock:
            self.store.objects[(self.bucket, self.key)] = data
            if public:
                self.store.public_objects.add((self.bucket, self.key))
            elif public is False:
                self.store.public_objects.discard((self.bucket, self.key))

    def https_url(self) -> str:
        return f"https://{self.bucket}.memfs.invalid/{self.key}".rstrip("/")

    def is_bucket_public(self) -> bool:
        with self.store.lock:
            return self.bucket in self.store.public_buckets

    def is_object_public(self) -> bool:
        with self.store.lock:
            return (
                self.bucket in self.store.public_buckets
                or (self.bucket, self.key) in self.store.public_objects
            )


@dataclass(frozen=True)
class S3Path:
    """s3://bucket/key"""

    client: Any
    bucket: str
    key: str = ""

    @property
    def url(self) -> str:
        return f"s3://{self.bucket}/{self.key}" if self.key else f"s3://{self.bucket}"

    def join(self, *parts: str) -> S3Path:
        return S3Path(self.client, self.bucket, _join_key(self.key, parts))

    def read(self) -> bytes | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return None
            raise VFSError(f"error reading {self.url}: {e}") from e
        return response["Body"].read()

    def write(self, data: bytes, public: bool | None = None) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": self.key, "Body": data}
        if public:
            kwargs["ACL"] = "public-read"
        try:
            self.client.put_object(**kwargs)
        except ClientError as e:
            raise VFSError(f"error writing {self.url}: {e}") from e
        logger.debug("Wrote object", extra={"url": self.url, "public": bool(public)})

    def https_url(self) -> str:
        region = self.client.meta.region_name
        url = f"https://{self.bucket}.s3.{region}.amazonaws.com/{self.key}"
        return url.rstrip("/")

    def is_bucket_public(self) -> bool:
        try:
            response = self.client.get_bucket_policy_status(Bucket=self.bucket)
        except ClientError as e:
            if _error_code(e) == "NoSuchBucketPolicy":
                return False
            raise VFSError(f"error checking if bucket {self.bucket} is public: {e}") from e
        return bool(response.get("PolicyStatus", {}).get("IsPublic", False))

    def is_object_public(self) -> bool:
        try:
            response = self.client.get_object_acl(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return False
            raise VFSError(f"error reading ACL of {self.url}: {e}") from e
        for grant in response.get("Grants", []):
            grantee = grant.get("Grantee", {})
            if grantee.get("URI") == ALL_USERS_GRANTEE_URI and grant.get("Permission") in (
                "READ",
                "FULL_CONTROL",
            ):
                return True
        return False


@dataclass(frozen=True)
class GSPath:
    """gs://bucket/key"""

    client: Any
    bucket: str
    key: str = ""

    @property
    def url(self) -> str:
        return f"gs://{self.bucket}/{self.key}" if self.key else f"gs://{self.bucket}"

    def join(self, *parts: str) -> GSPath:
        return GSPath(self.client, self.bucket, _join_key(self.key, parts))

    def _blob(self) -> Any:
        return self.client.bucket(self.bucket).blob(self.key)

    def read(self) -> bytes | None:
        try:
            return self._blob().download_as_bytes()
        except NotFound:
            return None
        except GoogleAPICallError as e:
            raise VFSError(f"error reading {self.url}: {e}") from e

    def write(self, data: bytes, public: bool | None = None) -> None:
        try:
            self._blob().upload_from_string(data, predefined_acl="publicRead" if public else None)
        except GoogleAPICallError as e:
            raise VFSError(f"error writing {self.url}: {e}") from e
        logger.debug("Wrote object", extra={"url": self.url, "public": bool(public)})

    def https_url(self) -> str:
        return f"{GCS_PUBLIC_ENDPOINT}/{self.bucket}/{self.key}".rstrip("/")

    def is_bucket_public(self) -> bool:
        """Whether the bucket IAM policy lets anyone read its objects."""
        try:
            policy = self.client.bucket(self.bucket).get_iam_policy(requested_policy_version=3)
        except GoogleAPICallError as e:
            raise VFSError(f"error checking if bucket {self.bucket} is public: {e}") from e
        return any(
            binding.get("role") == GCS_OBJECT_VIEWER_ROLE
            and GCS_ALL_USERS in binding.get("members", ())
            for binding in policy.bindings
        )

    def is_object_public(self) -> bool:
        blob = self._blob()
        try:
            blob.acl.reload()
        except NotFound:
            return False
        except GoogleAPICallError as e:
            raise VFSError(f"error reading ACL of {self.url}: {e}") from e
        return bool(blob.acl.all().get_roles() & {"READER", "OWNER"})


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class VFSContext:
    """Builds StorePath objects from URLs.

    One context owns the memfs state, so separate runs (and tests) never
    share in-memory objects by accident. Store clients are created lazily.
    """

    def __init__(
        self,
        s3_client_factory: Callable[[], Any] | None = None,
        gcs_client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.memfs = MemFSStore()
        self._s3_client_factory = s3_client_factory or (lambda: boto3.client("s3"))
        self._s3_client: Any | None = None
        self._gcs_client_factory = gcs_client_factory or storage.Client
        self._gcs_client: Any | None = None
        self._lock = threading.Lock()

    def _get_s3_client(self) -> Any:
        with self._lock:
            if self._s3_client is None:
                self._s3_client = self._s3_client_factory()
            return self._s3_client

    def _get_gcs_client(self) -> Any:
        with self._lock:
            if self._gcs_client is None:
                self._gcs_client = self._gcs_client_factory()
            return self._gcs_client

    def build_path(self, url: str) -> StorePath:
        """Parse a store URL.

        Raises:
            VFSError: If the scheme is not supported.
        """
        scheme, sep, rest = url.partition("://")
        if not sep or not rest:
            raise VFSError(f"not a store URL: {url!r}")
        bucket, _, key = rest.partition("/")
        key = key.strip("/")

        if scheme == "memfs":
            return MemFSPath(self.memfs, bucket, key)
        if scheme == "s3":
            return S3Path(self._get_s3_client(), bucket, key)
        if scheme == "gs":
            return GSPath(self._get_gcs_client(), bucket, key)

        raise VFSError(f"unhandled store scheme {scheme!r} in {url!r}")
