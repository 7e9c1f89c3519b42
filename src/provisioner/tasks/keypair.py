"""Certificate keyset issued out of band.

The engine never issues or rotates keys. A Keypair task carries the keyset
loaded from PEM certificates and lets dependents (the OIDC key set) read it.
Discovery reports the keypair as present only when it holds a trusted
certificate for its common name; otherwise rendering fails the node with a
message pointing at the missing certificate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, ClassVar

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..context import RunContext
from ..delta import Changes, Differ
from ..fields import UNSET, Opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import Task
from ..terraform import TerraformTarget

logger = logging.getLogger(__name__)


class MissingKeypairError(Exception):
    """Raised when a keypair has no trusted certificate to sign with."""

    pass


@dataclass(frozen=True)
class KeysetItem:
    """One certificate of a keyset."""

    id: str
    certificate: x509.Certificate | None
    distrust_timestamp: datetime | None = None

    @property
    def distrusted(self) -> bool:
        return self.distrust_timestamp is not None

    @property
    def common_name(self) -> str | None:
        if self.certificate is None:
            return None
        attributes = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attributes:
            return None
        value = attributes[0].value
        return value.decode("utf-8") if isinstance(value, bytes) else value

    @classmethod
    def from_pem(
        cls, item_id: str, pem: bytes | str, distrust_timestamp: datetime | None = None
    ) -> KeysetItem:
        """Load a keyset item from a PEM certificate.

        Raises:
            ValueError: If the PEM data is not a certificate.
        """
        if isinstance(pem, str):
            pem = pem.encode("utf-8")
        return cls(item_id, x509.load_pem_x509_certificate(pem), distrust_timestamp)


def _item_ids(actual: Any, expected: Any) -> bool:
    return sorted(i.id for i in actual) == sorted(i.id for i in expected)


@dataclass
class Keypair(Task, CloudAPIRenderer, TerraformRenderer):
    common_name: Opt[str] = UNSET
    items: Opt[list[KeysetItem]] = UNSET

    kind: ClassVar[str] = "Keypair"

    @property
    def effective_common_name(self) -> str:
        return self.common_name.value_or(self.name)

    def keyset(self) -> list[KeysetItem]:
        return list(self.items.value_or([]))

    def primary(self) -> KeysetItem | None:
        """Newest trusted certificate issued for this keypair's common name."""
        candidates = [
            item
            for item in self.keyset()
            if not item.distrusted and item.common_name == self.effective_common_name
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: (item.certificate.not_valid_before_utc, item.id))

    async def find(self, ctx: RunContext) -> Keypair | None:
        if self.primary() is None:
            return None
        return replace(self)

    def diff(self, actual: Keypair | None) -> Changes:
        return Differ(self, actual).field("common_name").field("items", _item_ids).changes()

    def _require_primary(self) -> None:
        if self.primary() is None:
            raise MissingKeypairError(
                f"{self.key}: no trusted certificate with CN {self.effective_common_name!r}; "
                "keypairs are issued out of band and must be provided"
            )

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: Keypair | None, changes: Changes
    ) -> None:
        self._require_primary()

    def render_terraform(
        self, t: TerraformTarget, actual: Keypair | None, changes: Changes
    ) -> None:
        self._require_primary()
