"""Backend client interface.

The engine never talks to a transport. Tasks reach the cloud only through a
BackendClient, a thin collaborator wrapping the provider SDK. Calls are
blocking; the run context executes them off the event loop with timeouts and
cancellation checks (see context.py).

Snapshots exchanged with the backend are plain dicts shaped like the
provider's REST representation (e.g. a GCE instance resource).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class BackendError(Exception):
    """Raised when a backend call fails."""

    pass


class TransientBackendError(BackendError):
    """Network failure or throttling. Retry policy belongs to the client."""

    pass


class OperationFailedError(BackendError):
    """An asynchronous operation reached a terminal error state."""

    pass


class OperationTimeoutError(BackendError):
    """A backend call or operation did not finish within its timeout.

    Reported distinctly from run cancellation.
    """

    pass


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a backend resource.

    Attributes:
        collection: API collection, e.g. "instances", "networks".
        name: Resource name, unique within collection and location.
        location: Zone or region; None for global resources.
    """

    collection: str
    name: str
    location: str | None = None

    def __str__(self) -> str:
        if self.location:
            return f"{self.collection}/{self.location}/{self.name}"
        return f"{self.collection}/{self.name}"


class OperationStatus(str, Enum):
    """Lifecycle of an asynchronous backend operation."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"


@dataclass
class Operation:
    """Handle to an asynchronous backend operation."""

    name: str
    ref: ResourceRef
    status: OperationStatus = OperationStatus.PENDING
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status is OperationStatus.DONE


@runtime_checkable
class BackendClient(Protocol):
    """Provider API used by live-API renderers and discovery.

    Implementations must be safe for concurrent use from multiple threads.
    """

    @property
    def project(self) -> str: ...

    def find(self, ref: ResourceRef) -> dict[str, Any] | None:
        """Return the resource snapshot, or None if it does not exist.

        Raises:
            BackendError: If the state cannot be determined.
        """
        ...

    def list(self, collection: str, location: str | None = None) -> list[dict[str, Any]]:
        """List resources of a collection, used for dependent lookups."""
        ...

    def create(self, ref: ResourceRef, body: dict[str, Any]) -> Operation: ...

    def update(self, ref: ResourceRef, changes: dict[str, Any]) -> Operation:
        """Apply an in-place update. Keys are API update verbs (e.g. setMetadata)."""
        ...

    def await_operation(self, operation: Operation) -> None:
        """Block until the operation is terminal.

        Raises:
            OperationFailedError: If the operation finished with an error.
        """
        ...
