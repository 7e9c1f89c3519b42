"""In-memory GCE-shaped resource state.

Resources are stored as plain dicts shaped like the Compute/IAM REST
representation, keyed by (collection, location, name). All access goes
through one lock so the state can be shared by the executor threads the
run context uses for backend calls.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any

from provisioner.backend import ResourceRef


@dataclass
class CallRecord:
    """One backend call as seen by the fake."""

    method: str
    ref: str
    payload: dict[str, Any] | None = None


@dataclass
class InjectedFailure:
    """Error raised when a call matches method (and optionally ref)."""

    method: str
    error: Exception
    ref: str | None = None
    # Remaining matches before the failure disarms; None = forever
    times: int | None = None


def _key(ref: ResourceRef) -> tuple[str, str, str]:
    return (ref.collection, ref.location or "", ref.name)


class MockCloudState:
    """Thread-safe resource store with a call log and error injection."""

    MAX_RESOURCES = 10000

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._calls: list[CallRecord] = []
        self._failures: list[InjectedFailure] = []
        self._counter = 0

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def get(self, ref: ResourceRef) -> dict[str, Any] | None:
        with self._lock:
            resource = self._resources.get(_key(ref))
            return copy.deepcopy(resource) if resource is not None else None

    def put(self, ref: ResourceRef, resource: dict[str, Any]) -> None:
        with self._lock:
            if _key(ref) not in self._resources and len(self._resources) >= self.MAX_RESOURCES:
                raise ValueError(f"Resource limit exceeded: {self.MAX_RESOURCES}")
            self._resources[_key(ref)] = copy.deepcopy(resource)

    def exists(self, ref: ResourceRef) -> bool:
        with self._lock:
            return _key(ref) in self._resources

    def list(self, collection: str, location: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(resource)
                for (coll, loc, _), resource in sorted(self._resources.items())
                if coll == collection and (location is None or loc == (location or ""))
            ]

    @property
    def resource_count(self) -> int:
        with self._lock:
            return len(self._resources)

    def next_id(self) -> int:
        with self._lock:
            self._counter += 1
            return self._counter

    # -------------------------------------------------------------------------
    # Call log and error injection
    # -------------------------------------------------------------------------

    def record(self, method: str, ref: str, payload: dict[str, Any] | None = None) -> None:
        """Log a call, raising an injected failure if one matches."""
        with self._lock:
            self._calls.append(CallRecord(method, ref, copy.deepcopy(payload)))
            for failure in self._failures:
                if failure.method != method:
                    continue
                if failure.ref is not None and failure.ref != ref:
                    continue
                if failure.times is not None:
                    if failure.times <= 0:
                        continue
                    failure.times -= 1
                raise failure.error

    def fail(
        self,
        method: str,
        error: Exception,
        ref: str | None = None,
        times: int | None = None,
    ) -> None:
        """Inject an error for calls to method (optionally only for ref)."""
        with self._lock:
            self._failures.append(InjectedFailure(method, error, ref, times))

    @property
    def calls(self) -> list[CallRecord]:
        with self._lock:
            return list(self._calls)

    def calls_to(self, *methods: str) -> list[CallRecord]:
        return [call for call in self.calls if call.method in methods]

    @property
    def mutation_count(self) -> int:
        return len(self.calls_to("create", "update"))

    def clear_calls(self) -> None:
        with self._lock:
            self._calls.clear()


@dataclass
class PendingOperation:
    """Mutation applied when the operation is awaited."""

    ref: ResourceRef
    apply: Any
    error: str | None = None
    applied: bool = field(default=False)
